"""
Tests — ParcelCompositePipeline and CLI
=======================================
End-to-end runs on the synthetic UTM grid from ``conftest.py`` with an
in-memory image source and parcels read back from a GeoPackage.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from unittest.mock import MagicMock

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from click.testing import CliRunner
from shapely.geometry import box

from s1_parcel_composites.cli import main
from s1_parcel_composites.config import DEFAULT_REGIONS, config_from_dict
from s1_parcel_composites.engine import XarrayEngine
from s1_parcel_composites.parcels import VectorFileParcelSource
from s1_parcel_composites.pipeline import ParcelCompositePipeline
from s1_parcel_composites.sampling import SampleResult
from s1_parcel_composites.sources import InMemoryImageSource
from shared.python.exceptions import ComputeError, ContentError, InputValidationError

UTM31N = "EPSG:32631"
PREFIX_NW2B = "S1_point_all_10d_10m_20180101-20180121_EU_NW2b"
PREFIX_NW1 = "S1_point_all_10d_10m_20180101-20180121_EU_NW1"


def _config(**overrides):
    raw = {
        "compositing": {"start_date": "2018-01-01", "end_date": "2018-01-21", "step_days": 10},
        "regions": {label: DEFAULT_REGIONS[label] for label in ("EU_NW1", "EU_NW2b")},
    }
    raw.update(overrides)
    return config_from_dict(raw)


@pytest.fixture()
def parcels_file(tmp_path: Path, pixel_parcel) -> Path:
    """Two parcels on the grid, one in EU_NW2b off the grid, one Mediterranean."""
    mediterranean = gpd.GeoSeries([box(5.0, 40.0, 5.001, 40.001)], crs="EPSG:4326").to_crs(UTM31N)
    frame = gpd.GeoDataFrame(
        {
            "point_id": [101, 102, 103, 104],
            "lc1": ["B11", "C10", "E20", "B11"],
            "lu1": ["U111", "U120", "U111", "U111"],
        },
        geometry=[
            pixel_parcel(1, 1),
            pixel_parcel(5, 5),
            box(600_000, 5_700_000, 600_020, 5_700_020),
            mediterranean.iloc[0],
        ],
        crs=UTM31N,
    )
    path = tmp_path / "parcels.gpkg"
    frame.to_file(path, driver="GPKG")
    return path


@pytest.fixture()
def image_source(make_record) -> InMemoryImageSource:
    return InMemoryImageSource([
        make_record("2018-01-02", vv=-10.0, vh=-16.0),
        make_record("2018-01-08", vv=-10.0, vh=-16.0),
    ])


def _pipeline(tmp_path: Path, parcels_file: Path, image_source, **kwargs) -> ParcelCompositePipeline:
    kwargs.setdefault("config", _config())
    return ParcelCompositePipeline(
        input_path=tmp_path / "run.json",
        output_path=tmp_path / "exports",
        parcel_source=VectorFileParcelSource(parcels_file),
        image_source=image_source,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestPipelineRun:
    def test_writes_one_csv_per_subset(self, tmp_path, parcels_file, image_source) -> None:
        pipeline = _pipeline(tmp_path, parcels_file, image_source)
        pipeline.run()

        folder = tmp_path / "exports" / "EU_reprod"
        assert sorted(p.name for p in folder.iterdir()) == [f"{PREFIX_NW1}.csv", f"{PREFIX_NW2B}.csv"]
        assert pipeline.failed_subsets == []
        assert [o.label for o in pipeline.outcomes] == ["EU_NW1", "EU_NW2b"]

    def test_rows_columns_and_values(self, tmp_path, parcels_file, image_source) -> None:
        _pipeline(tmp_path, parcels_file, image_source).run()
        table = pd.read_csv(tmp_path / "exports" / "EU_reprod" / f"{PREFIX_NW2B}.csv")

        assert list(table.columns) == [
            "VV_20180101", "VH_20180101", "VV_20180111", "VH_20180111",
            "POINT_ID", "stratum", "LC1", "LU1",
        ]
        assert sorted(table["POINT_ID"]) == [101, 102, 103]
        assert set(table["stratum"]) == {1}

        on_grid = table[table["POINT_ID"].isin([101, 102])]
        np.testing.assert_allclose(on_grid["VV_20180101"], -10.0, rtol=1e-4)
        np.testing.assert_allclose(on_grid["VH_20180101"], -16.0, rtol=1e-4)
        assert on_grid["VV_20180111"].isna().all()

        off_grid = table[table["POINT_ID"] == 103]
        assert off_grid[["VV_20180101", "VH_20180101"]].isna().all().all()

    def test_empty_subset_writes_header_only(self, tmp_path, parcels_file, image_source) -> None:
        _pipeline(tmp_path, parcels_file, image_source).run()
        table = pd.read_csv(tmp_path / "exports" / "EU_reprod" / f"{PREFIX_NW1}.csv")
        assert len(table) == 0
        assert "POINT_ID" in table.columns

    def test_subsets_exclude_mediterranean(self, tmp_path, parcels_file, image_source) -> None:
        pipeline = _pipeline(tmp_path, parcels_file, image_source)
        pipeline.run()
        exported = [pid for s in pipeline.subsets.values() for pid in s["POINT_ID"]]
        assert 104 not in exported

    def test_failed_subset_does_not_stop_others(self, tmp_path, parcels_file, image_source) -> None:
        engine = XarrayEngine(image_source)
        real_sample = engine.sample

        def flaky_sample(raster, parcels, **kwargs):
            if kwargs["label"] == "EU_NW1":
                raise ComputeError("EU_NW1", band_count=4, parcel_count=0, reason="out of memory")
            return real_sample(raster, parcels, **kwargs)

        engine.sample = flaky_sample
        pipeline = _pipeline(tmp_path, parcels_file, image_source, engine=engine)
        pipeline.run()

        assert pipeline.failed_subsets == ["EU_NW1"]
        assert (tmp_path / "exports" / "EU_reprod" / f"{PREFIX_NW2B}.csv").exists()
        assert not (tmp_path / "exports" / "EU_reprod" / f"{PREFIX_NW1}.csv").exists()

    def test_dry_run_plans_without_computing(self, tmp_path, parcels_file, image_source) -> None:
        pipeline = _pipeline(tmp_path, parcels_file, image_source, dry_run=True)
        pipeline.run()

        assert len(pipeline.windows) == 2
        assert pipeline.stack is not None and pipeline.stack.band_count == 4
        assert pipeline.engine is None
        assert pipeline.outcomes == []
        assert not (tmp_path / "exports").exists()

    def test_query_bounds_cover_parcels(self, tmp_path, parcels_file, image_source, pixel_parcel) -> None:
        pipeline = _pipeline(tmp_path, parcels_file, image_source, dry_run=True)
        pipeline.run()
        series = pipeline.stack.node.parts[0].source.source.source.source.source
        west, south, east, north = series.query.bounds

        centre = gpd.GeoSeries([pixel_parcel(1, 1)], crs=UTM31N).to_crs("EPSG:4326").iloc[0].centroid
        assert west < centre.x < east
        assert south < centre.y < north

    def test_missing_parcel_file_raises(self, tmp_path, image_source) -> None:
        config = _config(parcels={"path": str(tmp_path / "missing.gpkg")})
        pipeline = ParcelCompositePipeline(
            input_path=tmp_path / "run.json",
            output_path=tmp_path / "exports",
            config=config,
            image_source=image_source,
        )
        with pytest.raises(InputValidationError, match="not found"):
            pipeline.run()

    def test_last_window_past_end_date_is_filled(self, tmp_path, parcels_file, make_record) -> None:
        config = _config(compositing={"start_date": "2018-01-01", "end_date": "2018-01-15", "step_days": 10})
        source = InMemoryImageSource([make_record("2018-01-17", vv=-8.0, vh=-14.0)])
        pipeline = _pipeline(tmp_path, parcels_file, source, config=config)
        pipeline.run()

        assert [w.end.day for w in pipeline.windows] == [11, 21]
        table = pd.read_csv(
            tmp_path / "exports" / "EU_reprod" / "S1_point_all_10d_10m_20180101-20180115_EU_NW2b.csv"
        )
        on_grid = table[table["POINT_ID"].isin([101, 102])]
        np.testing.assert_allclose(on_grid["VV_20180111"], -8.0, rtol=1e-4)
        assert on_grid["VV_20180101"].isna().all()

    def test_outcome_keeps_skipped_parcel_errors(self, tmp_path, parcels_file, image_source) -> None:
        pipeline = _pipeline(tmp_path, parcels_file, image_source)
        engine = MagicMock(name="engine")
        engine.sample.return_value = SampleResult(
            label="EU_NW2b",
            table=pd.DataFrame(),
            columns=(),
            row_count=0,
            errors=[ContentError(103, "empty geometry")],
        )
        subset = gpd.GeoDataFrame({"POINT_ID": [101, 103]}, geometry=[box(0, 0, 1, 1), box(2, 2, 3, 3)], crs=UTM31N)

        outcome = pipeline._export_subset(engine, MagicMock(name="sink"), object(), "EU_NW2b", subset)

        assert outcome.ok
        assert [(e.parcel_id, e.reason) for e in outcome.errors] == [(103, "empty geometry")]

    def test_completion_message_summarises_subsets(self, tmp_path, parcels_file, image_source, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="s1_parcel_composites"):
            _pipeline(tmp_path, parcels_file, image_source).run()
        done = [r.getMessage() for r in caplog.records if "completed in" in r.getMessage()]
        assert len(done) == 1
        assert done[0].endswith("(2 subset(s) exported, 0 failed, 0 parcel(s) skipped)")

    def test_dry_run_completion_message(self, tmp_path, parcels_file, image_source, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="s1_parcel_composites"):
            _pipeline(tmp_path, parcels_file, image_source, dry_run=True).run()
        assert any(r.getMessage().endswith("(dry run)") for r in caplog.records)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestCli:
    def _write_config(self, tmp_path: Path, **overrides) -> Path:
        raw = {
            "compositing": {"start_date": "2018-01-01", "end_date": "2018-01-21", "step_days": 10},
            "parcels": {"path": "parcels.gpkg"},
        }
        raw.update(overrides)
        path = tmp_path / "run.json"
        path.write_text(json.dumps(raw), encoding="utf-8")
        return path

    def test_dry_run_exits_zero(self, tmp_path, parcels_file) -> None:
        config_path = self._write_config(tmp_path)
        result = CliRunner().invoke(
            main, ["--config", str(config_path), "--output", str(tmp_path / "out"), "--dry-run"]
        )
        assert result.exit_code == 0, result.output
        assert not (tmp_path / "out").exists()

    def test_invalid_config_exits_one(self, tmp_path, parcels_file) -> None:
        config_path = self._write_config(tmp_path, sampling={"tile_scale": 99})
        result = CliRunner().invoke(
            main, ["--config", str(config_path), "--output", str(tmp_path / "out")]
        )
        assert result.exit_code == 1
        assert "tile_scale" in result.output

    def test_unknown_backend_rejected(self, tmp_path, parcels_file) -> None:
        config_path = self._write_config(tmp_path)
        result = CliRunner().invoke(
            main, ["--config", str(config_path), "--output", str(tmp_path / "out"), "--backend", "spark"]
        )
        assert result.exit_code == 2
