"""
Tests — Earth Engine backend
============================
The ``ee`` module is replaced by a MagicMock; tests check the server-side
calls that would be issued, not their results.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import geopandas as gpd
import pytest
from shapely.geometry import Polygon, box

from s1_parcel_composites.compositing import build_composite_stack
from s1_parcel_composites.earthengine import DriveExportSink, EarthEngineEngine
from s1_parcel_composites.edge_mask import EdgeMaskParams
from s1_parcel_composites.sampling import SampleResult
from s1_parcel_composites.sources import ImageQuery
from s1_parcel_composites.windows import partition_windows
from shared.python.exceptions import ComputeError, InputValidationError, OutputWriteError


def _make_ee() -> MagicMock:
    ee = MagicMock(name="ee")
    ee.EEException = type("EEException", (Exception,), {})

    # collection methods chain onto the same mock
    coll = MagicMock(name="ImageCollection")
    for method in ("filter", "filterDate", "filterBounds", "select", "sort", "map"):
        getattr(coll, method).return_value = coll
    ee.ImageCollection.return_value = coll
    return ee


def _engine(ee: MagicMock) -> EarthEngineEngine:
    return EarthEngineEngine(ee_module=ee, project="demo-project")


def _parcels() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {"POINT_ID": [1, 2, 3], "stratum": [1, 1, 1], "LC1": ["B11"] * 3, "LU1": ["U111"] * 3},
        geometry=[box(500_000, 5_600_000, 500_020, 5_600_020), Polygon(),
                  box(500_100, 5_600_000, 500_120, 5_600_020)],
        crs="EPSG:32631",
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestEarthEngineInit:
    def test_initialises_with_project(self) -> None:
        ee = _make_ee()
        _engine(ee)
        ee.Initialize.assert_called_once_with(project="demo-project")

    def test_initialisation_failure(self) -> None:
        ee = _make_ee()
        ee.Initialize.side_effect = ee.EEException("no credentials")
        with pytest.raises(InputValidationError, match="no credentials"):
            _engine(ee)

    def test_initialise_can_be_skipped(self) -> None:
        ee = _make_ee()
        EarthEngineEngine(ee_module=ee, initialize=False)
        ee.Initialize.assert_not_called()


class TestEarthEngineEvaluate:
    def test_series_filters(self) -> None:
        ee = _make_ee()
        engine = _engine(ee)
        query = ImageQuery.create(["VV", "VH"], "2018-01-01", "2018-01-21", bounds=(2.0, 50.0, 4.0, 51.0))

        coll = engine._series(query)

        ee.ImageCollection.assert_called_once_with("COPERNICUS/S1_GRD")
        ee.Filter.eq.assert_called_once_with("instrumentMode", "IW")
        assert [c.args for c in ee.Filter.listContains.call_args_list] == [
            ("transmitterReceiverPolarisation", "VV"),
            ("transmitterReceiverPolarisation", "VH"),
        ]
        coll.filterDate.assert_called_once_with("2018-01-01T00:00:00", "2018-01-21T00:00:00")
        ee.Geometry.Rectangle.assert_called_once_with([2.0, 50.0, 4.0, 51.0])
        coll.select.assert_called_once_with(["VV", "VH"])
        coll.sort.assert_called_once_with("system:time_start")

    def test_query_collection_overrides_default(self) -> None:
        ee = _make_ee()
        query = ImageQuery.create(["VV", "VH"], "2018-01-01", "2018-01-21", collection="custom/S1")
        _engine(ee)._series(query)
        ee.ImageCollection.assert_called_once_with("custom/S1")

    def test_edge_mask_uses_connected_pixel_count(self) -> None:
        ee = _make_ee()
        img = MagicMock(name="image")
        params = EdgeMaskParams(max_component_size=100, min_component_size=2)

        _engine(ee)._edge_mask(img, "VV", params)

        img.select.assert_called_once_with("VV")
        img.select.return_value.unitScale.assert_called_once_with(-25.0, 5.0)
        levels = img.select.return_value.unitScale.return_value.clamp.return_value.multiply.return_value.toByte.return_value
        levels.connectedPixelCount.assert_called_once_with(maxSize=100, eightConnected=False)
        levels.connectedPixelCount.return_value.gte.assert_called_once_with(2)
        img.updateMask.assert_called_once_with(levels.connectedPixelCount.return_value.gte.return_value)

    def test_full_stack_queries_collection_once(self) -> None:
        ee = _make_ee()
        engine = _engine(ee)
        query = ImageQuery.create(["VV", "VH"], "2018-01-01", "2018-02-01")
        stack = build_composite_stack(query, partition_windows("2018-01-01", "2018-02-01", 10))

        image = engine.evaluate(stack.node)

        assert ee.ImageCollection.call_count == 1
        assert ee.Algorithms.If.call_count == 4
        assert image is engine.evaluate(stack.node)


class TestEarthEngineSample:
    def test_reduce_regions_arguments(self) -> None:
        ee = _make_ee()
        raster = MagicMock(name="stack")
        raster.bandNames.return_value.getInfo.return_value = ["VV_20180101", "VH_20180101"]

        result = _engine(ee).sample(
            raster, _parcels(), properties=["POINT_ID", "stratum", "LC1", "LU1"],
            scale=10, tile_scale=16, label="EU_NW2b",
        )

        kwargs = raster.reduceRegions.call_args.kwargs
        assert kwargs["scale"] == 10
        assert kwargs["tileScale"] == 16
        assert kwargs["reducer"] is ee.Reducer.first.return_value

        features = ee.FeatureCollection.call_args.args[0]["features"]
        assert len(features) == 2
        assert [f["properties"]["POINT_ID"] for f in features] == [1, 3]
        lon, lat = features[0]["geometry"]["coordinates"]
        assert 2.9 < lon < 3.1 and 50.4 < lat < 50.7

        assert result.table is raster.reduceRegions.return_value
        assert result.columns == ("VV_20180101", "VH_20180101", "POINT_ID", "stratum", "LC1", "LU1")
        assert result.row_count is None
        assert [e.parcel_id for e in result.errors] == [2]

    def test_ee_failure_wrapped(self) -> None:
        ee = _make_ee()
        raster = MagicMock(name="stack")
        raster.bandNames.return_value.getInfo.return_value = ["VV_20180101", "VH_20180101"]
        raster.reduceRegions.side_effect = ee.EEException("User memory limit exceeded.")

        with pytest.raises(ComputeError) as exc_info:
            _engine(ee).sample(raster, _parcels(), properties=["POINT_ID"], scale=10, label="EU_NE2")
        err = exc_info.value
        assert (err.label, err.band_count, err.parcel_count) == ("EU_NE2", 2, 3)
        assert "memory" in err.message

    def test_tile_scale_range(self) -> None:
        with pytest.raises(InputValidationError):
            _engine(_make_ee()).sample(MagicMock(), _parcels(), properties=["POINT_ID"],
                                       scale=10, tile_scale=0)


# ---------------------------------------------------------------------------
# Drive export
# ---------------------------------------------------------------------------


def _result() -> SampleResult:
    return SampleResult(
        label="EU_NW1",
        table=MagicMock(name="FeatureCollection"),
        columns=("VV_20180101", "VH_20180101", "POINT_ID"),
        row_count=None,
    )


class TestDriveExportSink:
    def test_starts_table_export(self) -> None:
        ee = _make_ee()
        task = ee.batch.Export.table.toDrive.return_value
        task.id = "TASK42"
        result = _result()
        prefix = "S1_point_all_10d_10m_20180101-20180731_EU_NW1"

        receipt = DriveExportSink(ee).export(result, folder="EU_reprod", prefix=prefix)

        ee.batch.Export.table.toDrive.assert_called_once_with(
            collection=result.table,
            description=prefix,
            folder="EU_reprod",
            fileNamePrefix=prefix,
            fileFormat="CSV",
            selectors=["VV_20180101", "VH_20180101", "POINT_ID"],
        )
        task.start.assert_called_once_with()
        assert receipt.destination == f"drive:EU_reprod/{prefix}"
        assert receipt.task_id == "TASK42"
        assert receipt.rows is None

    def test_long_description_truncated(self) -> None:
        ee = _make_ee()
        DriveExportSink(ee).export(_result(), folder="f", prefix="x" * 150)
        kwargs = ee.batch.Export.table.toDrive.call_args.kwargs
        assert len(kwargs["description"]) == 100
        assert kwargs["fileNamePrefix"] == "x" * 150

    def test_start_failure_wrapped(self) -> None:
        ee = _make_ee()
        ee.batch.Export.table.toDrive.return_value.start.side_effect = ee.EEException("quota")
        with pytest.raises(OutputWriteError, match="quota"):
            DriveExportSink(ee).export(_result(), folder="EU_reprod", prefix="p")
