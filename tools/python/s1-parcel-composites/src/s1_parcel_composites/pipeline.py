"""
pipeline.py
===========
End-to-end run: parcels → strata → subsets, windows → composite stack,
then one sampled export per subset.  Inherits from
:class:`~shared.python.base_tool.GeoTool` and implements the Template
Method pattern.

Usage::

    from pathlib import Path
    from s1_parcel_composites.pipeline import ParcelCompositePipeline

    pipeline = ParcelCompositePipeline(
        input_path=Path("run.json"),
        output_path=Path("exports/"),
        verbose=True,
    )
    pipeline.run()
    print(pipeline.failed_subsets)

Subsets are exported independently.  A :class:`ComputeError` or
:class:`OutputWriteError` on one subset is logged and recorded in
:attr:`ParcelCompositePipeline.outcomes`; the remaining subsets still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import geopandas as gpd
import pandas as pd

from shared.python.base_tool import GeoTool
from shared.python.exceptions import ComputeError, ContentError, OutputWriteError, ParcelCompositesError
from shared.python.validators import Validators

from s1_parcel_composites.compositing import CompositeStack, build_composite_stack
from s1_parcel_composites.config import RunConfig, load_config
from s1_parcel_composites.engine import ExecutionEngine, XarrayEngine
from s1_parcel_composites.parcels import (
    WGS84,
    VectorFileParcelSource,
    assign_strata,
    filter_stratum,
    partition_by_bounds,
    rectangles_union,
)
from s1_parcel_composites.sampling import ExportReceipt, ExportSink, LocalTableSink, export_prefix
from s1_parcel_composites.sources import ImageQuery, ImageSource, PlanetaryComputerSource
from s1_parcel_composites.windows import TimeWindow, partition_windows, to_datetime

logger = logging.getLogger("s1_parcel_composites.pipeline")

# Pad degenerate parcel extents (single points) so the bounds stay valid.
_BOUNDS_PAD_DEG = 1e-3


@dataclass
class SubsetOutcome:
    """Result of sampling and exporting one parcel subset.

    Attributes:
        label: Subset (rectangle) label.
        parcel_count: Parcels in the subset.
        prefix: Export file-name prefix.
        receipt: Sink receipt when the export was accepted.
        error: The failure when it was not.
        errors: Parcels dropped for unusable geometry, one error each.
    """

    label: str
    parcel_count: int
    prefix: str
    receipt: Optional[ExportReceipt] = None
    error: Optional[ParcelCompositesError] = None
    errors: list[ContentError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class ParcelCompositePipeline(GeoTool):
    """Sentinel-1 composite sampling pipeline.

    Attributes:
        config: Parsed run configuration.
        windows: Compositing windows of the run.
        stack: Composite stack description.
        subsets: Parcel subsets by rectangle label.
        outcomes: One :class:`SubsetOutcome` per exported subset.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        *,
        verbose: bool = False,
        dry_run: bool = False,
        backend: Optional[str] = None,
        config: Optional[RunConfig] = None,
        parcel_source: Optional[VectorFileParcelSource] = None,
        image_source: Optional[ImageSource] = None,
        engine: Optional[ExecutionEngine] = None,
        sink: Optional[ExportSink] = None,
    ) -> None:
        """Initialise the pipeline.

        Args:
            input_path: JSON configuration file (ignored if *config* given).
            output_path: Root directory for local exports.
            verbose: Enable debug-level logging.
            dry_run: Plan windows, bands and subsets without evaluation.
            backend: Override ``engine.backend`` from the config.
            config: Pre-built configuration.
            parcel_source: Override the configured parcel file.
            image_source: Imagery source for the local engine.
            engine: Pre-built execution engine.
            sink: Pre-built export sink.
        """
        super().__init__(input_path=input_path, output_path=output_path, verbose=verbose)
        self.dry_run = dry_run
        self.backend = backend
        self.config: Optional[RunConfig] = config
        self.parcel_source = parcel_source
        self.image_source = image_source
        self.engine = engine
        self.sink = sink

        self.windows: list[TimeWindow] = []
        self.stack: Optional[CompositeStack] = None
        self.subsets: dict[str, gpd.GeoDataFrame] = {}
        self.outcomes: list[SubsetOutcome] = []

    @property
    def failed_subsets(self) -> list[str]:
        return [o.label for o in self.outcomes if not o.ok]

    def _summary(self) -> str:
        if self.dry_run:
            return "dry run"
        failed = len(self.failed_subsets)
        skipped = sum(len(o.errors) for o in self.outcomes)
        return (
            f"{len(self.outcomes) - failed} subset(s) exported, {failed} failed, "
            f"{skipped} parcel(s) skipped"
        )

    # ------------------------------------------------------------------
    # GeoTool interface
    # ------------------------------------------------------------------

    def validate_inputs(self) -> None:
        """Load and validate the configuration and the parcel source.

        Raises:
            InputValidationError: On a missing/invalid config or parcel file.
            OutputWriteError: If the output directory cannot be created.
        """
        if self.config is None:
            Validators.assert_file_exists(self.input_path)
            self.config = load_config(self.input_path)
        if self.backend is not None:
            self.config.engine.backend = self.backend
        self.config.validate()

        if self.parcel_source is None:
            parcels_cfg = self.config.parcels
            Validators.assert_file_exists(Path(parcels_cfg.path))
            self.parcel_source = VectorFileParcelSource(
                Path(parcels_cfg.path), layer=parcels_cfg.layer, field_map=parcels_cfg.field_map
            )

        if not self.dry_run and self.config.engine.backend == "local":
            Validators.assert_directory_writable(self.output_path)

        logger.info(
            "Configuration validated: %d region(s), backend '%s'.",
            len(self.config.regions), self.config.engine.backend,
        )

    def process(self) -> None:
        """Plan the run, realise the stack once, then export every subset."""
        assert self.config is not None, "Call validate_inputs() first."
        comp = self.config.compositing

        self.windows = partition_windows(comp.start_date, comp.end_date, comp.step_days)
        self.subsets = self._prepare_subsets()

        query = ImageQuery.create(
            comp.channels,
            comp.start_date,
            # the last window may run past end_date
            self.windows[-1].end if self.windows else comp.end_date,
            instrument_mode=comp.instrument_mode,
            collection=self.config.engine.collection,
            bounds=self._subset_bounds(),
        )
        self.stack = build_composite_stack(
            query, self.windows, comp.channels, edge_mask=self.config.edge_mask.to_params()
        )

        if self.dry_run:
            self._log_plan()
            return
        if not any(len(s) for s in self.subsets.values()):
            logger.warning("No parcels fall inside any region; nothing to export.")
            return

        engine = self._get_engine()
        sink = self._get_sink()
        raster = engine.evaluate(self.stack.node)
        for label, subset in self.subsets.items():
            self.outcomes.append(self._export_subset(engine, sink, raster, label, subset))

        failed = self.failed_subsets
        if failed:
            logger.error(
                "%d of %d subset(s) failed: %s. Re-run with a higher "
                "'sampling.tile_scale' or fewer regions.",
                len(failed), len(self.outcomes), ", ".join(failed),
            )

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    def _prepare_subsets(self) -> dict[str, gpd.GeoDataFrame]:
        """Load, stratify, filter and partition the parcels."""
        assert self.config is not None and self.parcel_source is not None
        regions = self.config.region_rectangles
        strata = self.config.strata

        extent = rectangles_union(regions).bounds
        parcels = self.parcel_source.load(bbox=extent)
        parcels = assign_strata(
            parcels,
            rectangles_union(self.config.reference_rectangles),
            tolerance_m=strata.tolerance_m,
            metric_crs=strata.metric_crs,
        )
        if strata.keep_stratum is not None:
            parcels = filter_stratum(parcels, strata.keep_stratum)

        subsets = partition_by_bounds(parcels, regions)
        logger.info(
            "Parcel subsets: %s",
            ", ".join(f"{label}={len(s)}" for label, s in subsets.items()),
        )
        return subsets

    def _subset_bounds(self) -> Optional[tuple[float, float, float, float]]:
        """Lon/lat extent of every parcel in any subset, or ``None``."""
        frames = [s for s in self.subsets.values() if len(s)]
        if not frames:
            return None
        combined = gpd.GeoDataFrame(pd.concat(frames), crs=frames[0].crs)
        if combined.crs is not None:
            combined = combined.to_crs(WGS84)
        west, south, east, north = (float(v) for v in combined.total_bounds)
        return (
            max(west - _BOUNDS_PAD_DEG, -180.0),
            max(south - _BOUNDS_PAD_DEG, -90.0),
            min(east + _BOUNDS_PAD_DEG, 180.0),
            min(north + _BOUNDS_PAD_DEG, 90.0),
        )

    def _prefix(self, label: str) -> str:
        assert self.config is not None
        comp = self.config.compositing
        return export_prefix(
            self.config.export.prefix_template,
            step_days=comp.step_days,
            scale=self.config.sampling.scale,
            start=to_datetime(comp.start_date),
            end=to_datetime(comp.end_date),
            label=label,
            channels=comp.channels,
        )

    def _export_subset(
        self,
        engine: ExecutionEngine,
        sink: ExportSink,
        raster: object,
        label: str,
        subset: gpd.GeoDataFrame,
    ) -> SubsetOutcome:
        assert self.config is not None
        samp, export = self.config.sampling, self.config.export
        outcome = SubsetOutcome(label=label, parcel_count=len(subset), prefix=self._prefix(label))
        try:
            result = engine.sample(
                raster,
                subset,
                properties=samp.properties,
                scale=samp.scale,
                tile_scale=samp.tile_scale,
                label=label,
            )
            outcome.errors = list(result.errors)
            outcome.receipt = sink.export(
                result, folder=export.folder, prefix=outcome.prefix, file_format=export.file_format
            )
        except (ComputeError, OutputWriteError) as exc:
            logger.error("Subset '%s' failed: %s", label, exc.message)
            outcome.error = exc
        return outcome

    def _get_engine(self) -> ExecutionEngine:
        assert self.config is not None
        if self.engine is not None:
            return self.engine

        eng = self.config.engine
        if eng.backend == "earthengine":
            from s1_parcel_composites.earthengine import S1_GRD_COLLECTION, EarthEngineEngine  # noqa: PLC0415

            self.engine = EarthEngineEngine(
                collection=eng.collection or S1_GRD_COLLECTION, project=eng.project
            )
        else:
            source = self.image_source or PlanetaryComputerSource(
                stac_url=eng.stac_url,
                collection=eng.collection or "sentinel-1-rtc",
                resolution=eng.resolution,
                epsg=eng.epsg,
                chunk_size=eng.chunk_size,
            )
            self.engine = XarrayEngine(source, batch_size=self.config.sampling.batch_size)
        return self.engine

    def _get_sink(self) -> ExportSink:
        assert self.config is not None
        if self.sink is not None:
            return self.sink

        if self.config.engine.backend == "earthengine":
            from s1_parcel_composites.earthengine import DriveExportSink  # noqa: PLC0415

            self.sink = DriveExportSink(ee_module=getattr(self.engine, "ee", None))
        else:
            self.sink = LocalTableSink(self.output_path)
        return self.sink

    def _log_plan(self) -> None:
        assert self.stack is not None
        logger.info("Dry run: %d window(s):", len(self.windows))
        for window in self.windows:
            logger.info("  %s", window)
        logger.info("Dry run: %d band(s): %s", self.stack.band_count, ", ".join(self.stack.band_names))
        for label, subset in self.subsets.items():
            logger.info("  %-10s %6d parcel(s) → %s", label, len(subset), self._prefix(label))
