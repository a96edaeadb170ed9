"""
earthengine.py
==============
Google Earth Engine backend: graph evaluation, sampling, Drive export.

Design:
    * :class:`EarthEngineEngine` — translates graph nodes into server-side
      ``ee`` objects.  Nothing is computed until an export task runs.
    * :class:`DriveExportSink` — starts ``Export.table.toDrive`` tasks and
      returns without waiting for them.

``earthengine-api`` is an optional dependency (``pip install .[earthengine]``);
the ``ee`` module is imported when an engine or sink is constructed and
can be injected for testing.
"""

from __future__ import annotations

import json
import logging
from functools import reduce
from typing import Any, Optional, Sequence

import geopandas as gpd

from shared.python.exceptions import ComputeError, InputValidationError, OutputWriteError
from shared.python.validators import Validators

from s1_parcel_composites.edge_mask import EdgeMaskParams
from s1_parcel_composites.engine import ExecutionEngine
from s1_parcel_composites.graph import (
    DbNode,
    EdgeMaskNode,
    LinearNode,
    Node,
    SelectNode,
    SeriesNode,
    StackNode,
    WindowMeanNode,
    output_bands,
)
from s1_parcel_composites.parcels import WGS84
from s1_parcel_composites.sampling import ExportReceipt, ExportSink, SampleResult, resolve_sampling_points
from s1_parcel_composites.sources import ImageQuery

logger = logging.getLogger("s1_parcel_composites.earthengine")

S1_GRD_COLLECTION = "COPERNICUS/S1_GRD"
TIME_PROPERTY = "system:time_start"
_MAX_DESCRIPTION = 100


def _import_ee() -> Any:
    import ee  # noqa: PLC0415

    return ee


class EarthEngineEngine(ExecutionEngine):
    """Evaluate graphs as Earth Engine expressions.

    Args:
        collection: Default image collection id.
        project: Cloud project passed to ``ee.Initialize``.
        ee_module: Pre-imported ``ee`` module (tests inject a mock).
        initialize: Call ``ee.Initialize`` on construction.

    Raises:
        InputValidationError: If Earth Engine cannot be initialised.
    """

    def __init__(
        self,
        *,
        collection: str = S1_GRD_COLLECTION,
        project: Optional[str] = None,
        ee_module: Any = None,
        initialize: bool = True,
    ) -> None:
        self.ee = ee_module if ee_module is not None else _import_ee()
        self.collection = collection
        self._cache: dict = {}
        if initialize:
            try:
                self.ee.Initialize(project=project)
            except self.ee.EEException as exc:
                raise InputValidationError(f"Earth Engine initialisation failed: {exc}") from exc
            logger.info("Earth Engine initialised (project=%s).", project)

    def evaluate(self, node: Node) -> Any:
        if node not in self._cache:
            self._cache[node] = self._evaluate(node)
        return self._cache[node]

    def _evaluate(self, node: Node) -> Any:
        ee = self.ee
        if isinstance(node, SeriesNode):
            return self._series(node.query)
        if isinstance(node, EdgeMaskNode):
            channel = node.params.channel or output_bands(node.source)[0]
            return self.evaluate(node.source).map(
                lambda img: self._edge_mask(img, channel, node.params)
            )
        if isinstance(node, LinearNode):
            return self._per_image(
                node, lambda img: ee.Image(10).pow(img.divide(10))
            )
        if isinstance(node, DbNode):
            return self._per_image(node, lambda img: img.log10().multiply(10))
        if isinstance(node, WindowMeanNode):
            return self._window_mean(node)
        if isinstance(node, SelectNode):
            return self.evaluate(node.source).select(list(node.channels), list(node.names))
        if isinstance(node, StackNode):
            parts = [self.evaluate(p) for p in node.parts]
            return reduce(lambda stack, img: stack.addBands(img), parts, ee.Image([])).toFloat()
        raise TypeError(f"Unknown node type: {type(node).__name__}")

    def _series(self, query: ImageQuery) -> Any:
        ee = self.ee
        query.validate(type(self).__name__)
        coll = ee.ImageCollection(query.collection or self.collection).filter(
            ee.Filter.eq("instrumentMode", query.instrument_mode)
        )
        for channel in query.channels:
            coll = coll.filter(ee.Filter.listContains("transmitterReceiverPolarisation", channel))
        coll = coll.filterDate(query.start.isoformat(), query.end.isoformat())
        if query.bounds is not None:
            coll = coll.filterBounds(ee.Geometry.Rectangle(list(query.bounds)))
        return coll.select(list(query.channels)).sort(TIME_PROPERTY)

    def _edge_mask(self, img: Any, channel: str, params: EdgeMaskParams) -> Any:
        levels = (
            img.select(channel)
            .unitScale(params.clamp_min, params.clamp_max)
            .clamp(0, 1)
            .multiply(255)
            .toByte()
        )
        sizes = levels.connectedPixelCount(
            maxSize=params.max_component_size,
            eightConnected=params.connectivity == 2,
        )
        masked = img.updateMask(sizes.gte(params.min_component_size))
        return self.ee.Image(masked.copyProperties(img, [TIME_PROPERTY]))

    def _per_image(self, node: Any, func: Any) -> Any:
        """Apply *func* per image for series nodes, directly otherwise."""
        source = self.evaluate(node.source)
        if node.is_series:
            return source.map(
                lambda img: self.ee.Image(func(img).copyProperties(img, [TIME_PROPERTY]))
            )
        return func(source)

    def _window_mean(self, node: WindowMeanNode) -> Any:
        ee = self.ee
        channels = list(node.channels)
        windowed = (
            self.evaluate(node.source)
            .filterDate(node.window.start.isoformat(), node.window.end.isoformat())
            .select(channels)
        )
        empty = ee.Image.constant([0] * len(channels)).rename(channels).updateMask(0)
        return ee.Image(ee.Algorithms.If(windowed.size().gt(0), windowed.mean(), empty))

    def sample(
        self,
        raster: Any,
        parcels: gpd.GeoDataFrame,
        *,
        properties: Sequence[str],
        scale: float,
        tile_scale: int = 1,
        label: str = "",
        id_field: str = "POINT_ID",
    ) -> SampleResult:
        """Reduce *raster* at each parcel's representative point.

        ``Reducer.first`` over a point keeps one feature per parcel even
        where every band is masked.
        """
        if not 1 <= tile_scale <= 16:
            raise InputValidationError(f"tile_scale must be in 1..16, got {tile_scale}.")
        Validators.assert_columns_exist(parcels, list(properties))

        points, errors = resolve_sampling_points(parcels, id_field=id_field)
        frame = gpd.GeoDataFrame(
            parcels.loc[points.index, list(properties)],
            geometry=points,
            crs=parcels.crs,
        )
        if frame.crs is not None:
            frame = frame.to_crs(WGS84)

        band_names: list[str] = []
        try:
            band_names = list(raster.bandNames().getInfo())
            collection = self.ee.FeatureCollection(json.loads(frame.to_json()))
            table = raster.reduceRegions(
                collection=collection,
                reducer=self.ee.Reducer.first(),
                scale=scale,
                tileScale=tile_scale,
            )
        except self.ee.EEException as exc:
            raise ComputeError(
                label, band_count=len(band_names), parcel_count=len(parcels), reason=str(exc)
            ) from exc

        logger.info(
            "Queued sampling of %d parcel(s) x %d band(s) for '%s'.",
            len(frame), len(band_names), label,
        )
        return SampleResult(
            label=label,
            table=table,
            columns=tuple(band_names) + tuple(properties),
            row_count=None,
            errors=errors,
        )


class DriveExportSink(ExportSink):
    """Start one Google Drive table export per subset.

    Completion is not observed; the receipt carries the task id so it can
    be tracked in the Earth Engine task manager.
    """

    def __init__(self, ee_module: Any = None) -> None:
        self.ee = ee_module if ee_module is not None else _import_ee()

    def export(
        self,
        result: SampleResult,
        *,
        folder: str,
        prefix: str,
        file_format: str = "CSV",
    ) -> ExportReceipt:
        destination = f"drive:{folder}/{prefix}"
        try:
            task = self.ee.batch.Export.table.toDrive(
                collection=result.table,
                description=prefix[:_MAX_DESCRIPTION],
                folder=folder,
                fileNamePrefix=prefix,
                fileFormat=file_format.upper(),
                selectors=list(result.columns),
            )
            task.start()
        except self.ee.EEException as exc:
            raise OutputWriteError(destination, str(exc)) from exc

        task_id = getattr(task, "id", None)
        logger.info("Drive export started: %s (task %s).", destination, task_id)
        return ExportReceipt(
            label=result.label, prefix=prefix, destination=destination, rows=None, task_id=task_id
        )
