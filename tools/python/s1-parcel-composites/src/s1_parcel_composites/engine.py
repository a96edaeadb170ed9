"""
engine.py
=========
Evaluate composite graphs and sample them on parcels.

Design:
    * :class:`ExecutionEngine` (ABC) — ``evaluate(node)`` and
      ``sample(raster, parcels, ...)``.
    * :class:`XarrayEngine` — local/dask evaluation with xarray.  Results
      are cached by node so shared sub-trees (the linear series) are
      computed once per engine.

The Earth Engine implementation lives in :mod:`.earthengine`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
import rioxarray  # noqa: F401 -- activates the .rio accessor
import xarray as xr

from shared.python.exceptions import ComputeError, InputValidationError
from shared.python.validators import Validators

from s1_parcel_composites.edge_mask import mask_edges
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
from s1_parcel_composites.parcels import METRES_PER_DEGREE
from s1_parcel_composites.radiometry import to_db, to_linear
from s1_parcel_composites.sampling import SampleResult, resolve_sampling_points
from s1_parcel_composites.sources import ImageQuery, ImageSource
from s1_parcel_composites.windows import TimeWindow

logger = logging.getLogger("s1_parcel_composites.engine")

class ExecutionEngine(ABC):
    """Abstract base for graph evaluators."""

    @abstractmethod
    def evaluate(self, node: Node) -> Any:
        """Realise *node* as an engine-native image or series."""

    @abstractmethod
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
        """Sample every band of *raster* at each parcel.

        Returns one row per parcel with usable geometry, holding every
        band value (NaN where masked) and the requested *properties*.

        Raises:
            ComputeError: If the engine runs out of resources.
        """

class XarrayEngine(ExecutionEngine):
    """Evaluate graphs with xarray (optionally dask-backed).

    Args:
        source: Imagery source used for :class:`SeriesNode` leaves.
        batch_size: Points sampled per batch when ``tile_scale`` is 1.
                    Larger tile scales shrink batches proportionally.
        persist: Persist dask-backed series in memory after evaluation.
    """

    def __init__(self, source: ImageSource, *, batch_size: int = 4096, persist: bool = False) -> None:
        if batch_size < 1:
            raise InputValidationError(f"batch_size must be >= 1, got {batch_size}.")
        self.source = source
        self.batch_size = batch_size
        self.persist = persist
        self._cache: dict = {}

    def __repr__(self) -> str:
        return f"XarrayEngine(source={type(self.source).__name__}, cached={len(self._cache)})"

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, node: Node) -> xr.DataArray:
        if node in self._cache:
            return self._cache[node]

        result = self._evaluate(node)
        if self.persist and node.is_series and result.chunks is not None:
            result = result.persist()
        self._cache[node] = result
        return result

    def clear_cache(self) -> None:
        self._cache.clear()

    def _evaluate(self, node: Node) -> xr.DataArray:
        if isinstance(node, SeriesNode):
            return self._series(node.query)
        if isinstance(node, EdgeMaskNode):
            series = self.evaluate(node.source)
            if series.size == 0:
                return series
            return mask_edges(series, node.params)
        if isinstance(node, LinearNode):
            return to_linear(self.evaluate(node.source))
        if isinstance(node, DbNode):
            return to_db(self.evaluate(node.source))
        if isinstance(node, WindowMeanNode):
            return self._window_mean(self.evaluate(node.source), node.window, node.channels)
        if isinstance(node, SelectNode):
            image = self.evaluate(node.source).sel(band=list(node.channels))
            return image.assign_coords(band=list(node.names))
        if isinstance(node, StackNode):
            return self._stack(node)
        raise TypeError(f"Unknown node type: {type(node).__name__}")

    def _series(self, query: ImageQuery) -> xr.DataArray:
        """Acquisitions as ``(time, band, y, x)``; missing channels are NaN."""
        records = self.source.query(query)
        channels = list(query.channels)
        if not records:
            logger.warning(
                "No acquisitions for %s..%s; composites will be empty.",
                f"{query.start:%Y-%m-%d}", f"{query.end:%Y-%m-%d}",
            )
            return xr.DataArray(
                np.empty((0, len(channels), 0, 0), dtype="float32"),
                dims=("time", "band", "y", "x"),
                coords={"time": np.array([], dtype="datetime64[ns]"), "band": channels,
                        "y": [], "x": []},
            )

        layers = [
            rec.data.reindex(band=channels).expand_dims(time=[np.datetime64(rec.acquired, "ns")])
            for rec in records
        ]
        series = xr.concat(layers, dim="time")
        logger.info("Series: %d acquisition(s), grid %s.", series.sizes["time"],
                    (series.sizes["y"], series.sizes["x"]))
        return series

    @staticmethod
    def _window_mean(series: xr.DataArray, window: TimeWindow, channels: Sequence[str]) -> xr.DataArray:
        times = series["time"].values
        inside = (times >= np.datetime64(window.start, "ns")) & (times < np.datetime64(window.end, "ns"))
        subset = series.isel(time=np.flatnonzero(inside)).sel(band=list(channels))
        if subset.sizes["time"] == 0:
            logger.debug("Window %s has no acquisitions.", window)
            # all-NaN image on the series grid
            return subset.sum("time", min_count=1)
        return subset.mean("time", skipna=True)

    def _stack(self, node: StackNode) -> xr.DataArray:
        if not node.parts:
            return xr.DataArray(
                np.empty((0, 0, 0), dtype="float32"),
                dims=("band", "y", "x"),
                coords={"band": [], "y": [], "x": []},
            )
        stack = xr.concat([self.evaluate(p) for p in node.parts], dim="band").astype("float32")
        expected = list(output_bands(node))
        assert [str(b) for b in stack["band"].values] == expected, "stack band order mismatch"
        return stack

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def sample(
        self,
        raster: xr.DataArray,
        parcels: gpd.GeoDataFrame,
        *,
        properties: Sequence[str],
        scale: float,
        tile_scale: int = 1,
        label: str = "",
        id_field: str = "POINT_ID",
    ) -> SampleResult:
        if scale <= 0:
            raise InputValidationError(f"scale must be positive, got {scale}.")
        if not 1 <= tile_scale <= 16:
            raise InputValidationError(f"tile_scale must be in 1..16, got {tile_scale}.")
        Validators.assert_columns_exist(parcels, list(properties))

        band_names = [str(b) for b in raster["band"].values]
        points, errors = resolve_sampling_points(parcels, id_field=id_field)

        try:
            values = self._sample_points(raster, points, scale, tile_scale)
        except (MemoryError, RuntimeError, OSError) as exc:
            raise ComputeError(
                label, band_count=len(band_names), parcel_count=len(parcels), reason=str(exc)
            ) from exc

        table = pd.concat(
            [
                pd.DataFrame(values, columns=band_names, index=points.index),
                pd.DataFrame(parcels.loc[points.index, list(properties)]),
            ],
            axis=1,
        ).reset_index(drop=True)

        logger.info(
            "Sampled %d parcel(s) x %d band(s) for '%s' (%d skipped).",
            len(table), len(band_names), label, len(errors),
        )
        return SampleResult(
            label=label,
            table=table,
            columns=tuple(band_names) + tuple(properties),
            row_count=len(table),
            errors=errors,
        )

    def _sample_points(
        self,
        raster: xr.DataArray,
        points: gpd.GeoSeries,
        scale: float,
        tile_scale: int,
    ) -> np.ndarray:
        """Band values at *points* as ``(n_points, n_bands)``; NaN off-grid."""
        n_bands = raster.sizes["band"]
        out = np.full((len(points), n_bands), np.nan, dtype="float32")
        if len(points) == 0 or n_bands == 0 or raster.sizes["y"] == 0 or raster.sizes["x"] == 0:
            return out

        crs = raster.rio.crs
        if crs is None:
            raise InputValidationError("Composite raster has no CRS; cannot place parcels on it.")
        if points.crs is not None and points.crs != crs:
            points = points.to_crs(crs)

        grid = _resample_to_scale(raster, scale, geographic=crs.is_geographic)
        height, width = grid.sizes["y"], grid.sizes["x"]
        if height == 0 or width == 0:
            return out

        x_origin, y_origin, rx, ry = _grid_origin(grid)
        cols = np.floor((points.x.to_numpy() - x_origin) / rx).astype(np.int64)
        rows = np.floor((points.y.to_numpy() - y_origin) / ry).astype(np.int64)
        inside = np.flatnonzero((rows >= 0) & (rows < height) & (cols >= 0) & (cols < width))

        batch = max(1, self.batch_size // tile_scale)
        for start in range(0, len(inside), batch):
            chunk = inside[start:start + batch]
            picked = grid.isel(
                y=xr.DataArray(rows[chunk], dims="point"),
                x=xr.DataArray(cols[chunk], dims="point"),
            )
            out[chunk] = picked.transpose("point", "band").values
        return out

def _resolution(grid: xr.DataArray) -> tuple[float, float]:
    xs, ys = grid["x"].values, grid["y"].values
    if len(xs) > 1 and len(ys) > 1:
        return (xs[-1] - xs[0]) / (len(xs) - 1), (ys[-1] - ys[0]) / (len(ys) - 1)
    return grid.rio.resolution()

def _grid_origin(grid: xr.DataArray) -> tuple[float, float, float, float]:
    """Outer corner of the first pixel and the signed resolution."""
    rx, ry = _resolution(grid)
    x0, y0 = float(grid["x"].values[0]), float(grid["y"].values[0])
    return x0 - rx / 2, y0 - ry / 2, rx, ry

def _resample_to_scale(raster: xr.DataArray, scale: float, *, geographic: bool) -> xr.DataArray:
    """Block-average *raster* when *scale* is coarser than its pixels."""
    if raster.sizes["x"] < 2 or raster.sizes["y"] < 2:
        return raster
    rx, _ = _resolution(raster)
    target = scale / METRES_PER_DEGREE if geographic else scale
    factor = int(round(target / abs(rx)))
    if factor <= 1:
        return raster
    logger.debug("Coarsening %s by %d to reach %g m.", dict(raster.sizes), factor, scale)
    return raster.coarsen(x=factor, y=factor, boundary="trim").mean()
