"""
parcels.py
==========
Parcel polygons: loading, attribute normalisation, stratification, and
partitioning into rectangle-bounded subsets.

Every function returns a new GeoDataFrame; inputs are never mutated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

import geopandas as gpd
import numpy as np
import shapely
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from shared.python.exceptions import ColumnNotFoundError, InputValidationError
from shared.python.validators import Validators

logger = logging.getLogger("s1_parcel_composites.parcels")

WGS84 = "EPSG:4326"

#: Canonical attribute → source column.
DEFAULT_FIELD_MAP: dict[str, str] = {
    "POINT_ID": "point_id",
    "LC1": "lc1",
    "LU1": "lu1",
}

STRATUM_COLUMN = "stratum"

VECTOR_EXTENSIONS = (".gpkg", ".geojson", ".json", ".shp", ".fgb")

# Vertex spacing of the reference before it is reprojected for distances.
_DENSIFY_DEG = 0.001
_NEAR_FACTOR = 4.0
METRES_PER_DEGREE = 111_320.0


@dataclass(frozen=True)
class Rectangle:
    """A labelled lon/lat rectangle.

    Attributes:
        label: Subset label, e.g. ``"EU_NW1"``.
        west, south, east, north: Bounds in degrees.
    """

    label: str
    west: float
    south: float
    east: float
    north: float

    def __post_init__(self) -> None:
        Validators.assert_bbox_valid(self.bounds, f"rectangle '{self.label}'")

    @classmethod
    def from_sequence(cls, label: str, coords: Sequence[float]) -> "Rectangle":
        """``Rectangle.from_sequence("NW1", [-13.69, 48, 0, 70.1])``."""
        Validators.assert_bbox_valid(coords, f"rectangle '{label}'")
        west, south, east, north = (float(v) for v in coords)
        return cls(label, west, south, east, north)

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return (self.west, self.south, self.east, self.north)

    @property
    def geometry(self) -> BaseGeometry:
        return box(*self.bounds)


def rectangles_union(rectangles: Iterable[Rectangle]) -> BaseGeometry:
    """Union of rectangle geometries (the stratification reference)."""
    return unary_union([r.geometry for r in rectangles])


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def normalise_attributes(
    frame: gpd.GeoDataFrame,
    field_map: Mapping[str, str] = DEFAULT_FIELD_MAP,
) -> gpd.GeoDataFrame:
    """Rename source columns to canonical names and drop everything else.

    Args:
        frame: Raw parcel frame.
        field_map: Canonical name → source column name.

    Raises:
        ColumnNotFoundError: If a mapped source column is missing.
    """
    available = list(frame.columns)
    for source in field_map.values():
        if source not in available:
            raise ColumnNotFoundError(source, available)

    geom_col = frame.geometry.name
    renamed = frame[list(field_map.values()) + [geom_col]].rename(
        columns={src: dst for dst, src in field_map.items()}
    )
    return gpd.GeoDataFrame(renamed, geometry=geom_col, crs=frame.crs)


class VectorFileParcelSource:
    """Read parcels from any vector file geopandas can open.

    Args:
        path: GeoPackage, GeoJSON, Shapefile, ...
        layer: Layer name for multi-layer containers.
        field_map: Canonical name → source column name.
    """

    def __init__(
        self,
        path: Path,
        layer: Optional[str] = None,
        field_map: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.path = Path(path)
        self.layer = layer
        self.field_map = dict(field_map or DEFAULT_FIELD_MAP)

    def __repr__(self) -> str:
        return f"VectorFileParcelSource(path={str(self.path)!r}, layer={self.layer!r})"

    def load(self, bbox: Optional[Sequence[float]] = None) -> gpd.GeoDataFrame:
        """Read parcels intersecting *bbox* (lon/lat) and normalise attributes.

        Raises:
            InputValidationError: If the file is missing, has an unsupported
                extension, or has no CRS.
            ColumnNotFoundError: If a mapped attribute column is missing.
        """
        Validators.assert_file_exists(self.path)
        Validators.assert_supported_extension(self.path, VECTOR_EXTENSIONS)
        kwargs: dict = {}
        if self.layer is not None:
            kwargs["layer"] = self.layer
        if bbox is not None:
            Validators.assert_bbox_valid(bbox)
            kwargs["bbox"] = gpd.GeoSeries([box(*bbox)], crs=WGS84)

        frame = gpd.read_file(self.path, **kwargs)
        if frame.crs is None:
            raise InputValidationError(f"Parcel file '{self.path}' has no CRS.")

        logger.info("Loaded %d parcel(s) from '%s'.", len(frame), self.path.name)
        return normalise_attributes(frame, self.field_map)


# ---------------------------------------------------------------------------
# Stratification
# ---------------------------------------------------------------------------


def assign_strata(
    parcels: gpd.GeoDataFrame,
    reference: BaseGeometry,
    *,
    tolerance_m: float = 1.0,
    metric_crs: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """Return a copy of *parcels* with a ``stratum`` column.

    ``stratum`` is 2 where the parcel intersects *reference* (a lon/lat
    geometry, tested in lon/lat) or lies within *tolerance_m* metres of
    it, else 1.  Distances are measured in *metric_crs*, or in the UTM
    zone estimated from the parcels, against a densified copy of the
    reference so that reprojected edges do not bow away from their
    parallels.

    Raises:
        InputValidationError: If *parcels* has no CRS or tolerance < 0.
        CRSError: If *metric_crs* is not recognised.
    """
    if tolerance_m < 0:
        raise InputValidationError(f"tolerance_m must be >= 0, got {tolerance_m}.")
    if parcels.crs is None:
        raise InputValidationError("Parcels have no CRS; cannot assign strata.")

    out = parcels.copy()
    if out.empty:
        out[STRATUM_COLUMN] = np.array([], dtype="int64")
        return out

    if metric_crs is None:
        crs = out.estimate_utm_crs()
    else:
        Validators.assert_crs_valid(metric_crs)
        crs = metric_crs

    lonlat = out.geometry.to_crs(WGS84)
    in_reference = np.array(lonlat.intersects(reference), dtype=bool)
    if tolerance_m > 0:
        # degree-space bound valid up to ~75° latitude
        bound = _NEAR_FACTOR * tolerance_m / METRES_PER_DEGREE
        near = ~in_reference & (shapely.distance(lonlat.to_numpy(), reference) <= bound)
        if near.any():
            # densify first so reprojected edges follow the parallels
            dense = shapely.segmentize(reference, _DENSIFY_DEG)
            ref = gpd.GeoSeries([dense], crs=WGS84).to_crs(crs).iloc[0]
            distance = out.geometry[near].to_crs(crs).distance(ref)
            in_reference[near] = distance.le(tolerance_m).to_numpy()
    out[STRATUM_COLUMN] = np.where(in_reference, 2, 1).astype("int64")

    counts = out[STRATUM_COLUMN].value_counts().to_dict()
    logger.info("Strata: %d in stratum 1, %d in stratum 2.", counts.get(1, 0), counts.get(2, 0))
    return out


def filter_stratum(parcels: gpd.GeoDataFrame, stratum: int) -> gpd.GeoDataFrame:
    """Parcels tagged with *stratum*.

    Raises:
        ColumnNotFoundError: If :func:`assign_strata` has not run.
    """
    Validators.assert_columns_exist(parcels, [STRATUM_COLUMN])
    kept = parcels[parcels[STRATUM_COLUMN] == stratum].copy()
    logger.debug("Stratum %d: kept %d of %d parcel(s).", stratum, len(kept), len(parcels))
    return kept


def partition_by_bounds(
    parcels: gpd.GeoDataFrame,
    rectangles: Sequence[Rectangle],
) -> dict[str, gpd.GeoDataFrame]:
    """Map each rectangle label to the parcels intersecting it.

    A parcel intersecting several rectangles appears in each of their
    subsets; a parcel intersecting none appears in no subset.  Subsets keep
    the input CRS and row order.

    Raises:
        InputValidationError: If rectangle labels are not unique.
    """
    labels = [r.label for r in rectangles]
    if len(set(labels)) != len(labels):
        raise InputValidationError(f"Rectangle labels must be unique, got {labels}.")

    lonlat = parcels
    if parcels.crs is not None and not parcels.crs.equals(WGS84):
        lonlat = parcels.to_crs(WGS84)
    index = lonlat.sindex

    subsets: dict[str, gpd.GeoDataFrame] = {}
    for rect in rectangles:
        hits = np.sort(index.query(rect.geometry, predicate="intersects"))
        subsets[rect.label] = parcels.iloc[hits].copy()
        logger.debug("Rectangle %s: %d parcel(s).", rect.label, len(hits))
    return subsets
