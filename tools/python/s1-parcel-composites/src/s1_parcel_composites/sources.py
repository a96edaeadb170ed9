"""
sources.py
==========
Imagery capability: query a catalog for Sentinel-1 acquisitions.

Design:
    * :class:`ImageQuery` — immutable filter (mode, channels, dates, bounds).
    * :class:`ImageRecord` — one acquisition as an ``(band, y, x)`` DataArray
      in dB, plus its catalog tags.
    * :class:`ImageSource` (ABC) — ``query(ImageQuery) -> list[ImageRecord]``.
      Concrete implementations: :class:`InMemoryImageSource` (preloaded
      rasters) and :class:`PlanetaryComputerSource` (STAC + stackstac).

Every source returns records in acquisition order, all on one pixel grid,
restricted to ``[start, end)``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import xarray as xr

from shared.python.exceptions import InputValidationError, QueryError
from shared.python.validators import Validators

from s1_parcel_composites.radiometry import to_db
from s1_parcel_composites.windows import DateLike, to_datetime

logger = logging.getLogger("s1_parcel_composites.sources")

PLANETARY_COMPUTER_URL = "https://planetarycomputer.microsoft.com/api/stac/v1"

Bounds = Tuple[float, float, float, float]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageQuery:
    """Filter passed to :meth:`ImageSource.query`.

    Attributes:
        channels: Polarisations every returned acquisition must carry.
        start: Inclusive start (naive UTC).
        end: Exclusive end (naive UTC).
        instrument_mode: Acquisition mode tag, e.g. ``"IW"``.
        collection: Catalog collection id; ``None`` lets the source pick.
        bounds: ``(west, south, east, north)`` in degrees, or ``None``.
    """

    channels: Tuple[str, ...]
    start: datetime
    end: datetime
    instrument_mode: str = "IW"
    collection: Optional[str] = None
    bounds: Optional[Bounds] = None

    @classmethod
    def create(
        cls,
        channels: Sequence[str],
        start: DateLike,
        end: DateLike,
        *,
        instrument_mode: str = "IW",
        collection: Optional[str] = None,
        bounds: Optional[Sequence[float]] = None,
    ) -> "ImageQuery":
        """Build and validate a query from loosely typed values.

        Raises:
            QueryError: On unparseable dates, ``start > end``, an empty
                channel list, or malformed bounds.
        """
        try:
            t0, t1 = to_datetime(start), to_datetime(end)
        except InputValidationError as exc:
            raise QueryError("ImageQuery", exc.message) from exc
        query = cls(
            channels=tuple(str(c).upper() for c in channels),
            start=t0,
            end=t1,
            instrument_mode=instrument_mode,
            collection=collection,
            bounds=tuple(float(v) for v in bounds) if bounds is not None else None,  # type: ignore[arg-type]
        )
        query.validate("ImageQuery")
        return query

    def validate(self, source: str) -> None:
        """Raise :class:`QueryError` (tagged with *source*) if malformed."""
        if not self.channels:
            raise QueryError(source, "at least one channel is required")
        if self.start > self.end:
            raise QueryError(
                source, f"start {self.start:%Y-%m-%d} is after end {self.end:%Y-%m-%d}"
            )
        if self.bounds is not None:
            try:
                Validators.assert_bbox_valid(self.bounds, "bounds")
            except InputValidationError as exc:
                raise QueryError(source, exc.message) from exc


@dataclass(frozen=True, eq=False)
class ImageRecord:
    """One sensor acquisition.

    Attributes:
        acquired: Acquisition timestamp (naive UTC).
        data: ``(band, y, x)`` backscatter in dB; the ``band`` coordinate
              holds channel names.
        instrument_mode: Mode tag, e.g. ``"IW"``.
        polarisations: Channel-set tag from the catalog, e.g. ``("VV", "VH")``.
                       Defaults to the bands present in *data*.
    """

    acquired: datetime
    data: xr.DataArray
    instrument_mode: str = "IW"
    polarisations: Tuple[str, ...] = ()

    @property
    def channels(self) -> Tuple[str, ...]:
        return tuple(str(b) for b in self.data["band"].values)

    @property
    def channel_set(self) -> Tuple[str, ...]:
        return self.polarisations or self.channels

    def matches(self, query: ImageQuery) -> bool:
        """``True`` if mode, channel set, and timestamp satisfy *query*."""
        return (
            self.instrument_mode == query.instrument_mode
            and set(query.channels) <= set(self.channel_set)
            and query.start <= self.acquired < query.end
        )


# ---------------------------------------------------------------------------
# Source ABC + concrete backends
# ---------------------------------------------------------------------------


class ImageSource(ABC):
    """Abstract base for imagery catalogs."""

    @abstractmethod
    def query(self, query: ImageQuery) -> list[ImageRecord]:
        """Return acquisitions matching *query*, ordered by time.

        Raises:
            QueryError: If the query is malformed or rejected.
        """


class InMemoryImageSource(ImageSource):
    """Serve preloaded acquisitions (local rasters, fixtures).

    Bounds in the query are ignored: the records are assumed to already
    cover the area of interest.

    Args:
        records: Acquisitions on one shared pixel grid.

    Raises:
        InputValidationError: If the records do not share a grid shape.
    """

    def __init__(self, records: Iterable[ImageRecord]) -> None:
        self.records: list[ImageRecord] = sorted(records, key=lambda r: r.acquired)
        if self.records:
            first = self.records[0]
            for rec in self.records[1:]:
                Validators.assert_raster_shapes_match(
                    (first.data.sizes["y"], first.data.sizes["x"]),
                    (rec.data.sizes["y"], rec.data.sizes["x"]),
                    f"acquisition {first.acquired:%Y-%m-%d}",
                    f"acquisition {rec.acquired:%Y-%m-%d}",
                )

    def query(self, query: ImageQuery) -> list[ImageRecord]:
        query.validate(type(self).__name__)
        hits = [r for r in self.records if r.matches(query)]
        logger.info(
            "InMemoryImageSource: %d of %d acquisition(s) match %s %s..%s.",
            len(hits), len(self.records), query.instrument_mode,
            f"{query.start:%Y-%m-%d}", f"{query.end:%Y-%m-%d}",
        )
        return hits


def utm_epsg_from_lonlat(lon: float, lat: float) -> int:
    """Return the EPSG code of the UTM zone that covers *lon*, *lat*."""
    zone = int((lon + 180) / 6) + 1
    base = 32600 if lat >= 0 else 32700
    return base + zone


class PlanetaryComputerSource(ImageSource):
    """Stream Sentinel-1 RTC acquisitions from Microsoft Planetary Computer.

    Items are searched through the STAC API and stacked lazily with
    stackstac on a common UTM grid; nothing is downloaded until an engine
    computes pixels.  RTC assets are linear gamma0, so they are converted
    to dB here to match the catalog units the rest of the pipeline expects.

    Args:
        stac_url: STAC API root.
        collection: Default collection id when the query has none.
        resolution: Output pixel size in metres.
        epsg: Output CRS; ``None`` picks the UTM zone of the bounds centre.
        chunk_size: Dask chunk size in pixels for x and y.
        catalog: Pre-opened ``pystac_client.Client`` (mainly for tests).
    """

    def __init__(
        self,
        stac_url: str = PLANETARY_COMPUTER_URL,
        collection: str = "sentinel-1-rtc",
        resolution: float = 10,
        epsg: Optional[int] = None,
        chunk_size: int = 1024,
        catalog: object = None,
    ) -> None:
        self.stac_url = stac_url
        self.collection = collection
        self.resolution = resolution
        self.epsg = epsg
        self.chunk_size = chunk_size

        if catalog is None:
            import planetary_computer  # noqa: PLC0415
            import pystac_client  # noqa: PLC0415

            # sign_inplace adds SAS tokens to asset hrefs
            catalog = pystac_client.Client.open(stac_url, modifier=planetary_computer.sign_inplace)
        self._catalog = catalog

    def query(self, query: ImageQuery) -> list[ImageRecord]:
        name = type(self).__name__
        query.validate(name)
        if query.bounds is None:
            raise QueryError(name, "bounds are required for a STAC search")

        items = self._search(query)
        logger.info("%s: found %d item(s) with %s.", name, len(items), "/".join(query.channels))
        if not items:
            return []

        import rioxarray  # noqa: F401, PLC0415 -- activates the .rio accessor
        import stackstac  # noqa: PLC0415

        west, south, east, north = query.bounds
        epsg = self.epsg or utm_epsg_from_lonlat((west + east) / 2, (south + north) / 2)
        stack = stackstac.stack(
            items,
            assets=[c.lower() for c in query.channels],
            bounds_latlon=query.bounds,
            epsg=epsg,
            resolution=self.resolution,
            dtype="float32",  # type: ignore[arg-type]
            fill_value=np.float32("nan"),  # type: ignore[arg-type]
            rescale=False,  # RTC assets are already linear power
            chunksize={"x": self.chunk_size, "y": self.chunk_size},  # type: ignore[arg-type]
        )
        stack = to_db(stack.assign_coords(band=list(query.channels)))
        stack = stack.rio.write_crs(f"EPSG:{epsg}")

        records = []
        for i, ts in enumerate(stack["time"].values):
            acquired = pd.Timestamp(ts).to_pydatetime()
            if not query.start <= acquired < query.end:
                continue
            records.append(
                ImageRecord(
                    acquired=acquired,
                    data=stack.isel(time=i, drop=True),
                    instrument_mode=query.instrument_mode,
                    polarisations=query.channels,
                )
            )
        return records

    def _search(self, query: ImageQuery) -> list:
        """Run the STAC search and keep items carrying every channel."""
        from pystac_client.exceptions import APIError  # noqa: PLC0415

        collection = query.collection or self.collection
        try:
            search = self._catalog.search(  # type: ignore[attr-defined]
                collections=[collection],
                bbox=list(query.bounds or ()),
                datetime=f"{query.start:%Y-%m-%dT%H:%M:%SZ}/{query.end:%Y-%m-%dT%H:%M:%SZ}",
                query={"sar:instrument_mode": {"eq": query.instrument_mode}},
            )
            items = list(search.items())
        except APIError as exc:
            raise QueryError(type(self).__name__, str(exc)) from exc

        wanted = set(query.channels)
        return [
            item for item in items
            if wanted <= {str(p).upper() for p in item.properties.get("sar:polarizations", [])}
        ]
