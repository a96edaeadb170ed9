"""
Shared fixtures: synthetic Sentinel-1 acquisitions on a small UTM grid.

The grid is 10 x 10 pixels of 10 m in EPSG:32631 with its upper-left
corner at (500000, 5600100), i.e. around 3°E 50.5°N.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import numpy as np
import pytest
import rioxarray  # noqa: F401
import xarray as xr
from shapely.geometry import Polygon, box

from s1_parcel_composites.sources import ImageRecord

UTM31N = "EPSG:32631"
X0, Y0 = 500_000.0, 5_600_100.0
RES = 10.0
SIZE = 10


def _image(vv, vh=None, channels=("VV", "VH")) -> xr.DataArray:
    """``(band, y, x)`` dB image; scalars fill the whole grid."""
    layers = []
    for value in (vv, vh)[: len(channels)]:
        layers.append(np.broadcast_to(np.asarray(value, dtype="float32"), (SIZE, SIZE)))
    data = xr.DataArray(
        np.stack(layers),
        dims=("band", "y", "x"),
        coords={
            "band": list(channels),
            "y": Y0 - RES / 2 - RES * np.arange(SIZE),
            "x": X0 + RES / 2 + RES * np.arange(SIZE),
        },
    )
    return data.rio.write_crs(UTM31N)


@pytest.fixture()
def make_image() -> Callable[..., xr.DataArray]:
    return _image


@pytest.fixture()
def make_record() -> Callable[..., ImageRecord]:
    def _record(day: str, vv=-10.0, vh=-16.0, mode: str = "IW") -> ImageRecord:
        return ImageRecord(acquired=datetime.fromisoformat(day), data=_image(vv, vh), instrument_mode=mode)

    return _record


@pytest.fixture()
def pixel_parcel() -> Callable[[int, int], Polygon]:
    """Small square parcel centred on pixel (*row*, *col*) of the grid."""

    def _parcel(row: int, col: int, half: float = 3.0) -> Polygon:
        cx = X0 + RES / 2 + RES * col
        cy = Y0 - RES / 2 - RES * row
        return box(cx - half, cy - half, cx + half, cy + half)

    return _parcel
