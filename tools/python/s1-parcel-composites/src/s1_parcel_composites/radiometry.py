"""
radiometry.py
=============
Stateless conversions between logarithmic (dB) and linear power units.

Sentinel-1 GRD backscatter is distributed in dB, but backscatter only adds
up physically in linear power.  Temporal means are therefore computed on
``to_linear`` values and converted back with ``to_db`` afterwards.

Both functions accept Python scalars, numpy arrays, and xarray objects.
For xarray inputs, attributes and coordinates (including the ``time``
coordinate) pass through unchanged.
"""

from __future__ import annotations

from typing import TypeVar

import numpy as np
import xarray as xr

T = TypeVar("T", float, np.ndarray, xr.DataArray)


def to_linear(values: T) -> T:
    """Convert dB to linear power: ``10 ** (x / 10)``."""
    with xr.set_options(keep_attrs=True):
        return np.power(10.0, np.divide(values, 10.0))


def to_db(values: T) -> T:
    """Convert linear power to dB: ``10 * log10(x)``.

    Zero power maps to ``-inf``; NaN (no data) stays NaN.
    """
    with xr.set_options(keep_attrs=True), np.errstate(divide="ignore", invalid="ignore"):
        return 10.0 * np.log10(values)
