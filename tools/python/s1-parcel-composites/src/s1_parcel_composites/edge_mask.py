"""
edge_mask.py
============
Mask sensor edge artifacts with a connected-component heuristic.

Steps for one acquisition:

  1. Clamp the designated channel to ``[clamp_min, clamp_max]`` dB and
     rescale to ``[0, 1]``.
  2. Quantise to 8 bits (``* 255``, truncated to ``uint8``).
  3. Label 4-connected components of equal quantised value.
  4. Give every pixel the size of its component, capped at
     ``max_component_size``.
  5. Keep pixels whose capped size is at least ``min_component_size``;
     single-pixel components are degenerate and are masked.

The resulting spatial mask is applied to every channel of the image.
This is a heuristic filter: some valid pixels are dropped and some
artifacts survive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import xarray as xr
from skimage.measure import label

from shared.python.exceptions import InputValidationError

logger = logging.getLogger("s1_parcel_composites.edge_mask")

_BACKGROUND = -1


@dataclass(frozen=True)
class EdgeMaskParams:
    """Tunables for :func:`edge_validity_mask`.

    Attributes:
        channel: Band used to compute the mask.  ``None`` = first band.
        clamp_min: Lower clamp in dB before rescaling.
        clamp_max: Upper clamp in dB before rescaling.
        max_component_size: Cap on the per-pixel component size.
        min_component_size: Smallest component size that counts as valid.
        connectivity: 1 = 4-connected, 2 = 8-connected.
    """

    channel: Optional[str] = None
    clamp_min: float = -25.0
    clamp_max: float = 5.0
    max_component_size: int = 100
    min_component_size: int = 2
    connectivity: int = 1

    def __post_init__(self) -> None:
        if self.clamp_max <= self.clamp_min:
            raise InputValidationError(
                f"clamp_max ({self.clamp_max}) must exceed clamp_min ({self.clamp_min})."
            )
        if self.max_component_size < 1:
            raise InputValidationError(
                f"max_component_size must be >= 1, got {self.max_component_size}."
            )
        if self.min_component_size < 1:
            raise InputValidationError(
                f"min_component_size must be >= 1, got {self.min_component_size}."
            )
        if self.connectivity not in (1, 2):
            raise InputValidationError(
                f"connectivity must be 1 (4-connected) or 2 (8-connected), got {self.connectivity}."
            )


def quantise(band: np.ndarray, clamp_min: float, clamp_max: float) -> np.ndarray:
    """Return the 8-bit quantisation of *band* as ``int16``.

    Non-finite pixels become ``-1`` so they never join a component.
    """
    band = np.asarray(band, dtype="float64")
    finite = np.isfinite(band)
    scaled = (np.clip(np.where(finite, band, clamp_min), clamp_min, clamp_max) - clamp_min) / (
        clamp_max - clamp_min
    )
    levels = (scaled * 255.0).astype(np.uint8).astype(np.int16)
    return np.where(finite, levels, _BACKGROUND)


def component_sizes(
    levels: np.ndarray,
    *,
    connectivity: int = 1,
    max_size: int = 100,
) -> np.ndarray:
    """Size of each pixel's equal-value component, capped at *max_size*.

    Background pixels (``-1``) get size 0.
    """
    labels = label(levels, background=_BACKGROUND, connectivity=connectivity)
    counts = np.bincount(labels.ravel())
    counts[0] = 0
    return np.minimum(counts[labels], max_size)


def edge_validity_mask(band: np.ndarray, params: EdgeMaskParams = EdgeMaskParams()) -> np.ndarray:
    """Boolean validity mask for one 2-D band in dB.

    Args:
        band: 2-D array of backscatter values in dB (NaN = no data).
        params: Mask tunables.

    Returns:
        ``True`` where the pixel is kept.
    """
    band = np.asarray(band, dtype="float64")
    if band.ndim != 2:
        raise ValueError(f"edge_validity_mask expects a 2-D band, got shape {band.shape}.")
    levels = quantise(band, params.clamp_min, params.clamp_max)
    sizes = component_sizes(
        levels,
        connectivity=params.connectivity,
        max_size=params.max_component_size,
    )
    return np.isfinite(band) & (sizes >= params.min_component_size)


def mask_edges(image: xr.DataArray, params: EdgeMaskParams = EdgeMaskParams()) -> xr.DataArray:
    """Set edge-artifact pixels of *image* to NaN in every channel.

    Args:
        image: ``(band, y, x)`` acquisition or ``(time, band, y, x)`` series.
        params: Mask tunables.  The mask is computed from ``params.channel``
                (or the first band) and broadcast across all bands.

    Raises:
        InputValidationError: If the designated channel is not present.
    """
    bands = [str(b) for b in image["band"].values]
    channel = params.channel or bands[0]
    if channel not in bands:
        raise InputValidationError(
            f"Edge-mask channel '{channel}' not in image bands {bands}."
        )

    designated = image.sel(band=channel).drop_vars("band")
    valid = xr.apply_ufunc(
        edge_validity_mask,
        designated,
        kwargs={"params": params},
        input_core_dims=[["y", "x"]],
        output_core_dims=[["y", "x"]],
        vectorize=True,
        dask="parallelized",
        output_dtypes=[bool],
        dask_gufunc_kwargs={"allow_rechunk": True},
    )
    logger.debug("Edge mask computed from '%s' for %s.", channel, dict(image.sizes))
    return image.where(valid)
