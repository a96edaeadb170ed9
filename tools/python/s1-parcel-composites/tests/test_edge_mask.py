"""
Tests — Edge mask
=================
Synthetic images: a uniform interior with isolated outliers, NaN holes,
and multi-channel / time-series inputs.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from s1_parcel_composites.edge_mask import (
    EdgeMaskParams,
    component_sizes,
    edge_validity_mask,
    mask_edges,
    quantise,
)
from shared.python.exceptions import InputValidationError


def _uniform_with_outlier(size: int = 10, value: float = -10.0, outlier: float = 3.0) -> np.ndarray:
    band = np.full((size, size), value)
    band[5, 5] = outlier
    return band


class TestQuantise:
    def test_clamp_and_scale(self) -> None:
        levels = quantise(np.array([[-40.0, -25.0, -10.0, 5.0, 20.0]]), -25.0, 5.0)
        assert levels.tolist() == [[0, 0, 127, 255, 255]]

    def test_nan_is_background(self) -> None:
        assert quantise(np.array([[np.nan]]), -25.0, 5.0)[0, 0] == -1


class TestComponentSizes:
    def test_sizes_capped(self) -> None:
        levels = np.zeros((20, 20), dtype=np.int16)
        assert component_sizes(levels, max_size=100).max() == 100

    def test_four_connectivity_splits_diagonals(self) -> None:
        levels = np.array([[1, 0], [0, 1]], dtype=np.int16)
        assert component_sizes(levels, connectivity=1).tolist() == [[1, 1], [1, 1]]
        assert component_sizes(levels, connectivity=2).tolist() == [[2, 2], [2, 2]]


class TestEdgeValidityMask:
    def test_single_pixel_outlier_masked_uniform_region_kept(self) -> None:
        valid = edge_validity_mask(_uniform_with_outlier())
        assert not valid[5, 5]
        assert valid.sum() == 99

    def test_nan_never_valid(self) -> None:
        band = np.full((5, 5), -12.0)
        band[0, :] = np.nan
        valid = edge_validity_mask(band)
        assert not valid[0].any()
        assert valid[1:].all()

    def test_min_component_size_is_tunable(self) -> None:
        band = np.full((6, 6), -12.0)
        band[0:2, 0:2] = 4.0  # 4-pixel blob
        assert edge_validity_mask(band, EdgeMaskParams(min_component_size=4))[0, 0]
        assert not edge_validity_mask(band, EdgeMaskParams(min_component_size=5))[0, 0]

    def test_rejects_non_2d(self) -> None:
        with pytest.raises(ValueError):
            edge_validity_mask(np.zeros((2, 3, 3)))


class TestEdgeMaskParams:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"clamp_min": 5.0, "clamp_max": -25.0},
            {"max_component_size": 0},
            {"min_component_size": 0},
            {"connectivity": 3},
        ],
    )
    def test_invalid_values_raise(self, kwargs: dict) -> None:
        with pytest.raises(InputValidationError):
            EdgeMaskParams(**kwargs)


class TestMaskEdges:
    def test_mask_broadcast_to_every_channel(self, make_image) -> None:
        image = make_image(_uniform_with_outlier(), -16.0)
        masked = mask_edges(image)

        assert np.isnan(masked.sel(band="VV").values[5, 5])
        assert np.isnan(masked.sel(band="VH").values[5, 5])
        assert int(masked.notnull().sum()) == 2 * 99
        assert list(masked["band"].values) == ["VV", "VH"]

    def test_designated_channel(self, make_image) -> None:
        image = make_image(-10.0, _uniform_with_outlier(value=-16.0))
        masked = mask_edges(image, EdgeMaskParams(channel="VH"))
        assert np.isnan(masked.sel(band="VV").values[5, 5])

    def test_missing_channel_raises(self, make_image) -> None:
        with pytest.raises(InputValidationError, match="HH"):
            mask_edges(make_image(-10.0, -16.0), EdgeMaskParams(channel="HH"))

    def test_time_series_masked_per_acquisition(self, make_image) -> None:
        first = make_image(_uniform_with_outlier(), -16.0)
        second = make_image(-10.0, -16.0)
        series = xr.concat([first, second], dim="time").assign_coords(
            time=pd.date_range("2018-01-01", periods=2, freq="6D")
        )
        masked = mask_edges(series)

        assert np.isnan(masked.isel(time=0).sel(band="VV").values[5, 5])
        assert not np.isnan(masked.isel(time=1).sel(band="VV").values[5, 5])
        assert masked.dims == series.dims
