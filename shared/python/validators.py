"""
S1 Parcel Composites — Shared Input Validators
===============================================
Static precondition checks used by the pipeline, the sources, and the
stratifier before any processing begins.

All methods raise an appropriate exception from
:mod:`shared.python.exceptions` rather than returning booleans, which
keeps ``validate_inputs`` implementations short::

    class MyTool(GeoTool):
        def validate_inputs(self) -> None:
            Validators.assert_file_exists(self.input_path)
            Validators.assert_supported_extension(self.input_path, [".json"])
            Validators.assert_crs_valid(self.metric_crs)
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

# Lazy imports for heavy libraries so callers that do not use them avoid
# the import cost at startup.
#   pyproj → assert_crs_valid

from shared.python.exceptions import (
    ColumnNotFoundError,
    CRSError,
    InputValidationError,
    OutputWriteError,
)


class Validators:
    """Collection of static precondition checks.

    All methods are ``@staticmethod``; this class is never instantiated.
    """

    # ------------------------------------------------------------------
    # File-system checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_file_exists(path: Path) -> None:
        """Assert that *path* points to an existing regular file.

        Raises:
            InputValidationError: If *path* does not exist or is a
                directory rather than a file.
        """
        path = Path(path)
        if not path.exists():
            raise InputValidationError(
                f"Input file not found: '{path}'. "
                "Check that the path is correct and the file exists."
            )
        if path.is_dir():
            raise InputValidationError(
                f"Expected a file but got a directory: '{path}'."
            )

    @staticmethod
    def assert_directory_writable(path: Path) -> None:
        """Create *path* (and parents) if needed and check it is a directory.

        Raises:
            OutputWriteError: If the directory cannot be created or a
                file already occupies the path.
        """
        path = Path(path)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(str(path), str(exc)) from exc
        if not path.is_dir():
            raise OutputWriteError(str(path), "path exists and is not a directory")

    @staticmethod
    def assert_supported_extension(path: Path, extensions: Sequence[str]) -> None:
        """Assert that *path* has one of the allowed file extensions.

        Args:
            path: File path to check.
            extensions: Allowed extensions, each starting with a dot
                        (e.g. ``[".gpkg", ".geojson", ".shp"]``).

        Raises:
            InputValidationError: If the extension is not allowed.
        """
        path = Path(path)
        suffix = path.suffix.lower()
        allowed = [ext.lower() for ext in extensions]
        if suffix not in allowed:
            raise InputValidationError(
                f"Unsupported file extension '{suffix}' for '{path.name}'. "
                f"Accepted extensions: {', '.join(allowed)}"
            )

    # ------------------------------------------------------------------
    # CRS / geometry checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_crs_valid(crs_string: str) -> None:
        """Assert that *crs_string* can be parsed by :mod:`pyproj`.

        Raises:
            CRSError: If *crs_string* is not recognised.
        """
        try:
            from pyproj import CRS  # noqa: PLC0415

            CRS.from_user_input(crs_string)
        except Exception as exc:
            raise CRSError(crs_string) from exc

    @staticmethod
    def assert_bbox_valid(bbox: Sequence[float], label: str = "bbox") -> None:
        """Assert that *bbox* is ``[west, south, east, north]`` in degrees.

        Raises:
            InputValidationError: On wrong length, non-numeric values,
                inverted edges, or coordinates outside lon/lat range.
        """
        if len(bbox) != 4:
            raise InputValidationError(
                f"{label} must have 4 values [west, south, east, north], got {list(bbox)}."
            )
        try:
            west, south, east, north = (float(v) for v in bbox)
        except (TypeError, ValueError) as exc:
            raise InputValidationError(f"{label} has non-numeric values: {list(bbox)}") from exc
        if not (-180 <= west < east <= 180):
            raise InputValidationError(
                f"{label}: invalid longitude range west={west}, east={east}"
            )
        if not (-90 <= south < north <= 90):
            raise InputValidationError(
                f"{label}: invalid latitude range south={south}, north={north}"
            )

    # ------------------------------------------------------------------
    # Tabular data checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_columns_exist(
        df: object,  # pandas DataFrame, typed loosely to avoid hard dep
        required_columns: Sequence[str],
    ) -> None:
        """Assert that all *required_columns* are present in *df*.

        Raises:
            ColumnNotFoundError: On the first missing column found.
        """
        available = list(df.columns)  # type: ignore[union-attr]
        for col in required_columns:
            if col not in available:
                raise ColumnNotFoundError(col, available)

    # ------------------------------------------------------------------
    # Raster checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_raster_shapes_match(
        shape_a: tuple[int, int],
        shape_b: tuple[int, int],
        label_a: str = "Image A",
        label_b: str = "Image B",
    ) -> None:
        """Assert that two rasters have identical ``(rows, cols)`` shapes.

        Required before any per-pixel reduction across a time series.

        Raises:
            InputValidationError: If the shapes differ.
        """
        if tuple(shape_a) != tuple(shape_b):
            raise InputValidationError(
                f"Raster shape mismatch: {label_a} is {tuple(shape_a)} but "
                f"{label_b} is {tuple(shape_b)}. "
                "All acquisitions must share one pixel grid."
            )
