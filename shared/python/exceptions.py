"""
S1 Parcel Composites — Custom Exception Hierarchy
==================================================
Every module raises exceptions from this file so callers can catch them
at the right level of granularity.

Hierarchy::

    ParcelCompositesError                ← catch-all base
    ├── InputValidationError             ← bad config, files, dates, columns
    │   └── ColumnNotFoundError          ← parcel attribute column missing
    ├── CRSError                         ← invalid / unknown CRS string
    ├── QueryError                       ← malformed imagery/polygon query
    ├── ContentError                     ← one parcel cannot be sampled
    ├── ComputeError                     ← execution engine failed for a subset
    └── OutputWriteError                 ← cannot write an export

Usage::

    from shared.python.exceptions import ComputeError

    raise ComputeError("EU_NW1", band_count=42, parcel_count=10_000,
                       reason="out of memory")
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class ParcelCompositesError(Exception):
    """Base exception for the parcel composite pipeline.

    Catch this to handle any pipeline error without caring about the
    exact subtype.

    Args:
        message: Human-readable description of the error.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InputValidationError(ParcelCompositesError):
    """Raised when configuration or inputs fail pre-processing validation."""


class ColumnNotFoundError(InputValidationError):
    """Raised when an expected column is absent from a parcel table.

    Args:
        column: The name of the missing column.
        available: Column names that ARE present, used to build a helpful
                   error message.

    Example::

        raise ColumnNotFoundError("point_id", frame.columns.tolist())
    """

    def __init__(self, column: str, available: list[str]) -> None:
        available_str = ", ".join(f"'{c}'" for c in available)
        super().__init__(
            f"Column '{column}' not found. Available columns: {available_str}"
        )
        self.column: str = column
        self.available: list[str] = available


# ---------------------------------------------------------------------------
# CRS
# ---------------------------------------------------------------------------


class CRSError(ParcelCompositesError):
    """Raised when a coordinate reference system string cannot be parsed.

    Args:
        crs_string: The raw CRS string that caused the error.
    """

    def __init__(self, crs_string: str) -> None:
        super().__init__(
            f"Invalid or unrecognised CRS: '{crs_string}'. "
            "Use an EPSG code (e.g. 'EPSG:3035') or a valid WKT/PROJ string."
        )
        self.crs_string: str = crs_string


# ---------------------------------------------------------------------------
# External sources
# ---------------------------------------------------------------------------


class QueryError(ParcelCompositesError):
    """Raised when a filter, date range, or bounds passed to an external
    source is malformed, or the source rejects the query.

    Query errors are fatal: nothing downstream can run without the series.

    Args:
        source: Name of the source that rejected the query
                (e.g. ``"PlanetaryComputerSource"``).
        reason: Short explanation.
    """

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source} query rejected: {reason}")
        self.source: str = source
        self.reason: str = reason


class ContentError(ParcelCompositesError):
    """Raised for a single parcel whose geometry cannot be resolved.

    Content errors are collected per record; sampling continues for the
    remaining parcels.

    Args:
        parcel_id: Identifier of the offending parcel (``POINT_ID``).
        reason: Short explanation, e.g. ``"empty geometry"``.
    """

    def __init__(self, parcel_id: object, reason: str) -> None:
        super().__init__(f"Parcel {parcel_id!r} cannot be sampled: {reason}")
        self.parcel_id: object = parcel_id
        self.reason: str = reason


class ComputeError(ParcelCompositesError):
    """Raised when the execution engine fails while sampling a subset.

    Carries enough context for the caller to retry with a higher
    ``tile_scale``, smaller regions, or a shorter date range.

    Args:
        label: Subset label (e.g. ``"EU_NW1"``).
        band_count: Number of bands in the composite stack.
        parcel_count: Number of parcels in the subset.
        reason: Underlying engine error message.

    Example::

        raise ComputeError("EU_NE2", band_count=42, parcel_count=81_000,
                           reason="User memory limit exceeded.")
    """

    def __init__(
        self,
        label: str,
        *,
        band_count: int,
        parcel_count: int,
        reason: str,
    ) -> None:
        super().__init__(
            f"Sampling failed for subset '{label}' "
            f"({band_count} band(s), {parcel_count} parcel(s)): {reason}. "
            "Increase tile_scale or reduce the region/date range and re-run."
        )
        self.label: str = label
        self.band_count: int = band_count
        self.parcel_count: int = parcel_count
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class OutputWriteError(ParcelCompositesError):
    """Raised when an export cannot be written.

    Args:
        output_path: String representation of the destination that failed.
        reason: Underlying OS or library error message.
    """

    def __init__(self, output_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to write output to '{output_path}': {reason}"
        )
        self.output_path: str = output_path
        self.reason: str = reason
