"""
S1 Parcel Composites — Shared Python Package
=============================================
Re-exports the shared base class, exception hierarchy, and validator
utilities so tool modules can import from a single location::

    from shared.python import GeoTool, Validators
    from shared.python.exceptions import ComputeError
"""

from shared.python.base_tool import GeoTool
from shared.python.exceptions import (
    ColumnNotFoundError,
    ComputeError,
    ContentError,
    CRSError,
    InputValidationError,
    OutputWriteError,
    ParcelCompositesError,
    QueryError,
)
from shared.python.validators import Validators

__all__ = [
    "GeoTool",
    "Validators",
    "ParcelCompositesError",
    "InputValidationError",
    "ColumnNotFoundError",
    "CRSError",
    "QueryError",
    "ContentError",
    "ComputeError",
    "OutputWriteError",
]
