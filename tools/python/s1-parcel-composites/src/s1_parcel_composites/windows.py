"""
windows.py
==========
Partition a date range into contiguous, half-open compositing windows.

Boundaries are generated as ``start, start + step, start + 2*step, ...``
up to and including the first boundary that reaches ``end``; consecutive
boundaries are then paired.  When the range is not a whole number of
steps, the final boundary lands past ``end`` (by less than one step) so
that the whole range is covered::

    >>> [w.stamp for w in partition_windows("2018-01-01", "2018-01-21", 10)]
    ['20180101', '20180111']
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Union

from shared.python.exceptions import InputValidationError

logger = logging.getLogger("s1_parcel_composites.windows")

DateLike = Union[str, date, datetime]


@dataclass(frozen=True, order=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` of acquisition timestamps.

    Attributes:
        start: Inclusive lower bound (naive UTC).
        end: Exclusive upper bound (naive UTC).
    """

    start: datetime
    end: datetime

    def contains(self, timestamp: datetime) -> bool:
        """Return ``True`` when *timestamp* falls inside ``[start, end)``."""
        return self.start <= timestamp < self.end

    @property
    def stamp(self) -> str:
        """Window start formatted as ``YYYYMMDD`` (used in band names)."""
        return self.start.strftime("%Y%m%d")

    @property
    def days(self) -> float:
        """Window length in days."""
        return (self.end - self.start) / timedelta(days=1)

    def __str__(self) -> str:
        return f"[{self.start:%Y-%m-%d}, {self.end:%Y-%m-%d})"


def to_datetime(value: DateLike) -> datetime:
    """Coerce an ISO string, ``date`` or ``datetime`` to a naive datetime.

    Timezone-aware datetimes are converted to UTC and made naive so that
    every timestamp in the pipeline compares on the same basis.

    Raises:
        InputValidationError: If *value* is not a parseable date.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip())
        except ValueError as exc:
            raise InputValidationError(
                f"Cannot parse date {value!r}; expected ISO format 'YYYY-MM-DD'."
            ) from exc

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def partition_windows(
    start: DateLike,
    end: DateLike,
    step_days: int,
) -> list[TimeWindow]:
    """Split ``[start, end]`` into ordered ``step_days``-wide windows.

    Args:
        start: First day of the range.
        end: Last boundary of the range.
        step_days: Window width in days; must be positive.

    Returns:
        Contiguous, non-overlapping windows in chronological order.
        ``start == end`` yields an empty list.

    Raises:
        InputValidationError: If ``step_days <= 0`` or ``start > end``.
    """
    t0 = to_datetime(start)
    t1 = to_datetime(end)

    if step_days <= 0:
        raise InputValidationError(f"step_days must be > 0, got {step_days}.")
    if t0 > t1:
        raise InputValidationError(
            f"start ({t0:%Y-%m-%d}) must not be after end ({t1:%Y-%m-%d})."
        )

    step = timedelta(days=step_days)
    n_windows = math.ceil((t1 - t0) / step)
    boundaries = [t0 + i * step for i in range(n_windows + 1)]

    windows = [TimeWindow(a, b) for a, b in zip(boundaries[:-1], boundaries[1:])]
    logger.debug(
        "Partitioned %s..%s into %d window(s) of %s day(s).",
        t0.date(), t1.date(), len(windows), step_days,
    )
    return windows
