"""
sampling.py
===========
Zonal sampling results and their export.

Design:
    * :func:`resolve_sampling_points` — one representative point per parcel;
      parcels without usable geometry become :class:`ContentError` records.
    * :class:`SampleResult` — the sampled table of one parcel subset.
    * :class:`ExportSink` (ABC) — writes a :class:`SampleResult` somewhere.
      Concrete implementation here: :class:`LocalTableSink` (CSV on disk).
      The Earth Engine Drive sink lives in :mod:`.earthengine`.
    * :func:`export_prefix` — stable, descriptive export names.

Each subset export is independent: one failing sink call does not touch
files written for other subsets.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple

import geopandas as gpd

from shared.python.exceptions import ContentError, InputValidationError, OutputWriteError
from shared.python.validators import Validators

logger = logging.getLogger("s1_parcel_composites.sampling")

DEFAULT_PREFIX_TEMPLATE = "S1_point_all_{step}d_{scale}m_{start}-{end}_{label}"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class SampleResult:
    """Sampled values for one parcel subset.

    Attributes:
        label: Subset label, e.g. ``"EU_NW1"``.
        table: Engine-specific table: a ``pandas.DataFrame`` locally, an
               ``ee.FeatureCollection`` on Earth Engine.
        columns: Output columns in order: band names, then attributes.
        row_count: Number of rows, or ``None`` when the engine is lazy.
        errors: Per-parcel :class:`ContentError` records (parcels skipped).
    """

    label: str
    table: Any
    columns: Tuple[str, ...]
    row_count: Optional[int] = None
    errors: list[ContentError] = field(default_factory=list)


@dataclass(frozen=True)
class ExportReceipt:
    """Confirmation returned by :meth:`ExportSink.export`.

    Attributes:
        label: Subset label.
        prefix: File-name prefix used.
        destination: Written path, or ``folder/prefix`` for remote sinks.
        rows: Rows written, or ``None`` when completion is not observed.
        task_id: Remote task identifier, if any.
    """

    label: str
    prefix: str
    destination: str
    rows: Optional[int] = None
    task_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def resolve_sampling_points(
    parcels: gpd.GeoDataFrame,
    id_field: str = "POINT_ID",
) -> tuple[gpd.GeoSeries, list[ContentError]]:
    """Return a representative point per parcel plus per-parcel errors.

    The representative point is guaranteed to lie inside its polygon.
    Parcels with a missing or empty geometry are left out of the points
    and reported as :class:`ContentError`.
    """
    geoms = parcels.geometry
    missing = geoms.isna()
    empty = ~missing & geoms.is_empty

    errors: list[ContentError] = []
    for idx in parcels.index[missing | empty]:
        parcel_id = parcels.at[idx, id_field] if id_field in parcels.columns else idx
        reason = "missing geometry" if missing.loc[idx] else "empty geometry"
        err = ContentError(parcel_id, reason)
        logger.warning(err.message)
        errors.append(err)

    points = geoms[~(missing | empty)].representative_point()
    return points, errors


def export_prefix(
    template: str,
    *,
    step_days: int,
    scale: float,
    start: datetime,
    end: datetime,
    label: str,
    channels: Sequence[str] = (),
) -> str:
    """Format an export file-name prefix.

    Available placeholders: ``{step}``, ``{scale}``, ``{start}``, ``{end}``
    (both ``YYYYMMDD``), ``{label}``, and ``{channels}`` (``VV-VH``).

    Example::

        >>> export_prefix(DEFAULT_PREFIX_TEMPLATE, step_days=10, scale=10,
        ...               start=datetime(2018, 1, 1), end=datetime(2018, 7, 31),
        ...               label="EU_NW1")
        'S1_point_all_10d_10m_20180101-20180731_EU_NW1'

    Raises:
        InputValidationError: If the template uses an unknown placeholder.
    """
    try:
        return template.format(
            step=step_days,
            scale=f"{scale:g}",
            start=f"{start:%Y%m%d}",
            end=f"{end:%Y%m%d}",
            label=label,
            channels="-".join(channels),
        )
    except (KeyError, IndexError, ValueError) as exc:
        raise InputValidationError(
            f"Invalid export prefix template {template!r}: {exc}"
        ) from exc


# ---------------------------------------------------------------------------
# Sink ABC + local backend
# ---------------------------------------------------------------------------


class ExportSink(ABC):
    """Abstract base for tabular export destinations."""

    @abstractmethod
    def export(
        self,
        result: SampleResult,
        *,
        folder: str,
        prefix: str,
        file_format: str = "CSV",
    ) -> ExportReceipt:
        """Write *result* and return a receipt.

        Raises:
            OutputWriteError: If the destination rejects the write.
        """


class LocalTableSink(ExportSink):
    """Write each subset as ``<root>/<folder>/<prefix>.csv``.

    The CSV header row makes every file self-describing: band columns
    ``{POL}_{YYYYMMDD}`` followed by the kept parcel attributes.

    Args:
        root: Base directory for all exports.
    """

    SUPPORTED_FORMATS = ("CSV",)

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def export(
        self,
        result: SampleResult,
        *,
        folder: str,
        prefix: str,
        file_format: str = "CSV",
    ) -> ExportReceipt:
        if file_format.upper() not in self.SUPPORTED_FORMATS:
            raise InputValidationError(
                f"LocalTableSink supports {self.SUPPORTED_FORMATS}, got {file_format!r}."
            )

        out_dir = self.root / folder
        Validators.assert_directory_writable(out_dir)
        path = out_dir / f"{prefix}.csv"
        try:
            result.table.to_csv(path, index=False, columns=list(result.columns))
        except OSError as exc:
            raise OutputWriteError(str(path), str(exc)) from exc

        rows = len(result.table)
        logger.info("LocalTableSink: wrote %d row(s) → %s", rows, path)
        return ExportReceipt(label=result.label, prefix=prefix, destination=str(path), rows=rows)
