"""
S1 Parcel Composites — Shared Base Tool
========================================
Abstract base class for the runnable pipelines in this repository.

Design Pattern:
    Template Method — the public ``run()`` method fixes the order
    validate → process → report, and subclasses fill in
    ``validate_inputs`` and ``process``.

Usage::

    from shared.python.base_tool import GeoTool

    class MyPipeline(GeoTool):
        def validate_inputs(self) -> None:
            ...
        def process(self) -> None:
            ...
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path

# ---------------------------------------------------------------------------
# Package root logger: modules log to children of it via
#   logging.getLogger("s1_parcel_composites.<module>").
# ---------------------------------------------------------------------------
logger = logging.getLogger("s1_parcel_composites")


class GeoTool(ABC):
    """Abstract base class for runnable geospatial pipelines.

    Attributes:
        input_path: Path to the primary input (config file, vector file...).
        output_path: Path where output is written (file or directory).
        verbose: When ``True`` the package logger emits DEBUG messages.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        *,
        verbose: bool = False,
    ) -> None:
        self.input_path: Path = Path(input_path)
        self.output_path: Path = Path(output_path)
        self.verbose: bool = verbose

        self._configure_logging()

    # ------------------------------------------------------------------
    # Abstract interface: subclasses MUST implement these
    # ------------------------------------------------------------------

    @abstractmethod
    def validate_inputs(self) -> None:
        """Validate all inputs before processing begins.

        Raises:
            InputValidationError: If a precondition is not satisfied.
        """

    @abstractmethod
    def process(self) -> None:
        """Execute the core processing logic.

        Called by :meth:`run` after :meth:`validate_inputs` succeeded.
        Exceptions propagate up through :meth:`run`.
        """

    # ------------------------------------------------------------------
    # Template method: the public API callers use
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Run :meth:`validate_inputs`, then :meth:`process`, then report.

        Raises:
            Any exception raised by ``validate_inputs`` or ``process``
            propagates unchanged.
        """
        logger.info("Starting %s", self.__class__.__name__)
        start = time.perf_counter()

        self.validate_inputs()
        self.process()

        elapsed = time.perf_counter() - start
        self._report_success(elapsed)

    # ------------------------------------------------------------------
    # Protected helpers: subclasses may override if needed
    # ------------------------------------------------------------------

    def _report_success(self, elapsed: float) -> None:
        """Log the elapsed time, output location and :meth:`_summary`."""
        summary = self._summary()
        logger.info(
            "%s completed in %.2fs → %s%s",
            self.__class__.__name__,
            elapsed,
            self.output_path,
            f" ({summary})" if summary else "",
        )

    def _summary(self) -> str:
        """One-line run summary appended to the completion message."""
        return ""

    def _configure_logging(self) -> None:
        """Attach a console handler to the package logger once.

        Uses DEBUG level when ``self.verbose`` is ``True``, otherwise INFO.
        """
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                fmt="[%(asctime)s] %(levelname)-8s %(name)s — %(message)s",
                datefmt="%H:%M:%S",
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    # ------------------------------------------------------------------
    # Dunder helpers
    # ------------------------------------------------------------------

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"input_path={self.input_path!r}, "
            f"output_path={self.output_path!r})"
        )
