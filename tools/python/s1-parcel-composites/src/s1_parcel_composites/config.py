"""
config.py
=========
JSON run configuration parsed into dataclasses.

Every key is optional; defaults reproduce the reference 2018 run
(Jan-Jul, 10-day VV/VH composites, 10 m sampling, stratum-1 EU
rectangles, exports to ``EU_reprod``).

Example ``run.json``::

    {
      "compositing": {"start_date": "2018-01-01", "end_date": "2018-07-31", "step_days": 10},
      "parcels": {"path": "lucas_polygons_2018.gpkg"},
      "sampling": {"scale": 10, "tile_scale": 16},
      "engine": {"backend": "local"}
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from shared.python.exceptions import InputValidationError

from s1_parcel_composites.edge_mask import EdgeMaskParams
from s1_parcel_composites.parcels import DEFAULT_FIELD_MAP, Rectangle
from s1_parcel_composites.sampling import DEFAULT_PREFIX_TEMPLATE
from s1_parcel_composites.sources import PLANETARY_COMPUTER_URL
from s1_parcel_composites.windows import to_datetime

logger = logging.getLogger("s1_parcel_composites.config")

#: Stratum-1 export rectangles ``label → [west, south, east, north]``.
DEFAULT_REGIONS: dict[str, list[float]] = {
    "EU_NW1": [-13.69, 48.00, 0.00, 70.1],
    "EU_NW2a": [0.00, 48.00, 13.00, 50.0],
    "EU_NW2b": [0.00, 50.00, 13.00, 70.1],
    "EU_NE1a": [13.00, 48.00, 23.50, 51.0],
    "EU_NE1b": [13.00, 51.00, 23.50, 56.0],
    "EU_NE1c": [13.00, 56.00, 23.50, 60.0],
    "EU_NE1d": [13.00, 60.00, 23.50, 70.1],
    "EU_NE2": [23.50, 48.00, 34.70, 70.1],
}

#: Mediterranean (stratum 2) reference rectangles.
DEFAULT_MEDITERRANEAN: dict[str, list[float]] = {
    "EU_SW1": [-13.69, 32.63, 0.00, 48.0],
    "EU_SW2": [0.00, 35.50, 13.00, 48.0],
    "EU_SE1": [13.00, 32.63, 23.50, 48.0],
    "EU_SE2": [23.50, 32.63, 34.70, 48.0],
}

BACKENDS = ("local", "earthengine")


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------


@dataclass
class CompositingConfig:
    """Date range, cadence and channels of the composite stack."""

    start_date: str = "2018-01-01"
    end_date: str = "2018-07-31"
    step_days: int = 10
    channels: list[str] = field(default_factory=lambda: ["VV", "VH"])
    instrument_mode: str = "IW"


@dataclass
class EdgeMaskConfig:
    """Edge mask tunables; see :class:`~.edge_mask.EdgeMaskParams`."""

    enabled: bool = True
    channel: Optional[str] = None
    clamp_min: float = -25.0
    clamp_max: float = 5.0
    max_component_size: int = 100
    min_component_size: int = 2
    connectivity: int = 1

    def to_params(self) -> Optional[EdgeMaskParams]:
        if not self.enabled:
            return None
        return EdgeMaskParams(
            channel=self.channel,
            clamp_min=self.clamp_min,
            clamp_max=self.clamp_max,
            max_component_size=self.max_component_size,
            min_component_size=self.min_component_size,
            connectivity=self.connectivity,
        )


@dataclass
class StrataConfig:
    """Stratification against the Mediterranean reference rectangles.

    Attributes:
        reference: Rectangles whose union is the stratum-2 reference.
        tolerance_m: Distance tolerance for the intersection test.
        keep_stratum: Stratum exported; ``None`` keeps every parcel.
        metric_crs: CRS for distances; ``None`` estimates a UTM zone.
    """

    reference: dict[str, list[float]] = field(default_factory=lambda: dict(DEFAULT_MEDITERRANEAN))
    tolerance_m: float = 1.0
    keep_stratum: Optional[int] = 1
    metric_crs: Optional[str] = "EPSG:3035"


@dataclass
class ParcelsConfig:
    """Parcel vector file and its attribute mapping."""

    path: str = ""
    layer: Optional[str] = None
    field_map: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FIELD_MAP))


@dataclass
class SamplingConfig:
    """Zonal sampling settings.

    Attributes:
        scale: Sampling pixel size in metres.
        tile_scale: Engine chunking hint, 1..16.  Higher = smaller batches.
        batch_size: Points per batch for the local engine at tile_scale 1.
        properties: Parcel attributes copied into every row.
    """

    scale: float = 10.0
    tile_scale: int = 16
    batch_size: int = 4096
    properties: list[str] = field(default_factory=lambda: ["POINT_ID", "stratum", "LC1", "LU1"])


@dataclass
class ExportConfig:
    folder: str = "EU_reprod"
    prefix_template: str = DEFAULT_PREFIX_TEMPLATE
    file_format: str = "CSV"


@dataclass
class EngineConfig:
    """Execution backend.

    Attributes:
        backend: ``"local"`` (xarray + Planetary Computer) or ``"earthengine"``.
        collection: Image collection id; ``None`` = backend default.
        project: Earth Engine cloud project.
        stac_url: STAC API root for the local backend.
        resolution: Local grid resolution in metres.
        epsg: Local grid CRS; ``None`` = UTM zone of the area of interest.
        chunk_size: Dask chunk size in pixels.
    """

    backend: str = "local"
    collection: Optional[str] = None
    project: Optional[str] = None
    stac_url: str = PLANETARY_COMPUTER_URL
    resolution: float = 10.0
    epsg: Optional[int] = None
    chunk_size: int = 1024


@dataclass
class RunConfig:
    """Full run configuration parsed from a JSON file."""

    compositing: CompositingConfig = field(default_factory=CompositingConfig)
    edge_mask: EdgeMaskConfig = field(default_factory=EdgeMaskConfig)
    regions: dict[str, list[float]] = field(default_factory=lambda: dict(DEFAULT_REGIONS))
    strata: StrataConfig = field(default_factory=StrataConfig)
    parcels: ParcelsConfig = field(default_factory=ParcelsConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)

    @property
    def region_rectangles(self) -> list[Rectangle]:
        return [Rectangle.from_sequence(label, c) for label, c in self.regions.items()]

    @property
    def reference_rectangles(self) -> list[Rectangle]:
        return [Rectangle.from_sequence(label, c) for label, c in self.strata.reference.items()]

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            InputValidationError: Naming the offending key.
        """
        comp = self.compositing
        start, end = to_datetime(comp.start_date), to_datetime(comp.end_date)
        if start > end:
            raise InputValidationError(
                f"'compositing.start_date' ({comp.start_date}) is after "
                f"'compositing.end_date' ({comp.end_date})."
            )
        if comp.step_days < 1:
            raise InputValidationError(f"'compositing.step_days' must be >= 1, got {comp.step_days}.")
        if len(comp.channels) != 2 or len(set(comp.channels)) != 2:
            raise InputValidationError(
                f"'compositing.channels' must list two distinct channels, got {comp.channels}."
            )

        self.edge_mask.to_params()
        _ = self.region_rectangles, self.reference_rectangles
        if not self.regions:
            raise InputValidationError("'regions' must define at least one rectangle.")

        if self.strata.tolerance_m < 0:
            raise InputValidationError(
                f"'strata.tolerance_m' must be >= 0, got {self.strata.tolerance_m}."
            )
        if self.strata.keep_stratum not in (None, 1, 2):
            raise InputValidationError(
                f"'strata.keep_stratum' must be 1, 2 or null, got {self.strata.keep_stratum}."
            )

        samp = self.sampling
        if samp.scale <= 0:
            raise InputValidationError(f"'sampling.scale' must be > 0, got {samp.scale}.")
        if not 1 <= samp.tile_scale <= 16:
            raise InputValidationError(f"'sampling.tile_scale' must be in 1..16, got {samp.tile_scale}.")
        if samp.batch_size < 1:
            raise InputValidationError(f"'sampling.batch_size' must be >= 1, got {samp.batch_size}.")

        if self.export.file_format.upper() != "CSV":
            raise InputValidationError(
                f"'export.file_format' must be CSV, got {self.export.file_format!r}."
            )
        if self.engine.backend not in BACKENDS:
            raise InputValidationError(
                f"'engine.backend' must be one of {BACKENDS}, got {self.engine.backend!r}."
            )
        if self.engine.resolution <= 0 or self.engine.chunk_size < 1:
            raise InputValidationError(
                "'engine.resolution' must be > 0 and 'engine.chunk_size' >= 1."
            )


# ---------------------------------------------------------------------------
# Config parser
# ---------------------------------------------------------------------------


def _section(raw: dict[str, Any], name: str, cls: type) -> Any:
    """Build *cls* from ``raw[name]``, rejecting unknown keys."""
    values = raw.get(name, {})
    if not isinstance(values, dict):
        raise InputValidationError(f"Config section '{name}' must be an object.")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise InputValidationError(
            f"Unknown key(s) in config section '{name}': {', '.join(unknown)}."
        )
    return cls(**values)


def config_from_dict(raw: dict[str, Any]) -> RunConfig:
    """Build and validate a :class:`RunConfig` from a parsed JSON object."""
    known = {f.name for f in fields(RunConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise InputValidationError(f"Unknown config key(s): {', '.join(unknown)}.")

    regions = raw.get("regions", DEFAULT_REGIONS)
    if not isinstance(regions, dict):
        raise InputValidationError("Config key 'regions' must map labels to [west, south, east, north].")

    config = RunConfig(
        compositing=_section(raw, "compositing", CompositingConfig),
        edge_mask=_section(raw, "edge_mask", EdgeMaskConfig),
        regions=dict(regions),
        strata=_section(raw, "strata", StrataConfig),
        parcels=_section(raw, "parcels", ParcelsConfig),
        sampling=_section(raw, "sampling", SamplingConfig),
        export=_section(raw, "export", ExportConfig),
        engine=_section(raw, "engine", EngineConfig),
    )
    config.validate()
    return config


def load_config(config_path: Path) -> RunConfig:
    """Parse a JSON configuration file into a :class:`RunConfig`.

    Relative ``parcels.path`` values are resolved against the config
    file's directory.

    Raises:
        InputValidationError: If the file cannot be read or parsed, or a
            value is out of range.
    """
    config_path = Path(config_path)
    try:
        raw: dict[str, Any] = json.loads(config_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise InputValidationError(
            f"Failed to read config file '{config_path}': {exc}"
        ) from exc
    if not isinstance(raw, dict):
        raise InputValidationError(f"Config file '{config_path}' must hold a JSON object.")

    config = config_from_dict(raw)
    if config.parcels.path and not Path(config.parcels.path).is_absolute():
        config.parcels.path = str(config_path.parent / config.parcels.path)

    logger.debug("Loaded config from '%s': %s", config_path, config)
    return config
