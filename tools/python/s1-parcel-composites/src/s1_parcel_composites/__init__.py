"""
S1 Parcel Composites
====================
Sentinel-1 10-day VV/VH composites sampled on land-parcel polygons.
"""

from s1_parcel_composites.compositing import CompositeStack, build_composite_stack, composite_band_name
from s1_parcel_composites.config import RunConfig, load_config
from s1_parcel_composites.edge_mask import EdgeMaskParams, edge_validity_mask, mask_edges
from s1_parcel_composites.engine import ExecutionEngine, XarrayEngine
from s1_parcel_composites.parcels import (
    Rectangle,
    VectorFileParcelSource,
    assign_strata,
    filter_stratum,
    normalise_attributes,
    partition_by_bounds,
)
from s1_parcel_composites.pipeline import ParcelCompositePipeline, SubsetOutcome
from s1_parcel_composites.radiometry import to_db, to_linear
from s1_parcel_composites.sampling import (
    ExportReceipt,
    ExportSink,
    LocalTableSink,
    SampleResult,
    export_prefix,
)
from s1_parcel_composites.sources import (
    ImageQuery,
    ImageRecord,
    ImageSource,
    InMemoryImageSource,
    PlanetaryComputerSource,
)
from s1_parcel_composites.windows import TimeWindow, partition_windows

__version__ = "1.0.0"

__all__ = [
    "ParcelCompositePipeline",
    "SubsetOutcome",
    "RunConfig",
    "load_config",
    "TimeWindow",
    "partition_windows",
    "to_linear",
    "to_db",
    "EdgeMaskParams",
    "edge_validity_mask",
    "mask_edges",
    "CompositeStack",
    "build_composite_stack",
    "composite_band_name",
    "ImageQuery",
    "ImageRecord",
    "ImageSource",
    "InMemoryImageSource",
    "PlanetaryComputerSource",
    "ExecutionEngine",
    "XarrayEngine",
    "Rectangle",
    "VectorFileParcelSource",
    "normalise_attributes",
    "assign_strata",
    "filter_stratum",
    "partition_by_bounds",
    "SampleResult",
    "ExportSink",
    "ExportReceipt",
    "LocalTableSink",
    "export_prefix",
]
