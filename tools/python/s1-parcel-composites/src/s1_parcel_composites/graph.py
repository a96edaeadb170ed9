"""
graph.py
========
Declarative description of the compositing computation.

Building a composite stack never touches pixels: it only assembles a tree
of frozen, hashable nodes.  An :class:`~s1_parcel_composites.engine.ExecutionEngine`
evaluates the tree later, and because nodes hash by value the engine can
cache shared sub-trees.  The linear-power series, for example, is
evaluated once and reused by every window.

Series nodes describe a time series of images; image nodes describe a
single multiband image.

======================  ========  =========================================
Node                    Kind      Meaning
======================  ========  =========================================
``SeriesNode``          series    acquisitions matching an ``ImageQuery``
``EdgeMaskNode``        series    connected-component edge mask per image
``LinearNode``          either    dB → linear power
``DbNode``              either    linear power → dB
``WindowMeanNode``      image     per-channel mean over ``[start, end)``
``SelectNode``          image     select channels and rename them
``StackNode``           image     band concatenation, in order
======================  ========  =========================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

from s1_parcel_composites.edge_mask import EdgeMaskParams
from s1_parcel_composites.sources import ImageQuery
from s1_parcel_composites.windows import TimeWindow


@dataclass(frozen=True)
class SeriesNode:
    """Raw acquisitions returned by the imagery source for *query*."""

    query: ImageQuery

    @property
    def is_series(self) -> bool:
        return True


@dataclass(frozen=True)
class EdgeMaskNode:
    """Apply the edge mask to every acquisition of *source*."""

    source: "Node"
    params: EdgeMaskParams

    @property
    def is_series(self) -> bool:
        return True


@dataclass(frozen=True)
class LinearNode:
    source: "Node"

    @property
    def is_series(self) -> bool:
        return self.source.is_series


@dataclass(frozen=True)
class DbNode:
    source: "Node"

    @property
    def is_series(self) -> bool:
        return self.source.is_series


@dataclass(frozen=True)
class WindowMeanNode:
    """Per-pixel, per-channel mean of the acquisitions inside *window*.

    Only acquisitions carrying a channel contribute to that channel.
    An empty window yields an all-no-data image.
    """

    source: "Node"
    window: TimeWindow
    channels: Tuple[str, ...]

    @property
    def is_series(self) -> bool:
        return False


@dataclass(frozen=True)
class SelectNode:
    """Select *channels* from an image and rename them to *names*."""

    source: "Node"
    channels: Tuple[str, ...]
    names: Tuple[str, ...]

    def __post_init__(self) -> None:
        if len(self.channels) != len(self.names):
            raise ValueError(
                f"SelectNode needs one name per channel: {self.channels} vs {self.names}"
            )

    @property
    def is_series(self) -> bool:
        return False


@dataclass(frozen=True)
class StackNode:
    """Concatenate the bands of *parts*, in order."""

    parts: Tuple["Node", ...] = ()

    @property
    def is_series(self) -> bool:
        return False


Node = Union[SeriesNode, EdgeMaskNode, LinearNode, DbNode, WindowMeanNode, SelectNode, StackNode]


def output_bands(node: Node) -> Tuple[str, ...]:
    """Band names an image node produces, derived without evaluation."""
    if isinstance(node, StackNode):
        return tuple(name for part in node.parts for name in output_bands(part))
    if isinstance(node, SelectNode):
        return node.names
    if isinstance(node, WindowMeanNode):
        return node.channels
    if isinstance(node, (LinearNode, DbNode, EdgeMaskNode)):
        return output_bands(node.source)
    if isinstance(node, SeriesNode):
        return node.query.channels
    raise TypeError(f"Unknown node type: {type(node).__name__}")
