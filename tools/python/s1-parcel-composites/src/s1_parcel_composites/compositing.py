"""
compositing.py
==============
Describe the multiband stack of per-window mean composites.

For each window the composite is::

    to_db( mean_{t in window}( to_linear( edge_mask(image_t) ) ) )

with bands renamed ``{CHANNEL}_{YYYYMMDD}`` after the window start.  The
masked linear series is a single shared node, so an engine evaluates it
once no matter how many windows read it.  Per-window composites are then
folded left, from an empty seed, into one ``StackNode``.

Nothing here reads pixels.  Pass ``CompositeStack.node`` to an
:class:`~s1_parcel_composites.engine.ExecutionEngine` to realise it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import reduce
from typing import Optional, Sequence, Tuple

from s1_parcel_composites.edge_mask import EdgeMaskParams
from s1_parcel_composites.graph import (
    DbNode,
    EdgeMaskNode,
    LinearNode,
    Node,
    SelectNode,
    SeriesNode,
    StackNode,
    WindowMeanNode,
    output_bands,
)
from s1_parcel_composites.sources import ImageQuery
from s1_parcel_composites.windows import TimeWindow

logger = logging.getLogger("s1_parcel_composites.compositing")


def composite_band_name(channel: str, window: TimeWindow) -> str:
    """``VV`` + window starting 2018-01-11 → ``"VV_20180111"``."""
    return f"{channel.upper()}_{window.stamp}"


@dataclass(frozen=True)
class CompositeStack:
    """Description of the full composite stack.

    Attributes:
        node: Expression tree producing the stack.
        band_names: Band names in stack order (window-major, channel-minor).
        windows: Compositing windows, in chronological order.
        channels: Polarisation channels, in band order within a window.
    """

    node: StackNode
    band_names: Tuple[str, ...]
    windows: Tuple[TimeWindow, ...]
    channels: Tuple[str, ...]

    @property
    def band_count(self) -> int:
        return len(self.band_names)

    def __len__(self) -> int:
        return self.band_count

    def bands_for(self, window: TimeWindow) -> Tuple[str, ...]:
        """Band names contributed by *window*."""
        return tuple(composite_band_name(ch, window) for ch in self.channels)


def linear_series(query: ImageQuery, edge_mask: Optional[EdgeMaskParams]) -> Node:
    """Edge-masked (optional) acquisitions converted to linear power."""
    series: Node = SeriesNode(query)
    if edge_mask is not None:
        series = EdgeMaskNode(series, edge_mask)
    return LinearNode(series)


def window_composite(series: Node, window: TimeWindow, channels: Tuple[str, ...]) -> Node:
    """dB mean composite of *series* over *window*, bands renamed per window."""
    names = tuple(composite_band_name(ch, window) for ch in channels)
    mean = WindowMeanNode(series, window, channels)
    return DbNode(SelectNode(mean, channels, names))


def _stack_bands(stack: StackNode, image: Node) -> StackNode:
    return StackNode(stack.parts + (image,))


def build_composite_stack(
    query: ImageQuery,
    windows: Sequence[TimeWindow],
    channels: Optional[Sequence[str]] = None,
    *,
    edge_mask: Optional[EdgeMaskParams] = EdgeMaskParams(),
) -> CompositeStack:
    """Describe the composite stack for *windows* x *channels*.

    Args:
        query: Imagery query; its channels are used when *channels* is None.
        windows: Ordered compositing windows.
        channels: Channels to composite, in band order.
        edge_mask: Edge mask parameters, or ``None`` to skip masking.

    Returns:
        A :class:`CompositeStack` with ``len(windows) * len(channels)`` bands.
    """
    chans = tuple(str(c).upper() for c in (channels or query.channels))
    ordered = tuple(windows)

    series = linear_series(query, edge_mask)
    composites = [window_composite(series, w, chans) for w in ordered]
    node = reduce(_stack_bands, composites, StackNode())

    names = output_bands(node)
    assert len(names) == len(ordered) * len(chans), "band count != windows x channels"
    assert len(set(names)) == len(names), f"duplicate band names in {names}"

    logger.info(
        "Composite stack: %d window(s) x %d channel(s) = %d band(s).",
        len(ordered), len(chans), len(names),
    )
    return CompositeStack(node=node, band_names=names, windows=ordered, channels=chans)
