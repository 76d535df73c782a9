"""Weighted tag graph: normalization, merge, flatten and top-k selection.

A graph is a fixed set of channels (see ``CHANNELS``), each mapping a
normalized tag to a non-negative integer weight. ``merge_into`` is the only
function that mutates a channel mapping; ``TagGraph`` instances are treated
as immutable snapshots and every transforming method returns a new one.

Merging is plain integer addition per (channel, tag), so it is commutative
and associative: folding batches in any order or grouping yields the same
weights.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, TypeVar

from tastegraph.core.contracts import CHANNELS, Channel

T = TypeVar("T")

ChannelMap = dict[str, dict[str, int]]


def normalize_tag(raw: Any) -> str:
    """Lower-case and trim a raw tag value. Returns "" for unusable input."""
    if raw is None or isinstance(raw, (dict, list, tuple, set, bool)):
        return ""
    return str(raw).strip().lower()


def empty_channels() -> ChannelMap:
    """All-empty channel mapping."""
    return {channel: {} for channel in CHANNELS}


def merge_into(
    target: ChannelMap,
    signals: Mapping[str, Any] | None,
    increment: int = 1,
) -> ChannelMap:
    """Fold a signal object into ``target`` in place.

    Every non-empty normalized item of a recognized channel adds
    ``increment`` to its tag. Unrecognized channels and non-list values are
    ignored, since signals come from untrusted generator output.

    Args:
        target: Channel mapping to update
        signals: Mapping of channel name -> list of raw tags
        increment: Weight added per occurrence

    Returns:
        The same ``target`` mapping
    """
    if increment < 0:
        raise ValueError("increment must be non-negative")

    if not isinstance(signals, Mapping):
        return target

    for channel in CHANNELS:
        items = signals.get(channel)
        if not isinstance(items, (list, tuple)):
            continue
        bucket = target.setdefault(channel, {})
        for item in items:
            tag = normalize_tag(item)
            if not tag:
                continue
            bucket[tag] = bucket.get(tag, 0) + increment

    return target


def _add_weights(target: ChannelMap, channels: Mapping[str, Mapping[str, int]]) -> None:
    for channel in CHANNELS:
        bucket = target.setdefault(channel, {})
        for tag, weight in channels.get(channel, {}).items():
            bucket[tag] = bucket.get(tag, 0) + weight


def _clean_channel(raw: Any) -> dict[str, int]:
    if not isinstance(raw, Mapping):
        return {}
    cleaned: dict[str, int] = {}
    for tag, weight in raw.items():
        key = normalize_tag(tag)
        if not key or isinstance(weight, bool):
            continue
        try:
            value = int(weight)
        except (TypeError, ValueError):
            continue
        if value < 0:
            continue
        cleaned[key] = cleaned.get(key, 0) + value
    return cleaned


@dataclass(frozen=True)
class TagGraph:
    """Immutable snapshot of a weighted tag graph."""

    channels: ChannelMap = field(default_factory=empty_channels)

    @classmethod
    def empty(cls) -> "TagGraph":
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "TagGraph":
        """Build from stored data, dropping unknown channels and bad weights."""
        data = data or {}
        return cls({channel: _clean_channel(data.get(channel)) for channel in CHANNELS})

    @classmethod
    def from_signals(cls, signals: Mapping[str, Any] | None, increment: int = 1) -> "TagGraph":
        return cls(merge_into(empty_channels(), signals, increment))

    def to_dict(self) -> ChannelMap:
        """Deep copy of the channel mapping."""
        return {channel: dict(self.channels.get(channel, {})) for channel in CHANNELS}

    def merged(self, signals: Mapping[str, Any] | None, increment: int = 1) -> "TagGraph":
        """Return a new graph with ``signals`` folded in."""
        return TagGraph(merge_into(self.to_dict(), signals, increment))

    def plus(self, other: "TagGraph") -> "TagGraph":
        """Return the channel-wise sum of two graphs."""
        channels = self.to_dict()
        _add_weights(channels, other.channels)
        return TagGraph(channels)

    def weight(self, channel: str, tag: str) -> int:
        return self.channels.get(channel, {}).get(normalize_tag(tag), 0)

    def top_k(self, channel: str | Channel, k: int) -> list[tuple[str, int]]:
        """Highest-weighted tags of a channel.

        Ties are broken lexicographically so the result does not depend on
        the order in which batches were merged.
        """
        if k <= 0:
            return []
        name = channel.value if isinstance(channel, Channel) else channel
        entries = self.channels.get(name, {}).items()
        return sorted(entries, key=lambda entry: (-entry[1], entry[0]))[:k]

    def top_tags(self, k: int) -> dict[str, list[str]]:
        """Top ``k`` tag names for every channel."""
        return {channel: [tag for tag, _ in self.top_k(channel, k)] for channel in CHANNELS}

    def tag_set(self) -> set[str]:
        """Every tag present in any channel."""
        tags: set[str] = set()
        for bucket in self.channels.values():
            tags.update(bucket)
        return tags

    @property
    def is_empty(self) -> bool:
        return not any(self.channels.get(channel) for channel in CHANNELS)

    def with_tag(self, channel: str, tag: str, weight: int) -> "TagGraph":
        """Return a copy with ``tag`` set to ``weight`` in ``channel``."""
        if channel not in CHANNELS:
            raise ValueError(f"Unknown channel: {channel}")
        key = normalize_tag(tag)
        if not key:
            raise ValueError("Tag must not be empty")
        if weight < 0:
            raise ValueError("weight must be non-negative")
        channels = self.to_dict()
        channels[channel][key] = weight
        return TagGraph(channels)

    def without_tags(self, tags: Iterable[str]) -> "TagGraph":
        """Return a copy with every given tag removed from every channel."""
        drop = {normalize_tag(tag) for tag in tags}
        return TagGraph(
            {
                channel: {tag: w for tag, w in bucket.items() if tag not in drop}
                for channel, bucket in self.to_dict().items()
            }
        )

    def without_tag(self, tag: str) -> "TagGraph":
        return self.without_tags([tag])


def _default_graph_of(source: Any) -> TagGraph:
    return source.tag_graph


def flatten_scope(
    sources: Iterable[T],
    predicate: Callable[[T], bool] | None = None,
    graph_of: Callable[[T], TagGraph] = _default_graph_of,
) -> TagGraph:
    """Sum the graphs of every source that passes ``predicate``.

    Equivalent to merging each source graph into an empty accumulator, so
    the result is independent of source order.

    Args:
        sources: Objects carrying a graph (``.tag_graph`` by default)
        predicate: Optional filter; ``None`` includes every source
        graph_of: Accessor returning a source's ``TagGraph``

    Returns:
        Flattened snapshot
    """
    accumulator = empty_channels()
    for source in sources:
        if predicate is not None and not predicate(source):
            continue
        _add_weights(accumulator, graph_of(source).channels)
    return TagGraph(accumulator)
