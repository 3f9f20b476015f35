"""Flamegraph aggregation: fold (call stack, value) samples into a call tree."""

import logging
from collections.abc import Iterable, Sequence

from obsfly.core.deadline import deadline
from obsfly.core.filters import FilterBuilder
from obsfly.core.models import EventKind, FlamegraphNode, TimeWindow
from obsfly.core.ports import EventStorePort, StackSample

logger = logging.getLogger(__name__)

ROOT_NAME = "root"
DEFAULT_MAX_SAMPLES = 10000


class FlamegraphAggregator:
    """Accumulates stack samples under a synthetic ``root`` node.

    Frames are matched by exact name among the current node's children, so
    samples sharing a path prefix share nodes. Every frame on the path gains
    the sample value in ``total``; only the deepest frame gains it in
    ``value``.

    Example:
        ```python
        aggregator = FlamegraphAggregator()
        aggregator.add(["main", "handler"], 100)
        aggregator.add(["main", "db"], 50)
        aggregator.root.children[0].total  # 150
        ```
    """

    def __init__(self) -> None:
        self.root = FlamegraphNode(name=ROOT_NAME)

    def add(self, frames: Sequence[str], value: int) -> None:
        """Fold one sample (frames ordered root to leaf) into the tree."""
        node = self.root
        for frame in frames:
            node = node.child(frame)
            node.total += value
        if node is not self.root:
            node.value += value

    def add_all(self, samples: Iterable[StackSample]) -> "FlamegraphAggregator":
        for sample in samples:
            self.add(sample.function_names, sample.value)
        return self

    def merge(self, other: FlamegraphNode) -> "FlamegraphAggregator":
        """Fold another tree (rooted at a synthetic root) into this one.

        Aggregating two sample sets separately and merging gives the same
        tree as aggregating them together.
        """
        self.root.total += other.total
        self.root.value += other.value
        stack = [(self.root, other)]
        while stack:
            target, source = stack.pop()
            for source_child in source.children:
                target_child = target.child(source_child.name)
                target_child.total += source_child.total
                target_child.value += source_child.value
                stack.append((target_child, source_child))
        return self


async def build_flamegraph(
    store: EventStorePort,
    account_id: int,
    service_name: str,
    profile_type: str,
    window: TimeWindow,
    max_samples: int = DEFAULT_MAX_SAMPLES,
    timeout_seconds: float | None = None,
) -> FlamegraphNode:
    """Aggregate the newest ``max_samples`` stack samples of one service."""
    predicate = (
        FilterBuilder(account_id, EventKind.PROFILE)
        .where("service_name", service_name)
        .where("profile_type", profile_type)
        .build()
    )
    async with deadline(timeout_seconds):
        samples = await store.stack_samples(predicate, window, max_samples)
    logger.debug(
        "Folding %d %s samples for %s", len(samples), profile_type, service_name
    )
    return FlamegraphAggregator().add_all(samples).root
