"""Deterministic in-memory entity store.

This is the only component allowed to hold the *current* observation per node.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from pyvoltgrid._constants import HARD_MAX, HARD_MIN
from pyvoltgrid.state.events import Observation, ObservationOrigin
from pyvoltgrid.state.policy import should_accept_update


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Outcome of :meth:`EntityStore.merge`."""

    applied: bool
    superseded_origin: ObservationOrigin | None = None


class EntityStore:
    """Latest known observation per node id.

    The store is deterministic: given the same sequence of observations it
    produces the same mapping. It assumes values are already clamped; anything
    outside the hard range is rejected rather than corrected.
    """

    def __init__(self, *, hard_min: int = HARD_MIN, hard_max: int = HARD_MAX) -> None:
        self._hard_min = hard_min
        self._hard_max = hard_max
        self._nodes: dict[str, Observation] = {}
        self._version = 0

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every structural change."""
        return self._version

    def merge(self, observation: Observation) -> MergeResult:
        """Merge *observation* into the store."""
        current = self._nodes.get(observation.id)
        if not should_accept_update(
            current=current,
            incoming=observation,
            hard_min=self._hard_min,
            hard_max=self._hard_max,
        ):
            return MergeResult(applied=False)

        self._nodes[observation.id] = observation
        self._version += 1
        return MergeResult(
            applied=True,
            superseded_origin=current.origin if current is not None else None,
        )

    def remove(self, node_id: str) -> bool:
        """Delete *node_id*. Returns ``False`` when it was not present."""
        if self._nodes.pop(node_id, None) is None:
            return False
        self._version += 1
        return True

    def get(self, node_id: str) -> Observation | None:
        return self._nodes.get(node_id)

    def snapshot(self) -> Mapping[str, Observation]:
        """Immutable copy of the full mapping."""
        return MappingProxyType(dict(self._nodes))

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._nodes))
