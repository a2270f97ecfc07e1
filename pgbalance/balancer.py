"""Slave selection for read traffic."""

from __future__ import annotations

import logging
import random
from typing import Callable, Protocol, Sequence

from .connections import DatabaseConnectionError, Driver
from .models import NodeDescriptor, WeightedNode

LOG = logging.getLogger(__name__)

NodeProbe = Callable[[NodeDescriptor], None]


class NoAvailableNodeError(DatabaseConnectionError):
    """Raised when every candidate node is down or the set is empty."""


class NodeSelector(Protocol):
    """Interface implemented by node selectors."""

    def select(self, nodes: Sequence[WeightedNode]) -> str:
        """Return the id of the node that should serve the next connection."""


class WeightedNodeSelector:
    """Weighted random choice among the nodes that pass an optional probe."""

    def __init__(self, probe: NodeProbe | None = None, *, rng: random.Random | None = None) -> None:
        self._probe = probe
        self._rng = rng or random.Random()

    def select(self, nodes: Sequence[WeightedNode]) -> str:
        available = [node for node in nodes if node.weight > 0 and self._is_available(node)]
        if not available:
            raise NoAvailableNodeError("No database node available for reads.")
        chosen = self._rng.choices(available, weights=[node.weight for node in available], k=1)[0]
        LOG.debug("Selected database node", extra={"node": chosen.node_id})
        return chosen.node_id

    def _is_available(self, node: WeightedNode) -> bool:
        if self._probe is None:
            return True
        try:
            self._probe(node.descriptor)
        except DatabaseConnectionError as exc:
            LOG.warning(
                "SERVER IS DOWN! %s: %s",
                node.descriptor.host,
                exc,
                extra={"node": node.node_id},
            )
            return False
        return True


def connection_probe(driver: Driver) -> NodeProbe:
    """Build a probe that opens and closes a connection to the node."""

    def _probe(descriptor: NodeDescriptor) -> None:
        connection = driver.connect(descriptor)
        connection.close()

    return _probe


__all__ = [
    "NoAvailableNodeError",
    "NodeProbe",
    "NodeSelector",
    "WeightedNodeSelector",
    "connection_probe",
]
