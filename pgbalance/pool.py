"""Lazily created connections keyed by destination class."""

from __future__ import annotations

import logging
from typing import Mapping

from .balancer import NodeSelector, WeightedNodeSelector
from .benchmark import Benchmark
from .config import ProxyConfig
from .connections import DatabaseConnectionError, Driver, DriverConnection, DriverError
from .models import DestinationClass, FetchMode, NodeDescriptor

LOG = logging.getLogger(__name__)


class ConnectionPool:
    """Owns at most one live connection per destination class."""

    def __init__(
        self,
        config: ProxyConfig,
        driver: Driver,
        *,
        selector: NodeSelector | None = None,
        benchmark: Benchmark | None = None,
    ) -> None:
        self._config = config
        self._driver = driver
        self._selector = selector or WeightedNodeSelector()
        self._benchmark = benchmark or Benchmark()
        self._connections: dict[DestinationClass, DriverConnection] = {}

    def resolve(self, destination: DestinationClass) -> DestinationClass:
        """Destination actually used once the deployment shape is considered."""

        if self._config.single_server:
            return DestinationClass.SINGLE_SERVER
        return destination

    def get(
        self,
        destination: DestinationClass,
        *,
        force_master: bool = False,
    ) -> tuple[DestinationClass, DriverConnection]:
        """Return the cached connection for ``destination``, creating it if needed.

        ``force_master`` redirects a slave request to the master connection.
        """

        destination = self.resolve(destination)
        if force_master and destination is DestinationClass.SLAVE:
            destination = DestinationClass.MASTER
        connection = self._connections.get(destination)
        if connection is None:
            connection = self._create(destination)
            self._connections[destination] = connection
        return destination, connection

    def close(self, destination: DestinationClass) -> None:
        """Close and evict the connection; the next ``get`` reconnects."""

        connection = self._connections.pop(self.resolve(destination), None)
        if connection is not None:
            connection.close()

    def close_all(self) -> None:
        for destination in tuple(self._connections):
            try:
                self.close(destination)
            except DriverError:
                LOG.exception("Failed to close connection", extra={"destination": destination.value})

    def is_connected(self, destination: DestinationClass) -> bool:
        return self.resolve(destination) in self._connections

    @property
    def connections(self) -> Mapping[DestinationClass, DriverConnection]:
        return dict(self._connections)

    def _create(self, destination: DestinationClass) -> DriverConnection:
        self._benchmark.timing_start("db_connections")
        descriptor = self._descriptor_for(destination)
        connection = self._driver.connect(descriptor)
        try:
            for command in descriptor.init_commands:
                connection.execute(command)
        except DriverError as exc:
            try:
                connection.close()
            except DriverError:  # pragma: no cover - best effort cleanup
                pass
            raise DatabaseConnectionError(
                f"Init command failed on {descriptor.host}: {exc}"
            ) from exc
        connection.fetch_mode = FetchMode.ASSOC
        elapsed = self._benchmark.timing_current_to_registry("db_connections")
        LOG.debug(
            "Opened database connection",
            extra={"destination": destination.value, "host": descriptor.host, "elapsed_ms": elapsed},
        )
        return connection

    def _descriptor_for(self, destination: DestinationClass) -> NodeDescriptor:
        if destination is DestinationClass.SINGLE_SERVER:
            return self._config.database.to_descriptor()
        profile = self._config.active_profile()
        if destination is DestinationClass.MASTER:
            return profile.master.to_descriptor()
        slaves = profile.weighted_slaves()
        node_id = self._selector.select(slaves)
        for node in slaves:
            if node.node_id == node_id:
                return node.descriptor
        raise DatabaseConnectionError(f"Selected slave '{node_id}' is not part of the profile.")


__all__ = ["ConnectionPool"]
