"""Read/write classification and destination choice."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .models import DestinationClass, Operation

_READ_RE = re.compile(r"^SELECT|^SHOW |^DESC ", re.IGNORECASE)
# Results only make sense on the connection that performed the write.
_MASTER_ONLY = frozenset({Operation.AFFECTED_ROWS, Operation.INSERT_ID})


@dataclass(frozen=True, slots=True)
class Route:
    destination: DestinationClass
    is_read: bool


def is_read_query(query: str | None) -> bool:
    """True when the statement starts with SELECT, SHOW or DESC."""

    if not query:
        return False
    statement = query.strip().lstrip("(").strip()
    return _READ_RE.match(statement) is not None


class QueryRouter:
    """Picks master, slave or single server for each call.

    ``next_query_in_master`` arms a one-shot flag; the next ``classify`` call
    consumes it whatever the outcome.
    """

    def __init__(self, *, single_server: bool) -> None:
        self._single_server = single_server
        self._sticky_master = False

    @property
    def single_server(self) -> bool:
        return self._single_server

    @property
    def sticky_master(self) -> bool:
        return self._sticky_master

    def next_query_in_master(self) -> None:
        self._sticky_master = True

    def clear(self) -> None:
        self._sticky_master = False

    def default_destination(self) -> DestinationClass:
        if self._single_server:
            return DestinationClass.SINGLE_SERVER
        return DestinationClass.MASTER

    def classify(self, operation: Operation, query: str | None = None) -> Route:
        is_read = is_read_query(query) if operation.takes_query else False
        if self._single_server:
            destination = DestinationClass.SINGLE_SERVER
        elif operation in _MASTER_ONLY or self._sticky_master or not is_read:
            destination = DestinationClass.MASTER
        else:
            destination = DestinationClass.SLAVE
        self._sticky_master = False
        return Route(destination=destination, is_read=is_read)


__all__ = ["QueryRouter", "Route", "is_read_query"]
