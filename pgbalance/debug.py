"""Per-query debug records and duplicate detection."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from .connections import DriverConnection, DriverError
from .models import DestinationClass, Operation, QueryInvocation

LOG = logging.getLogger(__name__)

_PACKAGE = __name__.partition(".")[0]

# Recorded under their own name and never flagged as duplicates.
WITHOUT_DUPLICATE_CHECK = frozenset({"prepare", "affected_rows", "insert_id", "error_no", "error_msg"})


@dataclass(frozen=True, slots=True)
class QueryRecord:
    """One entry of the debug query log."""

    tag: str
    sql: str
    type: str
    destination: DestinationClass
    host: str | None
    database: str | None
    user: str | None
    controller: str
    resultset: Any
    time: float
    error: str | None
    duplicated: bool
    rows_num: int


@dataclass(slots=True)
class DebugRegistry:
    """Everything recorded while debug mode was on."""

    queries: list[QueryRecord] = field(default_factory=list)
    executed_queries: set[str] = field(default_factory=set)
    duplicated_queries: int = 0
    query_errors: list[str] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "queries": len(self.queries),
            "duplicated": self.duplicated_queries,
            "errors": len(self.query_errors),
        }


def render_query(query: str, params: Sequence[Any]) -> str:
    """Query text followed by one ``* index: value`` line per bound parameter."""

    lines = [f"* {index}: {value}" for index, value in enumerate(params)]
    return "\n".join([query, *lines])


def caller_chain(limit: int = 4) -> str:
    """Join the first ``limit`` distinct classes found up the call stack.

    Frames without a ``self``/``cls`` are labeled ``Undefined N``. Frames from
    this package are skipped.
    """

    classes: dict[str, None] = {}
    undefined = 1
    frame = inspect.currentframe()
    try:
        frame = frame.f_back if frame is not None else None
        while frame is not None and len(classes) < limit:
            module = frame.f_globals.get("__name__", "")
            if module != _PACKAGE and not module.startswith(f"{_PACKAGE}."):
                name = _frame_class(frame)
                if name is None:
                    name = f"Undefined {undefined}"
                    undefined += 1
                classes.setdefault(name, None)
            frame = frame.f_back
    finally:
        del frame
    return " > ".join(classes)


def _frame_class(frame: Any) -> str | None:
    owner = frame.f_locals.get("self")
    if owner is not None:
        return type(owner).__name__
    cls = frame.f_locals.get("cls")
    if isinstance(cls, type):
        return cls.__name__
    return None


class DebugRecorder:
    """Builds query records when debug mode is on; otherwise does nothing."""

    def __init__(self, registry: DebugRegistry | None = None, *, enabled: bool = False) -> None:
        self.registry = registry or DebugRegistry()
        self.enabled = enabled

    def record(
        self,
        invocation: QueryInvocation,
        connection: DriverConnection | None,
    ) -> QueryRecord | None:
        if not self.enabled:
            return None

        operation = invocation.operation
        checked = operation.value not in WITHOUT_DUPLICATE_CHECK
        if not checked:
            sql = operation.value
        elif operation.takes_query:
            sql = render_query(invocation.query, invocation.params)
        else:
            sql = render_query(operation.value, invocation.extra_args)
        resultset = invocation.resultset
        if isinstance(resultset, int) and not isinstance(resultset, bool):
            resultset = [{operation.value: resultset}]

        duplicated = False
        if checked:
            if sql in self.registry.executed_queries:
                duplicated = True
                self.registry.duplicated_queries += 1
            else:
                self.registry.executed_queries.add(sql)

        record = QueryRecord(
            tag=invocation.tag,
            sql=sql,
            type="read" if invocation.is_read else "write",
            destination=invocation.destination,
            host=getattr(connection, "host", None),
            database=getattr(connection, "database", None),
            user=getattr(connection, "user", None),
            controller=caller_chain(),
            resultset=resultset,
            time=invocation.elapsed_ms,
            error=invocation.error,
            duplicated=duplicated,
            rows_num=self._rows_num(invocation, connection),
        )
        self.registry.queries.append(record)
        if invocation.error is not None:
            self.registry.query_errors.append(invocation.error)
        LOG.debug(
            "Recorded query",
            extra={"tag": record.tag, "destination": record.destination.value, "duplicated": duplicated},
        )
        return record

    @staticmethod
    def _rows_num(invocation: QueryInvocation, connection: DriverConnection | None) -> int:
        resultset = invocation.resultset
        if invocation.is_read:
            if resultset is None:
                return 0
            if not isinstance(resultset, list):
                return 1
            return len(resultset)
        if invocation.operation is Operation.CLOSE or connection is None:
            return 0
        try:
            return connection.affected_rows()
        except DriverError:
            return 0


__all__ = [
    "DebugRecorder",
    "DebugRegistry",
    "QueryRecord",
    "WITHOUT_DUPLICATE_CHECK",
    "caller_chain",
    "render_query",
]
