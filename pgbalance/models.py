"""Shared dataclasses and enums used across the proxy modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DestinationClass(str, Enum):
    """Server role a call is routed to."""

    SINGLE_SERVER = "single_server"
    MASTER = "master"
    SLAVE = "slave"


class ErrorPolicy(str, Enum):
    """What the proxy does with a failed driver call."""

    PROPAGATE_ON_FAILURE = "propagate"
    SWALLOW_AND_RETURN_SENTINEL = "swallow"


class FetchMode(str, Enum):
    """Shape of result rows: keyed by column name or positional."""

    ASSOC = "assoc"
    NUM = "num"


class OperationKind(str, Enum):
    QUERY = "query"
    EXEC = "exec"
    FETCH_ROW = "fetch_row"
    FETCH_SCALAR = "fetch_scalar"
    TRANSACTION = "transaction"
    META = "meta"


class Operation(str, Enum):
    """Closed set of driver operations the proxy forwards."""

    GET_ALL = "get_all"
    GET_COL = "get_col"
    EXECUTE = "execute"
    GET_ROW = "get_row"
    GET_ONE = "get_one"
    START_TRANS = "start_trans"
    COMPLETE_TRANS = "complete_trans"
    FAIL_TRANS = "fail_trans"
    HAS_FAILED_TRANS = "has_failed_trans"
    INSERT_ID = "insert_id"
    AFFECTED_ROWS = "affected_rows"
    ERROR_NO = "error_no"
    ERROR_MSG = "error_msg"
    CLOSE = "close"

    @property
    def kind(self) -> OperationKind:
        return _OPERATION_KINDS[self]

    @property
    def takes_query(self) -> bool:
        """Whether the first argument is query text."""

        return self.kind in _QUERY_KINDS


_OPERATION_KINDS: dict[Operation, OperationKind] = {
    Operation.GET_ALL: OperationKind.QUERY,
    Operation.GET_COL: OperationKind.QUERY,
    Operation.EXECUTE: OperationKind.EXEC,
    Operation.GET_ROW: OperationKind.FETCH_ROW,
    Operation.GET_ONE: OperationKind.FETCH_SCALAR,
    Operation.START_TRANS: OperationKind.TRANSACTION,
    Operation.COMPLETE_TRANS: OperationKind.TRANSACTION,
    Operation.FAIL_TRANS: OperationKind.TRANSACTION,
    Operation.HAS_FAILED_TRANS: OperationKind.TRANSACTION,
    Operation.INSERT_ID: OperationKind.META,
    Operation.AFFECTED_ROWS: OperationKind.META,
    Operation.ERROR_NO: OperationKind.META,
    Operation.ERROR_MSG: OperationKind.META,
    Operation.CLOSE: OperationKind.META,
}

_QUERY_KINDS = frozenset(
    {OperationKind.QUERY, OperationKind.EXEC, OperationKind.FETCH_ROW, OperationKind.FETCH_SCALAR}
)


@dataclass(frozen=True, slots=True)
class NodeDescriptor:
    """Runtime representation of one database server's connection parameters."""

    driver: str = "postgres"
    host: str = "localhost"
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    weight: int = 1
    init_commands: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class WeightedNode:
    """Slave candidate handed to the node selector."""

    node_id: str
    weight: int
    descriptor: NodeDescriptor


class _Failure:
    """Falsy marker returned in place of a result when a driver call failed."""

    _instance: _Failure | None = None

    def __new__(cls) -> _Failure:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "FAILURE"


FAILURE = _Failure()


@dataclass(slots=True)
class QueryInvocation:
    """Everything known about one proxied call, fed to the debug recorder."""

    operation: Operation
    query: str = ""
    params: tuple[Any, ...] = ()
    tag: str = ""
    destination: DestinationClass = DestinationClass.SINGLE_SERVER
    is_read: bool = False
    elapsed_ms: float = 0.0
    result: Any = None
    resultset: Any = None
    error: str | None = None
    extra_args: tuple[Any, ...] = field(default_factory=tuple)


__all__ = [
    "DestinationClass",
    "ErrorPolicy",
    "FAILURE",
    "FetchMode",
    "NodeDescriptor",
    "Operation",
    "OperationKind",
    "QueryInvocation",
    "WeightedNode",
]
