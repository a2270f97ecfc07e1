"""Driver layer: blocking asyncpg connections used by the connection pool."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from typing import Any, Coroutine, Protocol, Sequence, runtime_checkable

import asyncpg

from .models import FetchMode, NodeDescriptor

LOG = logging.getLogger(__name__)

SUPPORTED_DRIVERS = frozenset({"postgres", "postgresql", "pgsql", "asyncpg"})


class DatabaseConnectionError(ConnectionError):
    """Raised when a physical connection cannot be established."""


class DriverError(RuntimeError):
    """Raised when the driver fails to run an operation."""

    def __init__(self, message: str, *, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


@runtime_checkable
class DriverConnection(Protocol):
    """Operations the proxy forwards to one physical connection."""

    host: str
    database: str | None
    user: str | None
    fetch_mode: FetchMode

    def get_all(self, query: str, params: Sequence[Any] | None = None) -> list[Any]: ...

    def get_col(self, query: str, params: Sequence[Any] | None = None) -> list[Any]: ...

    def get_row(self, query: str, params: Sequence[Any] | None = None) -> Any: ...

    def get_one(self, query: str, params: Sequence[Any] | None = None) -> Any: ...

    def execute(self, query: str, params: Sequence[Any] | None = None) -> Any: ...

    def start_trans(self) -> bool: ...

    def complete_trans(self, auto_complete: bool = True) -> bool: ...

    def fail_trans(self) -> None: ...

    def has_failed_trans(self) -> bool: ...

    def insert_id(self) -> Any: ...

    def affected_rows(self) -> int: ...

    def error_no(self) -> str: ...

    def error_msg(self) -> str: ...

    def escape(self, value: str) -> str: ...

    def close(self) -> None: ...


class Driver(Protocol):
    """Factory for physical connections."""

    def connect(self, descriptor: NodeDescriptor) -> DriverConnection: ...


_TOKEN_RE = re.compile(
    r"""
      [eE]'(?:[^'\\]|\\.|'')*'   # escape string literal
    | '(?:[^']|'')*'             # string literal
    | "(?:[^"]|"")*"             # quoted identifier
    | --[^\n]*                   # line comment
    | /\*.*?\*/                  # block comment
    | \?                         # positional placeholder
    """,
    re.VERBOSE | re.DOTALL,
)


def count_placeholders(query: str) -> int:
    """Number of ``?`` placeholders outside literals and comments."""

    return sum(1 for match in _TOKEN_RE.finditer(query) if match.group() == "?")


def numbered_placeholders(query: str) -> str:
    """Rewrite ``?`` placeholders into PostgreSQL ``$n`` parameters."""

    counter = 0

    def _replace(match: re.Match[str]) -> str:
        nonlocal counter
        if match.group() != "?":
            return match.group()
        counter += 1
        return f"${counter}"

    return _TOKEN_RE.sub(_replace, query)


def quote_literal(value: str) -> str:
    """Quote ``value`` as a PostgreSQL string literal (``quote_literal`` rules)."""

    quoted = value.replace("'", "''")
    if "\\" in quoted:
        return "E'" + quoted.replace("\\", "\\\\") + "'"
    return f"'{quoted}'"


def _first_value(record: Any) -> Any:
    if hasattr(record, "values"):
        return next(iter(record.values()), None)
    return record[0]


def _status_row_count(status: str | None) -> int:
    """Extract the row count from a command tag such as ``INSERT 0 3``."""

    if not status:
        return 0
    tail = status.rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0


class AsyncpgDriver:
    """Opens asyncpg connections and runs them on a private event loop."""

    def __init__(self, *, connect_timeout: float = 5.0) -> None:
        self._connect_timeout = connect_timeout
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="pgbalance-asyncpg-driver",
            daemon=True,
        )
        self._loop_thread.start()

    def connect(self, descriptor: NodeDescriptor) -> AsyncpgConnection:
        if descriptor.driver.lower() not in SUPPORTED_DRIVERS:
            raise DatabaseConnectionError(f"Unsupported database driver '{descriptor.driver}'.")
        try:
            handle = self.run(asyncpg.connect(**self._connect_kwargs(descriptor)))
        except Exception as exc:
            raise DatabaseConnectionError(
                f"Failed to connect to {descriptor.host}/{descriptor.database or ''}: {exc}"
            ) from exc
        LOG.debug("Connected to database", extra={"host": descriptor.host, "database": descriptor.database})
        return AsyncpgConnection(handle, descriptor, runner=self.run)

    def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """Block until ``coro`` finishes on the driver loop."""

        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def shutdown(self) -> None:
        """Stop the background event loop."""

        if not self._loop.is_running():  # pragma: no cover
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def __del__(self) -> None:  # pragma: no cover - best effort cleanup
        try:
            self.shutdown()
        except Exception:
            pass

    def _connect_kwargs(self, descriptor: NodeDescriptor) -> dict[str, object]:
        kwargs: dict[str, object] = {"host": descriptor.host or "localhost"}
        if descriptor.port is not None:
            kwargs["port"] = descriptor.port
        if descriptor.user:
            kwargs["user"] = descriptor.user
        if descriptor.password:
            kwargs["password"] = descriptor.password
        if descriptor.database:
            kwargs["database"] = descriptor.database
        kwargs["timeout"] = self._connect_timeout
        return kwargs


class AsyncpgConnection:
    """Blocking wrapper around one asyncpg connection."""

    def __init__(self, handle: Any, descriptor: NodeDescriptor, *, runner: Any) -> None:
        self._handle = handle
        self._run = runner
        self.host = descriptor.host
        self.database = descriptor.database
        self.user = descriptor.user
        self.fetch_mode = FetchMode.ASSOC
        self._affected = 0
        self._last_error = ""
        self._last_sqlstate = ""
        self._transaction: Any = None
        self._trans_depth = 0
        self._trans_failed = False

    def get_all(self, query: str, params: Sequence[Any] | None = None) -> list[Any]:
        records = self._call(self._handle.fetch(numbered_placeholders(query), *(params or ())))
        self._affected = len(records)
        return [self._shape(record) for record in records]

    def get_col(self, query: str, params: Sequence[Any] | None = None) -> list[Any]:
        records = self._call(self._handle.fetch(numbered_placeholders(query), *(params or ())))
        self._affected = len(records)
        return [_first_value(record) for record in records]

    def get_row(self, query: str, params: Sequence[Any] | None = None) -> Any:
        record = self._call(self._handle.fetchrow(numbered_placeholders(query), *(params or ())))
        self._affected = 0 if record is None else 1
        return None if record is None else self._shape(record)

    def get_one(self, query: str, params: Sequence[Any] | None = None) -> Any:
        value = self._call(self._handle.fetchval(numbered_placeholders(query), *(params or ())))
        self._affected = 0 if value is None else 1
        return value

    def execute(self, query: str, params: Sequence[Any] | None = None) -> str:
        status = self._call(self._handle.execute(numbered_placeholders(query), *(params or ())))
        self._affected = _status_row_count(status)
        return status

    def start_trans(self) -> bool:
        self._trans_depth += 1
        if self._trans_depth == 1:
            self._trans_failed = False
            self._transaction = self._handle.transaction()
            self._call(self._transaction.start())
        return True

    def complete_trans(self, auto_complete: bool = True) -> bool:
        if self._trans_depth == 0:
            return False
        self._trans_depth -= 1
        if self._trans_depth > 0:
            return True
        transaction, self._transaction = self._transaction, None
        if auto_complete and not self._trans_failed:
            self._call(transaction.commit())
            return True
        self._call(transaction.rollback())
        return False

    def fail_trans(self) -> None:
        self._trans_failed = True

    def has_failed_trans(self) -> bool:
        return self._trans_depth > 0 and self._trans_failed

    def insert_id(self) -> Any:
        return self._call(self._handle.fetchval("SELECT lastval()"))

    def affected_rows(self) -> int:
        return self._affected

    def error_no(self) -> str:
        return self._last_sqlstate

    def error_msg(self) -> str:
        return self._last_error

    def escape(self, value: str) -> str:
        return quote_literal(str(value))

    def close(self) -> None:
        if self._handle.is_closed():
            return
        self._call(self._handle.close())

    def _call(self, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            result = self._run(coro)
        except Exception as exc:
            sqlstate = getattr(exc, "sqlstate", None)
            self._last_error = str(exc)
            self._last_sqlstate = sqlstate or ""
            if self._trans_depth > 0:
                self._trans_failed = True
            raise DriverError(str(exc), sqlstate=sqlstate) from exc
        self._last_error = ""
        self._last_sqlstate = ""
        return result

    def _shape(self, record: Any) -> Any:
        if self.fetch_mode is FetchMode.NUM:
            return tuple(record.values()) if hasattr(record, "values") else tuple(record)
        return dict(record.items()) if hasattr(record, "items") else dict(record)


__all__ = [
    "AsyncpgConnection",
    "AsyncpgDriver",
    "DatabaseConnectionError",
    "Driver",
    "DriverConnection",
    "DriverError",
    "count_placeholders",
    "numbered_placeholders",
    "quote_literal",
]
