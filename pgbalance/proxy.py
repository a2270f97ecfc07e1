"""Load-balanced database proxy: the single entry point for every query."""

from __future__ import annotations

import inspect
import logging
import warnings
from typing import Any, Mapping, Sequence

from .balancer import NodeSelector, WeightedNodeSelector, connection_probe
from .benchmark import Benchmark
from .config import ProxyConfig, load_config
from .connections import AsyncpgDriver, Driver, DriverConnection, DriverError, count_placeholders
from .debug import DebugRecorder, DebugRegistry, caller_chain
from .errorlog import DiskErrorLogger, RequestContextProvider
from .models import FAILURE, DestinationClass, ErrorPolicy, FetchMode, Operation, QueryInvocation
from .pool import ConnectionPool
from .router import QueryRouter

LOG = logging.getLogger(__name__)

_WRAPPED_RESULTS = frozenset({Operation.GET_ROW, Operation.GET_ONE})

_PARAMS_TEMPLATE = """Adding more parameters than query binds will not be allowed in a future release.

Query: {query}
Params: {params!r}
Bindings: {bindings}
"""


class ParameterCountWarning(DeprecationWarning):
    """Emitted when a call binds more parameters than the query has placeholders."""


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _external_stacklevel() -> int:
    """``warnings.warn`` stacklevel, seen from the calling function, of the first frame outside this module."""

    level = 1
    frame = inspect.currentframe()
    try:
        frame = frame.f_back if frame is not None else None
        while frame is not None and frame.f_code.co_filename == __file__:
            frame = frame.f_back
            level += 1
    finally:
        del frame
    return level


class DatabaseProxy:
    """Routes each operation to the master, a slave or the single server.

    Connections are opened on first use and cached per destination. Driver
    failures are written to the disk error log and, depending on the error
    policy, re-raised or turned into the ``FAILURE`` sentinel.
    """

    def __init__(
        self,
        config: ProxyConfig | None = None,
        *,
        driver: Driver | None = None,
        selector: NodeSelector | None = None,
        benchmark: Benchmark | None = None,
        error_logger: DiskErrorLogger | None = None,
        request_context: RequestContextProvider | None = None,
        error_policy: ErrorPolicy | None = None,
        debug_mode: bool | None = None,
    ) -> None:
        self._config = config or ProxyConfig()
        self._owns_driver = driver is None
        self._driver = driver or AsyncpgDriver(connect_timeout=self._config.connect_timeout)
        if selector is None:
            probe = connection_probe(self._driver) if self._config.probe_slaves else None
            selector = WeightedNodeSelector(probe)
        self._benchmark = benchmark or Benchmark()
        self._pool = ConnectionPool(self._config, self._driver, selector=selector, benchmark=self._benchmark)
        self._router = QueryRouter(single_server=self._config.single_server)
        self._recorder = DebugRecorder(
            enabled=self._config.debug_mode if debug_mode is None else debug_mode,
        )
        self._error_logger = error_logger or DiskErrorLogger(
            self._config.error_log_path,
            context_provider=request_context,
        )
        self.error_policy = error_policy or self._config.error_policy
        self._destination = self._router.default_destination()

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def benchmark(self) -> Benchmark:
        return self._benchmark

    @property
    def registry(self) -> DebugRegistry:
        """Debug data recorded so far."""

        return self._recorder.registry

    @property
    def debug_mode(self) -> bool:
        return self._recorder.enabled

    @debug_mode.setter
    def debug_mode(self, enabled: bool) -> None:
        self._recorder.enabled = enabled

    @property
    def destination(self) -> DestinationClass:
        """Destination used by the last call."""

        return self._destination

    def invoke(self, operation: Operation | str, *args: Any, tag: str | None = None) -> Any:
        """Forward ``operation`` to the connection chosen for it.

        For query operations ``args`` is ``(query, params)``; ``params`` may be a
        sequence or a mapping, and a mapping may carry a ``"tag"`` entry.
        """

        operation = Operation(operation)
        try:
            return self._invoke(operation, args, tag)
        finally:
            self._router.clear()

    def get_all(self, query: str, params: Any = None, *, tag: str | None = None) -> Any:
        return self.invoke(Operation.GET_ALL, *self._query_args(query, params), tag=tag)

    def get_col(self, query: str, params: Any = None, *, tag: str | None = None) -> Any:
        return self.invoke(Operation.GET_COL, *self._query_args(query, params), tag=tag)

    def get_row(self, query: str, params: Any = None, *, tag: str | None = None) -> Any:
        return self.invoke(Operation.GET_ROW, *self._query_args(query, params), tag=tag)

    def get_one(self, query: str, params: Any = None, *, tag: str | None = None) -> Any:
        return self.invoke(Operation.GET_ONE, *self._query_args(query, params), tag=tag)

    def execute(self, query: str, params: Any = None, *, tag: str | None = None) -> Any:
        return self.invoke(Operation.EXECUTE, *self._query_args(query, params), tag=tag)

    def insert_id(self) -> Any:
        return self.invoke(Operation.INSERT_ID)

    def affected_rows(self) -> Any:
        return self.invoke(Operation.AFFECTED_ROWS)

    def error_no(self) -> Any:
        return self.invoke(Operation.ERROR_NO)

    def error_msg(self) -> Any:
        return self.invoke(Operation.ERROR_MSG)

    def start_trans(self) -> Any:
        return self.invoke(Operation.START_TRANS)

    def complete_trans(self, auto_complete: bool = True) -> Any:
        return self.invoke(Operation.COMPLETE_TRANS, auto_complete)

    def fail_trans(self) -> Any:
        return self.invoke(Operation.FAIL_TRANS)

    def has_failed_trans(self) -> Any:
        return self.invoke(Operation.HAS_FAILED_TRANS)

    def escape_sql_string(self, value: str) -> str:
        """Quote ``value`` for embedding in a query literal."""

        return self._current_connection().escape(value)

    def next_query_in_master(self) -> None:
        """Force the next call (only one) to run on the master."""

        self._router.next_query_in_master()

    def get_caller_class(self) -> str:
        return caller_chain()

    def host(self) -> str:
        return self._current_connection().host

    def database(self) -> str | None:
        return self._current_connection().database

    def user(self) -> str | None:
        return self._current_connection().user

    def fetch_mode(self) -> FetchMode:
        return self._current_connection().fetch_mode

    def set_fetch_mode(self, mode: FetchMode | str) -> None:
        self._current_connection().fetch_mode = FetchMode(mode)

    def close_connection(self, destination: DestinationClass | None = None) -> None:
        """Close the connection; the next call to that destination reconnects."""

        self._pool.close(destination or self._destination)

    def close(self) -> None:
        """Close every connection and release the driver."""

        self._pool.close_all()
        shutdown = getattr(self._driver, "shutdown", None)
        if self._owns_driver and shutdown is not None:
            shutdown()

    def __enter__(self) -> DatabaseProxy:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _invoke(self, operation: Operation, args: Sequence[Any], tag: str | None) -> Any:
        query = ""
        params: list[Any] = []
        extra: tuple[Any, ...] = ()
        if operation.takes_query:
            if not args:
                raise TypeError(f"{operation.value}() requires query text")
            tag, raw_params = self._resolve_tag(tag, args[1] if len(args) > 1 else None)
            query = f"{args[0]}\n/* {tag} */"
            params = self._normalize_params(query, raw_params)
        else:
            tag, _ = self._resolve_tag(tag, None)
            extra = tuple(args)

        route = self._router.classify(operation, query or None)
        self._benchmark.timing_start("db_queries")
        destination, connection = self._pool.get(route.destination)
        self._destination = destination
        invocation = QueryInvocation(
            operation=operation,
            query=query,
            params=tuple(params),
            tag=tag,
            destination=destination,
            is_read=route.is_read,
            extra_args=extra,
        )

        try:
            result = self._dispatch(operation, connection, destination, query, params, extra)
        except DriverError as exc:
            invocation.error = str(exc)
            result = FAILURE
            self._error_logger.write(invocation.error)
            LOG.error(
                "Database query failed",
                extra={"tag": tag, "destination": destination.value, "error": invocation.error},
            )
            if self.error_policy is ErrorPolicy.PROPAGATE_ON_FAILURE:
                raise

        invocation.elapsed_ms = self._benchmark.timing_current_to_registry("db_queries")
        invocation.result = result
        invocation.resultset = [result] if result and operation in _WRAPPED_RESULTS else result
        self._recorder.record(invocation, connection)
        return result

    def _dispatch(
        self,
        operation: Operation,
        connection: DriverConnection,
        destination: DestinationClass,
        query: str,
        params: list[Any],
        extra: tuple[Any, ...],
    ) -> Any:
        if operation is Operation.CLOSE:
            self._pool.close(destination)
            return True
        method = getattr(connection, operation.value)
        if operation.takes_query:
            return method(query, params) if params else method(query)
        return method(*extra)

    def _current_connection(self) -> DriverConnection:
        destination, connection = self._pool.get(
            self._destination,
            force_master=self._router.sticky_master,
        )
        self._destination = destination
        return connection

    def _resolve_tag(self, tag: str | None, raw_params: Any) -> tuple[str, Any]:
        if isinstance(raw_params, Mapping) and "tag" in raw_params:
            raw_params = dict(raw_params)
            supplied = raw_params.pop("tag")
            if tag is None:
                tag = str(supplied)
        if tag is None:
            tag = f"Query from {type(self).__name__} ({self._method_name()})"
        # '?' would be taken for a placeholder.
        return tag.replace("?", ""), raw_params

    def _method_name(self) -> str:
        frames = []
        frame = inspect.currentframe()
        try:
            while frame is not None:
                frames.append(frame)
                frame = frame.f_back
            for step in reversed(frames):
                if step.f_locals.get("self") is self:
                    return step.f_code.co_name
        finally:
            del frame
            frames.clear()
        return "undefined"

    @staticmethod
    def _normalize_params(query: str, raw_params: Any) -> list[Any]:
        if raw_params is None:
            return []
        if isinstance(raw_params, Mapping):
            params = list(raw_params.values())
        elif isinstance(raw_params, (str, bytes)):
            params = [raw_params]
        else:
            params = list(raw_params)
        if not params:
            return []
        if _is_sequence(params[0]):
            params = list(params[0])

        bindings = count_placeholders(query)
        if len(params) > bindings:
            LOG.warning(
                "Truncating bound parameters to the query placeholder count",
                extra={"params": len(params), "bindings": bindings},
            )
            warnings.warn(
                _PARAMS_TEMPLATE.format(query=query, params=params, bindings=bindings),
                ParameterCountWarning,
                stacklevel=_external_stacklevel(),
            )
            params = params[:bindings]
        return params

    @staticmethod
    def _query_args(query: str, params: Any) -> tuple[Any, ...]:
        return (query,) if params is None else (query, params)


_INSTANCE: DatabaseProxy | None = None


def get_instance() -> DatabaseProxy:
    """Process-wide proxy built from the on-disk configuration."""

    global _INSTANCE
    if _INSTANCE is None:
        _INSTANCE = DatabaseProxy(load_config())
    return _INSTANCE


def reset_instance() -> None:
    """Close and forget the process-wide proxy."""

    global _INSTANCE
    if _INSTANCE is not None:
        _INSTANCE.close()
    _INSTANCE = None


__all__ = [
    "DatabaseProxy",
    "ParameterCountWarning",
    "get_instance",
    "reset_instance",
]
