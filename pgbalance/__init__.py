"""Load-balanced PostgreSQL access proxy."""

from __future__ import annotations

__version__ = "0.1.0"

from .config import ConfigError, ProxyConfig, load_config
from .connections import DatabaseConnectionError, DriverError
from .models import FAILURE, DestinationClass, ErrorPolicy, FetchMode, Operation
from .proxy import DatabaseProxy, ParameterCountWarning, get_instance, reset_instance

__all__ = [
    "ConfigError",
    "DatabaseConnectionError",
    "DatabaseProxy",
    "DestinationClass",
    "DriverError",
    "ErrorPolicy",
    "FAILURE",
    "FetchMode",
    "Operation",
    "ParameterCountWarning",
    "ProxyConfig",
    "__version__",
    "get_instance",
    "load_config",
    "reset_instance",
]
