"""Append-only on-disk log of failed queries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from .config import DEFAULT_ERROR_LOG

LOG = logging.getLogger(__name__)

SEPARATOR = "=" * 32


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Request details written next to each error."""

    url: str = ""
    referer: str = ""


RequestContextProvider = Callable[[], RequestContext]


class DiskErrorLogger:
    """Writes timestamped error blocks; never raises."""

    def __init__(
        self,
        path: Path = DEFAULT_ERROR_LOG,
        *,
        context_provider: RequestContextProvider | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._path = Path(path)
        self._context_provider = context_provider or RequestContext
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    def write(self, error: str) -> None:
        try:
            context = self._context_provider()
            message = (
                f"{SEPARATOR}\n"
                f"Date: {self._clock():%d-%m-%Y %H:%M:%S}\n"
                f"URL: {context.url}\n"
                f"Referer: {context.referer}\n"
                "\n"
                f"Error: {error}\n"
            )
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(message)
        except Exception:
            LOG.exception("Failed to write database error log", extra={"path": str(self._path)})


__all__ = ["DiskErrorLogger", "RequestContext", "RequestContextProvider"]
