from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from importlib import import_module
from typing import Any, Dict, Optional

from upkeep.core.runtime.settings import Settings

log = logging.getLogger("upkeep.core.observability")


class UpdateHandler:
    """Optional update handler.

    Users can pass an instance to `sync.update()` or provide a module via
    UPKEEP_HANDLER_MODULE exposing HANDLER: UpdateHandler. Hooks are called
    from worker threads; implementations must be thread-safe.
    """

    def on_sync_start(self, *, total: int, pending: int) -> None:  # pragma: no cover
        return None

    def on_entry_start(self, *, path: str, uri: str, size: int) -> None:  # pragma: no cover
        return None

    def on_entry_progress(self, *, path: str, received: int, size: int) -> None:  # pragma: no cover
        return None

    def on_entry_end(self, *, path: str, status: str, duration_ms: int, error: Optional[BaseException] = None) -> None:  # pragma: no cover
        return None

    def on_sync_end(self, *, summary: dict) -> None:  # pragma: no cover
        return None


def load_update_handler(settings: Settings) -> UpdateHandler:
    mod = settings.handler_module
    if not mod:
        return UpdateHandler()
    m = import_module(mod)
    handler = getattr(m, "HANDLER", None)
    if handler is None:
        raise AttributeError(f"{mod} must expose HANDLER")
    return handler


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dur_ms(t0: float, t1: float) -> int:
    return int((t1 - t0) * 1000)


def log_event(logger: logging.Logger, *, settings: Settings, level: int, event: str, **fields: Any) -> None:
    """Emit an event log.

    - text format: one-liner `event key=value ...`
    - json format: one JSON object per line
    """
    if settings.log_format.lower() == "json":
        payload = {"ts_ms": _now_ms(), "event": event, **fields}
        logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
        return

    # text
    parts = [event]
    for k, v in fields.items():
        parts.append(f"{k}={v}")
    logger.log(level, " ".join(parts))


@dataclass
class SyncSummary:
    platform: str
    total: int
    pending: int
    duration_ms: int
    status_counts: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "platform": self.platform,
            "total": self.total,
            "pending": self.pending,
            "duration_ms": self.duration_ms,
            "status_counts": dict(self.status_counts),
        }


class SyncObserver:
    """Collects per-entry timings of a sync run and emits an end-of-run summary."""

    def __init__(self, *, settings: Settings, logger: logging.Logger, platform: str, handler: UpdateHandler | None = None):
        self.settings = settings
        self.logger = logger
        self.platform = platform
        self.handler = handler if handler is not None else load_update_handler(settings)
        self._t0: float | None = None
        self._entry_t0: dict[str, float] = {}
        self._counts: dict[str, int] = {}
        self._total = 0
        self._pending = 0
        self._lock = threading.Lock()

    def _call(self, hook: str, **kw: Any) -> None:
        try:
            getattr(self.handler, hook)(**kw)
        except Exception:
            # Handlers must never break the sync.
            log.warning("UpdateHandler.%s failed", hook, exc_info=True)

    def sync_start(self, *, total: int, pending: int) -> None:
        self._t0 = time.perf_counter()
        self._total = total
        self._pending = pending
        log_event(self.logger, settings=self.settings, level=logging.INFO, event="sync_start", platform=self.platform, total=total, pending=pending)
        self._call("on_sync_start", total=total, pending=pending)

    def entry_start(self, *, path: str, uri: str, size: int) -> None:
        with self._lock:
            self._entry_t0[path] = time.perf_counter()
        log_event(self.logger, settings=self.settings, level=logging.INFO, event="entry_start", path=path, uri=uri, size=size)
        self._call("on_entry_start", path=path, uri=uri, size=size)

    def entry_progress(self, *, path: str, received: int, size: int) -> None:
        self._call("on_entry_progress", path=path, received=received, size=size)

    def entry_end(self, *, path: str, status: str, error: Optional[BaseException] = None) -> None:
        with self._lock:
            t0 = self._entry_t0.pop(path, None)
            self._counts[status] = self._counts.get(status, 0) + 1
        dur = _dur_ms(t0, time.perf_counter()) if t0 is not None else 0
        level = logging.WARNING if error is not None else logging.INFO
        log_event(self.logger, settings=self.settings, level=level, event="entry_end", path=path, status=status, duration_ms=dur, error=str(error) if error else None)
        self._call("on_entry_end", path=path, status=status, duration_ms=dur, error=error)

    def sync_end(self) -> SyncSummary:
        t0 = self._t0
        dur = _dur_ms(t0, time.perf_counter()) if t0 is not None else 0
        with self._lock:
            counts = dict(self._counts)
        summary = SyncSummary(platform=self.platform, total=self._total, pending=self._pending, duration_ms=dur, status_counts=counts)
        log_event(self.logger, settings=self.settings, level=logging.INFO, event="sync_summary", **summary.as_dict())
        self._call("on_sync_end", summary=summary.as_dict())
        return summary
