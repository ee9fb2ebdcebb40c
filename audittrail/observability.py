"""
Observability - Operational Logs, Integrity Alerts, Metrics, Health

Two log streams with different audiences:
- Operational logs (root logger): appends, recoveries, requests
- Integrity alerts ("audittrail.integrity"): broken links, hash mismatches,
  ambiguous heads. Never propagated to root, always JSON, own sink.

Environment:
- AUDITTRAIL_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- AUDITTRAIL_LOG_FORMAT: json or text (default: json when AUDITTRAIL_PRODUCTION is set)
- AUDITTRAIL_PRODUCTION: production mode
- AUDITTRAIL_INTEGRITY_LOG: file for integrity alerts (default: stderr)

Usage:
    from audittrail.observability import get_logger, report_integrity_failure

    logger = get_logger(__name__)
    logger.info("Entry recorded", sequence_index=12, action="complaint.submit")
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

INTEGRITY_LOGGER_NAME = "audittrail.integrity"
LATENCY_SAMPLES = 1000


@dataclass(frozen=True)
class LogSettings:
    """Logging settings read from the environment."""
    level: int = logging.INFO
    json_output: bool = False
    integrity_log: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LogSettings":
        production = os.environ.get("AUDITTRAIL_PRODUCTION", "").lower() in ("1", "true", "yes")
        fmt = os.environ.get("AUDITTRAIL_LOG_FORMAT", "").lower()
        level_name = os.environ.get("AUDITTRAIL_LOG_LEVEL", "INFO").upper()
        level = logging.getLevelName(level_name)
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json_output=production if fmt not in ("json", "text") else fmt == "json",
            integrity_log=os.environ.get("AUDITTRAIL_INTEGRITY_LOG") or None,
        )


# ============================================================
# FORMATTERS
# ============================================================

# Attributes every LogRecord carries; anything else came in through `extra`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

        {"timestamp": "2024-01-15T10:30:00.000000Z", "level": "INFO",
         "logger": "audittrail.core.sequencer", "message": "Entry recorded",
         "request_id": "3f2a9c1e", "sequence_index": 12}

    Fields passed as keywords to a ContextLogger appear at top level.
    Values json cannot encode are written as str().
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            payload["request_id"] = request_id
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Single-line human-readable output with key=value fields, for development."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        request_id = request_id_var.get()
        fields = _extra_fields(record)
        if request_id:
            fields = {"request_id": request_id, **fields}
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Accepts structured fields as keyword arguments.

        logger.warning("Append failed, head unchanged", sequence_index=4, exc_info=True)
    """

    _LOGGING_KWARGS = ("exc_info", "stack_info", "stacklevel")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = dict(self.extra)
        fields.update(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._LOGGING_KWARGS]:
            fields[key] = kwargs.pop(key)
        kwargs["extra"] = fields
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """
    Install the root handler and the integrity channel.

    Call once at process startup. Replaces handlers already on the root logger.
    """
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.level)

    setup_integrity_channel(settings.integrity_log)

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# INTEGRITY ALERT CHANNEL
# ============================================================

def setup_integrity_channel(path: Optional[str] = None) -> logging.Logger:
    """
    Point the integrity alert logger at its sink.

    Writes JSON to `path`, else AUDITTRAIL_INTEGRITY_LOG, else stderr.
    Previously installed handlers are closed.
    """
    path = path or os.environ.get("AUDITTRAIL_INTEGRITY_LOG")

    alerts = logging.getLogger(INTEGRITY_LOGGER_NAME)
    alerts.propagate = False
    alerts.setLevel(logging.WARNING)
    for existing in list(alerts.handlers):
        alerts.removeHandler(existing)
        existing.close()

    handler = logging.FileHandler(path, encoding="utf-8") if path else logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    alerts.addHandler(handler)
    return alerts


def get_integrity_logger() -> ContextLogger:
    alerts = logging.getLogger(INTEGRITY_LOGGER_NAME)
    if not alerts.handlers:
        setup_integrity_channel()
    return ContextLogger(alerts, {})


def report_integrity_failure(
    kind: str,
    message: str,
    sequence_index: Optional[int] = None,
    **fields: Any,
) -> None:
    """
    Emit one integrity alert and count it.

    Args:
        kind: "continuity", "hash_mismatch", "bootstrap_ambiguity" or "unrecorded_purge"
        message: Human-readable description
        sequence_index: Where the problem was found, if known
    """
    _metrics.record_integrity_failure()
    get_integrity_logger().error(
        message,
        integrity_failure=kind,
        sequence_index=sequence_index,
        **fields,
    )


# ============================================================
# REQUEST CONTEXT
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every log line of a request with its X-Request-ID (generated when
    the client sends none), echoes the id back, and logs one line per request.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token = request_id_var.set(request_id)
        logger = get_logger("audittrail.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - started) * 1000
            _metrics.record_request(elapsed_ms, ok=False)
            logger.exception(f"{route} failed", duration_ms=round(elapsed_ms, 2))
            raise
        else:
            elapsed_ms = (time.perf_counter() - started) * 1000
            _metrics.record_request(elapsed_ms, ok=response.status_code < 500)
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{route} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(elapsed_ms, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

def _percentile(samples, fraction: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    Process-local counters and recent latency samples.

    Writers call these from many threads at once, so updates take a lock.
    """

    entries_appended: int = 0
    append_failures: int = 0
    lock_timeouts: int = 0
    verifications_run: int = 0
    integrity_failures: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    append_latencies_ms: deque = field(default_factory=lambda: deque(maxlen=LATENCY_SAMPLES))
    request_latencies_ms: deque = field(default_factory=lambda: deque(maxlen=LATENCY_SAMPLES))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self.entries_appended += 1
            self.append_latencies_ms.append(latency_ms)

    def record_append_failure(self, lock_timeout: bool = False) -> None:
        with self._lock:
            self.append_failures += 1
            self.lock_timeouts += int(lock_timeout)

    def record_verification(self) -> None:
        with self._lock:
            self.verifications_run += 1

    def record_integrity_failure(self) -> None:
        with self._lock:
            self.integrity_failures += 1

    def record_request(self, latency_ms: float, ok: bool) -> None:
        with self._lock:
            self.requests_total += 1
            self.requests_failed += int(not ok)
            self.request_latencies_ms.append(latency_ms)

    def snapshot(self) -> Dict[str, Any]:
        """Counters plus p50/p95/p99 latencies, as plain JSON-friendly values."""
        with self._lock:
            appends = list(self.append_latencies_ms)
            requests = list(self.request_latencies_ms)
            summary = {
                "entries_appended": self.entries_appended,
                "append_failures": self.append_failures,
                "lock_timeouts": self.lock_timeouts,
                "verifications_run": self.verifications_run,
                "integrity_failures": self.integrity_failures,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
            }
        for name, samples in (("append", appends), ("request", requests)):
            for label, fraction in (("p50", 0.5), ("p95", 0.95), ("p99", 0.99)):
                summary[f"{name}_latency_{label}_ms"] = _percentile(samples, fraction)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


# ============================================================
# HEALTH
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _stored_head(store):
    from .core.sequencer import ChainHead

    latest = store.latest()
    return ChainHead() if latest is None else ChainHead.from_entry(latest)


def _store_check(store, head) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "entry_count": store.count(),
        "next_sequence_index": head.next_sequence_index,
        "last_hash": head.last_hash[:16] + "...",
    }


def _chain_check(store) -> Dict[str, Any]:
    from .core.verifier import ChainVerifier

    result = ChainVerifier(store).verify()
    return {
        "status": "healthy" if result.valid else "unhealthy",
        "valid": result.valid,
        "entries_checked": result.entries_checked,
        "broken_at": result.broken_at,
    }


def check_health(trail=None, verify_chain: bool = False, store=None) -> HealthStatus:
    """
    Probe the trail, or a bare store.

    Liveness only when neither is given.

    Args:
        trail: AuditTrail to probe; its in-memory head is reported
        verify_chain: Also walk the whole chain (expensive)
        store: AuditStore to probe when there is no trail. The head is read
            from the latest stored entry, without recovery checks.
    """
    # Deferred: core modules import this one
    from .core.errors import AuditTrailError

    started = time.perf_counter()
    probes = {}
    if trail is not None:
        store = trail.store
        probes["audit_store"] = lambda: _store_check(store, trail.head)
    elif store is not None:
        probes["audit_store"] = lambda: _store_check(store, _stored_head(store))
    if store is not None and verify_chain:
        probes["chain_integrity"] = lambda: _chain_check(store)

    checks = {"liveness": {"status": "healthy"}}
    for name, probe in probes.items():
        try:
            checks[name] = probe()
        except AuditTrailError as e:
            checks[name] = {"status": "unhealthy", "error": str(e)}

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
