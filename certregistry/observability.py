"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs and the acting wallet address
- Request/response logging middleware
- Metrics collection (submission latency, indexer throughput, logins)
- Health check utilities

Configuration:
- CERTREGISTRY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CERTREGISTRY_LOG_FORMAT: json, text (default: json in production)
- CERTREGISTRY_PRODUCTION: Enable production mode

Usage:
    from certregistry.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Certificate issued", cert_hash=cert_hash, subject_id="S1")
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

if TYPE_CHECKING:
    from .core.indexer import AuditIndexer
    from .core.ledger_client import LedgerClient
    from .db.store import ReadModelStore

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_address_var: ContextVar[str] = ContextVar("actor_address", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("CERTREGISTRY_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("CERTREGISTRY_LOG_LEVEL", "INFO").upper()
    return logging.getLevelName(level_str) if level_str in (
        "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"
    ) else logging.INFO


def _use_json_logging() -> bool:
    format_str = os.environ.get("CERTREGISTRY_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_RECORD_FIELDS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2026-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "certregistry.core.certificates",
        "message": "Certificate issued",
        "request_id": "abc-123",
        "actor_address": "0x8ba1...",
        "cert_hash": "0x3b1e...",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        actor = actor_address_var.get()
        if actor:
            log_data["actor_address"] = actor

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Certificate revoked", cert_hash=h, reason="fraud")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Features:
    - Generates unique request ID for each request (or honors X-Request-ID)
    - Logs request/response with timing
    - Feeds request counts and latency into the app's MetricsCollector
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        logger = get_logger("certregistry.request")
        metrics = _metrics_for(request)
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING
            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            if metrics is not None:
                metrics.record_request(duration_ms, response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            if metrics is not None:
                metrics.record_request(duration_ms, False)
            raise

        finally:
            request_id_var.set("")
            actor_address_var.set("")


def _metrics_for(request: Request) -> Optional["MetricsCollector"]:
    container = getattr(request.app.state, "container", None)
    return container.metrics if container is not None else None


# ============================================================
# METRICS
# ============================================================

def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return round(sorted_data[min(idx, len(sorted_data) - 1)], 2)


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    Updated from request handlers and the indexer thread.
    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    submissions: int = 0
    submissions_failed: int = 0
    events_applied: int = 0
    events_duplicate: int = 0
    consistency_violations: int = 0
    requests_total: int = 0
    requests_failed: int = 0
    login_attempts: int = 0
    login_failures: int = 0

    # Histograms (simplified as bounded lists)
    submit_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    MAX_SAMPLES = 1000

    def _sample(self, samples: list, value: float) -> None:
        samples.append(value)
        if len(samples) > self.MAX_SAMPLES:
            del samples[:-self.MAX_SAMPLES]

    def record_submission(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.submissions += 1
            if not success:
                self.submissions_failed += 1
            self._sample(self.submit_latencies_ms, latency_ms)

    def record_applied(self) -> None:
        with self._lock:
            self.events_applied += 1

    def record_duplicate(self) -> None:
        with self._lock:
            self.events_duplicate += 1

    def record_violation(self) -> None:
        with self._lock:
            self.consistency_violations += 1

    def record_login(self, success: bool) -> None:
        with self._lock:
            self.login_attempts += 1
            if not success:
                self.login_failures += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self, active_sessions: Optional[int] = None) -> Dict[str, Any]:
        with self._lock:
            summary = {
                "submissions": self.submissions,
                "submissions_failed": self.submissions_failed,
                "events_applied": self.events_applied,
                "events_duplicate": self.events_duplicate,
                "consistency_violations": self.consistency_violations,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "login_attempts": self.login_attempts,
                "login_failures": self.login_failures,
                "submit_latency_p50_ms": _percentile(self.submit_latencies_ms, 0.5),
                "submit_latency_p95_ms": _percentile(self.submit_latencies_ms, 0.95),
                "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
            }
        if active_sessions is not None:
            summary["active_sessions"] = active_sessions
        return summary


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(
    store: Optional["ReadModelStore"] = None,
    ledger: Optional["LedgerClient"] = None,
    indexer: Optional["AuditIndexer"] = None,
) -> HealthStatus:
    """
    Run all health checks.

    A halted or crashed indexer makes the service unhealthy: reads would be
    stale until an operator intervenes.
    """
    start = time.perf_counter()
    checks = {"liveness": {"status": "healthy"}}
    all_healthy = True

    if store is not None:
        try:
            ok = store.ping()
            checks["read_model"] = {
                "status": "healthy" if ok else "unhealthy",
                "cursor": store.get_cursor() if ok else None,
            }
            all_healthy = all_healthy and ok
        except Exception as e:
            checks["read_model"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    head = None
    if ledger is not None:
        ok = ledger.ping()
        if ok:
            head = ledger.head_cursor()
        checks["ledger"] = {
            "status": "healthy" if ok else "unhealthy",
            "head_cursor": head,
        }
        all_healthy = all_healthy and ok

    if indexer is not None:
        status = indexer.status()
        lag = head - status.cursor if head is not None else None
        checks["indexer"] = {
            "status": "healthy" if status.healthy else "unhealthy",
            "state": status.state,
            "cursor": status.cursor,
            "lag": lag,
            "last_error": status.last_error,
        }
        if not status.healthy:
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000
    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
