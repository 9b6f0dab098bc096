"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs and caller addresses
- Request/response logging middleware
- Metrics collection (assignments, sync retries, verifications, etc.)
- Health check utilities

Configuration:
- CREDREGISTRY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CREDREGISTRY_LOG_FORMAT: json, text (default: json in production)
- CREDREGISTRY_PRODUCTION: Enable production mode

Usage:
    from credregistry.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Credential assigned", user=user, credential_type_id=1)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Per-request logging context
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
caller_var: ContextVar[str] = ContextVar("caller", default="")

CALLER_HEADER = "X-Caller-Address"

_RESERVED_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("CREDREGISTRY_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("CREDREGISTRY_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("CREDREGISTRY_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record, structured fields merged at the top level.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "credregistry.core.assignments",
        "message": "Credential assigned",
        "request_id": "abc-123",
        "caller": "0x...",
        "user": "0x...",
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

        caller = caller_var.get()
        if caller:
            log_data["caller"] = caller

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
    """One line per record, structured fields appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_FIELDS and not key.startswith("_")
        }
        if fields:
            msg += " " + " ".join(f"{k}={v}" for k, v in fields.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Root published", merkle_root=root, leaf_count=3)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Structured logger that takes fields as keyword arguments.

    Args:
        name: Logger name (typically __name__)
    """
    logger = logging.getLogger(name)
    return ContextLogger(logger, {})


def setup_logging() -> None:
    """
    Install a single stdout handler on the root logger.

    Format and level come from CREDREGISTRY_LOG_FORMAT and CREDREGISTRY_LOG_LEVEL.
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
    Binds request id and caller address to the logging context.

    Reuses an incoming X-Request-ID or mints a short one, echoes it on the
    response, and logs every request with its status and duration.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)
        caller_var.set(request.headers.get(CALLER_HEADER, ""))

        logger = get_logger("credregistry.request")
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
            get_metrics().record_request(duration_ms, response.status_code < 500)

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
            get_metrics().record_request(duration_ms, False)
            raise

        finally:
            request_id_var.set("")
            caller_var.set("")


# ============================================================
# METRICS
# ============================================================

def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return sorted_data[min(idx, len(sorted_data) - 1)]


@dataclass
class MetricsCollector:
    """
    Registry counters and latency samples, kept in process.

    Exposed as JSON on /metrics. Samples are capped at MAX_SAMPLES.
    """

    # Counters
    credential_types_created: int = 0
    credentials_assigned: int = 0
    sync_retries: int = 0
    sync_failures: int = 0
    reconciliations: int = 0
    verifications_accepted: int = 0
    verifications_rejected: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Latency samples
    sync_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    MAX_SAMPLES = 1000

    def _sample(self, samples: list, value: float) -> None:
        samples.append(value)
        if len(samples) > self.MAX_SAMPLES:
            del samples[: len(samples) - self.MAX_SAMPLES]

    def record_type_created(self) -> None:
        with self._lock:
            self.credential_types_created += 1

    def record_assignment(self) -> None:
        with self._lock:
            self.credentials_assigned += 1

    def record_sync(self, latency_ms: float, success: bool) -> None:
        """Record one complete sync, successful or exhausted."""
        with self._lock:
            if not success:
                self.sync_failures += 1
            self._sample(self.sync_latencies_ms, latency_ms)

    def record_sync_retry(self) -> None:
        with self._lock:
            self.sync_retries += 1

    def record_reconciliation(self) -> None:
        with self._lock:
            self.reconciliations += 1

    def record_verification(self, accepted: bool) -> None:
        with self._lock:
            if accepted:
                self.verifications_accepted += 1
            else:
                self.verifications_rejected += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        with self._lock:
            return {
                "credential_types_created": self.credential_types_created,
                "credentials_assigned": self.credentials_assigned,
                "sync_retries": self.sync_retries,
                "sync_failures": self.sync_failures,
                "reconciliations": self.reconciliations,
                "verifications_accepted": self.verifications_accepted,
                "verifications_rejected": self.verifications_rejected,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "sync_latency_p50_ms": _percentile(self.sync_latencies_ms, 0.5),
                "sync_latency_p95_ms": _percentile(self.sync_latencies_ms, 0.95),
                "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide collector used when none is injected."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Outcome of check_health(): overall flag plus one entry per check."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(service=None) -> HealthStatus:
    """
    Check the ledger chain and the accumulator against the published root.

    Only a broken ledger makes the result unhealthy. Without a service,
    only liveness is reported.
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if service is not None:
        store = service.store
        try:
            head = store.get_head()
            store.verify_chain()
            checks["ledger"] = {
                "status": "healthy",
                "event_count": head.next_sequence,
                "last_hash": head.last_event_hash[:16] + "..." if head.last_event_hash else None,
            }
        except Exception as e:
            checks["ledger"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

        # Out of sync is degraded, not down: the ledger still accepts writes
        # and reconcile() repairs the accumulator.
        in_sync = service.sync.is_in_sync(service.assignments.count())
        checks["accumulator"] = {
            "status": "healthy" if in_sync else "degraded",
            "in_sync": in_sync,
            "leaf_count": service.accumulator.leaf_count,
            "merkle_root": service.accumulator.root,
            "published_root": store.get_published_root(),
        }

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
