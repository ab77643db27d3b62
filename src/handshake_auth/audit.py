"""
Audit logging for the handshake authentication engine.

Provides structured JSON logging for challenge issuance, handshake outcomes
and nonce store maintenance. Rejections are recorded by reason only; the
nonce value is never written to the audit trail.
"""

import json
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional, Union, TextIO
from dataclasses import dataclass, asdict

import structlog


class EventType(str, Enum):
    """Audit event types."""
    CHALLENGE_ISSUED = "challenge_issued"
    CHALLENGE_REJECTED = "challenge_rejected"
    HANDSHAKE_SUCCESS = "handshake_success"
    HANDSHAKE_FAILURE = "handshake_failure"
    STORAGE_ERROR = "storage_error"
    NONCES_SWEPT = "nonces_swept"
    CONFIG_LOADED = "config_loaded"


class LogLevel(str, Enum):
    """Log levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_LEVEL_ORDER = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARNING, LogLevel.ERROR, LogLevel.CRITICAL]


@dataclass
class AuditEvent:
    """Structured audit event."""
    timestamp: str
    event_type: EventType
    level: LogLevel
    message: str
    component: str
    address: Optional[str] = None
    domain: Optional[str] = None
    duration_ms: Optional[float] = None
    result: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}


class AuditLogger:
    """Thread-safe audit logger writing through structlog and an optional file."""

    def __init__(
        self,
        enabled: bool = True,
        log_level: LogLevel = LogLevel.INFO,
        log_file_path: Optional[Union[str, Path]] = None,
        log_successes: bool = True,
        log_failures: bool = True,
    ):
        """
        Initialize audit logger.

        Args:
            enabled: Enable audit logging
            log_level: Minimum log level to record
            log_file_path: Path to JSON-lines log file (None for no file logging)
            log_successes: Log successful handshakes
            log_failures: Log rejected handshakes
        """
        self.enabled = enabled
        self.log_level = LogLevel(log_level)
        self.log_file_path = Path(log_file_path) if log_file_path else None
        self.log_successes = log_successes
        self.log_failures = log_failures

        self._lock = threading.Lock()
        self._event_counts: Dict[EventType, int] = {event: 0 for event in EventType}
        self._log_file: Optional[TextIO] = None

        self._setup_structured_logger()

        if self.log_file_path and self.enabled:
            self._setup_log_file()

    def _setup_structured_logger(self) -> None:
        """Setup structlog configuration."""
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        self._logger = structlog.get_logger("handshake_auth.audit")

    def _setup_log_file(self) -> None:
        self.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._log_file = open(self.log_file_path, "a", encoding="utf-8")
        except OSError as e:
            self._logger.warning("audit_file_unavailable", path=str(self.log_file_path), error=str(e))
            self._log_file = None

    def _should_log_event(self, event_type: EventType, level: LogLevel) -> bool:
        """Check if event should be logged based on configuration."""
        if not self.enabled:
            return False

        if _LEVEL_ORDER.index(level) < _LEVEL_ORDER.index(self.log_level):
            return False

        if event_type == EventType.HANDSHAKE_SUCCESS and not self.log_successes:
            return False

        if event_type == EventType.HANDSHAKE_FAILURE and not self.log_failures:
            return False

        return True

    def log_event(self, event: AuditEvent) -> None:
        """Log an audit event."""
        if not self._should_log_event(event.event_type, event.level):
            return

        with self._lock:
            self._event_counts[event.event_type] += 1
            event_dict = event.to_dict()

            if self._log_file:
                try:
                    self._log_file.write(json.dumps(event_dict, default=str) + "\n")
                    self._log_file.flush()
                except OSError as e:
                    self._logger.warning("audit_write_failed", error=str(e))

            self._logger.info("audit_event", **event_dict)

    def _event(self, event_type: EventType, level: LogLevel, message: str, **kwargs) -> None:
        self.log_event(AuditEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event_type=event_type,
            level=level,
            message=message,
            component="handshake_engine",
            **kwargs
        ))

    def log_challenge_issued(
        self,
        domain: str,
        response_type: str,
        address: Optional[str] = None,
        duration_ms: Optional[float] = None
    ) -> None:
        """Log a challenge handed out to a client."""
        self._event(
            EventType.CHALLENGE_ISSUED, LogLevel.INFO, "Challenge issued",
            domain=domain, address=address, duration_ms=duration_ms,
            metadata={"response_type": response_type}
        )

    def log_challenge_rejected(self, field: Optional[str], detail: str) -> None:
        """Log a malformed challenge request, keeping field-level detail."""
        self._event(
            EventType.CHALLENGE_REJECTED, LogLevel.WARNING, f"Challenge request rejected: {detail}",
            result="failed", failure_reason="invalid_request",
            metadata={"field": field}
        )

    def log_handshake_success(self, address: str, domain: str, duration_ms: float) -> None:
        """Log successful handshake."""
        self._event(
            EventType.HANDSHAKE_SUCCESS, LogLevel.INFO, "Handshake successful",
            address=address, domain=domain, duration_ms=duration_ms, result="success"
        )

    def log_handshake_failure(
        self,
        failure_reason: str,
        domain: Optional[str] = None,
        duration_ms: Optional[float] = None
    ) -> None:
        """Log rejected handshake."""
        self._event(
            EventType.HANDSHAKE_FAILURE, LogLevel.WARNING, f"Handshake failed: {failure_reason}",
            domain=domain, duration_ms=duration_ms, result="failed",
            failure_reason=failure_reason
        )

    def log_storage_error(self, operation: str, error: str) -> None:
        """Log a nonce store failure."""
        self._event(
            EventType.STORAGE_ERROR, LogLevel.ERROR, f"Nonce store failure during {operation}",
            failure_reason="storage_unavailable",
            metadata={"operation": operation, "error": error}
        )

    def log_nonces_swept(self, count: int) -> None:
        """Log expired nonce cleanup."""
        self._event(
            EventType.NONCES_SWEPT, LogLevel.INFO, "Expired nonces cleaned",
            metadata={"count": count}
        )

    def log_config_loaded(self, domain: str, prevent_replay: bool) -> None:
        self._event(
            EventType.CONFIG_LOADED, LogLevel.DEBUG, "Handshake configuration loaded",
            domain=domain, metadata={"prevent_replay": prevent_replay}
        )

    def get_statistics(self) -> Dict[str, Any]:
        """Get audit logging statistics."""
        with self._lock:
            return {
                "enabled": self.enabled,
                "log_level": self.log_level.value,
                "log_file_path": str(self.log_file_path) if self.log_file_path else None,
                "event_counts": {event.value: count for event, count in self._event_counts.items()},
                "total_events": sum(self._event_counts.values())
            }

    def close(self) -> None:
        """Close audit logger and cleanup resources."""
        with self._lock:
            if self._log_file:
                self._log_file.close()
                self._log_file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# Global audit logger instance
_global_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> Optional[AuditLogger]:
    """Get the global audit logger instance."""
    return _global_audit_logger


def setup_audit_logger(
    enabled: bool = True,
    log_level: LogLevel = LogLevel.INFO,
    log_file_path: Optional[Union[str, Path]] = None,
    **kwargs
) -> AuditLogger:
    """Setup and configure the global audit logger."""
    global _global_audit_logger

    if _global_audit_logger:
        _global_audit_logger.close()

    _global_audit_logger = AuditLogger(
        enabled=enabled,
        log_level=log_level,
        log_file_path=log_file_path,
        **kwargs
    )

    return _global_audit_logger
