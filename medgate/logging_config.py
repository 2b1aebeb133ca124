"""
Logging configuration for MedGate.

Structured JSON logging for operations, plus a security event logger for
authentication outcomes, consent changes and access decisions. The security
log is operational telemetry; the tamper-evident record of privileged
actions is the AuditTrail.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line, suitable for log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class SecurityEventLogger:
    """
    Specialized logger for security-relevant events.

    Denials log at WARNING, administrative overrides at ERROR so they stand
    out in aggregation dashboards.
    """

    def __init__(self, name: str = "medgate.security"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs: Any) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }
        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def authentication(self, user_id: str, success: bool) -> None:
        self._log(
            logging.INFO if success else logging.WARNING,
            "AUTHENTICATION",
            user_id=user_id,
            outcome="success" if success else "failure",
            message=f"Authentication {'succeeded' if success else 'failed'} for {user_id}"
        )

    def consent_change(self, action: str, token_id: Optional[str], patient_id: str,
                       outcome: str, provider_id: Optional[str] = None) -> None:
        level = logging.INFO if outcome in ("success", "revoked") else logging.WARNING
        self._log(
            level,
            "CONSENT_CHANGE",
            action=action,
            token_id=token_id,
            patient_id=patient_id,
            provider_id=provider_id,
            outcome=outcome,
            message=f"Consent {action}: {outcome}"
        )

    def access_decision(self, decision: Dict[str, Any]) -> None:
        """Log an access decision; administrative overrides log at ERROR."""
        if decision.get("sensitivity") == "high":
            level = logging.ERROR
        elif decision.get("access_granted"):
            level = logging.INFO
        else:
            level = logging.WARNING
        self._log(
            level,
            "ACCESS_DECISION",
            provider_id=decision.get("provider_id"),
            patient_id=decision.get("patient_id"),
            resource_type=decision.get("resource_type"),
            access_level=decision.get("access_level"),
            granted=decision.get("access_granted"),
            reason=decision.get("reason"),
            message=f"Access {'granted' if decision.get('access_granted') else 'denied'}: {decision.get('reason')}"
        )

    def storage_operation(self, operation_id: str, kind: str, state: str,
                          content_id: Optional[str] = None, error_code: Optional[str] = None) -> None:
        level = logging.ERROR if error_code else logging.INFO
        self._log(
            level,
            "STORAGE_OPERATION",
            operation_id=operation_id,
            kind=kind,
            state=state,
            content_id=content_id,
            error_code=error_code,
            message=f"{kind} {operation_id} -> {state}"
        )

    def ledger_degraded(self, entry_id: str, error: str, attempts: int) -> None:
        self._log(
            logging.WARNING,
            "LEDGER_DEGRADED",
            entry_id=entry_id,
            error=error,
            attempts=attempts,
            message=f"Audit entry {entry_id} not yet committed to ledger"
        )

    def security_event(self, event: str, severity: str = "medium", **details: Any) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global security logger instance
security_log = SecurityEventLogger()
