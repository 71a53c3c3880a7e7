"""
Logging configuration for the Hive signer.

Provides structured JSON logging and an audit logger for provisioning
events. Nothing logged here may contain private keys or seeds.
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

SENSITIVE_FIELDS = (
    "private_keys",
    "keys",
    "master_password",
    "seed",
    "proof",
    "wif",
    "secret",
    "password",
    "token",
    "x-signer-token",
    "authorization",
)


def sanitize_for_logging(data: Dict[str, Any], sensitive_fields=SENSITIVE_FIELDS) -> Dict[str, Any]:
    """
    Sanitize data for logging by redacting sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: Field names to redact (case-insensitive)

    Returns:
        Sanitized copy of the data
    """
    lowered = {f.lower() for f in sensitive_fields}
    result = {}
    for key, value in data.items():
        if str(key).lower() in lowered:
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One JSON object per line, suitable for log aggregation.
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
            log_data.update(sanitize_for_logging(record.extra_fields))

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for provisioning audit events.

    One method per event so call sites stay uniform and never pass key
    material by accident.
    """

    def __init__(self, name: str = "hive_signer.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
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

    def prepare_requested(self, account_name: str, issuer: str) -> None:
        self._log(
            logging.INFO,
            "PREPARE_REQUESTED",
            account_name=account_name,
            issuer=issuer,
            message=f"Preparation requested for {account_name}"
        )

    def session_created(self, session_id: str, account_name: str, expires_at: str) -> None:
        self._log(
            logging.INFO,
            "SESSION_CREATED",
            session_id=session_id,
            account_name=account_name,
            expires_at=expires_at,
            message="Keys generated and session created"
        )

    def state_transition(self, session_id: str, from_state: str, to_state: str) -> None:
        self._log(
            logging.DEBUG,
            "STATE_TRANSITION",
            session_id=session_id,
            from_state=from_state,
            to_state=to_state,
            message=f"{from_state} -> {to_state}"
        )

    def finalize_rejected(self, session_id: Optional[str], account_name: str, failure: str) -> None:
        self._log(
            logging.WARNING,
            "FINALIZE_REJECTED",
            session_id=session_id,
            account_name=account_name,
            failure=failure,
            message=f"Finalize rejected: {failure}"
        )

    def account_created(self, account_name: str, transaction_id: str, mode: str) -> None:
        self._log(
            logging.INFO,
            "ACCOUNT_CREATED",
            account_name=account_name,
            transaction_id=transaction_id,
            mode=mode,
            message=f"Account {account_name} created"
        )

    def account_claimed(self, issuer: str, transaction_id: str) -> None:
        self._log(
            logging.INFO,
            "ACCOUNT_CLAIMED",
            issuer=issuer,
            transaction_id=transaction_id,
            message="Account creation credit claimed"
        )

    def broadcast_failed(self, account_name: Optional[str], category: str, upstream: str) -> None:
        self._log(
            logging.ERROR,
            "BROADCAST_FAILED",
            account_name=account_name,
            category=category,
            upstream=upstream,
            message=f"Ledger broadcast failed: {category}"
        )

    def recovery_stored(self, account_name: str, correlation_id: str, path: str) -> None:
        self._log(
            logging.WARNING,
            "RECOVERY_STORED",
            account_name=account_name,
            correlation_id=correlation_id,
            path=path,
            message="Emergency keys stored; clean up after delivery"
        )

    def recovery_failed(self, account_name: str, operation: str, error: str) -> None:
        self._log(
            logging.ERROR,
            "RECOVERY_FAILED",
            account_name=account_name,
            operation=operation,
            error=error,
            message=f"Emergency storage {operation} failed"
        )

    def recovery_retrieved(self, account_name: str, correlation_id: str) -> None:
        self._log(
            logging.WARNING,
            "RECOVERY_RETRIEVED",
            account_name=account_name,
            correlation_id=correlation_id,
            message="Emergency keys retrieved - SENSITIVE OPERATION"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
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

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
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

    Returns:
        The request ID that was set (generated when None)
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
