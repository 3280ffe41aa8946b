"""
Logging configuration for OpenTruth.

Structured JSON logging plus an audit logger for issuance, verification
and decryption events. Audit records never carry plaintext, private keys
or key shares; only digests, identities and key ids.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """One JSON object per log record."""

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


class AuditLogger:
    """
    Audit events for the certificate lifecycle.

    Issuance and verification outcomes, encryption events, and every
    key-server decision taken during a decryption attempt.
    """

    def __init__(self, name: str = "opentruth.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }
        if not self._logger.isEnabledFor(level):
            return
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

    def certificate_issued(
        self,
        artifact_hash: str,
        author: str,
        blob_id: str,
        encrypted: bool = False
    ) -> None:
        self._log(
            logging.INFO,
            "CERTIFICATE_ISSUED",
            artifact_hash=artifact_hash,
            author=author,
            blob_id=blob_id,
            encrypted=encrypted,
            message=f"Certificate issued for {artifact_hash}"
        )

    def certificate_verified(
        self,
        artifact_hash: Optional[str],
        valid: bool,
        failed_checks: Optional[list] = None
    ) -> None:
        level = logging.INFO if valid else logging.WARNING
        self._log(
            level,
            "CERTIFICATE_VERIFIED",
            artifact_hash=artifact_hash,
            valid=valid,
            failed_checks=failed_checks or [],
            message=f"Certificate verification {'passed' if valid else 'failed'}"
        )

    def encryption_performed(
        self,
        key_id: str,
        package_id: str,
        threshold: int,
        server_count: int
    ) -> None:
        self._log(
            logging.INFO,
            "ENCRYPTION_PERFORMED",
            key_id=key_id,
            package_id=package_id,
            threshold=threshold,
            server_count=server_count,
            message=f"Payload encrypted under {key_id} ({threshold}-of-{server_count})"
        )

    def decryption_attempt(
        self,
        key_id: str,
        requester: str
    ) -> None:
        self._log(
            logging.INFO,
            "DECRYPTION_ATTEMPT",
            key_id=key_id,
            requester=requester,
            message=f"Decryption requested by {requester}"
        )

    def key_share_denied(
        self,
        key_id: str,
        server_id: Optional[str],
        reason: str
    ) -> None:
        self._log(
            logging.WARNING,
            "KEY_SHARE_DENIED",
            key_id=key_id,
            server_id=server_id,
            reason=reason,
            message=f"Key server {server_id} denied share: {reason}"
        )

    def quorum_result(
        self,
        key_id: str,
        threshold: int,
        successes: int,
        denials: int,
        failures: int
    ) -> None:
        reached = successes >= threshold
        self._log(
            logging.INFO if reached else logging.WARNING,
            "QUORUM_RESULT",
            key_id=key_id,
            threshold=threshold,
            successes=successes,
            denials=denials,
            failures=failures,
            reached=reached,
            message=f"Quorum {'reached' if reached else 'not reached'}: {successes}/{threshold}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
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
    Configure root logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting
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

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request ID for the current context, generating one if needed."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


audit_log = AuditLogger()
