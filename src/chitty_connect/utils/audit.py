"""Structured audit trail for gateway authentication, sessions and tool calls.

Entries are written as JSON lines to a file and/or stdout. Client identifiers
and credentials are masked before they are written.
"""

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from chitty_connect.utils.logging import mask_sensitive

logger = logging.getLogger("chitty-connect.utils.audit")


class AuditAction(str, Enum):
    """Audited gateway events."""

    # Authentication
    AUTHENTICATION_SUCCESS = "authentication_success"
    AUTHENTICATION_FAILURE = "authentication_failure"
    TOKEN_ISSUED = "token_issued"
    CLIENT_REGISTERED = "client_registered"
    SESSION_CREATED = "session_created"
    SESSION_TERMINATED = "session_terminated"

    # Tools
    TOOL_EXECUTED = "tool_executed"
    TOOL_DENIED = "tool_denied"
    TOOL_ERROR = "tool_error"

    # System
    SERVER_STARTED = "server_started"
    SERVER_STOPPED = "server_stopped"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"
    ERROR = "error"


_CATEGORIES = {
    "authentication": ("authentication", "token", "client", "session"),
    "tool_execution": ("tool",),
    "system": ("server",),
}


@dataclass
class AuditLogEntry:
    """One audit record."""

    timestamp: str  # ISO 8601, UTC
    action: str
    result: str = AuditResult.SUCCESS.value
    action_category: Optional[str] = None

    # Caller
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    auth_method: Optional[str] = None  # "api_key" or "oauth"
    user_ip: Optional[str] = None
    session_id: Optional[str] = None

    # Tool call
    tool_name: Optional[str] = None
    duration_ms: Optional[int] = None

    error_message: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    retention_days: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def _category(action: AuditAction) -> Optional[str]:
    for category, prefixes in _CATEGORIES.items():
        if action.value.startswith(prefixes):
            return category
    return None


class AuditLogger:
    """Writes audit entries to the configured outputs."""

    def __init__(
        self,
        enabled: bool = True,
        output_file: Optional[str] = None,
        output_stdout: bool = False,
        mask_pii: bool = True,
        default_retention_days: int = 90,
    ):
        """Initialize audit logger.

        Args:
            enabled: Whether audit logging is enabled
            output_file: Path to audit log file (optional)
            output_stdout: Whether to output to stdout
            mask_pii: Whether to mask caller identifiers and credentials
            default_retention_days: Default retention period in days
        """
        self.enabled = enabled
        self.output_file = output_file
        self.output_stdout = output_stdout
        self.mask_pii = mask_pii
        self.default_retention_days = default_retention_days

        self.file_handler = None
        if self.enabled and self.output_file:
            try:
                log_path = Path(self.output_file)
                log_path.parent.mkdir(parents=True, exist_ok=True)
                self.file_handler = open(log_path, "a", encoding="utf-8")
            except OSError as e:
                logger.error(f"Failed to open audit log file {self.output_file}: {e}")

    def _mask_identifier(self, value: Optional[str]) -> Optional[str]:
        """Mask e-mail addresses and long opaque identifiers."""
        if not self.mask_pii or not value:
            return value

        if "@" in value:
            username, _, domain = value.partition("@")
            if len(username) > 2:
                username = username[:1] + "*" * (len(username) - 2) + username[-1]
            else:
                username = "*" * len(username)
            return f"{username}@{domain}"

        if len(value) > 20:
            return mask_sensitive(value)
        return value

    def _write_entry(self, entry: AuditLogEntry) -> None:
        if self.mask_pii:
            entry.user_id = self._mask_identifier(entry.user_id)
            entry.client_id = self._mask_identifier(entry.client_id)

        json_entry = entry.to_json()

        if self.file_handler:
            try:
                self.file_handler.write(json_entry + "\n")
                self.file_handler.flush()
            except OSError as e:
                logger.error(f"Failed to write audit log entry to file: {e}")

        if self.output_stdout:
            print(json_entry, file=sys.stdout, flush=True)

    def log(
        self,
        action: AuditAction,
        result: AuditResult = AuditResult.SUCCESS,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        auth_method: Optional[str] = None,
        user_ip: Optional[str] = None,
        session_id: Optional[str] = None,
        tool_name: Optional[str] = None,
        duration_ms: Optional[int] = None,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        retention_days: Optional[int] = None,
    ) -> None:
        """Log an audit event.

        Args:
            action: Type of action being audited
            result: Result of the action
            user_id: Identity the caller acts as (OAuth subject or API key name)
            client_id: OAuth client id or masked API key
            auth_method: "api_key" or "oauth"
            user_ip: Client IP address
            session_id: MCP session identifier
            tool_name: MCP tool name if applicable
            duration_ms: Call duration in milliseconds
            error_message: Error or denial reason
            metadata: Additional structured metadata
            retention_days: Retention period in days (overrides default)
        """
        if not self.enabled:
            return

        entry = AuditLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action.value,
            result=result.value,
            action_category=_category(action),
            user_id=user_id,
            client_id=client_id,
            auth_method=auth_method,
            user_ip=user_ip,
            session_id=session_id,
            tool_name=tool_name,
            duration_ms=duration_ms,
            error_message=error_message,
            metadata=metadata,
            retention_days=retention_days or self.default_retention_days,
        )
        self._write_entry(entry)

    def close(self) -> None:
        if self.file_handler:
            try:
                self.file_handler.close()
            except OSError as e:
                logger.error(f"Error closing audit log file: {e}")
            self.file_handler = None

    @classmethod
    def from_env(cls) -> "AuditLogger":
        """Create audit logger from environment variables.

        Environment variables:
        - AUDIT_LOG_ENABLED: Enable audit logging (default: true)
        - AUDIT_LOG_FILE: Path to audit log file (optional)
        - AUDIT_LOG_STDOUT: Output to stdout (default: false)
        - AUDIT_LOG_MASK_PII: Mask caller identifiers (default: true)
        - AUDIT_LOG_RETENTION_DAYS: Default retention period in days (default: 90)

        Returns:
            Configured AuditLogger instance
        """
        truthy = ("true", "1", "yes")
        return cls(
            enabled=os.getenv("AUDIT_LOG_ENABLED", "true").lower() in truthy,
            output_file=os.getenv("AUDIT_LOG_FILE"),
            output_stdout=os.getenv("AUDIT_LOG_STDOUT", "false").lower() in truthy,
            mask_pii=os.getenv("AUDIT_LOG_MASK_PII", "true").lower() in truthy,
            default_retention_days=int(os.getenv("AUDIT_LOG_RETENTION_DAYS", "90")),
        )


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> Optional[AuditLogger]:
    """Get the global audit logger instance.

    Returns:
        AuditLogger instance if enabled, None otherwise
    """
    global _audit_logger

    if _audit_logger is None:
        _audit_logger = AuditLogger.from_env()
        if _audit_logger.enabled:
            logger.info("Audit logging enabled")
            if _audit_logger.output_file:
                logger.info(f"Audit logs will be written to: {_audit_logger.output_file}")
        else:
            logger.debug("Audit logging is disabled")

    return _audit_logger if _audit_logger.enabled else None


def reset_audit_logger() -> None:
    """Close and drop the global audit logger so it is rebuilt from the environment."""
    global _audit_logger

    if _audit_logger is not None:
        _audit_logger.close()
    _audit_logger = None


def audit(action: AuditAction, result: AuditResult = AuditResult.SUCCESS, **fields: Any) -> None:
    """Log an event through the global audit logger when auditing is enabled."""
    audit_logger = get_audit_logger()
    if audit_logger is not None:
        audit_logger.log(action, result, **fields)
