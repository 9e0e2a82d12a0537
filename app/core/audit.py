"""
Audit Logging for LookEscolar.

Records token resolutions, authentication failures, rate-limit decisions and
suspicious patterns. Emission is fire-and-forget: ``log_event`` never raises,
whatever happens inside a sink.

Usage:
    from app.core.audit import AuditAction, AuditSeverity, AuditLogger, FileAuditSink

    audit = AuditLogger([FileAuditSink("logs/audit")])
    await audit.log_event(
        AuditAction.TOKEN_NOT_FOUND,
        {"token": token},
        AuditSeverity.WARNING,
        ip_address="203.0.113.7",
    )

Sensitive values are masked before any sink sees them.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import urlsplit, urlunsplit
from uuid import uuid4

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Enumeration of auditable actions."""

    # Authentication
    AUTH_SUCCESS = "auth.success"
    AUTH_FAILURE = "auth.failure"

    # Token resolution
    TOKEN_RESOLVED = "token.resolved"
    TOKEN_NOT_FOUND = "token.not_found"
    TOKEN_HYDRATED = "token.hydrated"
    TOKEN_EXPIRED = "token.expired"
    SHARE_VIEW = "share.view"

    # Security Events
    RATE_LIMIT_BLOCKED = "security.rate_limit.blocked"
    RATE_LIMIT_EXCEEDED = "security.rate_limit.exceeded"
    SUSPICIOUS_ACTIVITY = "security.suspicious_activity"
    UNAUTHORIZED_ACCESS = "security.unauthorized"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_SEVERITY_RANK = {
    AuditSeverity.INFO: 0,
    AuditSeverity.WARNING: 1,
    AuditSeverity.ERROR: 2,
    AuditSeverity.CRITICAL: 3,
}

_LOG_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
    AuditSeverity.CRITICAL: logging.CRITICAL,
}

# Always at least WARNING
_WARNING_ACTIONS = frozenset({
    AuditAction.AUTH_FAILURE,
    AuditAction.RATE_LIMIT_BLOCKED,
    AuditAction.RATE_LIMIT_EXCEEDED,
    AuditAction.SUSPICIOUS_ACTIVITY,
    AuditAction.UNAUTHORIZED_ACCESS,
})


def effective_severity(action: AuditAction, severity: AuditSeverity) -> AuditSeverity:
    if action in _WARNING_ACTIONS and _SEVERITY_RANK[severity] < _SEVERITY_RANK[AuditSeverity.WARNING]:
        return AuditSeverity.WARNING
    return severity


# =============================================================================
# Masking
# =============================================================================

REDACTED = "***REDACTED***"


def mask_token(value: Any) -> str:
    """Keep the first 3 characters of a token."""
    if not isinstance(value, str) or not value:
        return "***"
    return f"{value[:3]}***"


def mask_email(value: Any) -> str:
    """Keep the first 2 characters of the local part plus the domain."""
    if not isinstance(value, str) or "@" not in value:
        return "***"
    local, _, domain = value.partition("@")
    return f"{local[:2]}***@{domain}"


def strip_query(value: Any) -> Any:
    """Drop query string and fragment from a URL (signed URLs carry secrets there)."""
    if not isinstance(value, str):
        return value
    try:
        parts = urlsplit(value)
    except ValueError:
        return "***"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


# Routes whose next path segment is an access token
TOKEN_PATH_PREFIXES = (
    "/api/public/share/",
    "/api/family/gallery/",
)

_TOKEN_PATH_RE = re.compile(
    "(" + "|".join(re.escape(prefix) for prefix in TOKEN_PATH_PREFIXES) + r")([^/?#\s]+)"
)


def mask_path_tokens(text: str) -> str:
    """
    ``/api/public/share/abcdef...`` -> ``/api/public/share/abc***``

    Works on any string that embeds such a path: a bare path, a full URL or
    a rate-limit key (``token_val:ip:ua_hash:/api/public/share/...``).
    """
    return _TOKEN_PATH_RE.sub(lambda match: match.group(1) + mask_token(match.group(2)), text)


def _mask_value(key: str, value: Any) -> Any:
    lowered = key.lower()
    if "password" in lowered or "secret" in lowered:
        return REDACTED
    if "token" in lowered and not lowered.endswith("_id"):
        if isinstance(value, (list, tuple)):
            return [mask_token(v) for v in value]
        return mask_token(value)
    if "email" in lowered:
        return mask_email(value)
    if "signedurl" in lowered.replace("_", "") or lowered.endswith("url"):
        return strip_query(value)
    return mask_sensitive(value)


def mask_sensitive(data: Any) -> Any:
    """Recursively mask sensitive fields by key name, and token paths in any string."""
    if isinstance(data, dict):
        return {key: _mask_value(str(key), value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return [mask_sensitive(item) for item in data]
    if isinstance(data, str):
        return mask_path_tokens(data)
    return data


# =============================================================================
# Entries and Sinks
# =============================================================================

class AuditEntry:
    """Represents a single audit log entry (already masked)."""

    def __init__(
        self,
        action: AuditAction,
        severity: AuditSeverity,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        path: str | None = None,
    ):
        self.id = str(uuid4())
        self.timestamp = datetime.now(timezone.utc)
        self.action = action
        self.severity = severity
        self.metadata = metadata or {}
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "severity": self.severity.value,
            "metadata": self.metadata,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "path": self.path,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class AuditSink(ABC):
    """One-way destination for audit entries."""

    name = "sink"

    @abstractmethod
    async def write(self, entry: AuditEntry) -> None:
        ...


class FileAuditSink(AuditSink):
    """JSON lines file, rotated daily."""

    name = "file"

    def __init__(self, log_dir: str | Path = "logs/audit"):
        self._log_dir = Path(log_dir)

    def _get_log_file(self) -> Path:
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._log_dir / f"audit_{date_str}.jsonl"

    async def write(self, entry: AuditEntry) -> None:
        self._log_dir.mkdir(parents=True, exist_ok=True)
        with open(self._get_log_file(), "a", encoding="utf-8") as f:
            f.write(entry.to_json() + "\n")


class DatabaseAuditSink(AuditSink):
    """
    Inserts into ``security_logs`` on its own session, so an audit row
    survives a rollback of the request that produced it.
    """

    name = "database"

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def write(self, entry: AuditEntry) -> None:
        from app.models.models import SecurityLog

        async with self._session_factory() as session:
            session.add(
                SecurityLog(
                    id=entry.id,
                    event_type=entry.action.value,
                    severity=entry.severity.value,
                    ip_address=entry.ip_address,
                    user_agent=(entry.user_agent or "")[:512] or None,
                    request_path=entry.path,
                    metadata_=entry.metadata,
                    created_at=entry.timestamp.replace(tzinfo=None),
                )
            )
            await session.commit()


class WebhookAuditSink(AuditSink):
    """Forwards entries to an external collector."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0, transport=None):
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def write(self, entry: AuditEntry) -> None:
        import httpx

        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(self._url, json=entry.to_dict(), timeout=self._timeout)
            response.raise_for_status()


# =============================================================================
# Logger
# =============================================================================

class AuditLogger:
    """Fans audit entries out to every configured sink."""

    def __init__(self, sinks: Iterable[AuditSink] | None = None):
        self._sinks: list[AuditSink] = list(sinks or [])

    @property
    def sinks(self) -> list[AuditSink]:
        return list(self._sinks)

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    async def log_event(
        self,
        action: AuditAction,
        metadata: dict[str, Any] | None = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        path: str | None = None,
    ) -> None:
        """Log an audit event. Never raises."""
        try:
            entry = AuditEntry(
                action=action,
                severity=effective_severity(action, severity),
                metadata=mask_sensitive(metadata or {}),
                ip_address=ip_address,
                user_agent=user_agent,
                path=mask_path_tokens(strip_query(path)) if path else None,
            )
        except Exception as e:
            logger.error("Failed to build audit entry for %s: %s", getattr(action, "value", action), e)
            return

        for sink in self._sinks:
            try:
                await sink.write(entry)
            except Exception as e:
                logger.error("Audit sink '%s' failed for %s: %s", sink.name, entry.action.value, e)

        logger.log(
            _LOG_LEVELS[entry.severity],
            "AUDIT: %s | severity=%s | ip=%s | path=%s",
            entry.action.value,
            entry.severity.value,
            entry.ip_address or "-",
            entry.path or "-",
        )


def build_audit_logger(settings, session_factory=None) -> AuditLogger:
    """Create the audit logger described by settings."""
    sinks: list[AuditSink] = [FileAuditSink(settings.audit_log_dir)]
    if settings.audit_to_database and session_factory is not None:
        sinks.append(DatabaseAuditSink(session_factory))
    if settings.audit_webhook_url:
        sinks.append(WebhookAuditSink(settings.audit_webhook_url))
    return AuditLogger(sinks)
