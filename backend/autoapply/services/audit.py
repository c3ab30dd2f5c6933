"""
Audit Trail - Append-only event log per application

Every pipeline stage writes an event on entry and on outcome. Metadata is
sanitized before it is persisted: values under sensitive keys are replaced
with a fixed marker, recursively through nested mappings and lists.

Guarantees:
    - record() never raises. Audit failure must not abort the pipeline it
      observes, so persistence errors are logged, counted and dropped.
    - Events for one application are returned in timestamp order, ties
      broken by insertion order. Stages write synchronously, so this is
      stage execution order.
"""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoapply.middleware.metrics import record_audit_failure
from autoapply.models import ApplicationEvent
from autoapply.models.application import utcnow

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Matched as substrings of the normalized key, so "db_password",
# "X-Api-Key" and "refresh_token" are all caught
SENSITIVE_KEY_PARTS = (
    "password",
    "passwd",
    "apikey",
    "secret",
    "token",
    "authorization",
    "credential",
)


def _normalize_key(key: Any) -> str:
    return "".join(ch for ch in str(key).lower() if ch not in "_- ")


def is_sensitive_key(key: Any) -> bool:
    normalized = _normalize_key(key)
    return any(part in normalized for part in SENSITIVE_KEY_PARTS)


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize(value)
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_value(v) for v in value]
    return value


def sanitize(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Return a copy of metadata with sensitive values redacted.

    Args:
        metadata: Arbitrary string-keyed mapping (may be None)

    Returns:
        New dict; the input is not modified

    Example:
        >>> sanitize({"user": "ann", "auth": {"Password": "x"}})
        {'user': 'ann', 'auth': {'Password': '[REDACTED]'}}
    """
    if not metadata:
        return {}
    return {
        str(key): REDACTED if is_sensitive_key(key) else _sanitize_value(value)
        for key, value in metadata.items()
    }


class AuditTrail:
    """Persists ApplicationEvent rows through its own sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def record(
        self,
        application_id: str,
        kind: str,
        message: str = "",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Append one event. Never raises."""
        try:
            # Round-trip through JSON so datetimes and enums store as strings
            details = json.loads(json.dumps(sanitize(metadata), default=str))
            event = ApplicationEvent(
                application_id=application_id,
                kind=kind,
                message=message,
                details=details,
                created_at=utcnow(),
            )
            async with self.session_factory() as session:
                session.add(event)
                await session.commit()
        except Exception:
            record_audit_failure()
            logger.exception(f"Failed to record audit event '{kind}' for application {application_id}")

    async def list_for(self, application_id: str) -> List[ApplicationEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ApplicationEvent)
                .where(ApplicationEvent.application_id == application_id)
                .order_by(ApplicationEvent.created_at.asc(), ApplicationEvent.id.asc())
            )
            return list(result.scalars().all())
