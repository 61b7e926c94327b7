from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain import events as ev
from opsportal.domain.models import AuditEvent
from opsportal.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "apikey", "authorization", "token", "secret", "password", "value"]
_REDACTED_VALUE = "[REDACTED]"
_FAILURE_EVENTS = (ev.ProvisioningFailed, ev.ActivationFailed)


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None = None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking user flows.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is not None:
        # Caller owns the transaction; the row commits or rolls back with it.
        session.add(event)
        return

    async with SessionLocal() as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            if not best_effort:
                raise
            logger.warning("audit_event_write_failed event_type=%s", event_type, exc_info=exc)


def _resource_for(event: ev.DomainEvent) -> tuple[str | None, str | None]:
    if hasattr(event, "instance_id"):
        return "workflow_instance", getattr(event, "instance_id")
    if hasattr(event, "request_id"):
        return "purchase_request", getattr(event, "request_id")
    if isinstance(event, ev.CatalogChanged):
        return event.resource_type, event.resource_id
    if hasattr(event, "service_id"):
        return "service", getattr(event, "service_id")
    return None, None


async def project_event(event: ev.DomainEvent) -> None:
    # Event-bus subscriber: persist every transition as an audit row.
    resource_type, resource_id = _resource_for(event)
    await record_event(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        actor_type="user" if event.actor_id else "system",
        actor_id=event.actor_id,
        event_type=event.event_type,
        outcome="failure" if isinstance(event, _FAILURE_EVENTS) else "success",
        resource_type=resource_type,
        resource_id=resource_id,
        metadata=event.metadata(),
        error_code="INTEGRATION_ERROR" if isinstance(event, _FAILURE_EVENTS) else None,
    )
