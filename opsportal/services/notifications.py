from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain import events as ev
from opsportal.domain.models import Notification, Reseller, Tenant, utc_now
from opsportal.domain.state import Severity
from opsportal.persistence.db import SessionLocal
from opsportal.persistence.repos import notifications as notifications_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
    # Shape handed to notification storage for every fanned-out event.
    recipient: str
    title: str
    message: str
    severity: str
    action_url: str | None = None


def _service_url(audience: str, service_id: str) -> str:
    return f"/{audience}/services/{service_id}"


def build_messages(
    event: ev.DomainEvent, *, tenant: Tenant | None, reseller: Reseller | None
) -> list[NotificationMessage]:
    """Map a domain event to the notifications it produces.

    Tenant-facing messages go to the tenant operator; escalations that need a
    reseller's action (failed provisioning, hitting a hard limit, purchase
    requests) also go to the owning reseller.
    """
    out: list[NotificationMessage] = []

    def to_tenant(title: str, message: str, severity: Severity, url: str | None) -> None:
        if tenant is not None:
            out.append(NotificationMessage(tenant.user_id, title, message, severity.value, url))

    def to_reseller(title: str, message: str, severity: Severity, url: str | None) -> None:
        if reseller is not None:
            out.append(NotificationMessage(reseller.user_id, title, message, severity.value, url))

    tenant_name = tenant.company_name if tenant is not None else "A client"

    if isinstance(event, ev.InstanceCreated):
        to_tenant(
            "Workflow created",
            f"{event.service_name} is ready for setup. Configure its credentials to continue.",
            Severity.INFO,
            _service_url("client", event.service_id),
        )
    elif isinstance(event, ev.ProvisioningFailed):
        to_tenant(
            "Workflow provisioning failed",
            f"{event.service_name} could not be provisioned: {event.error_message}",
            Severity.ERROR,
            _service_url("client", event.service_id),
        )
        to_reseller(
            "Client provisioning failed",
            f"{tenant_name}: {event.service_name} provisioning failed: {event.error_message}",
            Severity.WARNING,
            f"/admin/clients/{event.tenant_id}",
        )
    elif isinstance(event, ev.InstanceActivated):
        to_tenant(
            "Workflow activated",
            f"{event.service_name} is now active.",
            Severity.SUCCESS,
            _service_url("client", event.service_id),
        )
    elif isinstance(event, ev.ActivationFailed):
        verb = "activated" if event.activate else "deactivated"
        to_tenant(
            "Workflow activation failed" if event.activate else "Workflow deactivation failed",
            f"{event.service_name} could not be {verb}: {event.error_message}",
            Severity.ERROR,
            _service_url("client", event.service_id),
        )
        to_reseller(
            "Client workflow error",
            f"{tenant_name}: {event.service_name} could not be {verb}: {event.error_message}",
            Severity.ERROR,
            f"/admin/clients/{event.tenant_id}",
        )
    elif isinstance(event, ev.InstanceDeactivated):
        to_tenant(
            "Workflow deactivated",
            f"{event.service_name} has been deactivated. Credentials were kept.",
            Severity.INFO,
            _service_url("client", event.service_id),
        )
    elif isinstance(event, ev.QuotaThresholdCrossed):
        percent = int(event.consumed * 100 / event.limit) if event.limit else 0
        if event.threshold == "limit":
            to_tenant(
                "Usage limit reached",
                f"{event.service_name} has reached its usage limit ({event.consumed}/{event.limit}).",
                Severity.ERROR,
                "/client/usage",
            )
            to_reseller(
                "Client reached usage limit",
                f"{tenant_name} reached the {event.service_name} limit ({event.consumed}/{event.limit}).",
                Severity.WARNING,
                f"/admin/clients/{event.tenant_id}",
            )
        else:
            to_tenant(
                "Usage warning",
                f"{event.service_name} usage is at {percent}% of the limit ({event.consumed}/{event.limit}).",
                Severity.WARNING,
                "/client/usage",
            )
    elif isinstance(event, ev.PurchaseRequestSubmitted):
        to_reseller(
            "New service request",
            f"{event.tenant_name} requested access to {event.service_name}.",
            Severity.INFO,
            "/admin/requests",
        )
    elif isinstance(event, ev.PurchaseRequestResolved):
        approved = event.status == "approved"
        to_tenant(
            "Service request approved" if approved else "Service request rejected",
            f"Your request for {event.service_name} was {event.status}.",
            Severity.SUCCESS if approved else Severity.INFO,
            _service_url("client", event.service_id),
        )
    elif isinstance(event, ev.EntitlementGranted):
        to_tenant(
            "Service enabled",
            f"You now have access to {event.service_name}.",
            Severity.SUCCESS,
            _service_url("client", event.service_id),
        )
    elif isinstance(event, ev.EntitlementRevoked):
        to_tenant(
            "Service disabled",
            f"Access to {event.service_name} has been removed.",
            Severity.WARNING,
            None,
        )
    return out


async def _load_recipients(
    session: AsyncSession, event: ev.DomainEvent
) -> tuple[Tenant | None, Reseller | None]:
    tenant = await session.get(Tenant, event.tenant_id) if event.tenant_id else None
    reseller_id = getattr(event, "reseller_id", None) or (tenant.reseller_id if tenant else None)
    reseller = await session.get(Reseller, reseller_id) if reseller_id else None
    return tenant, reseller


async def emit_notifications(event: ev.DomainEvent) -> None:
    # Event-bus subscriber; runs in its own session so it never touches the caller's transaction.
    async with SessionLocal() as session:
        try:
            tenant, reseller = await _load_recipients(session, event)
            messages = build_messages(event, tenant=tenant, reseller=reseller)
            if not messages:
                return
            for item in messages:
                session.add(
                    Notification(
                        recipient_user_id=item.recipient,
                        tenant_id=event.tenant_id,
                        event_type=event.event_type,
                        title=item.title,
                        message=item.message,
                        severity=item.severity,
                        action_url=item.action_url,
                    )
                )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("notification_write_failed event_type=%s", event.event_type, exc_info=exc)


async def list_for_user(
    session: AsyncSession, *, user_id: str, unread_only: bool = False, limit: int = 50
) -> list[Notification]:
    return await notifications_repo.list_notifications(
        session, recipient_user_id=user_id, unread_only=unread_only, limit=limit
    )


async def unread_count(session: AsyncSession, *, user_id: str) -> int:
    return await notifications_repo.count_unread(session, recipient_user_id=user_id)


async def mark_read(session: AsyncSession, *, user_id: str, notification_id: str) -> Notification | None:
    row = await notifications_repo.mark_read(
        session, recipient_user_id=user_id, notification_id=notification_id, read_at=utc_now()
    )
    if row is not None:
        await session.commit()
    return row


async def mark_all_read(session: AsyncSession, *, user_id: str) -> int:
    count = await notifications_repo.mark_all_read(session, recipient_user_id=user_id, read_at=utc_now())
    await session.commit()
    return count
