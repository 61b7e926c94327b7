from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping, NoReturn
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.config import get_settings
from opsportal.core.errors import (
    ConflictError,
    IntegrationError,
    InvalidStateError,
    NotFoundError,
    PortalError,
    ProviderConfigError,
    ValidationError,
)
from opsportal.domain import events as ev
from opsportal.domain.models import (
    Service,
    WorkflowCredential,
    WorkflowInstance,
    WorkflowTemplate,
    utc_now,
)
from opsportal.domain.state import CredentialStatus, NextAction, WorkflowStatus
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.persistence.repos import entitlements as entitlements_repo
from opsportal.persistence.repos import workflows as workflows_repo
from opsportal.providers.engine.base import EngineProvider
from opsportal.providers.engine.factory import get_engine_provider
from opsportal.services import credentials as vault
from opsportal.services.entitlements import require_entitlement
from opsportal.services.events import publish
from opsportal.services.workflows.config_schema import validate_config


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, int]], Awaitable[None] | None]


@dataclass(frozen=True)
class BulkCreateResult:
    # Outcome for one service in a create_all_missing run.
    service_id: str
    service_name: str
    ok: bool
    instance_id: str | None = None
    status: str | None = None
    error: str | None = None
    error_code: str | None = None


def _timeout_s() -> float:
    return max(0.001, get_settings().engine_timeout_ms / 1000.0)


async def _handshake(call: Awaitable[Any]) -> tuple[Any, str | None]:
    # Bound every engine call; the result or the failure text, never both.
    timeout_ms = get_settings().engine_timeout_ms
    try:
        return await asyncio.wait_for(call, timeout=_timeout_s()), None
    except asyncio.TimeoutError:
        return None, f"Automation engine did not respond within {timeout_ms} ms"
    except (IntegrationError, ProviderConfigError) as exc:
        return None, exc.message


async def _load_instance(session: AsyncSession, tenant_id: str, instance_id: str) -> WorkflowInstance:
    instance = await workflows_repo.get_instance(session, tenant_id=tenant_id, instance_id=instance_id)
    if instance is None:
        raise NotFoundError("Workflow instance not found", details={"instance_id": instance_id})
    return instance


async def _service_name(session: AsyncSession, service_id: str) -> str:
    service = await catalog_repo.get_service(session, service_id)
    return service.name if service is not None else service_id


def _unconfigured(slots: list[WorkflowCredential]) -> dict[str, str]:
    errors: dict[str, str] = {}
    for slot in slots:
        if slot.status == CredentialStatus.CONFIGURED.value:
            continue
        if slot.status == CredentialStatus.PENDING.value:
            errors[slot.name] = vault.REQUIRED_MESSAGE
        else:
            errors[slot.name] = f"Credential is {slot.status}; enter a new value"
    return errors


def next_action(
    instance: WorkflowInstance | None,
    slots: list[WorkflowCredential],
    *,
    entitled: bool = True,
) -> NextAction | None:
    """Single actionable step for the current state, or None when nothing is needed.

    A missing instance maps to create; without an active entitlement the only
    step offered is contacting the administrator.
    """
    if not entitled:
        return NextAction.CONTACT_ADMINISTRATOR
    if instance is None:
        return NextAction.CREATE
    missing = bool(_unconfigured(slots))
    status = instance.status
    if status == WorkflowStatus.ACTIVE.value:
        return NextAction.CONFIGURE_CREDENTIALS if missing else None
    if instance.provisioned_at is None:
        return NextAction.RETRY_PROVISIONING
    if status == WorkflowStatus.ERROR.value and instance.is_active:
        return NextAction.RETRY_DEACTIVATION
    if missing or status == WorkflowStatus.PENDING.value:
        return NextAction.CONFIGURE_CREDENTIALS
    if status == WorkflowStatus.ERROR.value:
        return NextAction.RETRY_ACTIVATION
    return NextAction.ACTIVATE


async def _fail_provisioning(
    session: AsyncSession,
    instance: WorkflowInstance,
    failure: str,
    *,
    service_name: str,
    actor_id: str | None,
) -> NoReturn:
    # Persist the reason so the tenant can see why provisioning is stuck.
    instance.status = WorkflowStatus.ERROR.value
    instance.error_message = failure
    await session.commit()
    logger.warning("workflow_provisioning_failed instance_id=%s reason=%s", instance.id, failure)
    await publish(
        ev.ProvisioningFailed(
            tenant_id=instance.tenant_id,
            actor_id=actor_id,
            instance_id=instance.id,
            service_id=instance.service_id,
            service_name=service_name,
            error_message=failure,
        )
    )
    raise IntegrationError(failure, details={"instance_id": instance.id})


async def _provision(
    session: AsyncSession,
    instance: WorkflowInstance,
    template: WorkflowTemplate | None,
    *,
    service_name: str,
    engine: EngineProvider,
    actor_id: str | None,
) -> WorkflowInstance:
    result, failure = await _handshake(
        engine.provision(
            tenant_id=instance.tenant_id,
            service_id=instance.service_id,
            template_reference=template.external_template_id if template else None,
            instance_id=instance.id,
        )
    )
    if failure is not None:
        await _fail_provisioning(session, instance, failure, service_name=service_name, actor_id=actor_id)

    tenant_id, instance_id = instance.tenant_id, instance.id
    # Read slots before touching the row so autoflush cannot fire the reference constraint early.
    slots = await workflows_repo.list_slots(session, instance.id)
    instance.external_reference = result.external_reference
    instance.webhook_endpoint = result.webhook_url
    instance.provisioned_at = utc_now()
    instance.error_message = None
    if instance.status == WorkflowStatus.ERROR.value:
        instance.status = (
            WorkflowStatus.PENDING.value if _unconfigured(slots) else WorkflowStatus.CONFIGURED.value
        )
    try:
        await session.commit()
    except IntegrityError:
        # The engine reused a reference bound elsewhere; the committed row is reloaded and marked failed.
        await session.rollback()
        instance = await _load_instance(session, tenant_id, instance_id)
        await _fail_provisioning(
            session,
            instance,
            "Automation engine returned a reference already bound to another instance",
            service_name=service_name,
            actor_id=actor_id,
        )
    logger.info("workflow_provisioned instance_id=%s reference=%s", instance.id, instance.external_reference)
    await publish(
        ev.InstanceProvisioned(
            tenant_id=instance.tenant_id,
            actor_id=actor_id,
            instance_id=instance.id,
            service_id=instance.service_id,
            external_reference=instance.external_reference,
        )
    )
    return instance


async def create(
    session: AsyncSession,
    *,
    tenant_id: str,
    service_id: str,
    actor_id: str | None = None,
    engine: EngineProvider | None = None,
) -> WorkflowInstance:
    """Materialize the tenant's instance for a service and provision it.

    The row and its credential slots are committed before the engine is
    called. A duplicate create loses on the unique (tenant, service)
    constraint and surfaces as ConflictError. A failed handshake leaves the
    committed instance in ERROR and raises IntegrationError carrying its id.
    """
    service = await catalog_repo.get_service(session, service_id)
    if service is None:
        raise NotFoundError("Service not found", details={"service_id": service_id})
    await require_entitlement(session, tenant_id=tenant_id, service_id=service_id)
    template = await catalog_repo.get_active_template(session, service_id)

    instance = WorkflowInstance(
        id=uuid4().hex,
        tenant_id=tenant_id,
        service_id=service_id,
        template_id=template.id if template else None,
        name=f"{service.name} workflow",
        status=WorkflowStatus.PENDING.value,
        is_active=False,
        custom_config=dict(template.default_config or {}) if template else {},
        execution_count=0,
        created_by=actor_id,
    )
    required = list(template.required_credentials or []) if template else []
    try:
        session.add(instance)
        # The unique (tenant, service) constraint fires here for a concurrent duplicate.
        await session.flush()
        for position, name in enumerate(required):
            session.add(
                WorkflowCredential(
                    workflow_instance_id=instance.id,
                    name=name,
                    kind=vault.classify_kind(name),
                    status=CredentialStatus.PENDING.value,
                    position=position,
                )
            )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(
            "A workflow instance already exists for this service",
            details={"tenant_id": tenant_id, "service_id": service_id},
        ) from exc

    logger.info(
        "workflow_instance_created instance_id=%s tenant_id=%s service_id=%s slots=%s",
        instance.id,
        tenant_id,
        service_id,
        len(required),
    )
    await publish(
        ev.InstanceCreated(
            tenant_id=tenant_id,
            actor_id=actor_id,
            instance_id=instance.id,
            service_id=service_id,
            service_name=service.name,
            slot_count=len(required),
        )
    )
    return await _provision(
        session,
        instance,
        template,
        service_name=service.name,
        engine=engine or get_engine_provider(),
        actor_id=actor_id,
    )


async def retry_provisioning(
    session: AsyncSession,
    *,
    tenant_id: str,
    instance_id: str,
    actor_id: str | None = None,
    engine: EngineProvider | None = None,
) -> WorkflowInstance:
    # Operator-initiated retry; nothing retries a failed handshake automatically.
    instance = await _load_instance(session, tenant_id, instance_id)
    await require_entitlement(session, tenant_id=tenant_id, service_id=instance.service_id)
    if instance.provisioned_at is not None:
        raise InvalidStateError(
            "Workflow instance is already provisioned", details={"instance_id": instance.id}
        )
    template = await catalog_repo.get_template(session, instance.template_id) if instance.template_id else None
    return await _provision(
        session,
        instance,
        template,
        service_name=await _service_name(session, instance.service_id),
        engine=engine or get_engine_provider(),
        actor_id=actor_id,
    )


async def configure(
    session: AsyncSession,
    *,
    tenant_id: str,
    instance_id: str,
    values: Mapping[str, Any],
    actor_id: str | None = None,
) -> WorkflowInstance:
    """Fill credential slots and typed configuration fields.

    Every submitted and required field is validated before anything is
    written; the ValidationError lists all failing fields. Blank values keep
    configured slots unchanged. Non-secret values are merged into
    custom_config. PENDING and ERROR instances advance to CONFIGURED unless
    they are still running at the engine or were never provisioned.
    """
    instance = await _load_instance(session, tenant_id, instance_id)
    await require_entitlement(session, tenant_id=tenant_id, service_id=instance.service_id)
    template = await catalog_repo.get_template(session, instance.template_id) if instance.template_id else None
    schema = dict(template.config_schema or {}) if template else {}
    slots = await workflows_repo.list_slots(session, instance.id)
    slot_names = {slot.name for slot in slots}

    credential_values = {name: value for name, value in values.items() if name in slot_names}
    config_values = {name: value for name, value in values.items() if name not in slot_names}
    accepted, errors = vault.validate_slot_values(slots, credential_values)
    coerced, config_errors = validate_config(schema, config_values)
    errors.update(config_errors)
    if errors:
        raise ValidationError("Configuration validation failed", field_errors=errors)

    changed = await vault.store_values(session, tenant_id=tenant_id, slots=slots, accepted=accepted)
    merged = dict(instance.custom_config or {})
    merged.update({name: value for name, value in accepted.items() if not vault.is_sensitive(name)})
    merged.update(coerced)
    instance.custom_config = merged
    vault.settle_configured_status(instance)
    await session.commit()

    logger.info(
        "workflow_instance_configured instance_id=%s slots=%s fields=%s",
        instance.id,
        ",".join(changed),
        ",".join(sorted(coerced)),
    )
    await publish(
        ev.InstanceConfigured(
            tenant_id=tenant_id,
            actor_id=actor_id,
            instance_id=instance.id,
            service_id=instance.service_id,
            service_name=await _service_name(session, instance.service_id),
            slot_names=tuple(changed),
        )
    )
    return instance


async def activate(
    session: AsyncSession,
    *,
    tenant_id: str,
    instance_id: str,
    actor_id: str | None = None,
    engine: EngineProvider | None = None,
) -> WorkflowInstance:
    """Turn the instance on at the engine.

    Allowed from CONFIGURED, and from ERROR once all slots are configured
    (retry activation). Any slot that is not configured fails with a
    ValidationError before the engine is contacted.
    """
    instance = await _load_instance(session, tenant_id, instance_id)
    await require_entitlement(session, tenant_id=tenant_id, service_id=instance.service_id)
    if instance.status == WorkflowStatus.ACTIVE.value:
        raise InvalidStateError("Workflow instance is already active", details={"instance_id": instance.id})
    slots = await workflows_repo.list_slots(session, instance.id)
    missing = _unconfigured(slots)
    if missing:
        raise ValidationError(
            "All required credentials must be configured before activation", field_errors=missing
        )
    if instance.status not in {WorkflowStatus.CONFIGURED.value, WorkflowStatus.ERROR.value}:
        raise InvalidStateError(
            f"Cannot activate a workflow instance in status {instance.status}",
            details={"instance_id": instance.id, "status": instance.status},
        )
    if instance.provisioned_at is None:
        raise InvalidStateError(
            "Workflow instance was never provisioned; retry provisioning first",
            details={"instance_id": instance.id},
        )

    service_name = await _service_name(session, instance.service_id)
    _, failure = await _handshake(
        (engine or get_engine_provider()).set_active(
            instance_id=instance.id,
            external_reference=instance.external_reference,
            activate=True,
        )
    )
    if failure is not None:
        instance.status = WorkflowStatus.ERROR.value
        instance.is_active = False
        instance.error_message = failure
        await session.commit()
        logger.warning("workflow_activation_failed instance_id=%s reason=%s", instance.id, failure)
        await publish(
            ev.ActivationFailed(
                tenant_id=tenant_id,
                actor_id=actor_id,
                instance_id=instance.id,
                service_id=instance.service_id,
                service_name=service_name,
                error_message=failure,
            )
        )
        raise IntegrationError(failure, details={"instance_id": instance.id})

    instance.status = WorkflowStatus.ACTIVE.value
    instance.is_active = True
    instance.error_message = None
    await session.commit()
    logger.info("workflow_instance_activated instance_id=%s", instance.id)
    await publish(
        ev.InstanceActivated(
            tenant_id=tenant_id,
            actor_id=actor_id,
            instance_id=instance.id,
            service_id=instance.service_id,
            service_name=service_name,
        )
    )
    return instance


async def deactivate(
    session: AsyncSession,
    *,
    tenant_id: str,
    instance_id: str,
    actor_id: str | None = None,
    engine: EngineProvider | None = None,
) -> WorkflowInstance:
    """Turn a running instance off; credentials and configuration are kept.

    Works without an active entitlement so revoked tenants can still be shut
    down. A failed handshake leaves the instance in ERROR with is_active still
    set, since the engine may still be running it.
    """
    instance = await _load_instance(session, tenant_id, instance_id)
    if not instance.is_active:
        raise InvalidStateError(
            f"Cannot deactivate a workflow instance in status {instance.status}",
            details={"instance_id": instance.id, "status": instance.status},
        )
    service_name = await _service_name(session, instance.service_id)
    _, failure = await _handshake(
        (engine or get_engine_provider()).set_active(
            instance_id=instance.id,
            external_reference=instance.external_reference,
            activate=False,
        )
    )
    if failure is not None:
        instance.status = WorkflowStatus.ERROR.value
        instance.error_message = failure
        await session.commit()
        logger.warning("workflow_deactivation_failed instance_id=%s reason=%s", instance.id, failure)
        await publish(
            ev.ActivationFailed(
                tenant_id=tenant_id,
                actor_id=actor_id,
                instance_id=instance.id,
                service_id=instance.service_id,
                service_name=service_name,
                error_message=failure,
                activate=False,
            )
        )
        raise IntegrationError(failure, details={"instance_id": instance.id})

    instance.status = WorkflowStatus.CONFIGURED.value
    instance.is_active = False
    instance.error_message = None
    await session.commit()
    logger.info("workflow_instance_deactivated instance_id=%s", instance.id)
    await publish(
        ev.InstanceDeactivated(
            tenant_id=tenant_id,
            actor_id=actor_id,
            instance_id=instance.id,
            service_id=instance.service_id,
            service_name=service_name,
        )
    )
    return instance


async def create_all_missing(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None = None,
    on_progress: ProgressCallback | None = None,
    engine: EngineProvider | None = None,
) -> list[BulkCreateResult]:
    """Create instances for every entitled service that has none yet.

    Services are processed one at a time in catalog order. Each failure is
    recorded in its own result and the run continues with the next service.
    """
    resolved_engine = engine or get_engine_provider()
    entitlements = await entitlements_repo.list_entitlements(session, tenant_id=tenant_id, active_only=True)
    provisioned = await workflows_repo.list_provisioned_service_ids(session, tenant_id=tenant_id)
    pending: list[Service] = []
    for entitlement in entitlements:
        if entitlement.service_id in provisioned:
            continue
        service = await catalog_repo.get_service(session, entitlement.service_id)
        if service is not None and service.is_active:
            pending.append(service)
    pending.sort(key=lambda item: (item.name, item.id))
    targets = [(service.id, service.name) for service in pending]

    total = len(targets)
    results: list[BulkCreateResult] = []
    for index, (service_id, service_name) in enumerate(targets, start=1):
        try:
            instance = await create(
                session,
                tenant_id=tenant_id,
                service_id=service_id,
                actor_id=actor_id,
                engine=resolved_engine,
            )
            results.append(
                BulkCreateResult(
                    service_id=service_id,
                    service_name=service_name,
                    ok=True,
                    instance_id=instance.id,
                    status=instance.status,
                )
            )
        except PortalError as exc:
            results.append(
                BulkCreateResult(
                    service_id=service_id,
                    service_name=service_name,
                    ok=False,
                    instance_id=exc.details.get("instance_id"),
                    status=WorkflowStatus.ERROR.value if "instance_id" in exc.details else None,
                    error=exc.message,
                    error_code=exc.code,
                )
            )
        if on_progress is not None:
            outcome = on_progress({"current": index, "total": total})
            if inspect.isawaitable(outcome):
                await outcome

    logger.info(
        "workflow_bulk_create_finished tenant_id=%s total=%s failed=%s",
        tenant_id,
        total,
        sum(1 for item in results if not item.ok),
    )
    return results


async def record_execution(session: AsyncSession, *, tenant_id: str, instance_id: str) -> int:
    # Called by engine execution callbacks; concurrent callbacks never lose a count.
    count = await workflows_repo.increment_execution(
        session, tenant_id=tenant_id, instance_id=instance_id, executed_at=utc_now()
    )
    if count is None:
        await session.rollback()
        raise NotFoundError("Workflow instance not found", details={"instance_id": instance_id})
    await session.commit()
    return count


async def get_instance(session: AsyncSession, *, tenant_id: str, instance_id: str) -> WorkflowInstance:
    return await _load_instance(session, tenant_id, instance_id)


async def list_instances(session: AsyncSession, *, tenant_id: str) -> list[WorkflowInstance]:
    return await workflows_repo.list_instances(session, tenant_id=tenant_id)


async def describe_next_action(
    session: AsyncSession, *, tenant_id: str, instance: WorkflowInstance
) -> NextAction | None:
    slots = await workflows_repo.list_slots(session, instance.id)
    entitlement = await entitlements_repo.get_active_entitlement(
        session, tenant_id=tenant_id, service_id=instance.service_id
    )
    if entitlement is None and not instance.is_active:
        return NextAction.CONTACT_ADMINISTRATOR
    return next_action(instance, slots)
