from __future__ import annotations

from base64 import urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime
import hashlib
import logging
import re
from typing import Any, Mapping, Protocol
from urllib.parse import urlsplit

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.config import get_settings
from opsportal.core.errors import NotFoundError, ValidationError, VaultConfigurationError
from opsportal.domain.events import CredentialStatusChanged, InstanceConfigured
from opsportal.domain.models import WorkflowCredential, WorkflowInstance, WorkflowTemplate, utc_now
from opsportal.domain.state import CredentialStatus, WorkflowStatus
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.persistence.repos import credentials as credentials_repo
from opsportal.persistence.repos import workflows as workflows_repo
from opsportal.services.entitlements import require_entitlement
from opsportal.services.events import publish


logger = logging.getLogger(__name__)

REQUIRED_MESSAGE = "This field is required"
API_KEY_MESSAGE = "API key must be at least {min_length} characters"
PHONE_MESSAGE = "Must be in E.164 format (e.g., +911234567890)"
URL_MESSAGE = "Must be a valid URL"

_SENSITIVE_FRAGMENTS = ("key", "secret", "password", "token")
_API_KEY_FRAGMENTS = ("api_key", "apikey", "api key")
_PHONE_FRAGMENTS = ("phone", "caller_id")
_E164 = re.compile(r"^\+\d{10,15}$")


@dataclass(frozen=True)
class SlotView:
    # Status-only projection of a credential slot; the value is never included.
    name: str
    kind: str
    status: str
    configured_at: datetime | None
    last_validated_at: datetime | None
    is_sensitive: bool
    instructions: str | None


def is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS)


def classify_kind(name: str) -> str:
    lowered = name.lower()
    if any(fragment in lowered for fragment in _API_KEY_FRAGMENTS):
        return "api_key"
    if any(fragment in lowered for fragment in _PHONE_FRAGMENTS):
        return "phone"
    if "url" in lowered:
        return "url"
    if is_sensitive(name):
        return "secret"
    return "text"


def is_valid_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc or parts.path) and ":" in value


def check_credential_value(name: str, value: str) -> str | None:
    """Return the field error for a non-empty credential value, if any.

    Heuristics are keyed on the slot name and applied in order; a later
    match overrides an earlier message for names that hit several rules.
    """
    lowered = name.lower()
    error: str | None = None
    min_length = get_settings().credential_api_key_min_length
    if any(fragment in lowered for fragment in _API_KEY_FRAGMENTS) and len(value) < min_length:
        error = API_KEY_MESSAGE.format(min_length=min_length)
    if any(fragment in lowered for fragment in _PHONE_FRAGMENTS) and not _E164.match(value):
        error = PHONE_MESSAGE
    if "url" in lowered and not is_valid_url(value):
        error = URL_MESSAGE
    return error


def validate_slot_values(
    slots: list[WorkflowCredential], values: Mapping[str, Any]
) -> tuple[dict[str, str], dict[str, str]]:
    """Validate submitted values against every slot of an instance.

    Returns ``(accepted, errors)``. Omitted or blank values keep a configured
    slot as-is and are an error for any slot that is not configured yet.
    """
    accepted: dict[str, str] = {}
    errors: dict[str, str] = {}
    for slot in slots:
        raw = values.get(slot.name)
        if raw is not None and not isinstance(raw, str):
            errors[slot.name] = "Must be a string"
            continue
        value = (raw or "").strip()
        if not value:
            if slot.status != CredentialStatus.CONFIGURED.value:
                errors[slot.name] = REQUIRED_MESSAGE
            continue
        problem = check_credential_value(slot.name, value)
        if problem:
            errors[slot.name] = problem
        else:
            accepted[slot.name] = value
    return accepted, errors


class SecretStore(Protocol):
    async def put(self, session: AsyncSession, *, tenant_id: str, credential_id: str, value: str) -> None:
        ...

    async def get(self, session: AsyncSession, *, tenant_id: str, credential_id: str) -> str | None:
        ...


def _build_fernet() -> Fernet:
    settings = get_settings()
    # Never fall back to plaintext storage when the vault key is missing.
    source = (settings.vault_master_key or "").strip()
    if not source:
        raise VaultConfigurationError("VAULT_MASTER_KEY is required to store credentials")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


class FernetSecretStore:
    # Encrypts values into credential_secrets, one row per slot.
    async def put(self, session: AsyncSession, *, tenant_id: str, credential_id: str, value: str) -> None:
        token = _build_fernet().encrypt(value.encode("utf-8"))
        await credentials_repo.upsert_secret(
            session,
            tenant_id=tenant_id,
            credential_id=credential_id,
            cipher_text=token.decode("utf-8"),
        )

    async def get(self, session: AsyncSession, *, tenant_id: str, credential_id: str) -> str | None:
        row = await credentials_repo.get_secret(session, tenant_id=tenant_id, credential_id=credential_id)
        if row is None:
            return None
        try:
            return _build_fernet().decrypt(row.cipher_text.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise VaultConfigurationError("Stored credential cannot be decrypted with the current key") from exc


_secret_store: SecretStore | None = None


def get_secret_store() -> SecretStore:
    global _secret_store
    if _secret_store is None:
        _secret_store = FernetSecretStore()
    return _secret_store


def set_secret_store(store: SecretStore | None) -> None:
    # Swap the backend in tests; None restores the Fernet store.
    global _secret_store
    _secret_store = store


def ensure_vault_ready() -> None:
    # Startup check for deployments that require the vault.
    settings = get_settings()
    if settings.vault_master_key_required:
        _build_fernet()


def _to_view(slot: WorkflowCredential, template: WorkflowTemplate | None) -> SlotView:
    instructions = (template.credential_instructions or {}).get(slot.name) if template else None
    return SlotView(
        name=slot.name,
        kind=slot.kind,
        status=slot.status,
        configured_at=slot.configured_at,
        last_validated_at=slot.last_validated_at,
        is_sensitive=is_sensitive(slot.name),
        instructions=instructions,
    )


async def list_slots(session: AsyncSession, *, tenant_id: str, instance_id: str) -> list[SlotView]:
    instance = await workflows_repo.get_instance(session, tenant_id=tenant_id, instance_id=instance_id)
    if instance is None:
        raise NotFoundError("Workflow instance not found", details={"instance_id": instance_id})
    template = await catalog_repo.get_template(session, instance.template_id) if instance.template_id else None
    slots = await workflows_repo.list_slots(session, instance.id)
    return [_to_view(slot, template) for slot in slots]


async def store_values(
    session: AsyncSession,
    *,
    tenant_id: str,
    slots: list[WorkflowCredential],
    accepted: Mapping[str, str],
) -> list[str]:
    # Write validated values and flip their slots to configured; caller commits.
    store = get_secret_store()
    now = utc_now()
    changed: list[str] = []
    for slot in slots:
        value = accepted.get(slot.name)
        if value is None:
            continue
        await store.put(session, tenant_id=tenant_id, credential_id=slot.id, value=value)
        slot.status = CredentialStatus.CONFIGURED.value
        slot.configured_at = now
        slot.updated_at = now
        changed.append(slot.name)
    return changed


def settle_configured_status(instance: WorkflowInstance) -> None:
    """Advance a PENDING or ERROR instance to CONFIGURED after its slots change.

    An instance that is still running at the engine (a failed deactivation)
    keeps ERROR so retry_deactivation stays visible, and one that was never
    provisioned keeps its status and the persisted failure reason.
    """
    if instance.is_active or instance.provisioned_at is None:
        return
    if instance.status in {WorkflowStatus.PENDING.value, WorkflowStatus.ERROR.value}:
        instance.status = WorkflowStatus.CONFIGURED.value
        instance.error_message = None


async def set_values(
    session: AsyncSession,
    *,
    tenant_id: str,
    instance_id: str,
    values: Mapping[str, Any],
    actor_id: str | None = None,
) -> list[str]:
    """Validate and store credential values for one instance.

    All field errors are collected before anything is written. Names that do
    not match a slot are rejected. Requires an active entitlement and moves
    the instance status the same way configuring does. Returns the names of
    updated slots.
    """
    instance = await workflows_repo.get_instance(session, tenant_id=tenant_id, instance_id=instance_id)
    if instance is None:
        raise NotFoundError("Workflow instance not found", details={"instance_id": instance_id})
    await require_entitlement(session, tenant_id=tenant_id, service_id=instance.service_id)
    slots = await workflows_repo.list_slots(session, instance.id)
    slot_names = {slot.name for slot in slots}
    accepted, errors = validate_slot_values(slots, values)
    for name in values:
        if name not in slot_names:
            errors[name] = "Unknown field"
    if errors:
        raise ValidationError("Credential validation failed", field_errors=errors)
    changed = await store_values(session, tenant_id=tenant_id, slots=slots, accepted=accepted)
    settle_configured_status(instance)
    await session.commit()
    logger.info(
        "credentials_updated instance_id=%s slots=%s status=%s", instance.id, ",".join(changed), instance.status
    )
    service = await catalog_repo.get_service(session, instance.service_id)
    await publish(
        InstanceConfigured(
            tenant_id=tenant_id,
            actor_id=actor_id,
            instance_id=instance.id,
            service_id=instance.service_id,
            service_name=service.name if service else instance.service_id,
            slot_names=tuple(changed),
        )
    )
    return changed


async def read_values(
    session: AsyncSession, *, tenant_id: str, instance_id: str
) -> dict[str, str]:
    # Internal use only: hands decrypted values to a capability provider call.
    slots = await workflows_repo.list_slots(session, instance_id)
    store = get_secret_store()
    values: dict[str, str] = {}
    for slot in slots:
        if slot.status != CredentialStatus.CONFIGURED.value:
            continue
        value = await store.get(session, tenant_id=tenant_id, credential_id=slot.id)
        if value is not None:
            values[slot.name] = value
    return values


async def mark_status(
    session: AsyncSession,
    *,
    tenant_id: str,
    instance_id: str,
    name: str,
    status: str,
    actor_id: str | None = None,
) -> WorkflowCredential:
    # Record an external verification result (e.g. a provider rejected the key).
    try:
        resolved = CredentialStatus(status)
    except ValueError as exc:
        raise ValidationError("Invalid credential status", field_errors={"status": "Unknown status"}) from exc
    if resolved == CredentialStatus.PENDING:
        raise ValidationError("Invalid credential status", field_errors={"status": "Cannot reset to pending"})
    instance = await workflows_repo.get_instance(session, tenant_id=tenant_id, instance_id=instance_id)
    if instance is None:
        raise NotFoundError("Workflow instance not found", details={"instance_id": instance_id})
    slot = await workflows_repo.get_slot(session, instance_id=instance.id, name=name)
    if slot is None:
        raise NotFoundError("Credential slot not found", details={"name": name})
    if resolved == CredentialStatus.CONFIGURED:
        # Re-confirming a slot only makes sense when a value is stored behind it.
        stored = await credentials_repo.get_secret(session, tenant_id=tenant_id, credential_id=slot.id)
        if stored is None:
            raise ValidationError("Credential has no stored value", field_errors={name: REQUIRED_MESSAGE})
    now = utc_now()
    slot.status = resolved.value
    slot.last_validated_at = now
    slot.updated_at = now
    await session.commit()
    await publish(
        CredentialStatusChanged(
            tenant_id=tenant_id,
            actor_id=actor_id,
            instance_id=instance.id,
            slot_name=name,
            status=resolved.value,
        )
    )
    return slot
