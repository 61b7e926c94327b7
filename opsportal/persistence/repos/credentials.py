from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import CredentialSecret
from opsportal.persistence.guards import tenant_predicate


async def get_secret(
    session: AsyncSession, *, tenant_id: str, credential_id: str
) -> CredentialSecret | None:
    result = await session.execute(
        select(CredentialSecret).where(
            tenant_predicate(CredentialSecret, tenant_id),
            CredentialSecret.credential_id == credential_id,
        )
    )
    return result.scalar_one_or_none()


async def upsert_secret(
    session: AsyncSession, *, tenant_id: str, credential_id: str, cipher_text: str
) -> CredentialSecret:
    # Replace in place; one stored value per slot.
    row = await get_secret(session, tenant_id=tenant_id, credential_id=credential_id)
    if row is None:
        row = CredentialSecret(credential_id=credential_id, tenant_id=tenant_id, cipher_text=cipher_text)
        session.add(row)
    else:
        row.cipher_text = cipher_text
    return row
