from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shipbridge.core.errors import DatabaseError
from shipbridge.core.timeutils import utc_now
from shipbridge.domain.models import ProviderCredential


async def get_credential(session: AsyncSession, tenant_id: str, provider: str) -> ProviderCredential | None:
    result = await session.execute(
        select(ProviderCredential).where(
            ProviderCredential.tenant_id == tenant_id,
            ProviderCredential.provider == provider,
        )
    )
    return result.scalar_one_or_none()


async def upsert_credentials(
    session: AsyncSession,
    *,
    tenant_id: str,
    provider: str,
    credentials_ciphertext: str,
) -> ProviderCredential:
    # Replacing static credentials invalidates any token issued for the old ones.
    existing = await get_credential(session, tenant_id, provider)
    if existing is None:
        session.add(
            ProviderCredential(
                tenant_id=tenant_id,
                provider=provider,
                credentials_ciphertext=credentials_ciphertext,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            # Concurrent setup won the insert; fall through to the update path.
            await session.rollback()
        else:
            created = await get_credential(session, tenant_id, provider)
            if created is None:
                raise DatabaseError("credential insert failed unexpectedly")
            return created

    await session.execute(
        update(ProviderCredential)
        .where(
            ProviderCredential.tenant_id == tenant_id,
            ProviderCredential.provider == provider,
        )
        .values(
            credentials_ciphertext=credentials_ciphertext,
            token_ciphertext=None,
            token_prefix=None,
            token_issued_at=None,
            token_expires_at=None,
            updated_at=utc_now(),
        )
    )
    await session.commit()
    refreshed = await get_credential(session, tenant_id, provider)
    if refreshed is None:
        raise DatabaseError("credential update failed unexpectedly")
    await session.refresh(refreshed)
    return refreshed


async def store_token(
    session: AsyncSession,
    *,
    tenant_id: str,
    provider: str,
    token_ciphertext: str,
    token_prefix: str,
    issued_at: datetime,
    expires_at: datetime,
) -> None:
    # Invariant: a stored token never expires before it was issued.
    if expires_at < issued_at:
        raise ValueError("token expiry precedes issue time")
    result = await session.execute(
        update(ProviderCredential)
        .where(
            ProviderCredential.tenant_id == tenant_id,
            ProviderCredential.provider == provider,
        )
        .values(
            token_ciphertext=token_ciphertext,
            token_prefix=token_prefix,
            token_issued_at=issued_at,
            token_expires_at=expires_at,
            last_refreshed_at=utc_now(),
            updated_at=utc_now(),
        )
    )
    await session.commit()
    if not result.rowcount:
        raise DatabaseError(f"no credential record for tenant={tenant_id} provider={provider}")


async def clear_token(session: AsyncSession, *, tenant_id: str, provider: str) -> None:
    await session.execute(
        update(ProviderCredential)
        .where(
            ProviderCredential.tenant_id == tenant_id,
            ProviderCredential.provider == provider,
        )
        .values(
            token_ciphertext=None,
            token_prefix=None,
            token_issued_at=None,
            token_expires_at=None,
            updated_at=utc_now(),
        )
    )
    await session.commit()

