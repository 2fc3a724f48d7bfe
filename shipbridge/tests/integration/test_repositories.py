from __future__ import annotations

from datetime import timedelta

import pytest

from shipbridge.core.errors import DatabaseError
from shipbridge.core.timeutils import as_utc, utc_now
from shipbridge.persistence.repos import credentials as credentials_repo
from shipbridge.persistence.repos import webhook_events as webhook_repo


@pytest.mark.asyncio
async def test_replacing_credentials_clears_issued_token(session_factory) -> None:
    now = utc_now()
    async with session_factory() as session:
        await credentials_repo.upsert_credentials(
            session, tenant_id="t1", provider="bluedart", credentials_ciphertext="v1.old"
        )
        await credentials_repo.store_token(
            session,
            tenant_id="t1",
            provider="bluedart",
            token_ciphertext="v1.token",
            token_prefix="abc…",
            issued_at=now,
            expires_at=now + timedelta(hours=1),
        )
        record = await credentials_repo.upsert_credentials(
            session, tenant_id="t1", provider="bluedart", credentials_ciphertext="v1.new"
        )

    assert record.credentials_ciphertext == "v1.new"
    assert record.token_ciphertext is None
    assert record.token_expires_at is None


@pytest.mark.asyncio
async def test_store_token_enforces_expiry_after_issue(session_factory) -> None:
    now = utc_now()
    async with session_factory() as session:
        await credentials_repo.upsert_credentials(
            session, tenant_id="t1", provider="bluedart", credentials_ciphertext="v1.c"
        )
        with pytest.raises(ValueError):
            await credentials_repo.store_token(
                session,
                tenant_id="t1",
                provider="bluedart",
                token_ciphertext="v1.token",
                token_prefix="abc…",
                issued_at=now,
                expires_at=now - timedelta(seconds=1),
            )
        with pytest.raises(DatabaseError):
            await credentials_repo.store_token(
                session,
                tenant_id="t1",
                provider="delhivery",
                token_ciphertext="v1.token",
                token_prefix="abc…",
                issued_at=now,
                expires_at=now + timedelta(hours=1),
            )


@pytest.mark.asyncio
async def test_timestamps_read_back_as_utc(session_factory) -> None:
    now = utc_now()
    async with session_factory() as session:
        await credentials_repo.upsert_credentials(
            session, tenant_id="t1", provider="bluedart", credentials_ciphertext="v1.c"
        )
        await credentials_repo.store_token(
            session,
            tenant_id="t1",
            provider="bluedart",
            token_ciphertext="v1.token",
            token_prefix="abc…",
            issued_at=now,
            expires_at=now + timedelta(hours=1),
        )
    async with session_factory() as session:
        record = await credentials_repo.get_credential(session, "t1", "bluedart")

    assert as_utc(record.token_expires_at) == now + timedelta(hours=1)


@pytest.mark.asyncio
async def test_list_failed_filters_by_provider(session_factory) -> None:
    expires_at = utc_now() + timedelta(days=1)
    async with session_factory() as session:
        ids = []
        for provider, content_hash in [("delhivery", "h1"), ("bluedart", "h2"), ("delhivery", "h3")]:
            event = await webhook_repo.insert_first_delivery(
                session,
                provider=provider,
                tenant_id="t1",
                topic=None,
                content_hash=content_hash,
                signature=None,
                signature_valid=False,
                payload_json={},
                expires_at=expires_at,
            )
            ids.append(event.id)
        for event_id in ids[:2]:
            await webhook_repo.mark_failed(session, event_id, reason="UnmappedStatusError: boom")

        failed = await webhook_repo.list_failed(session, provider="delhivery")
        everything = await webhook_repo.list_failed(session)

    assert [event.id for event in failed] == [ids[0]]
    assert len(everything) == 2
