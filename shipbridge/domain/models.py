from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite usable for local tests.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_provider_credentials_tenant_provider"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    # Static credentials (username/password or client id/secret) as vault ciphertext.
    credentials_ciphertext: Mapped[str] = mapped_column(Text)
    token_ciphertext: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Masked prefix of the current token, safe to show in logs and ops views.
    token_prefix: Mapped[str | None] = mapped_column(String, nullable=True)
    token_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", "idem_key", name="uq_idempotency_records_scope"),
        Index("ix_idempotency_records_expires_at", "expires_at"),
    )

    # Store first outcomes so retried mutations replay instead of re-calling the provider.
    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    idem_key: Mapped[str] = mapped_column(String)
    operation: Mapped[str] = mapped_column(String)
    # succeeded | failed (terminal failure marker)
    outcome: Mapped[str] = mapped_column(String)
    result_json: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    error_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        # Only first deliveries carry dedupe_hash; duplicates store NULL and never collide.
        UniqueConstraint("provider", "tenant_id", "dedupe_hash", name="uq_webhook_events_dedupe"),
        Index("ix_webhook_events_expires_at", "expires_at"),
        Index("ix_webhook_events_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str | None] = mapped_column(String, nullable=True)
    content_hash: Mapped[str] = mapped_column(String, index=True)
    dedupe_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    duplicate_of_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    signature: Mapped[str | None] = mapped_column(String, nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    # pending | processing | processed | failed | duplicate
    status: Mapped[str] = mapped_column(String, default="pending")
    payload_json: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    canonical_status: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    # Set when a processor claims the event; stale claims may be taken over.
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
