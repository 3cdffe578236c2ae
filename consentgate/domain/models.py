from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    # Microsecond timestamps keep log ordering stable within one correlation id.
    return datetime.now(timezone.utc)


# SQLite only autoincrements INTEGER primary keys; Postgres keeps BIGINT.
_AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Domain(Base):
    __tablename__ = "domains"
    __table_args__ = (
        Index("ix_domains_subject_id", "subject_id"),
    )

    # Owned by the domain CRUD surface; the provisioning core only reads it.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    subject_id: Mapped[str] = mapped_column(String)
    domain_name: Mapped[str] = mapped_column(String)
    # pending | verified | failed, set by the DNS TXT verification check.
    status: Mapped[str] = mapped_column(String, default="pending")
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    subject_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    # starter | pro | enterprise
    plan: Mapped[str] = mapped_column(String)
    # active | canceled | past_due | unpaid | incomplete_expired | ...
    status: Mapped[str] = mapped_column(String)
    external_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class Proxy(Base):
    __tablename__ = "proxies"
    __table_args__ = (
        # The store-level guard that linearizes concurrent creates for one domain.
        UniqueConstraint("subject_id", "domain_id", name="uq_proxies_subject_domain"),
        UniqueConstraint("stack_name", name="uq_proxies_stack_name"),
        Index("ix_proxies_subject_status", "subject_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    subject_id: Mapped[str] = mapped_column(String)
    domain_id: Mapped[str] = mapped_column(String)
    domain_name: Mapped[str] = mapped_column(String)
    stack_name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    # Independent of status: a disabled proxy may still have a live stack.
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Populated only while status is CREATE_COMPLETE.
    endpoint_url: Mapped[str | None] = mapped_column(String, nullable=True)
    edge_handle_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    correlation_id: Mapped[str] = mapped_column(String)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class ProvisionLog(Base):
    __tablename__ = "provision_logs"
    __table_args__ = (
        Index("ix_provision_logs_domain_created", "domain_id", "created_at"),
        Index("ix_provision_logs_correlation_id", "correlation_id"),
    )

    # Append-only; rows are never updated after insert.
    id: Mapped[int] = mapped_column(_AutoIncrementId, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String)
    domain_id: Mapped[str] = mapped_column(String)
    proxy_id: Mapped[str | None] = mapped_column(String, nullable=True)
    correlation_id: Mapped[str] = mapped_column(String)
    # info | warn | error
    level: Mapped[str] = mapped_column(String)
    # Stored only after secret redaction.
    message: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class OrphanedStack(Base):
    __tablename__ = "orphaned_stacks"
    __table_args__ = (
        Index("ix_orphaned_stacks_status_cleanup_after", "status", "cleanup_after"),
    )

    # Stacks whose local record was removed before teardown was confirmed.
    id: Mapped[int] = mapped_column(_AutoIncrementId, primary_key=True, autoincrement=True)
    stack_name: Mapped[str] = mapped_column(String, index=True)
    subject_id: Mapped[str] = mapped_column(String)
    domain_id: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    # pending | deleting | deleted | failed
    status: Mapped[str] = mapped_column(String, default="pending")
    # Null under the manual cleanup policy; the sweep ignores such rows.
    cleanup_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
