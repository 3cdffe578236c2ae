"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-09-14 10:20:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "domains",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("domain_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_domains_subject_id", "domains", ["subject_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("plan", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("external_customer_id", sa.String(), nullable=True),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_subject_id", "subscriptions", ["subject_id"], unique=True)

    op.create_table(
        "proxies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("domain_id", sa.String(), nullable=False),
        sa.Column("domain_name", sa.String(), nullable=False),
        sa.Column("stack_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("endpoint_url", sa.String(), nullable=True),
        sa.Column("edge_handle_ref", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Linearizes concurrent creates for one domain at the store level.
        sa.UniqueConstraint("subject_id", "domain_id", name="uq_proxies_subject_domain"),
        sa.UniqueConstraint("stack_name", name="uq_proxies_stack_name"),
    )
    op.create_index("ix_proxies_subject_status", "proxies", ["subject_id", "status"])

    op.create_table(
        "provision_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("domain_id", sa.String(), nullable=False),
        sa.Column("proxy_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("level", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_provision_logs_domain_created", "provision_logs", ["domain_id", "created_at"])
    op.create_index("ix_provision_logs_correlation_id", "provision_logs", ["correlation_id"])


def downgrade() -> None:
    op.drop_index("ix_provision_logs_correlation_id", table_name="provision_logs")
    op.drop_index("ix_provision_logs_domain_created", table_name="provision_logs")
    op.drop_table("provision_logs")
    op.drop_index("ix_proxies_subject_status", table_name="proxies")
    op.drop_table("proxies")
    op.drop_index("ix_subscriptions_subject_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_domains_subject_id", table_name="domains")
    op.drop_table("domains")
