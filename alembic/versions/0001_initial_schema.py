"""initial schema

Tenants, clients, proposals (quotes), jobs, magic links, customer sessions,
OTP verifications and audit logs.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

PROPOSAL_STATUS = postgresql.ENUM(
    "draft", "sent", "viewed", "accepted", "deposit_paid", "selections_complete", "declined",
    name="proposal_status",
    create_type=False,
)
PRICING_TIER = postgresql.ENUM("good", "better", "best", name="pricing_tier", create_type=False)
JOB_STATUS = postgresql.ENUM(
    "deposit_paid", "selections_pending", "selections_complete", "scheduled",
    "in_progress", "on_hold", "completed", "closed", "canceled",
    name="job_status",
    create_type=False,
)


def _id() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _fk(name: str, target: str, *, nullable: bool = False, ondelete: str | None = "CASCADE") -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def upgrade() -> None:
    bind = op.get_bind()
    PROPOSAL_STATUS.create(bind, checkfirst=True)
    PRICING_TIER.create(bind, checkfirst=True)
    JOB_STATUS.create(bind, checkfirst=True)

    op.create_table(
        "tenants",
        _id(),
        sa.Column("company_name", sa.String(200), nullable=False),
        sa.Column("contact_email", sa.String(255)),
        sa.Column("contact_phone", sa.String(50)),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "contractor_settings",
        _id(),
        _fk("tenant_id", "tenants.id"),
        sa.Column("deposit_percent", sa.Integer, nullable=False, server_default="50"),
        sa.Column("portal_duration_days", sa.Integer, nullable=False, server_default="14"),
        sa.Column("magic_link_expiry_days", sa.Integer, nullable=False, server_default="7"),
        sa.Column("notification_email", sa.String(255)),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", name="uq_contractor_settings_tenant"),
    )

    op.create_table(
        "clients",
        _id(),
        _fk("tenant_id", "tenants.id"),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(50)),
        sa.Column("address", sa.Text),
        *_timestamps(),
    )
    op.create_index("ix_clients_tenant_id", "clients", ["tenant_id"])

    op.create_table(
        "quotes",
        _id(),
        _fk("tenant_id", "tenants.id"),
        _fk("client_id", "clients.id"),
        sa.Column("quote_number", sa.String(50), nullable=False),
        sa.Column("status", PROPOSAL_STATUS, nullable=False, server_default="draft"),
        sa.Column("customer_name", sa.String(200), nullable=False),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("customer_phone", sa.String(50)),
        sa.Column("customer_address", sa.Text),
        sa.Column("job_type", sa.String(100)),
        sa.Column("base_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("selected_tier", PRICING_TIER),
        sa.Column("tier_pricing", postgresql.JSONB),
        sa.Column("deposit_amount", sa.Numeric(12, 2)),
        sa.Column("valid_until", sa.DateTime(timezone=True)),
        sa.Column("payment_intent_id", sa.String(255)),
        sa.Column("deposit_transaction_id", sa.String(255), unique=True),
        sa.Column("deposit_payment_method", sa.String(50)),
        sa.Column("deposit_verified_at", sa.DateTime(timezone=True)),
        sa.Column("portal_open", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("portal_opened_at", sa.DateTime(timezone=True)),
        sa.Column("portal_closed_at", sa.DateTime(timezone=True)),
        sa.Column("selections_completed_at", sa.DateTime(timezone=True)),
        sa.Column("areas", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("viewed_at", sa.DateTime(timezone=True)),
        sa.Column("accepted_at", sa.DateTime(timezone=True)),
        sa.Column("declined_at", sa.DateTime(timezone=True)),
        sa.Column("decline_reason", sa.Text),
        *_timestamps(),
    )
    op.create_index("ix_quotes_tenant_id", "quotes", ["tenant_id"])
    op.create_index("ix_quotes_client_id", "quotes", ["client_id"])

    op.create_table(
        "jobs",
        _id(),
        _fk("tenant_id", "tenants.id"),
        _fk("client_id", "clients.id", ondelete=None),
        _fk("quote_id", "quotes.id", ondelete=None),
        sa.Column("job_number", sa.String(30), nullable=False),
        sa.Column("job_name", sa.String(255), nullable=False),
        sa.Column("status", JOB_STATUS, nullable=False, server_default="deposit_paid"),
        sa.Column("customer_name", sa.String(200), nullable=False),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("customer_phone", sa.String(50)),
        sa.Column("job_address", sa.Text),
        sa.Column("job_type", sa.String(100)),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_paid", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("balance_remaining", sa.Numeric(12, 2), nullable=False),
        sa.Column("selected_tier", PRICING_TIER),
        sa.Column("customer_selections_complete", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("customer_selections_submitted_at", sa.DateTime(timezone=True)),
        sa.Column("portal_expires_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("quote_id", name="uq_jobs_quote_id"),
        sa.UniqueConstraint("tenant_id", "job_number", name="uq_jobs_tenant_number"),
    )
    op.create_index("ix_jobs_tenant_id", "jobs", ["tenant_id"])

    op.create_table(
        "magic_links",
        _id(),
        sa.Column("token", sa.String(255), nullable=False, unique=True),
        _fk("tenant_id", "tenants.id"),
        _fk("client_id", "clients.id"),
        _fk("quote_id", "quotes.id", nullable=True),
        sa.Column("purpose", sa.String(50), nullable=False, server_default="quote_view"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_single_use", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("max_uses", sa.Integer),
        sa.Column("use_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("used_at", sa.DateTime(timezone=True)),
        sa.Column("revoked_at", sa.DateTime(timezone=True)),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True)),
        sa.Column("last_accessed_ip", sa.String(45)),
        *_timestamps(),
    )
    op.create_index("ix_magic_links_client_id", "magic_links", ["client_id"])

    op.create_table(
        "customer_sessions",
        _id(),
        sa.Column("session_token", sa.Text, nullable=False, unique=True),
        _fk("tenant_id", "tenants.id"),
        _fk("client_id", "clients.id"),
        _fk("magic_link_id", "magic_links.id", nullable=True, ondelete="SET NULL"),
        sa.Column("quote_ids", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("verification_method", sa.String(20)),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True)),
        sa.Column("last_activity_at", sa.DateTime(timezone=True)),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("user_agent", sa.Text),
        sa.Column("activity_count", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_customer_sessions_client_id", "customer_sessions", ["client_id"])

    op.create_table(
        "otp_verifications",
        _id(),
        _fk("tenant_id", "tenants.id"),
        _fk("client_id", "clients.id"),
        _fk("session_id", "customer_sessions.id"),
        sa.Column("code_hash", sa.String(255), nullable=False),
        sa.Column("delivery_method", sa.String(10), nullable=False),
        sa.Column("delivery_target", sa.String(255), nullable=False),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("locked_at", sa.DateTime(timezone=True)),
        sa.Column("invalidated_at", sa.DateTime(timezone=True)),
        sa.Column("verified_ip", sa.String(45)),
        *_timestamps(),
    )
    op.create_index("ix_otp_verifications_session_id", "otp_verifications", ["session_id"])

    op.create_table(
        "audit_logs",
        _id(),
        _fk("tenant_id", "tenants.id"),
        sa.Column("client_id", postgresql.UUID(as_uuid=True)),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True)),
        sa.Column("details", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("user_agent", sa.Text),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])


def downgrade() -> None:
    for table in (
        "audit_logs",
        "otp_verifications",
        "customer_sessions",
        "magic_links",
        "jobs",
        "quotes",
        "clients",
        "contractor_settings",
        "tenants",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    JOB_STATUS.drop(bind, checkfirst=True)
    PRICING_TIER.drop(bind, checkfirst=True)
    PROPOSAL_STATUS.drop(bind, checkfirst=True)
