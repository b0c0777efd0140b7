"""Create central dashboard tables (Snowflake BIGINT IDs)

Revision ID: c1a0e7f2b001
Revises:
Create Date: 2026-10-18

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "c1a0e7f2b001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "identities",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("primary_email", sa.String(length=255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_identities_primary_email", "identities", ["primary_email"], unique=True
    )
    op.create_index(
        "ix_identities_stripe_customer_id", "identities", ["stripe_customer_id"], unique=False
    )

    op.create_table(
        "identity_emails",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("identity_id", sa.BigInteger(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["identity_id"], ["identities.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("email", "product_id", name="uq_identity_emails_email_product"),
    )
    op.create_index(
        "ix_identity_emails_identity_id", "identity_emails", ["identity_id"], unique=False
    )
    op.create_index("ix_identity_emails_email", "identity_emails", ["email"], unique=False)

    op.create_table(
        "products",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("app_url", sa.String(length=512), nullable=True),
        sa.Column("sync_url", sa.String(length=512), nullable=True),
        sa.Column("form_schema", sa.JSON(), nullable=True),
        sa.Column("form_webhook_url", sa.String(length=512), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "bundles",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("stripe_price_id", sa.String(length=128), nullable=False),
        sa.Column("product_ids", sa.JSON(), nullable=False),
        sa.Column("duration_type", sa.String(length=16), nullable=False),
        sa.Column("duration_value", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_bundles_slug", "bundles", ["slug"], unique=True)
    op.create_index("ix_bundles_stripe_price_id", "bundles", ["stripe_price_id"], unique=True)

    op.create_table(
        "entitlements",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("identity_id", sa.BigInteger(), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("source_app", sa.String(length=64), nullable=False),
        sa.Column("bundle_id", sa.BigInteger(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=128), nullable=True),
        sa.Column("stripe_price_id", sa.String(length=128), nullable=True),
        sa.Column("amount_paid", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["identity_id"], ["identities.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["bundle_id"], ["bundles.id"], ondelete="SET NULL"),
        sa.UniqueConstraint(
            "identity_id", "product_id", "source", "source_app", name="uq_entitlements_key"
        ),
    )
    op.create_index(
        "ix_entitlements_identity_id", "entitlements", ["identity_id"], unique=False
    )
    op.create_index("ix_entitlements_product_id", "entitlements", ["product_id"], unique=False)
    op.create_index(
        "ix_entitlements_stripe_subscription_id",
        "entitlements",
        ["stripe_subscription_id"],
        unique=False,
    )

    op.create_table(
        "claim_tokens",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("identity_id", sa.BigInteger(), nullable=False),
        sa.Column("bundle_id", sa.BigInteger(), nullable=False),
        sa.Column("purchase_email", sa.String(length=255), nullable=False),
        sa.Column("stripe_session_id", sa.String(length=128), nullable=True),
        sa.Column("claimed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["identity_id"], ["identities.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["bundle_id"], ["bundles.id"]),
    )
    op.create_index("ix_claim_tokens_token", "claim_tokens", ["token"], unique=True)
    op.create_index(
        "ix_claim_tokens_identity_id", "claim_tokens", ["identity_id"], unique=False
    )

    op.create_table(
        "product_submissions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("identity_id", sa.BigInteger(), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("claim_token_id", sa.BigInteger(), nullable=True),
        sa.Column("form_data", sa.JSON(), nullable=False),
        sa.Column("forwarded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("forward_response", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["identity_id"], ["identities.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_product_submissions_identity_id",
        "product_submissions",
        ["identity_id"],
        unique=False,
    )
    op.create_index(
        "ix_product_submissions_product_id", "product_submissions", ["product_id"], unique=False
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("identity_id", sa.BigInteger(), nullable=True),
        sa.Column("product_ids", sa.JSON(), nullable=False),
        sa.Column("admin_email", sa.String(length=255), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_identity_id", "audit_logs", ["identity_id"], unique=False)

    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_webhook_logs_event_id", "webhook_logs", ["event_id"], unique=True)


def downgrade() -> None:
    op.drop_table("webhook_logs")
    op.drop_table("audit_logs")
    op.drop_table("product_submissions")
    op.drop_table("claim_tokens")
    op.drop_table("entitlements")
    op.drop_table("bundles")
    op.drop_table("products")
    op.drop_table("identity_emails")
    op.drop_table("identities")
