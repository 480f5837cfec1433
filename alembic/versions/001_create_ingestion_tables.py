"""Create finance schema and ingestion tables.

Revision ID: 001_ingestion_tables
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_ingestion_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the finance schema and all ingestion tables."""
    op.execute("CREATE SCHEMA IF NOT EXISTS finance")

    # Create mail_integrations table
    op.create_table(
        "mail_integrations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("email_address", sa.String(255), nullable=False),
        sa.Column("encrypted_access_token", sa.Text(), nullable=False),
        sa.Column("encrypted_refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "status", sa.String(30), nullable=False, server_default="connected"
        ),
        sa.Column(
            "transactions_ingested", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "accounts_discovered", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id",
            "provider",
            "email_address",
            name="UQ_mail_integrations_user_provider_email",
        ),
        schema="finance",
    )
    op.create_index(
        "IX_mail_integrations_user_active",
        "mail_integrations",
        ["user_id", "is_active"],
        schema="finance",
    )

    # Create parsed_transactions table
    op.create_table(
        "parsed_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("mail_integration_id", sa.Integer(), nullable=False),
        sa.Column("source_message_id", sa.String(255), nullable=False),
        sa.Column("subject", sa.String(500), nullable=True),
        sa.Column("sender", sa.String(255), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.Column("amount", sa.Numeric(19, 4), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("account_fingerprint", sa.String(255), nullable=False),
        sa.Column("normalized_fingerprint", sa.String(255), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("reported_balance", sa.Numeric(19, 4), nullable=True),
        sa.Column("rule_name", sa.String(100), nullable=True),
        sa.Column("account_type", sa.String(30), nullable=True),
        sa.Column("confidence_score", sa.Numeric(5, 4), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("ledger_transaction_id", sa.Integer(), nullable=True),
        sa.Column(
            "manually_applied", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["mail_integration_id"],
            ["finance.mail_integrations.id"],
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint(
            "mail_integration_id",
            "source_message_id",
            name="UQ_parsed_transactions_integration_message",
        ),
        schema="finance",
    )
    op.create_index(
        "IX_parsed_transactions_status",
        "parsed_transactions",
        ["mail_integration_id", "status"],
        schema="finance",
    )
    op.create_index(
        "IX_parsed_transactions_fingerprint",
        "parsed_transactions",
        ["normalized_fingerprint"],
        schema="finance",
    )

    # Create discovered_accounts table
    op.create_table(
        "discovered_accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("mail_integration_id", sa.Integer(), nullable=False),
        sa.Column("institution", sa.String(200), nullable=False),
        sa.Column("account_type", sa.String(30), nullable=False, server_default="bank"),
        sa.Column("account_number_partial", sa.String(4), nullable=True),
        sa.Column("normalized_fingerprint", sa.String(255), nullable=False),
        sa.Column("inferred_opening_balance", sa.Numeric(19, 4), nullable=True),
        sa.Column("reported_balance", sa.Numeric(19, 4), nullable=True),
        sa.Column("balance_as_of", sa.DateTime(), nullable=True),
        sa.Column("confidence_score", sa.Numeric(5, 4), nullable=False),
        sa.Column("sighting_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("source_message_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("financial_account_id", sa.Integer(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["mail_integration_id"],
            ["finance.mail_integrations.id"],
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint(
            "mail_integration_id",
            "normalized_fingerprint",
            name="UQ_discovered_accounts_integration_fingerprint",
        ),
        schema="finance",
    )
    op.create_index(
        "IX_discovered_accounts_status",
        "discovered_accounts",
        ["status"],
        schema="finance",
    )

    # Create financial_accounts table
    op.create_table(
        "financial_accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("account_type", sa.String(30), nullable=False),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("institution", sa.String(200), nullable=True),
        sa.Column("account_number_partial", sa.String(4), nullable=True),
        sa.Column(
            "current_balance", sa.Numeric(19, 4), nullable=False, server_default="0"
        ),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        schema="finance",
    )
    op.create_index(
        "IX_financial_accounts_user_active",
        "financial_accounts",
        ["user_id", "is_active"],
        schema="finance",
    )

    # Create financial_account_fingerprints table
    op.create_table(
        "financial_account_fingerprints",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("financial_account_id", sa.Integer(), nullable=False),
        sa.Column("fingerprint", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["financial_account_id"],
            ["finance.financial_accounts.id"],
            ondelete="CASCADE",
        ),
        schema="finance",
    )
    op.create_index(
        "IX_financial_account_fingerprints_fingerprint",
        "financial_account_fingerprints",
        ["fingerprint"],
        schema="finance",
    )

    # Create ledger_transactions table
    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("financial_account_id", sa.Integer(), nullable=False),
        sa.Column("parsed_transaction_id", sa.Integer(), nullable=True),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("amount", sa.Numeric(19, 4), nullable=False),
        sa.Column("signed_delta", sa.Numeric(19, 4), nullable=False),
        sa.Column("balance_after", sa.Numeric(19, 4), nullable=False),
        sa.Column("kind", sa.String(10), nullable=False, server_default="apply"),
        sa.Column("supersedes_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("warning", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("reversed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["financial_account_id"],
            ["finance.financial_accounts.id"],
        ),
        sa.ForeignKeyConstraint(
            ["parsed_transaction_id"],
            ["finance.parsed_transactions.id"],
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["supersedes_id"],
            ["finance.ledger_transactions.id"],
        ),
        schema="finance",
    )
    op.create_index(
        "IX_ledger_transactions_account",
        "ledger_transactions",
        ["financial_account_id"],
        schema="finance",
    )
    op.create_index(
        "IX_ledger_transactions_parsed_active",
        "ledger_transactions",
        ["parsed_transaction_id", "is_active"],
        schema="finance",
    )


def downgrade() -> None:
    """Drop all ingestion tables and the finance schema."""
    op.drop_table("ledger_transactions", schema="finance")
    op.drop_table("financial_account_fingerprints", schema="finance")
    op.drop_table("financial_accounts", schema="finance")
    op.drop_table("discovered_accounts", schema="finance")
    op.drop_table("parsed_transactions", schema="finance")
    op.drop_table("mail_integrations", schema="finance")
    op.execute("DROP SCHEMA IF EXISTS finance")
