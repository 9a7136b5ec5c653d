"""Create accounts, two-factor, token, sign-in history and rate limit tables"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_create_auth_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("email_verified", sa.DateTime(), nullable=True),
        sa.Column("two_factor_enabled", sa.Boolean(), nullable=False),
        sa.Column("two_factor_secret", sa.String(length=64), nullable=True),
        sa.Column("last_sign_in_ip", sa.String(length=64), nullable=True),
        sa.Column("last_sign_in_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"], unique=True)

    op.create_table(
        "two_factor_backup_codes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("code_hash", sa.String(length=64), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_two_factor_backup_codes_id", "two_factor_backup_codes", ["id"])
    op.create_index(
        "ix_two_factor_backup_codes_account_id", "two_factor_backup_codes", ["account_id"]
    )
    op.create_index(
        "ix_backup_codes_account_code",
        "two_factor_backup_codes",
        ["account_id", "code_hash"],
    )

    op.create_table(
        "verification_tokens",
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("purpose", sa.String(length=32), nullable=False),
        sa.Column("expires", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("token"),
    )
    op.create_index(
        "ix_verification_tokens_identifier_purpose",
        "verification_tokens",
        ["identifier", "purpose"],
    )

    op.create_table(
        "sign_in_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("failure_reason", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sign_in_history_id", "sign_in_history", ["id"])
    op.create_index("ix_sign_in_history_account_id", "sign_in_history", ["account_id"])
    op.create_index("ix_sign_in_history_created_at", "sign_in_history", ["created_at"])
    op.create_index(
        "ix_sign_in_history_account_recent",
        "sign_in_history",
        ["account_id", "created_at"],
    )

    op.create_table(
        "rate_limit_hits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("hit_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rate_limit_hits_id", "rate_limit_hits", ["id"])
    op.create_index("ix_rate_limit_hits_key_recent", "rate_limit_hits", ["key", "hit_at"])


def downgrade() -> None:
    op.drop_index("ix_rate_limit_hits_key_recent", table_name="rate_limit_hits")
    op.drop_index("ix_rate_limit_hits_id", table_name="rate_limit_hits")
    op.drop_table("rate_limit_hits")

    op.drop_index("ix_sign_in_history_account_recent", table_name="sign_in_history")
    op.drop_index("ix_sign_in_history_created_at", table_name="sign_in_history")
    op.drop_index("ix_sign_in_history_account_id", table_name="sign_in_history")
    op.drop_index("ix_sign_in_history_id", table_name="sign_in_history")
    op.drop_table("sign_in_history")

    op.drop_index("ix_verification_tokens_identifier_purpose", table_name="verification_tokens")
    op.drop_table("verification_tokens")

    op.drop_index("ix_backup_codes_account_code", table_name="two_factor_backup_codes")
    op.drop_index("ix_two_factor_backup_codes_account_id", table_name="two_factor_backup_codes")
    op.drop_index("ix_two_factor_backup_codes_id", table_name="two_factor_backup_codes")
    op.drop_table("two_factor_backup_codes")

    op.drop_index("ix_accounts_email", table_name="accounts")
    op.drop_table("accounts")
