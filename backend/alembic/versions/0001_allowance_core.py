"""create users, accounts and ledger entries

Revision ID: 0001_allowance_core
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_allowance_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("Id", sa.Integer(), primary_key=True),
        sa.Column("Username", sa.String(length=120), nullable=False),
        sa.Column("Email", sa.String(length=254), nullable=False),
        sa.Column("PasswordHash", sa.String(length=255), nullable=False),
        sa.Column("Role", sa.String(length=20), nullable=False),
        sa.Column("ParentUserId", sa.Integer(), nullable=True),
        sa.Column("Age", sa.Integer(), nullable=True),
        sa.Column("Avatar", sa.String(length=8), nullable=True),
        sa.Column(
            "CreatedAt",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["ParentUserId"], ["users.Id"], name="fk_users_parent_user"),
    )
    op.create_index("ix_users_email", "users", ["Email"], unique=True)
    op.create_index("ix_users_parent_user_id", "users", ["ParentUserId"])

    op.create_table(
        "accounts",
        sa.Column("Id", sa.Integer(), primary_key=True),
        sa.Column("UserId", sa.Integer(), nullable=False),
        sa.Column("Kind", sa.String(length=20), nullable=False),
        sa.Column("Balance", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("SpendingLimit", sa.Numeric(12, 2), nullable=True),
        sa.Column("IsActive", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("OwnerAccountId", sa.Integer(), nullable=True),
        sa.Column("IsDeleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "CreatedAt",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "UpdatedAt",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["UserId"], ["users.Id"], name="fk_accounts_user"),
        sa.ForeignKeyConstraint(["OwnerAccountId"], ["accounts.Id"], name="fk_accounts_owner_account"),
        sa.CheckConstraint("Balance >= 0", name="ck_accounts_balance_non_negative"),
        sa.CheckConstraint("SpendingLimit IS NULL OR SpendingLimit >= 0", name="ck_accounts_limit_non_negative"),
    )
    op.create_index("ix_accounts_user_id", "accounts", ["UserId"], unique=True)
    op.create_index("ix_accounts_owner_account_id", "accounts", ["OwnerAccountId"])

    op.create_table(
        "ledger_entries",
        sa.Column("Id", sa.Integer(), primary_key=True),
        sa.Column("AccountId", sa.Integer(), nullable=False),
        sa.Column("EntryType", sa.String(length=20), nullable=False),
        sa.Column("Status", sa.String(length=20), nullable=False),
        sa.Column("Amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("BalanceBefore", sa.Numeric(12, 2), nullable=False),
        sa.Column("BalanceAfter", sa.Numeric(12, 2), nullable=False),
        sa.Column("Description", sa.String(length=500), nullable=True),
        sa.Column("ProductName", sa.String(length=200), nullable=True),
        sa.Column("DeclineReason", sa.String(length=40), nullable=True),
        sa.Column("CreatedByUserId", sa.Integer(), nullable=True),
        sa.Column(
            "CreatedAt",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["AccountId"], ["accounts.Id"], name="fk_ledger_entries_account"),
        sa.CheckConstraint("Amount > 0", name="ck_ledger_entries_amount_positive"),
    )
    op.create_index("ix_ledger_entries_account_id", "ledger_entries", ["AccountId"])
    op.create_index("ix_ledger_entries_account_id_id", "ledger_entries", ["AccountId", "Id"])


def downgrade() -> None:
    op.drop_index("ix_ledger_entries_account_id_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_account_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")

    op.drop_index("ix_accounts_owner_account_id", table_name="accounts")
    op.drop_index("ix_accounts_user_id", table_name="accounts")
    op.drop_table("accounts")

    op.drop_index("ix_users_parent_user_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
