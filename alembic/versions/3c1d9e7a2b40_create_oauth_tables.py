"""create oauth tables

Revision ID: 3c1d9e7a2b40
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c1d9e7a2b40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "oauth_clients",
        sa.Column("client_id", sa.String(length=128), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("redirect_uris", sa.JSON(), nullable=False),
        sa.Column("allowed_scopes", sa.JSON(), nullable=False),
        sa.Column("secret_hash", sa.Text(), nullable=True),
    )

    op.create_table(
        "authorization_codes",
        sa.Column("code_hash", sa.String(length=64), primary_key=True),
        sa.Column("client_id", sa.String(length=128), nullable=False),
        sa.Column("redirect_uri", sa.Text(), nullable=False),
        sa.Column("scope", sa.String(length=1024), nullable=False, server_default=""),
        sa.Column("state", sa.Text(), nullable=True),
        sa.Column("subject", sa.String(length=320), nullable=False),
        sa.Column("issued_at", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=False),
        sa.Column("consumed_at", sa.BigInteger(), nullable=True),
    )
    op.create_index(
        "ix_authorization_codes_expires_at", "authorization_codes", ["expires_at"]
    )

    for table in ("access_tokens", "refresh_tokens"):
        columns = [
            sa.Column("token_hash", sa.String(length=64), primary_key=True),
            sa.Column("client_id", sa.String(length=128), nullable=False),
            sa.Column("subject", sa.String(length=320), nullable=False),
            sa.Column("scope", sa.String(length=1024), nullable=False, server_default=""),
            sa.Column("issued_at", sa.BigInteger(), nullable=False),
            sa.Column("expires_at", sa.BigInteger(), nullable=False),
            sa.Column("family_id", sa.String(length=64), nullable=False),
        ]
        if table == "refresh_tokens":
            columns.append(sa.Column("rotated_from", sa.String(length=64), nullable=True))
        columns.append(
            sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false())
        )
        op.create_table(table, *columns)
        op.create_index(f"ix_{table}_family_id", table, ["family_id"])
        op.create_index(f"ix_{table}_expires_at", table, ["expires_at"])


def downgrade() -> None:
    for table in ("refresh_tokens", "access_tokens"):
        op.drop_index(f"ix_{table}_expires_at", table_name=table)
        op.drop_index(f"ix_{table}_family_id", table_name=table)
        op.drop_table(table)
    op.drop_index("ix_authorization_codes_expires_at", table_name="authorization_codes")
    op.drop_table("authorization_codes")
    op.drop_table("oauth_clients")
