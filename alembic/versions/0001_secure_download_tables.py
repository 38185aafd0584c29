"""Create secure_download_tokens and download_logs tables

Revision ID: 0001
Revises:
Create Date: 2026-10-17

The documents table belongs to the dashboard's document store and already
exists there; it is only created here for standalone/dev databases.
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())

    if not inspector.has_table("documents"):
        op.create_table(
            "documents",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("customer_id", sa.String(36), nullable=True),
            sa.Column("file_name", sa.String(255), nullable=False),
            sa.Column("file_path", sa.Text, nullable=False),
            sa.Column("uploaded_at", sa.DateTime, nullable=True),
        )
        op.create_index("ix_documents_customer_id", "documents", ["customer_id"])

    op.create_table(
        "secure_download_tokens",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("token_prefix", sa.String(16), nullable=False),
        sa.Column("token_hash", sa.String(128), unique=True, nullable=False),
        sa.Column("document_id", sa.String(36), nullable=False),
        sa.Column("issued_to", sa.String(255), nullable=False),
        sa.Column("action_type", sa.String(16), nullable=False),
        sa.Column("issued_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column("used_at", sa.DateTime, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.CheckConstraint(
            "action_type IN ('download', 'preview')",
            name="ck_secure_download_tokens_action_type",
        ),
    )

    op.create_index(
        "ix_secure_download_tokens_token_prefix", "secure_download_tokens", ["token_prefix"]
    )
    op.create_index(
        "ix_secure_download_tokens_document_id", "secure_download_tokens", ["document_id"]
    )
    op.create_index(
        "ix_secure_download_tokens_expires_at", "secure_download_tokens", ["expires_at"]
    )
    op.create_index(
        "ix_secure_download_tokens_document_unused",
        "secure_download_tokens",
        ["document_id", "used_at"],
    )

    op.create_table(
        "download_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "token_id",
            sa.String(36),
            sa.ForeignKey("secure_download_tokens.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("document_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("action_type", sa.String(16), nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("file_size", sa.BigInteger, nullable=True),
        sa.Column("download_successful", sa.Boolean, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("downloaded_at", sa.DateTime, nullable=False),
    )

    op.create_index("ix_download_logs_token_id", "download_logs", ["token_id"])
    op.create_index("ix_download_logs_document_id", "download_logs", ["document_id"])
    op.create_index("ix_download_logs_downloaded_at", "download_logs", ["downloaded_at"])


def downgrade() -> None:
    op.drop_index("ix_download_logs_downloaded_at", table_name="download_logs")
    op.drop_index("ix_download_logs_document_id", table_name="download_logs")
    op.drop_index("ix_download_logs_token_id", table_name="download_logs")
    op.drop_table("download_logs")

    op.drop_index("ix_secure_download_tokens_document_unused", table_name="secure_download_tokens")
    op.drop_index("ix_secure_download_tokens_expires_at", table_name="secure_download_tokens")
    op.drop_index("ix_secure_download_tokens_document_id", table_name="secure_download_tokens")
    op.drop_index("ix_secure_download_tokens_token_prefix", table_name="secure_download_tokens")
    op.drop_table("secure_download_tokens")
    # documents is left in place: it is owned by the document store
