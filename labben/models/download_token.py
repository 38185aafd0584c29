import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from labben.database import Base

ACTION_DOWNLOAD = "download"
ACTION_PREVIEW = "preview"
ACTION_TYPES = (ACTION_DOWNLOAD, ACTION_PREVIEW)


class DownloadToken(Base):
    """
    Short-lived bearer token granting one delivery action on one document.

    Tokens are:
    - Action-bound: a preview token never opens the download endpoint and vice versa
    - Single-use for downloads: used_at is set once, by a conditional update
    - Reusable for previews within their (short) lifetime
    - Never stored in clear: prefix for indexed lookup, Argon2id hash for verification
    """

    __tablename__ = "secure_download_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    token_prefix: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)

    # No FK: documents belong to the external store and can vanish under a live token
    document_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    issued_to: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(16), nullable=False)

    issued_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(UTC).replace(tzinfo=None), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, default=None)

    # Issuing request hints (ip, user agent); never read by validation
    token_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_secure_download_tokens_document_unused", "document_id", "used_at"),
        CheckConstraint(
            "action_type IN ('download', 'preview')",
            name="ck_secure_download_tokens_action_type",
        ),
    )
