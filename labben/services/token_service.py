from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from labben.config import settings
from labben.models.download_log import DownloadLog
from labben.models.download_token import (
    ACTION_DOWNLOAD,
    ACTION_PREVIEW,
    ACTION_TYPES,
    DownloadToken,
)
from labben.services.crypto_utils import generate_token, get_token_prefix, hash_token, verify_token
from labben.services.document_service import get_document_meta

logger = structlog.get_logger()

REASON_NOT_FOUND = "not_found"
REASON_ALREADY_USED = "already_used"
REASON_EXPIRED = "expired"
REASON_WRONG_ACTION_TYPE = "wrong_action_type"
REASON_IDENTITY_MISMATCH = "identity_mismatch"
REASON_DOCUMENT_MISSING = "document_missing"


class AuthenticationError(Exception):
    pass


class PersistenceError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class TokenValidation:
    valid: bool
    reason: str | None = None
    token_id: str | None = None
    document_id: str | None = None
    file_path: str | None = None
    file_name: str | None = None
    action_type: str | None = None
    issued_to: str | None = None


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (matches the stored columns)."""
    return datetime.now(UTC).replace(tzinfo=None)


def default_ttl_minutes(action_type: str) -> int:
    if action_type == ACTION_PREVIEW:
        return settings.token_preview_ttl_minutes
    return settings.token_download_ttl_minutes


def issue_token(
    db: Session,
    document_id: str,
    caller_identity: str | None,
    action_type: str = ACTION_DOWNLOAD,
    ttl_minutes: int | None = None,
    metadata: dict | None = None,
) -> tuple[DownloadToken, str]:
    """
    Issue a new download or preview token for a document.

    Returns tuple of (token_model, raw_token).
    The raw_token is only available at issuance time.

    Lifetimes must lie in [1, max_token_ttl_minutes]; preview tokens default to
    a few minutes, download tokens to an hour.
    """
    if not caller_identity or not caller_identity.strip():
        raise AuthenticationError("Caller identity is required")

    if action_type not in ACTION_TYPES:
        raise ValueError(f"Invalid action type: {action_type}")

    ttl = default_ttl_minutes(action_type) if ttl_minutes is None else ttl_minutes
    if ttl < 1 or ttl > settings.max_token_ttl_minutes:
        raise ValueError(
            f"Token lifetime must be between 1 and {settings.max_token_ttl_minutes} minutes"
        )

    raw_token = generate_token()
    now = utcnow()

    token = DownloadToken(
        token_prefix=get_token_prefix(raw_token),
        token_hash=hash_token(raw_token),
        document_id=document_id,
        issued_to=caller_identity.strip(),
        action_type=action_type,
        issued_at=now,
        expires_at=now + timedelta(minutes=ttl),
        token_metadata=metadata,
    )

    try:
        db.add(token)
        db.commit()
        db.refresh(token)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("download_token_store_failed", document_id=document_id, error=str(e))
        raise PersistenceError("Could not store download token") from e

    return token, raw_token


def build_delivery_url(raw_token: str, action_type: str) -> str:
    """Link the browser follows to redeem a token."""
    path = "/api/preview" if action_type == ACTION_PREVIEW else "/api/download"
    return f"{settings.public_base_url}{path}?{urlencode({'token': raw_token})}"


def find_token(db: Session, raw_token: str) -> DownloadToken | None:
    """
    Find a token row by its raw value, used or not.

    Uses indexed prefix lookup, then Argon2 verification.
    """
    if not raw_token:
        return None

    candidates = (
        db.query(DownloadToken)
        .filter(DownloadToken.token_prefix == get_token_prefix(raw_token))
        .all()
    )

    for token in candidates:
        if verify_token(raw_token, token.token_hash):
            return token

    return None


def check_token(
    db: Session,
    raw_token: str,
    expected_action: str,
    caller_identity: str | None = None,
) -> TokenValidation:
    """
    Validate a token without consuming it.

    Checks run in a fixed order and the first failure wins: lookup, used,
    expiry, action type, caller identity (only when one is given), document.
    A token that is both used and expired reports already_used; callers map
    both reasons to the same client response.
    Raises InvalidFilePathError when the document's stored path is unusable.
    """
    token = find_token(db, raw_token)
    if token is None:
        return TokenValidation(valid=False, reason=REASON_NOT_FOUND)

    known = {
        "token_id": token.id,
        "document_id": token.document_id,
        "action_type": token.action_type,
        "issued_to": token.issued_to,
    }

    if token.used_at is not None:
        return TokenValidation(valid=False, reason=REASON_ALREADY_USED, **known)

    if utcnow() >= token.expires_at:
        return TokenValidation(valid=False, reason=REASON_EXPIRED, **known)

    if token.action_type != expected_action:
        return TokenValidation(valid=False, reason=REASON_WRONG_ACTION_TYPE, **known)

    if (
        caller_identity
        and token.issued_to
        and caller_identity.strip().lower() != token.issued_to.strip().lower()
    ):
        return TokenValidation(valid=False, reason=REASON_IDENTITY_MISMATCH, **known)

    meta = get_document_meta(db, token.document_id)
    if meta is None:
        return TokenValidation(valid=False, reason=REASON_DOCUMENT_MISSING, **known)

    return TokenValidation(
        valid=True,
        file_path=meta.file_path,
        file_name=meta.file_name,
        **known,
    )


def mark_token_used(db: Session, token_id: str) -> bool:
    """
    Consume a token.

    Single conditional UPDATE so that of two concurrent redemptions exactly one
    sees a row change. The token must still be unexpired at that moment.
    Returns False if the token was already used or has expired.
    """
    now = utcnow()
    result = db.execute(
        update(DownloadToken)
        .where(
            DownloadToken.id == token_id,
            DownloadToken.used_at.is_(None),
            DownloadToken.expires_at > now,
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def validate_token(
    db: Session,
    raw_token: str,
    expected_action: str,
    caller_identity: str | None = None,
) -> TokenValidation:
    """
    Validate a token and, for downloads, consume it in the same call.

    Preview tokens are left untouched and stay valid until they expire.
    """
    result = check_token(db, raw_token, expected_action, caller_identity)
    if not result.valid or result.action_type != ACTION_DOWNLOAD:
        return result

    if not mark_token_used(db, result.token_id):
        return replace(
            result, valid=False, reason=REASON_ALREADY_USED, file_path=None, file_name=None
        )

    return result


def cleanup_expired_tokens(db: Session) -> int:
    """Delete expired tokens. Returns count of deleted rows."""
    now = utcnow()
    expired_ids = select(DownloadToken.id).where(DownloadToken.expires_at < now)

    # Same effect as ON DELETE SET NULL, which SQLite does not enforce by default
    db.query(DownloadLog).filter(DownloadLog.token_id.in_(expired_ids)).update(
        {"token_id": None}, synchronize_session=False
    )
    result = (
        db.query(DownloadToken)
        .filter(DownloadToken.expires_at < now)
        .delete(synchronize_session=False)
    )
    db.commit()
    return result
