import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from labben.auth import get_caller_identity
from labben.config import settings
from labben.database import get_db
from labben.middleware.rate_limit import get_real_client_ip, limiter
from labben.schemas.download_token import (
    DownloadTokenCreate,
    DownloadTokenCreateResponse,
    TokenCleanupResponse,
)
from labben.services.content_types import is_previewable
from labben.services.document_service import get_document
from labben.services.token_service import (
    AuthenticationError,
    PersistenceError,
    build_delivery_url,
    cleanup_expired_tokens,
    issue_token,
)

router = APIRouter()
logger = structlog.get_logger()


@router.post(
    "/documents/{document_id}/tokens",
    response_model=DownloadTokenCreateResponse,
    status_code=201,
)
@limiter.limit(settings.rate_limit_token_create)
async def create_document_token(
    request: Request,
    document_id: str,
    token_data: DownloadTokenCreate,
    db: Session = Depends(get_db),
    caller: str = Depends(get_caller_identity),
):
    """
    Issue a download or preview link for a document.

    The returned URL embeds the raw token, which is never shown again.
    `previewable` tells the dashboard whether an inline preview makes sense or
    it should offer a download instead.
    """
    document = get_document(db, document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")

    try:
        token_model, raw_token = issue_token(
            db=db,
            document_id=document_id,
            caller_identity=caller,
            action_type=token_data.action_type,
            ttl_minutes=token_data.expires_in_minutes,
            metadata={
                "ip_address": get_real_client_ip(request),
                "user_agent": request.headers.get("user-agent"),
            },
        )
    except AuthenticationError:
        raise HTTPException(status_code=401, detail="Not authenticated")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Could not issue token, please retry")

    logger.info(
        "download_token_issued",
        token_id=token_model.id,
        document_id=document_id,
        action_type=token_model.action_type,
        expires_at=token_model.expires_at.isoformat(),
    )

    return DownloadTokenCreateResponse(
        token=raw_token,
        url=build_delivery_url(raw_token, token_model.action_type),
        action_type=token_model.action_type,
        expires_at=token_model.expires_at,
        previewable=is_previewable(document.file_name),
    )


@router.post("/tokens/cleanup", response_model=TokenCleanupResponse)
@limiter.limit(settings.rate_limit_admin)
async def cleanup_tokens(
    request: Request,
    db: Session = Depends(get_db),
    _: str = Depends(get_caller_identity),
):
    """Delete expired tokens now instead of waiting for the scheduled job."""
    deleted = cleanup_expired_tokens(db)
    logger.info("expired_tokens_cleaned", deleted=deleted, trigger="manual")
    return TokenCleanupResponse(deleted=deleted)
