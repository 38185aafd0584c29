"""
Token-gated file delivery.

GET /api/download streams a document as an attachment and burns its token;
GET /api/preview serves it inline and leaves the (short-lived) token reusable.
Error bodies are always {"error": "..."}; the precise rejection reason stays in
the server log.
"""

from urllib.parse import quote

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response

from labben.config import settings
from labben.database import get_db
from labben.dependencies import get_audit_logger, get_storage
from labben.middleware.rate_limit import get_real_client_ip, limiter
from labben.models.download_token import ACTION_DOWNLOAD, ACTION_PREVIEW
from labben.services.audit_service import AuditLogger, DownloadLogEntry
from labben.services.content_types import get_content_type, get_extension
from labben.services.document_service import InvalidFilePathError
from labben.services.storage_service import (
    ObjectNotFoundError,
    ObjectStorageService,
    StorageTransientError,
)
from labben.services.token_service import (
    REASON_DOCUMENT_MISSING,
    TokenValidation,
    check_token,
    mark_token_used,
)

router = APIRouter()
logger = structlog.get_logger()

TOKEN_REQUIRED_MESSAGE = "Token is required"
INVALID_TOKEN_MESSAGE = "Invalid or expired token"
FILE_NOT_FOUND_MESSAGE = "File not found"

# Token was used or expired between validation and consumption
CONSUME_FAILED = "consume_failed"

# Characters encodeURIComponent leaves alone besides alphanumerics and "-_."
_FILENAME_SAFE = "!~*'()"

DOWNLOAD_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

PREVIEW_HEADERS = {
    "Cache-Control": "private, no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
}


def content_disposition(disposition: str, file_name: str) -> str:
    return f'{disposition}; filename="{quote(file_name, safe=_FILENAME_SAFE)}"'


def resolve_content_type(file_name: str | None, file_path: str | None) -> str:
    """By display name, falling back to the storage key when the name has no extension."""
    if get_extension(file_name):
        return get_content_type(file_name)
    return get_content_type(file_path)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _audit(
    background_tasks: BackgroundTasks,
    audit_logger: AuditLogger,
    request: Request,
    validation: TokenValidation,
    action_type: str,
    *,
    successful: bool,
    error_message: str | None = None,
    file_size: int | None = None,
) -> None:
    """Queue an audit row; runs after the response has been sent."""
    if validation.document_id is None:
        return
    background_tasks.add_task(
        audit_logger.record,
        DownloadLogEntry(
            document_id=validation.document_id,
            action_type=action_type,
            user_id=validation.issued_to,
            token_id=validation.token_id,
            ip_address=get_real_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            file_size=file_size,
            download_successful=successful,
            error_message=error_message,
        ),
    )


async def deliver_document(
    request: Request,
    background_tasks: BackgroundTasks,
    token: str | None,
    action_type: str,
    db: Session,
    storage: ObjectStorageService,
    audit_logger: AuditLogger,
) -> Response:
    if not token:
        return _error(400, TOKEN_REQUIRED_MESSAGE)

    token_hint = token[:8]

    try:
        # Argon2 verify and the DB round trips are blocking
        validation = await run_in_threadpool(check_token, db, token, action_type)
    except InvalidFilePathError as e:
        logger.error(
            "document_path_invalid", action_type=action_type, token_hint=token_hint, error=str(e)
        )
        return _error(404, FILE_NOT_FOUND_MESSAGE)

    if not validation.valid:
        logger.warning(
            "delivery_token_rejected",
            action_type=action_type,
            reason=validation.reason,
            token_hint=token_hint,
            document_id=validation.document_id,
        )
        _audit(
            background_tasks,
            audit_logger,
            request,
            validation,
            action_type,
            successful=False,
            error_message=validation.reason,
        )
        if validation.reason == REASON_DOCUMENT_MISSING:
            return _error(404, FILE_NOT_FOUND_MESSAGE)
        return _error(403, INVALID_TOKEN_MESSAGE)

    try:
        content = await storage.download_bytes(
            object_key=validation.file_path, bucket=settings.storage_bucket
        )
    except ObjectNotFoundError:
        logger.warning(
            "storage_object_missing", action_type=action_type, document_id=validation.document_id
        )
        _audit(
            background_tasks,
            audit_logger,
            request,
            validation,
            action_type,
            successful=False,
            error_message="storage_object_missing",
        )
        return _error(404, FILE_NOT_FOUND_MESSAGE)
    except StorageTransientError as e:
        logger.error(
            "storage_fetch_failed",
            action_type=action_type,
            document_id=validation.document_id,
            error=str(e),
        )
        _audit(
            background_tasks,
            audit_logger,
            request,
            validation,
            action_type,
            successful=False,
            error_message="storage_unavailable",
        )
        return _error(404, FILE_NOT_FOUND_MESSAGE)

    # Burn the token only once the bytes are in hand; fails if it was used or
    # expired while the fetch ran
    if action_type == ACTION_DOWNLOAD and not await run_in_threadpool(
        mark_token_used, db, validation.token_id
    ):
        logger.warning(
            "delivery_token_rejected",
            action_type=action_type,
            reason=CONSUME_FAILED,
            token_hint=token_hint,
            document_id=validation.document_id,
        )
        _audit(
            background_tasks,
            audit_logger,
            request,
            validation,
            action_type,
            successful=False,
            error_message=CONSUME_FAILED,
        )
        return _error(403, INVALID_TOKEN_MESSAGE)

    file_name = validation.file_name or "document"
    if action_type == ACTION_PREVIEW:
        headers = {**PREVIEW_HEADERS, "Content-Disposition": content_disposition("inline", file_name)}
    else:
        headers = {
            **DOWNLOAD_HEADERS,
            "Content-Disposition": content_disposition("attachment", file_name),
        }

    _audit(
        background_tasks,
        audit_logger,
        request,
        validation,
        action_type,
        successful=True,
        file_size=len(content),
    )
    logger.info(
        "document_delivered",
        action_type=action_type,
        document_id=validation.document_id,
        size_bytes=len(content),
    )

    return Response(
        content=content,
        media_type=resolve_content_type(file_name, validation.file_path),
        headers=headers,
    )


@router.get("/download")
@limiter.limit(settings.rate_limit_downloads)
async def download(
    request: Request,
    background_tasks: BackgroundTasks,
    token: str | None = None,
    db: Session = Depends(get_db),
    storage: ObjectStorageService = Depends(get_storage),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    """
    Download a document with a single-use token.

    The token is consumed only after the file was fetched from storage, so a
    storage hiccup does not burn it.
    """
    return await deliver_document(
        request, background_tasks, token, ACTION_DOWNLOAD, db, storage, audit_logger
    )


@router.get("/preview")
@limiter.limit(settings.rate_limit_downloads)
async def preview(
    request: Request,
    background_tasks: BackgroundTasks,
    token: str | None = None,
    db: Session = Depends(get_db),
    storage: ObjectStorageService = Depends(get_storage),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    """
    Serve a document inline for iframe/image preview.

    Preview tokens survive repeated requests until they expire.
    """
    return await deliver_document(
        request, background_tasks, token, ACTION_PREVIEW, db, storage, audit_logger
    )
