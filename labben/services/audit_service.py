"""Delivery audit trail: best-effort writes to download_logs and the stats read over them."""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from labben.models.document import Document
from labben.models.download_log import DownloadLog
from labben.models.download_token import ACTION_DOWNLOAD
from labben.services.token_service import utcnow

logger = structlog.get_logger()

MAX_USER_AGENT_LENGTH = 500
TOP_DOCUMENTS_LIMIT = 5


@dataclass(slots=True)
class DownloadLogEntry:
    document_id: str
    action_type: str
    user_id: str | None = None
    token_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    file_size: int | None = None
    download_successful: bool = True
    error_message: str | None = None


class AuditLogger:
    """
    Records delivery attempts.

    Owns its sessions (the request session is closed by the time background
    tasks run). ``record`` never raises: a lost audit row must not turn a
    delivered file into an error.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def record(self, entry: DownloadLogEntry) -> bool:
        if entry.user_agent:
            entry.user_agent = entry.user_agent[:MAX_USER_AGENT_LENGTH]

        db = None
        try:
            db = self._session_factory()
            db.add(DownloadLog(**asdict(entry)))
            db.commit()
            logger.debug(
                "audit_log_recorded",
                document_id=entry.document_id,
                action_type=entry.action_type,
                successful=entry.download_successful,
            )
            return True
        except Exception as e:
            logger.error(
                "audit_log_failed",
                document_id=entry.document_id,
                action_type=entry.action_type,
                error=str(e),
            )
            return False
        finally:
            if db is not None:
                db.close()


def get_download_stats(db: Session, now: datetime | None = None) -> dict:
    """
    Successful downloads for all time, today, last 7 and last 30 days,
    plus the most downloaded documents.
    """
    now = now or utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    downloads = db.query(DownloadLog).filter(
        DownloadLog.action_type == ACTION_DOWNLOAD,
        DownloadLog.download_successful == True,  # noqa: E712
    )

    download_count = func.count(DownloadLog.id)
    top_documents = (
        db.query(DownloadLog.document_id, Document.file_name, download_count)
        .outerjoin(Document, Document.id == DownloadLog.document_id)
        .filter(
            DownloadLog.action_type == ACTION_DOWNLOAD,
            DownloadLog.download_successful == True,  # noqa: E712
        )
        .group_by(DownloadLog.document_id, Document.file_name)
        .order_by(download_count.desc(), DownloadLog.document_id)
        .limit(TOP_DOCUMENTS_LIMIT)
        .all()
    )

    return {
        "total_downloads": downloads.count(),
        "downloads_today": downloads.filter(DownloadLog.downloaded_at >= today).count(),
        "downloads_this_week": downloads.filter(
            DownloadLog.downloaded_at >= today - timedelta(days=7)
        ).count(),
        "downloads_this_month": downloads.filter(
            DownloadLog.downloaded_at >= today - timedelta(days=30)
        ).count(),
        "most_downloaded_documents": [
            {"document_id": document_id, "file_name": file_name, "download_count": count}
            for document_id, file_name, count in top_documents
        ],
    }
