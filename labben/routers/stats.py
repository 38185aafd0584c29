from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from labben.auth import get_caller_identity
from labben.config import settings
from labben.database import get_db
from labben.middleware.rate_limit import limiter
from labben.schemas.download_token import DownloadStatsResponse
from labben.services.audit_service import get_download_stats

router = APIRouter()


@router.get("/downloads/stats", response_model=DownloadStatsResponse)
@limiter.limit(settings.rate_limit_admin)
async def download_stats(
    request: Request,
    db: Session = Depends(get_db),
    _: str = Depends(get_caller_identity),
):
    """Download counters for the dashboard overview."""
    return DownloadStatsResponse(**get_download_stats(db))
