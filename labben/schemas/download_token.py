from datetime import UTC, datetime
from typing import Annotated

from pydantic import BaseModel, Field, PlainSerializer


def _as_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat().replace("+00:00", "Z")


# Stored datetimes are naive UTC; serialize them with an explicit zone
UTCDateTime = Annotated[datetime, PlainSerializer(_as_utc_iso, return_type=str)]


class DownloadTokenCreate(BaseModel):
    action_type: str = Field("download", pattern="^(download|preview)$")
    expires_in_minutes: int | None = Field(None, description="Defaults depend on action_type")


class DownloadTokenCreateResponse(BaseModel):
    """Response containing the raw token (only returned once at issuance)."""

    token: str
    url: str
    action_type: str
    expires_at: UTCDateTime
    previewable: bool


class DocumentDownloadCount(BaseModel):
    document_id: str
    file_name: str | None = None
    download_count: int


class DownloadStatsResponse(BaseModel):
    total_downloads: int
    downloads_today: int
    downloads_this_week: int
    downloads_this_month: int
    most_downloaded_documents: list[DocumentDownloadCount]


class TokenCleanupResponse(BaseModel):
    deleted: int
