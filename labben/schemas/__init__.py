from labben.schemas.download_token import (
    DocumentDownloadCount,
    DownloadStatsResponse,
    DownloadTokenCreate,
    DownloadTokenCreateResponse,
    TokenCleanupResponse,
)

__all__ = [
    "DocumentDownloadCount",
    "DownloadStatsResponse",
    "DownloadTokenCreate",
    "DownloadTokenCreateResponse",
    "TokenCleanupResponse",
]
