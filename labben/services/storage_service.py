from __future__ import annotations

import asyncio
from dataclasses import dataclass

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from labben.config import Settings

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})


class ObjectStorageConfigError(ValueError):
    pass


class ObjectStorageError(Exception):
    pass


class ObjectNotFoundError(ObjectStorageError):
    pass


class StorageTransientError(ObjectStorageError):
    """Timeouts, connection failures and 5xx answers from the store."""


@dataclass(frozen=True, slots=True)
class ObjectStorageConfig:
    endpoint: str | None
    bucket: str
    access_key: str
    secret_key: str
    region: str
    timeout_seconds: float

    @staticmethod
    def from_settings(settings: Settings) -> "ObjectStorageConfig":
        if not settings.storage_bucket:
            raise ObjectStorageConfigError("STORAGE_BUCKET is required when object storage is enabled")
        if not settings.object_storage_access_key:
            raise ObjectStorageConfigError(
                "OBJECT_STORAGE_ACCESS_KEY is required when object storage is enabled"
            )
        if not settings.object_storage_secret_key:
            raise ObjectStorageConfigError(
                "OBJECT_STORAGE_SECRET_KEY is required when object storage is enabled"
            )
        if settings.storage_timeout_seconds <= 0:
            raise ObjectStorageConfigError("STORAGE_TIMEOUT_SECONDS must be positive")

        return ObjectStorageConfig(
            endpoint=settings.object_storage_endpoint,
            bucket=settings.storage_bucket,
            access_key=settings.object_storage_access_key,
            secret_key=settings.object_storage_secret_key,
            region=settings.object_storage_region,
            timeout_seconds=settings.storage_timeout_seconds,
        )


class ObjectStorageService:
    """
    Read access to the customer document bucket.

    Built once at startup and handed to request handlers; every call is
    bounded by ``timeout_seconds`` and never retried.
    """

    def __init__(self, settings: Settings) -> None:
        self._enabled = settings.object_storage_enabled
        self._config = ObjectStorageConfig.from_settings(settings) if self._enabled else None

    @property
    def bucket(self) -> str | None:
        return self._config.bucket if self._config else None

    def _require_enabled(self) -> ObjectStorageConfig:
        if not self._enabled or self._config is None:
            raise RuntimeError("Object storage is not enabled (set OBJECT_STORAGE_ENABLED=true)")
        return self._config

    def _client_kwargs(self, config: ObjectStorageConfig) -> dict:
        return {
            "service_name": "s3",
            "endpoint_url": config.endpoint,
            "aws_access_key_id": config.access_key,
            "aws_secret_access_key": config.secret_key,
            "region_name": config.region,
            "config": BotoConfig(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                connect_timeout=config.timeout_seconds,
                read_timeout=config.timeout_seconds,
                retries={"mode": "standard", "total_max_attempts": 1},
            ),
        }

    async def _get_object(self, config: ObjectStorageConfig, bucket: str, object_key: str) -> bytes:
        session = aioboto3.Session()
        async with session.client(**self._client_kwargs(config)) as s3:
            response = await s3.get_object(Bucket=bucket, Key=object_key)
            body = response["Body"]
            return await body.read()

    async def download_bytes(self, *, object_key: str, bucket: str | None = None) -> bytes:
        """
        Fetch an object's full content.

        Raises ObjectNotFoundError when the key does not exist and
        StorageTransientError for timeouts and other storage failures.
        """
        config = self._require_enabled()
        try:
            return await asyncio.wait_for(
                self._get_object(config, bucket or config.bucket, object_key),
                timeout=config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise StorageTransientError(
                f"Timed out after {config.timeout_seconds}s fetching object"
            ) from e
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                raise ObjectNotFoundError(object_key) from e
            raise StorageTransientError(f"Storage error: {code or 'unknown'}") from e
        except BotoCoreError as e:
            raise StorageTransientError(str(e)) from e
