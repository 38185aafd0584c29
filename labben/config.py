from pydantic import ConfigDict, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./labben.db"

    # Public URL the dashboard builds download/preview links against
    public_base_url: str = "http://localhost:8000"

    # Token lifetimes
    token_download_ttl_minutes: int = 60
    token_preview_ttl_minutes: int = 5
    max_token_ttl_minutes: int = 1440  # 1 day

    # Token hashing (Argon2id)
    token_hash_time_cost: int = 3
    token_hash_memory_cost: int = 65536  # 64MB
    token_hash_parallelism: int = 4

    # Object storage (Supabase Storage S3 endpoint or any S3-compatible store)
    object_storage_enabled: bool = False
    object_storage_endpoint: str | None = None
    object_storage_access_key: str | None = None
    object_storage_secret_key: str | None = None
    object_storage_region: str = "us-east-1"
    storage_bucket: str = "customer_docs"
    storage_timeout_seconds: float = 10.0

    # Dashboard authentication (Supabase session JWT)
    supabase_jwt_secret: str | None = None
    supabase_jwt_audience: str = "authenticated"
    allowed_email: str | None = None

    # Rate Limiting
    rate_limit_downloads: str = "30/minute"
    rate_limit_token_create: str = "20/minute"
    rate_limit_admin: str = "10/minute"

    # Maintenance
    scheduler_enabled: bool = True
    cleanup_interval_hours: int = 1

    # Logging
    log_level: str = "info"
    log_format: str = "console"

    # CORS
    cors_origins: list[str] | str = ["http://localhost:5173", "http://127.0.0.1:5173"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


settings = Settings()
