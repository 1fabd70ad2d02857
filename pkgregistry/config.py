from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REGISTRY_", env_file=".env", case_sensitive=False, extra="ignore")

    env: str = "dev"
    log_level: str = "INFO"

    # Limits
    max_package_size: int = 25_000_000
    max_archive_uncompressed_bytes: int = 100_000_000
    max_archive_entries: int = 1000

    # HTTP behavior
    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    requests_per_minute: int = 100
    uploads_per_hour: int = 10

    # Identity: API key -> principal name (JSON object in the environment)
    api_key_header: str = "X-API-Key"
    api_keys: dict[str, str] = Field(default_factory=dict)
    admin_principals: list[str] = Field(default_factory=list)
    owner_only_delete: bool = False

    # Catalog store
    catalog_backend: str = "memory"  # memory|dynamodb
    catalog_persist_file: str | None = None  # memory backend only
    dynamodb_table: str = "PackagesTable"
    aws_region: str = "us-east-2"

    # Content store
    blob_backend: str = "local"  # local|s3
    storage_path: str = "Packages"
    s3_bucket: str | None = None
    s3_prefix: str = "packages"
    s3_sse: str | None = None  # None|AES256|aws:kms
    s3_kms_key_id: str | None = None
    s3_acl: str | None = None

    # Maintenance
    reconcile_grace_seconds: int = 300


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
