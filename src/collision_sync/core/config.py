"""Application configuration using pydantic-settings with grouped env prefixes."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class ImportConfig(BaseSettings):
    """Batch import / worker pool configuration."""

    model_config = {"env_prefix": "COLLISION_SYNC_IMPORT_"}

    concurrency: int = 5
    retry_attempts: int = 3
    retry_delay_seconds: float = 5.0
    continue_on_error: bool = True
    inbox_prefix: str = "inbox/"
    processed_prefix: str = "processed/"
    failed_prefix: str = "failed/"
    extensions: tuple[str, ...] = (".xml", ".bms", ".ems", ".txt", ".csv")


class ShopConfig(BaseSettings):
    """Default tenant created on first import."""

    model_config = {"env_prefix": "COLLISION_SYNC_SHOP_"}

    name: str = "Default Auto Body Shop"
    business_name: str = "Default Auto Body Shop Ltd."
    email: str = "info@defaultautobody.com"
    phone: str = "(555) 123-4567"
    city: str = "Toronto"
    state: str = "Ontario"
    country: str = "Canada"


class DynamoDBConfig(BaseSettings):
    """DynamoDB configuration."""

    model_config = {"env_prefix": "COLLISION_SYNC_DYNAMO_"}

    table_name: str = "collision-sync-estimates"
    table_suffix: str = ""  # "-dev", "-uat", or "" for prod
    region: str = "us-east-1"
    endpoint_url: str | None = None  # LocalStack override


class RedisConfig(BaseSettings):
    """Redis cache configuration."""

    model_config = {"env_prefix": "COLLISION_SYNC_REDIS_"}

    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    decode_responses: bool = True
    key_prefix: str = "collision-sync:"
    socket_timeout: float = 2.0


class S3Config(BaseSettings):
    """S3 file storage configuration."""

    model_config = {"env_prefix": "COLLISION_SYNC_S3_"}

    bucket: str = "collision-sync-estimate-files"
    region: str = "us-east-1"
    endpoint_url: str | None = None  # LocalStack override


class AppSettings(BaseSettings):
    """Root application settings aggregating all sub-configs."""

    model_config = {"env_prefix": "COLLISION_SYNC_"}

    environment: Literal["dev", "uat", "prod"] = "dev"
    log_level: str = "INFO"
    store_backend: Literal["memory", "dynamodb"] = "memory"
    file_backend: Literal["memory", "s3"] = "memory"

    importer: ImportConfig = ImportConfig()
    shop: ShopConfig = ShopConfig()
    dynamodb: DynamoDBConfig = DynamoDBConfig()
    redis: RedisConfig = RedisConfig()
    s3: S3Config = S3Config()
