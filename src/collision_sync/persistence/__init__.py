"""Pluggable persistence backends behind Protocol interfaces."""

from __future__ import annotations

import logging
from typing import NamedTuple

from collision_sync.core.config import AppSettings
from collision_sync.core.protocols import ICacheBackend, IEstimateStore, IFileStore
from collision_sync.persistence.dynamodb_backend import DynamoDBEstimateStore
from collision_sync.persistence.memory_backend import MemoryCacheBackend, MemoryEstimateStore, MemoryFileStore
from collision_sync.persistence.redis_backend import RedisCacheBackend
from collision_sync.persistence.s3_backend import S3FileStore

logger = logging.getLogger(__name__)


class Persistence(NamedTuple):
    store: IEstimateStore
    cache: ICacheBackend
    file_store: IFileStore


def create_persistence(settings: AppSettings | None = None) -> Persistence:
    """Create wired-up persistence backends from application settings.

    Returns:
        Tuple of (store, cache, file_store).
    """
    if settings is None:
        settings = AppSettings()

    cache: ICacheBackend
    if settings.redis.enabled:
        cache = RedisCacheBackend(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            decode_responses=settings.redis.decode_responses,
            key_prefix=settings.redis.key_prefix,
            socket_timeout=settings.redis.socket_timeout,
        )
    else:
        cache = MemoryCacheBackend()

    store: IEstimateStore
    if settings.store_backend == "dynamodb":
        store = DynamoDBEstimateStore(
            table_name=settings.dynamodb.table_name,
            table_suffix=settings.dynamodb.table_suffix,
            region=settings.dynamodb.region,
            endpoint_url=settings.dynamodb.endpoint_url,
            cache=cache,
        )
    else:
        store = MemoryEstimateStore()

    file_store: IFileStore
    if settings.file_backend == "s3":
        file_store = S3FileStore(
            bucket=settings.s3.bucket,
            region=settings.s3.region,
            endpoint_url=settings.s3.endpoint_url,
        )
    else:
        file_store = MemoryFileStore()

    logger.info(
        "Persistence: store=%s cache=%s files=%s",
        settings.store_backend, "redis" if settings.redis.enabled else "memory", settings.file_backend,
    )
    return Persistence(store=store, cache=cache, file_store=file_store)
