"""Health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request

from collision_sync.persistence.redis_backend import RedisCacheBackend

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def ready(request: Request) -> dict[str, str]:
    state = request.app.state
    settings = state.settings
    body = {
        "status": "ready" if state.runner is not None else "starting",
        "store": settings.store_backend,
        "files": settings.file_backend,
        "cache": "redis" if settings.redis.enabled else "memory",
    }
    persistence = getattr(state, "persistence", None)
    if persistence is not None and isinstance(persistence.cache, RedisCacheBackend):
        if not persistence.cache.ping():
            body["status"] = "degraded"
            body["cache"] = "redis unreachable"
    return body
