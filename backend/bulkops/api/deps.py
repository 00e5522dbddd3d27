from __future__ import annotations

from functools import lru_cache

import redis
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bulkops.services.auth_service import TokenClaims, decode_access_token
from bulkops.services.concurrency import BULK_JOBS_SCOPE, UPLOADS_SCOPE, ConcurrencyLimiter
from bulkops.services.event_handlers import BulkEventDispatcher
from bulkops.services.queue_bridge import JobQueueBridge, build_queue_bridge
from bulkops.services.redis_client import get_redis
from bulkops.services.storage import S3StorageProvider, build_storage_provider

bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> TokenClaims:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    claims = decode_access_token(credentials.credentials)
    if claims is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return claims


def get_admin_user(current_user: TokenClaims = Depends(get_current_user)) -> TokenClaims:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


# Infrastructure providers; tests replace them through app.dependency_overrides


def get_redis_client() -> redis.Redis:
    return get_redis()


@lru_cache(maxsize=1)
def get_storage() -> S3StorageProvider:
    return build_storage_provider()


def get_upload_limiter(client: redis.Redis = Depends(get_redis_client)) -> ConcurrencyLimiter:
    return ConcurrencyLimiter(client, scope=UPLOADS_SCOPE)


def get_bulk_limiter(client: redis.Redis = Depends(get_redis_client)) -> ConcurrencyLimiter:
    return ConcurrencyLimiter(client, scope=BULK_JOBS_SCOPE)


def get_queue_bridge() -> JobQueueBridge:
    return build_queue_bridge()


def get_dispatcher(
    client: redis.Redis = Depends(get_redis_client),
    limiter: ConcurrencyLimiter = Depends(get_bulk_limiter),
    storage: S3StorageProvider = Depends(get_storage),
) -> BulkEventDispatcher:
    return BulkEventDispatcher(client=client, limiter=limiter, storage=storage)
