"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from pecup.academic_config import AcademicConfigManager
from pecup.cache import AcademicCaches, CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from pecup.config import get_settings
from pecup.db import DbClient, InMemoryDbClient, PostgresDbClient
from pecup.files import RateLimiter
from pecup.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_cache_backend: CacheBackend | None = None
_caches: AcademicCaches | None = None
_academic_config: AcademicConfigManager | None = None
_secure_url_limiter: RateLimiter | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so data persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.storage_bucket:
        _storage_client = InMemoryStorageClient(bucket=settings.storage_bucket or "resources")
    else:
        _storage_client = S3StorageClient(
            bucket=settings.storage_bucket,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint or "",
            access_key_id=settings.storage_access_key_id or "",
            secret_access_key=settings.storage_secret_access_key or "",
            public_base_url=settings.storage_public_base_url,
        )
    return _storage_client


def get_cache_backend() -> CacheBackend:
    global _cache_backend
    if _cache_backend:
        return _cache_backend

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.redis_url:
        _cache_backend = InMemoryCacheBackend()
    else:
        _cache_backend = RedisCacheBackend(
            url=settings.redis_url, key_prefix=settings.cache_key_prefix
        )
    return _cache_backend


def get_caches() -> AcademicCaches:
    """
    Return the typed caches over the shared backend.
    """
    global _caches
    if _caches:
        return _caches

    settings = get_settings()
    _caches = AcademicCaches.create(
        get_cache_backend(),
        profile_ttl=settings.profile_cache_ttl_seconds,
        static_ttl=settings.static_cache_ttl_seconds,
        subjects_ttl=settings.subjects_cache_ttl_seconds,
        dynamic_ttl=settings.dynamic_cache_ttl_seconds,
    )
    return _caches


def get_academic_config() -> AcademicConfigManager:
    global _academic_config
    if _academic_config:
        return _academic_config

    settings = get_settings()
    _academic_config = AcademicConfigManager(
        get_db_client(), ttl_seconds=settings.academic_config_ttl_seconds
    )
    return _academic_config


def get_secure_url_limiter() -> RateLimiter:
    global _secure_url_limiter
    if _secure_url_limiter:
        return _secure_url_limiter

    settings = get_settings()
    _secure_url_limiter = RateLimiter(
        limit=settings.secure_url_rate_limit,
        window_seconds=settings.secure_url_rate_window_seconds,
    )
    return _secure_url_limiter
