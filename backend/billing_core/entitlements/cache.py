"""
Entitlement Cache - Redis-backed cache keyed by entitlement version.

Keys embed the tenant's current entitlement version:

    entitlements:{tenant_id}:v{version}

A version bump therefore invalidates every cached snapshot for the tenant
without an explicit delete; stale keys simply age out via TTL.

Provides graceful degradation: when REDIS_URL is unset or Redis is
unreachable the cache falls back to a bounded in-process store.
"""

import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Optional, Tuple

import redis
from sqlalchemy.orm import Session

from billing_core.config.settings import BillingSettings, get_settings
from billing_core.entitlements.computer import EntitlementComputer
from billing_core.entitlements.models import ResolvedEntitlements
from billing_core.entitlements.version_ledger import EntitlementVersionLedger

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "entitlements"
IN_MEMORY_MAX_ENTRIES = 1000


def cache_key(tenant_id: str, version: int) -> str:
    return f"{CACHE_KEY_PREFIX}:{tenant_id}:v{version}"


class InMemoryCache:
    """Thread-safe LRU cache with per-entry TTL."""

    def __init__(self, max_entries: int = IN_MEMORY_MAX_ENTRIES):
        self._entries: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()
        self._max_entries = max_entries
        self._lock = Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at < time.monotonic():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            self._entries[key] = (time.monotonic() + ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return True


class RedisCache:
    """
    Redis client wrapper.

    Every failure is logged and reported as a cache miss; the cache is never
    a reason for an entitlement read to fail.
    """

    def __init__(self, redis_url: str):
        self._redis = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError as e:
            logger.warning("Redis connection failed", extra={"error": str(e)})
            return False

    def get(self, key: str) -> Optional[str]:
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            logger.warning("Redis GET failed", extra={"error": str(e)})
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            self._redis.setex(key, ttl_seconds, value)
            return True
        except redis.RedisError as e:
            logger.warning("Redis SET failed", extra={"error": str(e)})
            return False


class EntitlementCache:
    """Computes entitlements through a version-keyed cache."""

    def __init__(self, backend, ttl_seconds: int = 300, ledger: Optional[EntitlementVersionLedger] = None):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.ledger = ledger or EntitlementVersionLedger()

    def get_entitlements(self, db: Session, tenant_id: str) -> ResolvedEntitlements:
        version = self.ledger.current_version(db, tenant_id)
        key = cache_key(tenant_id, version)

        cached = self.backend.get(key)
        if cached is not None:
            logger.debug("Entitlement cache hit", extra={"tenant_id": tenant_id, "version": version})
            return ResolvedEntitlements.from_json(cached)

        resolved = EntitlementComputer(db, ledger=self.ledger).compute(tenant_id)
        # Store under the version the snapshot was computed at.
        self.backend.set(
            cache_key(tenant_id, resolved.entitlement_version),
            resolved.to_json(),
            self.ttl_seconds,
        )
        return resolved


_cache_instance: Optional[EntitlementCache] = None
_cache_lock = Lock()


def build_cache_backend(settings: BillingSettings):
    """Redis when configured and reachable, in-memory otherwise."""
    if not settings.redis_url:
        logger.info("REDIS_URL not configured - using in-memory entitlement cache")
        return InMemoryCache()

    backend = RedisCache(settings.redis_url)
    if not backend.ping():
        logger.warning("Redis unavailable - using in-memory entitlement cache")
        return InMemoryCache()

    logger.info("Redis connection established for entitlement cache")
    return backend


def get_entitlement_cache() -> EntitlementCache:
    """Process-wide entitlement cache (lazy singleton)."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                settings = get_settings()
                _cache_instance = EntitlementCache(
                    build_cache_backend(settings),
                    ttl_seconds=settings.entitlement_cache_ttl_seconds,
                )
    return _cache_instance
