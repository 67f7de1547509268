"""
Read-through cache for the academic data served to students.

Backends store plain strings with a TTL. The typed caches on top wrap every
value in a JSON envelope carrying ``timestamp`` and ``expiresAt`` (epoch
milliseconds) and enforce the expiry themselves, so an entry behaves the
same whether it lives in Redis or in process memory.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "id",
    "name",
    "email",
    "roll_number",
    "branch",
    "year",
    "semester",
    "section",
    "role",
)


class CacheBackend(Protocol):
    """Minimal key/value interface with per-key expiry."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...


@dataclass
class InMemoryCacheBackend:
    """Process-local cache for tests and single-instance deployments."""

    clock: Callable[[], float] = time.time
    entries: Dict[str, tuple[str, float]] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self.entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self.clock() >= expires_at:
                del self.entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self.entries[key] = (value, self.clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self.entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self.entries if key.startswith(prefix)]
            for key in keys:
                del self.entries[key]
            return len(keys)

    def reset(self) -> None:
        with self._lock:
            self.entries.clear()


@dataclass
class RedisCacheBackend:
    """Redis-backed cache using SETEX/GET and SCAN for prefix invalidation."""

    url: str
    key_prefix: str = "pecup:"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _reconnect(self) -> None:
        # Managed Redis drops idle connections; the next call retries.
        self.client = redis.Redis.from_url(self.url)

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(self.key_prefix + key)
        except redis_exceptions.ConnectionError:
            logger.warning("Redis unavailable reading %s; treating as miss", key)
            self._reconnect()
            return None
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.setex(self.key_prefix + key, ttl_seconds, value)
        except redis_exceptions.ConnectionError:
            logger.warning("Redis unavailable writing %s; skipping cache write", key)
            self._reconnect()

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self.key_prefix + key)
        except redis_exceptions.ConnectionError:
            logger.warning("Redis unavailable deleting %s", key)
            self._reconnect()

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        try:
            for key in self.client.scan_iter(match=f"{self.key_prefix}{prefix}*"):
                removed += self.client.delete(key)
        except redis_exceptions.ConnectionError:
            logger.warning("Redis unavailable clearing prefix %s", prefix)
            self._reconnect()
        return removed


class _EnvelopeCache:
    """Stores JSON envelopes ``{data, timestamp, expiresAt, ...}`` in a backend."""

    def __init__(
        self,
        backend: CacheBackend,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _read(self, key: str) -> Optional[dict]:
        raw = self.backend.get(key)
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Corrupt cache entry at %s; clearing", key)
            self.backend.delete(key)
            return None
        if not isinstance(envelope, dict) or "data" not in envelope:
            logger.warning("Malformed cache entry at %s; clearing", key)
            self.backend.delete(key)
            return None
        expires_at = envelope.get("expiresAt")
        if not isinstance(expires_at, (int, float)) or self._now_ms() > expires_at:
            self.backend.delete(key)
            return None
        return envelope

    def _write(self, key: str, data: Any, **extra: Any) -> bool:
        now = self._now_ms()
        envelope = {
            "data": data,
            "timestamp": now,
            "expiresAt": now + self.ttl_seconds * 1000,
            **extra,
        }
        try:
            raw = json.dumps(envelope, default=str)
        except (TypeError, ValueError):
            logger.warning("Unable to serialise cache entry for %s", key)
            return False
        self.backend.set(key, raw, self.ttl_seconds)
        return True


class ProfileCache(_EnvelopeCache):
    """Per-user profile cache holding only the whitelisted profile fields."""

    PREFIX = "profile:"

    def _key(self, email: str) -> str:
        return f"{self.PREFIX}{email.lower()}"

    def get(self, email: str) -> Optional[dict]:
        key = self._key(email)
        envelope = self._read(key)
        if envelope is None:
            return None
        if (envelope.get("email") or "").lower() != email.lower():
            self.backend.delete(key)
            return None
        profile = envelope["data"]
        if not isinstance(profile, dict):
            self.backend.delete(key)
            return None
        return profile

    def set(self, email: str, profile: Any) -> bool:
        if not isinstance(profile, dict):
            self.clear(email)
            return False
        essential = {name: profile.get(name) for name in PROFILE_FIELDS}
        return self._write(self._key(email), essential, email=email.lower())

    def clear(self, email: str) -> None:
        self.backend.delete(self._key(email))

    def clear_all(self) -> int:
        return self.backend.delete_prefix(self.PREFIX)


class StaticCache(_EnvelopeCache):
    """Branches, years and semesters; these change rarely."""

    KEY = "static_data"

    def get(self) -> Optional[dict]:
        envelope = self._read(self.KEY)
        return envelope["data"] if envelope else None

    def set(self, data: dict) -> bool:
        return self._write(self.KEY, data)

    def clear(self) -> None:
        self.backend.delete(self.KEY)


class SubjectsCache(_EnvelopeCache):
    """Subjects per (branch, year, semester) context."""

    PREFIX = "subjects:"

    def _key(self, branch: str, year: int, semester: int) -> str:
        return f"{self.PREFIX}{branch}:{year}:{semester}"

    def get(self, branch: str, year: int, semester: int) -> Optional[list]:
        key = self._key(branch, year, semester)
        envelope = self._read(key)
        if envelope is None:
            return None
        expected = {"branch": branch, "year": year, "semester": semester}
        if envelope.get("context") != expected:
            self.backend.delete(key)
            return None
        return envelope["data"]

    def set(self, branch: str, year: int, semester: int, subjects: list) -> bool:
        context = {"branch": branch, "year": year, "semester": semester}
        return self._write(self._key(branch, year, semester), subjects, context=context)

    def clear_for_context(self, branch: str, year: int, semester: int) -> None:
        self.backend.delete(self._key(branch, year, semester))

    def clear_all(self) -> int:
        return self.backend.delete_prefix(self.PREFIX)


class DynamicCache(_EnvelopeCache):
    """Recent updates, upcoming exams and reminders per (branch, year)."""

    PREFIX = "dynamic_data:"

    def _key(self, branch: Optional[str], year: Optional[int]) -> str:
        return f"{self.PREFIX}{branch or 'all'}:{year or 'all'}"

    def get(self, branch: Optional[str], year: Optional[int]) -> Optional[dict]:
        envelope = self._read(self._key(branch, year))
        return envelope["data"] if envelope else None

    def set(self, branch: Optional[str], year: Optional[int], data: dict) -> bool:
        return self._write(self._key(branch, year), data)

    def clear_all(self) -> int:
        return self.backend.delete_prefix(self.PREFIX)


@dataclass
class AcademicCaches:
    """The four typed caches sharing one backend."""

    profile: ProfileCache
    static: StaticCache
    subjects: SubjectsCache
    dynamic: DynamicCache

    @classmethod
    def create(
        cls,
        backend: CacheBackend,
        *,
        profile_ttl: int,
        static_ttl: int,
        subjects_ttl: int,
        dynamic_ttl: int,
        clock: Callable[[], float] = time.time,
    ) -> "AcademicCaches":
        return cls(
            profile=ProfileCache(backend, profile_ttl, clock),
            static=StaticCache(backend, static_ttl, clock),
            subjects=SubjectsCache(backend, subjects_ttl, clock),
            dynamic=DynamicCache(backend, dynamic_ttl, clock),
        )

    def invalidate_profile(self, email: str) -> None:
        self.profile.clear(email)

    def invalidate_semester_change(self) -> None:
        """Subjects and cached profiles depend on the current semester."""
        self.subjects.clear_all()
        self.profile.clear_all()

    def invalidate_dynamic(self) -> None:
        self.dynamic.clear_all()

    def invalidate_static(self) -> None:
        self.static.clear()

    def clear_all(self) -> None:
        self.profile.clear_all()
        self.static.clear()
        self.subjects.clear_all()
        self.dynamic.clear_all()
        logger.info("Cleared all academic caches")
