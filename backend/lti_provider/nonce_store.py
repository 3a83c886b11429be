"""Anti-replay stores for OAuth nonces.

A launch is accepted only if its ``(oauth_nonce, oauth_timestamp)`` pair has
not been seen and its timestamp is at most ``window`` seconds old. Two
backends implement the :class:`NonceStore` protocol:

* :class:`MemoryNonceStore` keeps the records in the process and purges
  expired entries lazily on every lookup;
* :class:`RedisNonceStore` keeps one key per nonce with a server-side expiry
  and no local state, so several workers can share it.

A record is kept until its timestamp leaves the validity window. Past that
point the timestamp alone is enough to reject a replay, so both backends
reach the same decision for the same sequence of calls.
"""

from __future__ import annotations

import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Protocol

from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

from .errors import LTIConfigurationError, LTIParameterError, LTIStoreError
from .settings import DEFAULT_SIGNATURE_WINDOW, LTISettings

if TYPE_CHECKING:
    from redis.asyncio import Redis


logger = logging.getLogger(__name__)


Clock = Callable[[], float]

INVALID_PARAMETERS = "Paramètres de nonce invalides."
ALREADY_SEEN = "Nonce déjà utilisé."
EXPIRED_TIMESTAMP = "Horodatage invalide ou expiré."
BACKEND_UNAVAILABLE = "Stockage des nonces indisponible."

# Redis refuses expiries past a 64-bit millisecond clock; no launch lives this long
MAX_TTL = 2**31 - 1

_LEADING_INTEGER = re.compile(r"^\s*([+-]?\d+)")


def parse_timestamp(timestamp: Any) -> int | None:
    """Read the leading integer of ``timestamp`` (``"1700000000.5"`` -> 1700000000)."""

    if timestamp is None or isinstance(timestamp, bool):
        return None
    if isinstance(timestamp, int):
        return timestamp
    if isinstance(timestamp, float):
        return int(timestamp) if math.isfinite(timestamp) else None
    match = _LEADING_INTEGER.match(str(timestamp))
    if not match:
        return None
    return int(match.group(1))


def is_stale(timestamp: Any, now: int, window: int) -> bool:
    parsed = parse_timestamp(timestamp)
    return parsed is None or now - parsed > window


def _is_missing(nonce: Any, timestamp: Any) -> bool:
    return nonce is None or nonce == "" or timestamp is None or timestamp == ""


def _check_set_used(nonce: Any, timestamp: Any) -> None:
    if _is_missing(nonce, timestamp):
        raise LTIParameterError(INVALID_PARAMETERS)


@dataclass(frozen=True, slots=True)
class NonceCheck:
    accepted: bool
    error: str | None = None

    def __bool__(self) -> bool:
        return self.accepted

    @classmethod
    def ok(cls) -> "NonceCheck":
        return cls(True)

    @classmethod
    def rejected(cls, error: str) -> "NonceCheck":
        return cls(False, error)


class NonceStore(Protocol):
    """Capability every nonce backend offers to the launch validator."""

    async def is_new(self, nonce: Any, timestamp: Any) -> NonceCheck:
        """Accept and record the nonce, or say why it is refused."""

    async def set_used(self, nonce: Any, timestamp: Any) -> None:
        """Record the nonce as used, skipping the freshness checks.

        Raises :class:`LTIParameterError` when the nonce or timestamp is missing.
        """


class MemoryNonceStore:
    """In-process nonce table guarded by a single lock."""

    def __init__(self, window: int = DEFAULT_SIGNATURE_WINDOW, clock: Clock = time.time) -> None:
        self.window = window
        self._clock = clock
        self._used: dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._used)

    def _now(self) -> int:
        return round(self._clock())

    async def is_new(self, nonce: Any, timestamp: Any) -> NonceCheck:
        if _is_missing(nonce, timestamp):
            return NonceCheck.rejected(INVALID_PARAMETERS)

        key = str(nonce)
        # lookup and mark must stay in one critical section
        with self._lock:
            now = self._now()
            self._purge(now)
            if key in self._used:
                return NonceCheck.rejected(ALREADY_SEEN)
            if is_stale(timestamp, now, self.window):
                return NonceCheck.rejected(EXPIRED_TIMESTAMP)
            self._mark(key, timestamp, now)
        return NonceCheck.ok()

    async def set_used(self, nonce: Any, timestamp: Any) -> None:
        _check_set_used(nonce, timestamp)
        with self._lock:
            self._mark(str(nonce), timestamp, self._now())

    def _mark(self, key: str, timestamp: Any, now: int) -> None:
        parsed = parse_timestamp(timestamp)
        self._used[key] = (parsed if parsed is not None else now) + self.window

    def _purge(self, now: int) -> None:
        expired = [nonce for nonce, expires_at in self._used.items() if expires_at < now]
        for nonce in expired:
            del self._used[nonce]


class RedisNonceStore:
    """Nonce records stored as Redis keys expiring with the validity window."""

    def __init__(
        self,
        client: "Redis",
        window: int = DEFAULT_SIGNATURE_WINDOW,
        clock: Clock = time.time,
        key_prefix: str = "lti:nonce:",
    ) -> None:
        self.redis = client
        self.window = window
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, nonce: Any) -> str:
        return f"{self.key_prefix}{nonce}"

    def _ttl(self, timestamp: Any, now: int) -> int:
        parsed = parse_timestamp(timestamp)
        if parsed is None:
            parsed = now
        # the key disappears once the timestamp itself is stale
        return min(parsed + self.window - now + 1, MAX_TTL)

    async def is_new(self, nonce: Any, timestamp: Any) -> NonceCheck:
        if _is_missing(nonce, timestamp):
            return NonceCheck.rejected(INVALID_PARAMETERS)

        key = self._key(nonce)
        now = round(self._clock())
        try:
            if is_stale(timestamp, now, self.window):
                seen = await self.redis.exists(key)
                return NonceCheck.rejected(ALREADY_SEEN if seen else EXPIRED_TIMESTAMP)
            stored = await self.redis.set(key, str(timestamp), ex=max(self._ttl(timestamp, now), 1), nx=True)
        except RedisError as exc:
            logger.warning("Vérification du nonce impossible sur Redis: %s", exc)
            return NonceCheck.rejected(BACKEND_UNAVAILABLE)

        if not stored:
            return NonceCheck.rejected(ALREADY_SEEN)
        return NonceCheck.ok()

    async def set_used(self, nonce: Any, timestamp: Any) -> None:
        _check_set_used(nonce, timestamp)
        key = self._key(nonce)
        ttl = self._ttl(timestamp, round(self._clock()))
        try:
            if ttl < 1:
                # already outside the window: forget it, as the memory purge would
                await self.redis.delete(key)
                return
            await self.redis.set(key, str(timestamp), ex=ttl)
        except RedisError as exc:
            raise LTIStoreError("Impossible d'enregistrer le nonce dans Redis.") from exc


def build_nonce_store(settings: LTISettings, clock: Clock = time.time) -> NonceStore:
    """Create the backend selected by ``LTI_NONCE_BACKEND``."""

    if settings.nonce_backend == "redis":
        try:
            client = redis_asyncio.from_url(settings.redis_url)
        except ValueError as exc:
            raise LTIConfigurationError(f"LTI_REDIS_URL invalide: {settings.redis_url!r}") from exc
        logger.info("Stockage des nonces LTI sur Redis")
        return RedisNonceStore(client, window=settings.signature_window, clock=clock)
    return MemoryNonceStore(window=settings.signature_window, clock=clock)


__all__ = [
    "ALREADY_SEEN",
    "EXPIRED_TIMESTAMP",
    "INVALID_PARAMETERS",
    "MAX_TTL",
    "MemoryNonceStore",
    "NonceCheck",
    "NonceStore",
    "RedisNonceStore",
    "build_nonce_store",
    "is_stale",
    "parse_timestamp",
]
