from __future__ import annotations

import os
from typing import Any, Mapping

import pytest
from redis.exceptions import ResponseError

from backend.lti_provider import settings as settings_module
from backend.lti_provider.oauth_signature import HMACSHA1Signer, LaunchRequest
from backend.lti_provider.settings import LTISettings


CONSUMER_KEY = "moodle-key"
CONSUMER_SECRET = "s3cr3t!"
LAUNCH_HOST = "tool.example"
LAUNCH_PATH = "/lti/launch"
NOW = 1_700_000_000
# Redis keeps expiries as a signed 64-bit millisecond clock
REDIS_MAX_EXPIRE_MS = 2**63 - 1


class FakeClock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return float(self.now)

    def advance(self, seconds: int) -> None:
        self.now += seconds


class FakeRedis:
    """Subset of ``redis.asyncio.Redis`` used by the nonce store, with TTLs on a fake clock."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self.calls: list[tuple[str, str]] = []

    def _alive(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        self.calls.append(("set", key))
        if ex is not None and (ex <= 0 or (self._clock() + ex) * 1000 > REDIS_MAX_EXPIRE_MS):
            raise ResponseError("invalid expire time in 'set' command")
        if nx and self._alive(key) is not None:
            return None
        self._data[key] = (value, self._clock() + ex if ex else None)
        return True

    async def exists(self, *keys: str) -> int:
        self.calls.append(("exists", ",".join(keys)))
        return sum(1 for key in keys if self._alive(key) is not None)

    async def get(self, key: str) -> str | None:
        return self._alive(key)

    async def delete(self, *keys: str) -> int:
        self.calls.append(("delete", ",".join(keys)))
        removed = 0
        for key in keys:
            if self._alive(key) is not None:
                removed += 1
            self._data.pop(key, None)
        return removed


def launch_params(**overrides: Any) -> dict[str, Any]:
    params: dict[str, Any] = {
        "lti_message_type": "basic-lti-launch-request",
        "lti_version": "LTI-1p0",
        "resource_link_id": "res-42",
        "user_id": "u-1",
        "roles": "Instructor",
        "context_id": "course-7",
        "oauth_consumer_key": CONSUMER_KEY,
        "oauth_nonce": "nonce-1",
        "oauth_timestamp": str(NOW),
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_version": "1.0",
    }
    params.update(overrides)
    return {key: value for key, value in params.items() if value is not None}


def signed_launch(
    params: Mapping[str, Any],
    *,
    url: str = LAUNCH_PATH,
    secret: str = CONSUMER_SECRET,
    host: str = LAUNCH_HOST,
    protocol: str = "https",
    headers: Mapping[str, str] | None = None,
) -> LaunchRequest:
    """Sign ``params`` the way a consumer posting to ``protocol://host{url}`` would."""

    body = dict(params)
    request = LaunchRequest(
        method="POST",
        url=url,
        headers={"Host": host, **(headers or {})},
        body=body,
        protocol=protocol,
    )
    body["oauth_signature"] = HMACSHA1Signer().build_signature(request, body, secret)
    return request


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def lti_settings() -> LTISettings:
    return LTISettings(consumer_key=CONSUMER_KEY, consumer_secret=CONSUMER_SECRET)


@pytest.fixture(autouse=True)
def _clear_cached_settings(monkeypatch):
    for name in [name for name in list(os.environ) if name.startswith("LTI_")]:
        monkeypatch.delenv(name, raising=False)
    settings_module.reset_settings()
    yield
    settings_module.reset_settings()
