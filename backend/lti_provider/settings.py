"""Configuration of the LTI provider, read from the environment.

Every knob has an ``LTI_`` prefixed environment variable. Values are validated
with pydantic once, when :func:`get_settings` is first called, so that a
misconfigured deployment fails at boot instead of on the first launch.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .errors import LTIConfigurationError


logger = logging.getLogger(__name__)


DEFAULT_SIGNATURE_WINDOW = 5 * 60
SUPPORTED_RESULT_DATA_TYPES = ("text", "url")

_TRUTHY = {"1", "true", "yes", "on"}
_PROTOCOL_PREFIX = re.compile(r"^https?://", re.IGNORECASE)


class LTISettings(BaseModel):
    consumer_key: str | None = None
    consumer_secret: SecretStr | None = None
    trust_proxy: bool = False
    app_host: str | None = None
    signature_window: int = Field(default=DEFAULT_SIGNATURE_WINDOW, gt=0)
    result_data_types: tuple[str, ...] = ()
    outcome_timeout: float = Field(default=10.0, gt=0)
    outcome_ca_bundle: str | None = None
    nonce_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    @field_validator("app_host")
    @classmethod
    def _check_app_host(cls, value: str | None) -> str | None:
        if not value:
            return None
        if _PROTOCOL_PREFIX.match(value):
            raise ValueError(
                "LTI_APP_HOST ne doit pas contenir le protocole, seulement le domaine et le chemin de l'application."
            )
        return value

    @field_validator("result_data_types", mode="before")
    @classmethod
    def _split_result_data_types(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",")]
        if isinstance(value, (list, tuple)):
            cleaned = [item for item in value if item]
            unknown = [item for item in cleaned if item not in SUPPORTED_RESULT_DATA_TYPES]
            if unknown:
                raise ValueError(f"Types de résultat non supportés: {', '.join(unknown)}")
            return tuple(cleaned)
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "LTISettings":
        env = os.environ if environ is None else environ
        raw: dict[str, Any] = {}
        for field_name, env_name in (
            ("consumer_key", "LTI_CONSUMER_KEY"),
            ("consumer_secret", "LTI_CONSUMER_SECRET"),
            ("app_host", "LTI_APP_HOST"),
            ("signature_window", "LTI_SIGNATURE_WINDOW"),
            ("result_data_types", "LTI_RESULT_DATA_TYPES"),
            ("outcome_timeout", "LTI_OUTCOME_TIMEOUT"),
            ("outcome_ca_bundle", "LTI_OUTCOME_CA_BUNDLE"),
            ("nonce_backend", "LTI_NONCE_BACKEND"),
            ("redis_url", "LTI_REDIS_URL"),
        ):
            value = env.get(env_name)
            if value:
                raw[field_name] = value
        trust_proxy = env.get("LTI_TRUST_PROXY")
        if trust_proxy:
            raw["trust_proxy"] = trust_proxy.strip().lower() in _TRUTHY

        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise LTIConfigurationError(f"Configuration LTI invalide: {exc}") from exc

    def secret_value(self) -> str | None:
        if self.consumer_secret is None:
            return None
        return self.consumer_secret.get_secret_value()


_settings: LTISettings | None = None


def get_settings() -> LTISettings:
    global _settings
    if _settings is None:
        _settings = LTISettings.from_env()
        logger.debug(
            "Configuration LTI chargée (trust_proxy=%s, fenêtre=%ss, backend=%s)",
            _settings.trust_proxy,
            _settings.signature_window,
            _settings.nonce_backend,
        )
    return _settings


def reset_settings() -> None:
    """Forget the cached settings so the next call re-reads the environment."""

    global _settings
    _settings = None


__all__ = [
    "DEFAULT_SIGNATURE_WINDOW",
    "LTISettings",
    "SUPPORTED_RESULT_DATA_TYPES",
    "get_settings",
    "reset_settings",
]
