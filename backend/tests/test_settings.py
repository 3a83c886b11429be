from __future__ import annotations

import pytest

from backend.lti_provider import settings as settings_module
from backend.lti_provider.errors import LTIConfigurationError
from backend.lti_provider.settings import DEFAULT_SIGNATURE_WINDOW, LTISettings, get_settings


def test_defaults() -> None:
    settings = LTISettings.from_env({})

    assert settings.consumer_key is None
    assert settings.secret_value() is None
    assert settings.trust_proxy is False
    assert settings.app_host is None
    assert settings.signature_window == DEFAULT_SIGNATURE_WINDOW == 300
    assert settings.result_data_types == ()
    assert settings.outcome_timeout == 10.0
    assert settings.nonce_backend == "memory"
    assert settings.outcome_ca_bundle is None


def test_environment_values_are_parsed() -> None:
    settings = LTISettings.from_env(
        {
            "LTI_CONSUMER_KEY": "moodle",
            "LTI_CONSUMER_SECRET": "s3cr3t-value",
            "LTI_TRUST_PROXY": "Yes",
            "LTI_APP_HOST": "tool.example/app",
            "LTI_SIGNATURE_WINDOW": "120",
            "LTI_RESULT_DATA_TYPES": "text, url",
            "LTI_OUTCOME_TIMEOUT": "2.5",
            "LTI_NONCE_BACKEND": "redis",
            "LTI_REDIS_URL": "redis://cache:6379/1",
            "LTI_OUTCOME_CA_BUNDLE": "/etc/ssl/lms-ca.pem",
        }
    )

    assert settings.consumer_key == "moodle"
    assert settings.secret_value() == "s3cr3t-value"
    assert "s3cr3t-value" not in repr(settings)
    assert settings.trust_proxy is True
    assert settings.app_host == "tool.example/app"
    assert settings.signature_window == 120
    assert settings.result_data_types == ("text", "url")
    assert settings.outcome_timeout == 2.5
    assert settings.nonce_backend == "redis"
    assert settings.redis_url == "redis://cache:6379/1"
    assert settings.outcome_ca_bundle == "/etc/ssl/lms-ca.pem"


@pytest.mark.parametrize(
    "environ",
    [
        {"LTI_APP_HOST": "https://tool.example"},
        {"LTI_SIGNATURE_WINDOW": "0"},
        {"LTI_SIGNATURE_WINDOW": "five minutes"},
        {"LTI_RESULT_DATA_TYPES": "text,video"},
        {"LTI_NONCE_BACKEND": "memcached"},
    ],
)
def test_invalid_values_raise_configuration_error(environ: dict[str, str]) -> None:
    with pytest.raises(LTIConfigurationError):
        LTISettings.from_env(environ)


def test_get_settings_is_cached_until_reset(monkeypatch) -> None:
    monkeypatch.setenv("LTI_CONSUMER_KEY", "first")
    first = get_settings()
    monkeypatch.setenv("LTI_CONSUMER_KEY", "second")

    assert get_settings() is first

    settings_module.reset_settings()
    assert get_settings().consumer_key == "second"
