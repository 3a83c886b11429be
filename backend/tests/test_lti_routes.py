from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from backend.lti_provider import main
from backend.lti_provider.errors import LTIConfigurationError
from backend.lti_provider.nonce_store import MemoryNonceStore
from backend.lti_provider.oauth_signature import HMACSHA1Signer, LaunchRequest
from backend.lti_provider.provider import Provider
from backend.lti_provider.settings import LTISettings
from conftest import CONSUMER_KEY, CONSUMER_SECRET, FakeClock, launch_params


# TestClient posts to http://testserver
TEST_HOST = "testserver"


def _sign(params: dict, path: str = "/lti/launch") -> dict:
    body = dict(params)
    request = LaunchRequest(method="POST", url=path, headers={"Host": TEST_HOST}, body=body, protocol="http")
    body["oauth_signature"] = HMACSHA1Signer().build_signature(request, body, CONSUMER_SECRET)
    return body


@pytest.fixture
def client():
    settings = LTISettings(consumer_key=CONSUMER_KEY, consumer_secret=CONSUMER_SECRET)
    provider = Provider(
        CONSUMER_KEY,
        CONSUMER_SECRET,
        MemoryNonceStore(window=300, clock=FakeClock()),
        settings=settings,
    )
    main.app.dependency_overrides[main._resolve_provider] = lambda: provider
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
    main.reset_provider()


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "consumer_configured": False, "nonce_backend": "memory"}


def test_launch_returns_context_summary(client: TestClient) -> None:
    body = _sign(launch_params(lis_person_name_given="Julie"))

    response = client.post("/lti/launch", data=body)

    assert response.status_code == 200
    payload = response.json()
    assert payload["userId"] == "u-1"
    assert payload["username"] == "Julie"
    assert payload["instructor"] is True
    assert payload["context"]["id"] == "course-7"


def test_launch_replay_is_unauthorized(client: TestClient) -> None:
    body = _sign(launch_params())

    assert client.post("/lti/launch", data=body).status_code == 200
    response = client.post("/lti/launch", data=body)

    assert response.status_code == 401
    assert response.json()["kind"] == "stale_or_reused_nonce"


def test_launch_with_bad_signature_is_unauthorized(client: TestClient) -> None:
    body = _sign(launch_params())
    body["user_id"] = "someone-else"

    response = client.post("/lti/launch", data=body)

    assert response.status_code == 401
    assert response.json() == {"kind": "bad_signature", "message": "Signature OAuth invalide."}


def test_launch_signed_query_string_is_verified(client: TestClient) -> None:
    body = _sign(launch_params(), path="/lti/launch?activity=intro%20one")

    response = client.post("/lti/launch?activity=intro%20one", data=body)

    assert response.status_code == 200


def test_content_selection_redirects_back(client: TestClient) -> None:
    body = _sign(
        launch_params(
            ext_content_return_types="lti_launch_url,url",
            ext_content_return_url="https://lms.example/return",
        ),
        path="/lti/content-selection",
    )

    response = client.post("/lti/content-selection", data=body, follow_redirects=False)

    assert response.status_code == 303
    location = urlsplit(response.headers["location"])
    query = parse_qs(location.query)
    assert location.netloc == "lms.example"
    assert query["return_type"] == ["lti_launch_url"]
    assert query["url"] == ["http://testserver/lti/launch"]


def test_content_selection_without_extension_is_rejected(client: TestClient) -> None:
    body = _sign(launch_params(), path="/lti/content-selection")

    response = client.post("/lti/content-selection", data=body)

    assert response.status_code == 400


def test_missing_configuration_returns_503(monkeypatch) -> None:
    def broken() -> Provider:
        raise LTIConfigurationError("consumer_key est requis.")

    monkeypatch.setattr(main, "get_provider", broken)
    with TestClient(main.app) as test_client:
        response = test_client.post("/lti/launch", data={"lti_version": "LTI-1p0"})

    assert response.status_code == 503
    assert response.json()["detail"] == "consumer_key est requis."


def test_get_provider_reads_settings(monkeypatch) -> None:
    monkeypatch.setenv("LTI_CONSUMER_KEY", CONSUMER_KEY)
    monkeypatch.setenv("LTI_CONSUMER_SECRET", CONSUMER_SECRET)
    main.reset_provider()

    provider = main.get_provider()

    assert provider.consumer_key == CONSUMER_KEY
    assert main.get_provider() is provider
    main.reset_provider()
