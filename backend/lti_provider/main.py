from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from .errors import LTIConfigurationError, LTIExtensionError
from .launch import LaunchContext
from .nonce_store import build_nonce_store
from .oauth_signature import LaunchRequest
from .provider import Provider
from .settings import get_settings


logger = logging.getLogger(__name__)


app = FastAPI(title="LTI Provider", version="1.0.0")


class HealthResponse(BaseModel):
    status: str
    consumer_configured: bool
    nonce_backend: str


async def build_launch_request(request: Request) -> LaunchRequest:
    """Convert a Starlette request into the framework-neutral :class:`LaunchRequest`."""

    body: dict[str, Any] = {}
    form = await request.form()
    for key in form.keys():
        values = [value for value in form.getlist(key) if isinstance(value, str)]
        if not values:
            continue
        body[key] = values[0] if len(values) == 1 else values

    # raw_path keeps the percent-encoding the consumer signed
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.url.query
    target = f"{path}?{query}" if query else path

    return LaunchRequest(
        method=request.method,
        url=target,
        headers=dict(request.headers),
        body=body,
        protocol=request.url.scheme,
        encrypted=request.url.scheme == "https",
    )


_provider: Provider | None = None


def get_provider() -> Provider:
    global _provider
    if _provider is None:
        settings = get_settings()
        _provider = Provider(
            settings.consumer_key,
            settings.secret_value(),
            build_nonce_store(settings),
            settings=settings,
        )
        logger.info("Fournisseur LTI prêt pour la clé %s", settings.consumer_key)
    return _provider


def reset_provider() -> None:
    global _provider
    _provider = None


def _resolve_provider() -> Provider:
    try:
        return get_provider()
    except LTIConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


async def _validated_launch(request: Request, provider: Provider) -> LaunchContext | JSONResponse:
    launch_request = await build_launch_request(request)
    try:
        outcome = await provider.valid_request(launch_request)
    except LTIConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not outcome:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"kind": outcome.kind.value if outcome.kind else None, "message": outcome.message},
        )
    return provider.parse_request(launch_request)


@app.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    settings = get_settings()
    return HealthResponse(
        status="ok",
        consumer_configured=bool(settings.consumer_key and settings.consumer_secret),
        nonce_backend=settings.nonce_backend,
    )


@app.post("/lti/launch", name="lti_launch")
async def lti_launch(request: Request, provider: Provider = Depends(_resolve_provider)) -> Any:
    result = await _validated_launch(request, provider)
    if isinstance(result, JSONResponse):
        return result
    return result.summary()


@app.post("/lti/content-selection")
async def lti_content_selection(request: Request, provider: Provider = Depends(_resolve_provider)) -> Any:
    """Answer a content selection by placing the tool's own launch URL in the course."""

    result = await _validated_launch(request, provider)
    if isinstance(result, JSONResponse):
        return result
    if result.ext_content is None:
        raise HTTPException(status_code=400, detail="La plateforme n'a pas demandé de sélection de contenu.")

    launch_url = str(request.url_for("lti_launch"))
    try:
        target = result.ext_content.build_lti_launch_url(launch_url, title=app.title)
    except LTIExtensionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RedirectResponse(target, status_code=status.HTTP_303_SEE_OTHER)


__all__ = ["app", "build_launch_request", "get_provider", "reset_provider"]
