"""OAuth 1.0 HMAC-SHA1 signatures for LTI 1.x.

The same canonicalization is used in both directions:

* inbound, to verify the ``oauth_signature`` of a tool launch posted by the
  consumer (Moodle, Canvas, Blackboard, ...);
* outbound, to sign the Basic Outcomes requests sent back to the consumer.

The base string is ``METHOD&encode(url)&encode(sorted params)`` where every
parameter value is encoded once on its own and the joined parameter string is
encoded a second time as a whole. Consumers compute it exactly this way, so
any deviation (ordering, escaping of ``!'()*``) breaks interoperability.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import parse_qsl, quote, urlsplit

from .errors import LTIConfigurationError


logger = logging.getLogger(__name__)


SIGNATURE_PARAM = "oauth_signature"
BODY_HASH_PARAM = "oauth_body_hash"

# These consumers copy the query string into the form body; signing the URL
# query as well would count those parameters twice.
QUERY_IN_BODY_CONSUMERS = frozenset({"canvas", "schoology"})

_PROTOCOL_PREFIX = re.compile(r"https?://", re.IGNORECASE)


def special_encode(value: Any) -> str:
    """Percent-encode ``value`` leaving only ``A-Za-z0-9-_.~`` untouched."""

    if value is None:
        text = ""
    elif isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value)
    return quote(text, safe="")


def compute_body_hash(body: bytes | str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return base64.b64encode(hashlib.sha1(body).digest()).decode("ascii")


def parse_query(query: str) -> dict[str, Any]:
    """Parse a query string, keeping repeated keys as lists and blank values."""

    parsed: dict[str, Any] = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        existing = parsed.get(key)
        if existing is None:
            parsed[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            parsed[key] = [existing, value]
    return parsed


def merge_parameters(*sources: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge parameter mappings without collapsing keys present in several sources."""

    merged: dict[str, Any] = {}
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        for key, value in source.items():
            values = list(value) if isinstance(value, (list, tuple)) else [value]
            if key in merged:
                current = merged[key]
                current = current if isinstance(current, list) else [current]
                merged[key] = current + values
            else:
                merged[key] = values if isinstance(value, (list, tuple)) else value
    return merged


def _clean_params(params: Any) -> list[str]:
    if not isinstance(params, Mapping):
        return []

    clean: list[str] = []
    for key, values in params.items():
        if key == SIGNATURE_PARAM:
            continue
        if isinstance(values, (list, tuple)):
            clean.extend(f"{key}={special_encode(value)}" for value in values)
        else:
            clean.append(f"{key}={special_encode(values)}")
    return clean


def clean_request_body(body: Any, query: Any = None) -> str:
    """Return the encoded, sorted parameter part of the signature base string."""

    pairs = [*_clean_params(body), *_clean_params(query)]
    return special_encode("&".join(sorted(pairs)))


@dataclass(slots=True)
class LaunchRequest:
    """HTTP request as handed over by a web framework adapter.

    ``url`` is the request target as received (path plus optional query
    string). Header lookups through :meth:`header` ignore case.
    """

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Mapping[str, Any] = field(default_factory=dict)
    protocol: str | None = None
    encrypted: bool = False

    def header(self, name: str) -> str | None:
        target = name.lower()
        for key, value in self.headers.items():
            if key.lower() == target:
                return value
        return None


@dataclass(frozen=True, slots=True)
class SignatureRequest:
    method: str
    base_url: str
    parameters: Mapping[str, Any]
    body_hash: str | None = None

    @classmethod
    def from_launch(
        cls,
        request: LaunchRequest,
        body: Mapping[str, Any],
        signer: "HMACSHA1Signer",
    ) -> "SignatureRequest":
        return signer.signature_request(request, body)

    def canonical_parameters(self) -> dict[str, Any]:
        params = dict(self.parameters)
        if self.body_hash is not None and BODY_HASH_PARAM not in params:
            params[BODY_HASH_PARAM] = self.body_hash
        return params


class HMACSHA1Signer:
    """Builds and checks HMAC-SHA1 OAuth signatures.

    Instances hold configuration only and can be shared between threads.
    """

    method_name = "HMAC-SHA1"

    def __init__(self, *, trust_proxy: bool = False, app_host: str | None = None) -> None:
        if app_host and _PROTOCOL_PREFIX.search(app_host):
            raise LTIConfigurationError(
                "app_host ne doit pas contenir le protocole, seulement le domaine et le chemin de l'application."
            )
        self.trust_proxy = trust_proxy
        self.app_host = app_host or None

    def __str__(self) -> str:
        return self.method_name

    def host(self, request: LaunchRequest) -> str:
        direct_host = request.header("host") or ""
        if not self.trust_proxy:
            return direct_host

        forwarded_host = request.header("x-forwarded-host")
        if not self.app_host and not forwarded_host:
            raise LTIConfigurationError(
                "trust_proxy est activé: un en-tête X-Forwarded-Host ou un app_host configuré est requis."
            )
        return self.app_host or forwarded_host or direct_host

    def protocol(self, request: LaunchRequest) -> str:
        forwarded_proto = request.header("x-forwarded-proto")
        if self.trust_proxy and forwarded_proto:
            return forwarded_proto
        if request.protocol:
            return request.protocol
        return "https" if request.encrypted else "http"

    def signature_request(self, request: LaunchRequest, body: Mapping[str, Any]) -> SignatureRequest:
        original_url = request.url or "/"
        if body.get("tool_consumer_info_product_family_code") in QUERY_IN_BODY_CONSUMERS:
            original_url = urlsplit(original_url).path

        parsed = urlsplit(original_url)
        hit_url = f"{self.protocol(request)}://{self.host(request)}{parsed.path}"
        return SignatureRequest(
            method=request.method,
            base_url=hit_url,
            parameters=merge_parameters(body, parse_query(parsed.query)),
        )

    def build_signature(
        self,
        request: LaunchRequest,
        body: Mapping[str, Any],
        consumer_secret: str,
        token: str | None = None,
    ) -> str:
        return self.sign(self.signature_request(request, body), consumer_secret, token)

    def build_signature_raw(
        self,
        req_url: str,
        query: Mapping[str, Any] | None,
        method: str,
        params: Mapping[str, Any],
        consumer_secret: str,
        token: str | None = None,
    ) -> str:
        base_string = "&".join(
            [
                method.upper(),
                special_encode(req_url),
                clean_request_body(params, query),
            ]
        )
        logger.debug("Chaîne de base OAuth %s %s (%d caractères)", method.upper(), req_url, len(base_string))
        return self.sign_string(base_string, consumer_secret, token)

    def sign(self, request: SignatureRequest, consumer_secret: str, token: str | None = None) -> str:
        return self.build_signature_raw(
            request.base_url,
            None,
            request.method,
            request.canonical_parameters(),
            consumer_secret,
            token,
        )

    def verify(
        self,
        request: SignatureRequest,
        consumer_secret: str,
        candidate: Any,
        token: str | None = None,
    ) -> bool:
        if not isinstance(candidate, str) or not candidate:
            return False
        expected = self.sign(request, consumer_secret, token)
        return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))

    def sign_string(self, text: str, key: str, token: str | None = None) -> str:
        signing_key = f"{key}&{token or ''}"
        digest = hmac.new(signing_key.encode("utf-8"), text.encode("utf-8"), hashlib.sha1).digest()
        return base64.b64encode(digest).decode("ascii")


__all__ = [
    "BODY_HASH_PARAM",
    "HMACSHA1Signer",
    "LaunchRequest",
    "QUERY_IN_BODY_CONSUMERS",
    "SIGNATURE_PARAM",
    "SignatureRequest",
    "clean_request_body",
    "compute_body_hash",
    "merge_parameters",
    "parse_query",
    "special_encode",
]
