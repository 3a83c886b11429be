"""Validation of inbound LTI 1.x launches.

:class:`Provider` runs three checks in order and stops at the first failure:

1. the launch parameters have the shape of a supported LTI message;
2. the OAuth HMAC-SHA1 signature matches the consumer secret;
3. the ``(oauth_nonce, oauth_timestamp)`` pair is fresh and unused.

The nonce is consumed only once the signature is known to be good, so forged
requests cannot burn nonces. Denials are returned as a
:class:`ValidationOutcome`; only configuration problems are raised.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .errors import (
    LTIConsumerError,
    LTIError,
    LTINonceError,
    LTIParameterError,
    LTISignatureError,
)
from .launch import BASIC_LAUNCH_MESSAGE, LaunchContext
from .nonce_store import MemoryNonceStore, NonceStore
from .oauth_signature import SIGNATURE_PARAM, HMACSHA1Signer, LaunchRequest
from .outcomes import load_verify
from .settings import LTISettings, get_settings


logger = logging.getLogger(__name__)


SUPPORTED_VERSIONS = ("LTI-1p0",)
BASIC_LAUNCH = BASIC_LAUNCH_MESSAGE
CONTENT_ITEM_SELECTION = "ContentItemSelectionRequest"

# A content-item selection happens before any resource link exists.
CONTENT_ITEM_FORBIDDEN_FIELDS = (
    "resource_link_id",
    "resource_link_title",
    "resource_link_description",
    "launch_presentation_return_url",
    "lis_result_sourcedid",
)

INVALID_PARAMETERS = "Paramètres LTI invalides."
INVALID_SIGNATURE = "Signature OAuth invalide."


class InvalidKind(str, Enum):
    MALFORMED_PARAMETERS = "malformed_parameters"
    BAD_SIGNATURE = "bad_signature"
    STALE_OR_REUSED_NONCE = "stale_or_reused_nonce"


_ERROR_TYPES: dict[InvalidKind, type[LTIError]] = {
    InvalidKind.MALFORMED_PARAMETERS: LTIParameterError,
    InvalidKind.BAD_SIGNATURE: LTISignatureError,
    InvalidKind.STALE_OR_REUSED_NONCE: LTINonceError,
}


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    valid: bool
    kind: InvalidKind | None = None
    message: str | None = None

    def __bool__(self) -> bool:
        return self.valid

    @classmethod
    def ok(cls) -> "ValidationOutcome":
        return cls(True)

    @classmethod
    def denied(cls, kind: InvalidKind, message: str) -> "ValidationOutcome":
        return cls(False, kind, message)

    @property
    def error(self) -> LTIError | None:
        """Exception matching the denial, for callers expecting ``(error, valid)``."""

        if self.valid or self.kind is None:
            return None
        return _ERROR_TYPES[self.kind](self.message or "")


def valid_parameters(body: Any) -> bool:
    if not isinstance(body, Mapping) or not body:
        return False
    if body.get("lti_version") not in SUPPORTED_VERSIONS:
        return False

    message_type = body.get("lti_message_type")
    if message_type == BASIC_LAUNCH:
        return body.get("resource_link_id") is not None
    if message_type == CONTENT_ITEM_SELECTION:
        return all(body.get(name) is None for name in CONTENT_ITEM_FORBIDDEN_FIELDS)
    return False


class Provider:
    """Tool-side validator bound to one consumer key and secret."""

    def __init__(
        self,
        consumer_key: str | None,
        consumer_secret: str | None,
        nonce_store: NonceStore | None = None,
        signer: HMACSHA1Signer | None = None,
        *,
        settings: LTISettings | None = None,
    ) -> None:
        if consumer_key is None:
            raise LTIConsumerError("consumer_key est requis.")
        if consumer_secret is None:
            raise LTIConsumerError("consumer_secret est requis.")

        settings = settings or get_settings()
        if nonce_store is None:
            nonce_store = MemoryNonceStore(window=settings.signature_window)

        self.consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self.nonce_store = nonce_store
        self.signer = signer or HMACSHA1Signer(trust_proxy=settings.trust_proxy, app_host=settings.app_host)
        self.settings = settings
        self._outcome_verify = load_verify(settings.outcome_ca_bundle or True)

    def __repr__(self) -> str:
        return f"Provider(consumer_key={self.consumer_key!r}, signer={self.signer})"

    async def valid_request(
        self,
        request: LaunchRequest,
        body: Mapping[str, Any] | None = None,
    ) -> ValidationOutcome:
        body = request.body if body is None else body

        if not valid_parameters(body):
            return self._deny(InvalidKind.MALFORMED_PARAMETERS, INVALID_PARAMETERS)

        candidate = body.get(SIGNATURE_PARAM)
        expected = self.signer.build_signature(request, body, self._consumer_secret)
        if not isinstance(candidate, str) or not hmac.compare_digest(
            expected.encode("utf-8"), candidate.encode("utf-8")
        ):
            return self._deny(InvalidKind.BAD_SIGNATURE, INVALID_SIGNATURE)

        check = await self.nonce_store.is_new(body.get("oauth_nonce"), body.get("oauth_timestamp"))
        if not check:
            return self._deny(InvalidKind.STALE_OR_REUSED_NONCE, check.error or "")

        return ValidationOutcome.ok()

    async def validate(
        self,
        request: LaunchRequest,
        body: Mapping[str, Any] | None = None,
    ) -> tuple[LTIError | None, bool]:
        outcome = await self.valid_request(request, body)
        return outcome.error, outcome.valid

    def parse_request(self, request: LaunchRequest, body: Mapping[str, Any] | None = None) -> LaunchContext:
        """Expose the launch payload. Call only after a successful validation."""

        return LaunchContext.from_body(
            request.body if body is None else body,
            consumer_key=self.consumer_key,
            consumer_secret=self._consumer_secret,
            signer=self.signer,
            outcome_timeout=self.settings.outcome_timeout,
            default_result_data_types=self.settings.result_data_types,
            outcome_verify=self._outcome_verify,
        )

    def _deny(self, kind: InvalidKind, message: str) -> ValidationOutcome:
        logger.info("Lancement LTI refusé pour la clé %s (%s): %s", self.consumer_key, kind.value, message)
        return ValidationOutcome.denied(kind, message)


__all__ = [
    "BASIC_LAUNCH",
    "CONTENT_ITEM_FORBIDDEN_FIELDS",
    "CONTENT_ITEM_SELECTION",
    "INVALID_PARAMETERS",
    "INVALID_SIGNATURE",
    "InvalidKind",
    "Provider",
    "SUPPORTED_VERSIONS",
    "ValidationOutcome",
    "valid_parameters",
]
