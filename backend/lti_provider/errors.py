"""Exceptions raised by the LTI provider backend."""

from __future__ import annotations


class LTIError(RuntimeError):
    """Base class for every LTI provider error."""


class LTIConfigurationError(LTIError):
    """Raised when mandatory LTI configuration is missing or inconsistent."""


class LTIConsumerError(LTIConfigurationError):
    """Raised when the consumer key or secret is missing."""


class LTIParameterError(LTIError):
    """Raised when launch or outcome parameters are invalid."""


class LTISignatureError(LTIError):
    """Raised when the OAuth signature of a launch does not match."""


class LTINonceError(LTIError):
    """Raised when a nonce is stale or has already been used."""


class LTIStoreError(LTIError):
    """Raised when the nonce backend cannot record a nonce."""


class LTIExtensionError(LTIError):
    """Raised when an LTI extension is used in a way the consumer does not support."""


class LTITransportError(LTIError):
    """Raised when the outcome service cannot be reached."""


class LTIOutcomeResponseError(LTIError):
    """Raised when the outcome service answers with an error or an invalid document."""


__all__ = [
    "LTIConfigurationError",
    "LTIConsumerError",
    "LTIError",
    "LTIExtensionError",
    "LTINonceError",
    "LTIOutcomeResponseError",
    "LTIParameterError",
    "LTISignatureError",
    "LTIStoreError",
    "LTITransportError",
]
