"""LTI 1.1 Basic Outcomes client.

Scores are written back to the consumer with signed POX (Plain Old XML)
requests: the XML document is hashed into ``oauth_body_hash`` and the OAuth
parameters are signed with the same HMAC-SHA1 canonicalization used for
launches, then sent in an ``Authorization: OAuth ...`` header.

The consumer answers with an ``imsx_POXEnvelopeResponse`` whose
``imsx_codeMajor`` must be ``success``. Any other status is raised as
:class:`LTIOutcomeResponseError` carrying the consumer's own description.
"""

from __future__ import annotations

import logging
import math
import ssl
import time
import uuid
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import urlsplit

import httpx
from lxml import etree

from .errors import (
    LTIConfigurationError,
    LTIExtensionError,
    LTIOutcomeResponseError,
    LTIParameterError,
    LTITransportError,
)
from .oauth_signature import HMACSHA1Signer, compute_body_hash, parse_query, special_encode


logger = logging.getLogger(__name__)


OMS_NAMESPACE = "http://www.imsglobal.org/services/ltiv1p1/xsd/imsoms_v1p0"

REQUEST_REPLACE = "replaceResult"
REQUEST_READ = "readResult"
REQUEST_DELETE = "deleteResult"

DEFAULT_TIMEOUT = 10.0

INVALID_DOCUMENT = "Le service de résultats a répondu avec un document XML invalide."

Verify = bool | str | ssl.SSLContext

_STATUS_PATH = "imsx_POXHeader/imsx_POXResponseHeaderInfo/imsx_statusInfo"
_READ_SCORE_PATH = "imsx_POXBody/readResultResponse/result/resultScore/textString"


def load_verify(verify: Verify) -> bool | ssl.SSLContext:
    """Turn a CA bundle path into an SSL context trusting that authority."""

    if not isinstance(verify, str):
        return verify
    try:
        return ssl.create_default_context(cafile=verify)
    except OSError as exc:
        raise LTIConfigurationError(f"Autorité de certification illisible: {verify!r}") from exc


def _qualified(tag: str) -> str:
    return f"{{{OMS_NAMESPACE}}}{tag}"


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    element = etree.SubElement(parent, _qualified(tag))
    if text is not None:
        element.text = text
    return element


def _navigate(element: etree._Element | None, path: str) -> etree._Element | None:
    # namespace-agnostic: some consumers answer without the oms namespace
    for part in path.split("/"):
        if element is None:
            return None
        element = next(
            (
                child
                for child in element
                if isinstance(child.tag, str) and etree.QName(child).localname == part
            ),
            None,
        )
    return element


def _find_text(element: etree._Element | None, path: str) -> str | None:
    node = _navigate(element, path)
    if node is None or node.text is None:
        return None
    return node.text.strip()


def parse_response(body: bytes | str) -> etree._Element:
    """Parse an outcome service response and return its envelope on success."""

    if isinstance(body, str):
        body = body.encode("utf-8")
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(body, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise LTIOutcomeResponseError(INVALID_DOCUMENT) from exc
    if root is None or etree.QName(root).localname != "imsx_POXEnvelopeResponse":
        raise LTIOutcomeResponseError(INVALID_DOCUMENT)

    code = _find_text(root, f"{_STATUS_PATH}/imsx_codeMajor")
    if code != "success":
        description = _find_text(root, f"{_STATUS_PATH}/imsx_description")
        raise LTIOutcomeResponseError(
            description or f"Le service de résultats a répondu avec le statut {code or 'inconnu'}."
        )
    return root


class OutcomeDocument:
    """Builder for ``imsx_POXEnvelopeRequest`` documents."""

    def __init__(
        self,
        request_type: str,
        source_did: str,
        *,
        result_data_types: Iterable[str] | bool = True,
        language: str = "en",
    ) -> None:
        # accept any result data type unless the caller restricts it
        self.result_data_types = (
            result_data_types if isinstance(result_data_types, bool) else list(result_data_types)
        )
        self.language = language
        self.request_type = request_type
        self.has_payload = False
        self._result: etree._Element | None = None

        self.root = etree.Element(_qualified("imsx_POXEnvelopeRequest"), nsmap={None: OMS_NAMESPACE})
        head = _sub(_sub(self.root, "imsx_POXHeader"), "imsx_POXRequestHeaderInfo")
        _sub(head, "imsx_version", "V1.0")
        _sub(head, "imsx_messageIdentifier", str(uuid.uuid1()))

        self.record = _sub(_sub(_sub(self.root, "imsx_POXBody"), f"{request_type}Request"), "resultRecord")
        _sub(_sub(self.record, "sourcedGUID"), "sourcedId", str(source_did))

    @classmethod
    def replace(cls, source_did: str, payload: Mapping[str, Any] | None = None, **options: Any) -> "OutcomeDocument":
        doc = cls(REQUEST_REPLACE, source_did, **options)
        if payload is None:
            return doc
        if "score" in payload:
            doc.add_score(payload["score"])
        if payload.get("text") is not None:
            doc.add_text(payload["text"])
        if payload.get("url") is not None:
            doc.add_url(payload["url"])
        return doc

    @classmethod
    def read(cls, source_did: str, **options: Any) -> "OutcomeDocument":
        return cls(REQUEST_READ, source_did, **options)

    @classmethod
    def delete(cls, source_did: str, **options: Any) -> "OutcomeDocument":
        return cls(REQUEST_DELETE, source_did, **options)

    def add_score(self, score: Any) -> None:
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= 1.0:
            raise LTIParameterError("Le score doit être un nombre décimal compris entre 0 et 1.")

        result_score = _sub(self._result_element(), "resultScore")
        _sub(result_score, "language", self.language)
        _sub(result_score, "textString", str(score))

    def add_text(self, text: str) -> None:
        self._add_payload("text", text)

    def add_url(self, url: str) -> None:
        self._add_payload("url", url)

    def finalize(self) -> bytes:
        return etree.tostring(self.root, xml_declaration=True, encoding="UTF-8", pretty_print=True)

    def _result_element(self) -> etree._Element:
        if self._result is None:
            self._result = _sub(self.record, "result")
        return self._result

    def _add_payload(self, data_type: str, value: Any) -> None:
        if self.has_payload:
            raise LTIExtensionError("Une donnée de résultat a déjà été ajoutée à ce document.")
        if not self._supports_result_data(data_type):
            raise LTIExtensionError(f"Type de donnée de résultat non supporté: {data_type}")

        _sub(_sub(self._result_element(), "resultData"), data_type, str(value))
        self.has_payload = True

    def _supports_result_data(self, data_type: str | None) -> bool:
        if self.result_data_types is True:
            return True
        if not self.result_data_types:
            return False
        if data_type is None:
            return True
        return data_type in self.result_data_types


class OutcomeService:
    """Sends replace/read/delete result requests to a consumer's outcome service."""

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        service_url: str,
        source_did: str,
        *,
        result_data_types: Iterable[str] = (),
        signer: HMACSHA1Signer | None = None,
        language: str = "en",
        timeout: float | None = None,
        verify: Verify = True,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        parts = urlsplit(service_url or "")
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise LTIConfigurationError(f"URL du service de résultats invalide: {service_url!r}")

        self.consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self.service_url = service_url
        self.source_did = source_did
        self.result_data_types = [item for item in result_data_types if item]
        self.signer = signer or HMACSHA1Signer()
        self.language = language
        self.timeout = timeout if timeout is not None else DEFAULT_TIMEOUT
        # a private CA on self-hosted consumers; ignored when a client is injected
        self.verify = load_verify(verify)
        self._client = client
        self._clock = clock

        # the signed URL never carries the query; its parameters are signed instead
        self.service_url_parts = parts
        self.service_url_oauth = f"{parts.scheme}://{parts.netloc}{parts.path}"
        self._service_query = parse_query(parts.query)

    def __repr__(self) -> str:
        return f"OutcomeService(service_url={self.service_url!r}, source_did={self.source_did!r})"

    def supports_result_data(self, data_type: str | None = None) -> bool:
        return bool(self.result_data_types) and (not data_type or data_type in self.result_data_types)

    async def send_replace_result(self, score: float) -> bool:
        return await self._send_replace_result({"score": score})

    async def send_replace_result_with_text(self, score: float, text: str) -> bool:
        return await self._send_replace_result({"score": score, "text": text})

    async def send_replace_result_with_url(self, score: float, url: str) -> bool:
        return await self._send_replace_result({"score": score, "url": url})

    async def send_read_result(self) -> float:
        doc = OutcomeDocument.read(self.source_did, **self._document_options())
        envelope = await self._send_request(doc)

        raw_score = _find_text(envelope, _READ_SCORE_PATH)
        try:
            score = float(raw_score)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            score = math.nan
        if math.isnan(score):
            raise LTIOutcomeResponseError("Score invalide dans la réponse du service de résultats.")
        return score

    async def send_delete_result(self) -> bool:
        doc = OutcomeDocument.delete(self.source_did, **self._document_options())
        await self._send_request(doc)
        return True

    async def _send_replace_result(self, payload: Mapping[str, Any]) -> bool:
        # document errors surface before any network call
        doc = OutcomeDocument.replace(self.source_did, payload, **self._document_options())
        await self._send_request(doc)
        return True

    def _document_options(self) -> dict[str, Any]:
        return {"result_data_types": self.result_data_types, "language": self.language}

    async def _send_request(self, doc: OutcomeDocument) -> etree._Element:
        body = doc.finalize()
        headers = self._build_headers(body)

        try:
            if self._client is not None:
                response = await self._client.post(self.service_url, content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, verify=self.verify) as client:
                    response = await client.post(self.service_url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.info("Service de résultats %s injoignable: %s", self.service_url, exc)
            raise LTITransportError(f"Service de résultats injoignable: {exc}") from exc

        try:
            return parse_response(response.content)
        except LTIOutcomeResponseError as exc:
            logger.info(
                "Requête %s refusée par %s (HTTP %s): %s",
                doc.request_type,
                self.service_url,
                response.status_code,
                exc,
            )
            raise

    def _build_headers(self, body: bytes) -> dict[str, str]:
        params: dict[str, str] = {
            "oauth_version": "1.0",
            "oauth_nonce": str(uuid.uuid4()),
            "oauth_timestamp": str(round(self._clock())),
            "oauth_consumer_key": self.consumer_key,
            "oauth_body_hash": compute_body_hash(body),
            "oauth_signature_method": self.signer.method_name,
        }
        params["oauth_signature"] = self.signer.build_signature_raw(
            self.service_url_oauth,
            self._service_query,
            "POST",
            params,
            self._consumer_secret,
        )

        auth = ",".join(f'{key}="{special_encode(value)}"' for key, value in params.items())
        return {
            "Authorization": f'OAuth realm="",{auth}',
            "Content-Type": "application/xml",
            "Content-Length": str(len(body)),
        }


__all__ = [
    "OMS_NAMESPACE",
    "OutcomeDocument",
    "OutcomeService",
    "REQUEST_DELETE",
    "REQUEST_READ",
    "REQUEST_REPLACE",
    "load_verify",
    "parse_response",
]
