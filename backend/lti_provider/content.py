"""Content extension (``ext_content``) return URLs.

When a consumer announces ``ext_content_return_types`` the tool may send
content back by redirecting the browser to the consumer's return URL with a
``return_type`` and its parameters in the query string. This module only
builds those URLs; issuing the 303 redirect is up to the web layer.
"""

from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

from .errors import LTIExtensionError
from .oauth_signature import parse_query


FILE_RETURN_TYPE = "file"
IFRAME_RETURN_TYPE = "iframe"
IMAGE_URL_RETURN_TYPE = "image_url"
LTI_LAUNCH_URL_RETURN_TYPE = "lti_launch_url"
OEMBED_RETURN_TYPE = "oembed"
URL_RETURN_TYPE = "url"


def _split_csv(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return str(value).split(",")


class ContentExtension:
    def __init__(self, params: Mapping[str, Any]) -> None:
        self.return_types = _split_csv(params.get("ext_content_return_types"))
        # launch_presentation_return_url is the documented fallback
        self.return_url = params.get("ext_content_return_url") or params.get("launch_presentation_return_url")
        self.file_extensions = _split_csv(params.get("ext_content_file_extensions"))

    def has_return_type(self, return_type: str) -> bool:
        return return_type in self.return_types

    def has_file_extension(self, extension: str) -> bool:
        return extension in self.file_extensions

    def build_file(self, file_url: str, text: str | None = None, content_type: str | None = None) -> str:
        return self._return_url(FILE_RETURN_TYPE, url=file_url, text=text, content_type=content_type)

    def build_iframe(
        self,
        iframe_url: str,
        title: str | None = None,
        width: int | None = None,
        height: int | None = None,
    ) -> str:
        return self._return_url(IFRAME_RETURN_TYPE, url=iframe_url, title=title, width=width, height=height)

    def build_image_url(
        self,
        image_url: str,
        text: str | None = None,
        width: int | None = None,
        height: int | None = None,
    ) -> str:
        return self._return_url(IMAGE_URL_RETURN_TYPE, url=image_url, text=text, width=width, height=height)

    def build_lti_launch_url(self, launch_url: str, title: str | None = None, text: str | None = None) -> str:
        return self._return_url(LTI_LAUNCH_URL_RETURN_TYPE, url=launch_url, title=title, text=text)

    def build_oembed(self, oembed_url: str, endpoint: str | None = None) -> str:
        return self._return_url(OEMBED_RETURN_TYPE, url=oembed_url, endpoint=endpoint)

    def build_url(
        self,
        hyperlink: str,
        text: str | None = None,
        title: str | None = None,
        target: str | None = None,
    ) -> str:
        return self._return_url(URL_RETURN_TYPE, url=hyperlink, text=text, title=title, target=target)

    def _return_url(self, return_type: str, **params: Any) -> str:
        if not self.has_return_type(return_type):
            raise LTIExtensionError(
                f"Type de retour invalide, options valides: {', '.join(self.return_types)}"
            )
        if not self.return_url:
            raise LTIExtensionError("Aucune URL de retour fournie par la plateforme.")

        parts = urlsplit(self.return_url)
        query = parse_query(parts.query)
        query["return_type"] = return_type
        for key, value in params.items():
            if value is not None:
                query[key] = value
        return urlunsplit(parts._replace(query=urlencode(query, doseq=True, quote_via=quote)))


__all__ = [
    "ContentExtension",
    "FILE_RETURN_TYPE",
    "IFRAME_RETURN_TYPE",
    "IMAGE_URL_RETURN_TYPE",
    "LTI_LAUNCH_URL_RETURN_TYPE",
    "OEMBED_RETURN_TYPE",
    "URL_RETURN_TYPE",
]
