from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest

from backend.lti_provider.content import ContentExtension
from backend.lti_provider.errors import LTIExtensionError


def _extension(**overrides: str) -> ContentExtension:
    params = {
        "ext_content_return_types": "file,iframe,image_url,lti_launch_url,oembed,url",
        "ext_content_return_url": "https://lms.example/return?course=7",
        "ext_content_file_extensions": "pdf,png",
    }
    params.update(overrides)
    return ContentExtension(params)


def test_capabilities_are_split() -> None:
    extension = _extension()

    assert extension.has_return_type("oembed")
    assert not extension.has_return_type("video")
    assert extension.has_file_extension("pdf")
    assert not extension.has_file_extension("exe")


def test_build_url_keeps_existing_query_and_skips_missing_values() -> None:
    target = _extension().build_url("https://example.com/a b", text="Lien & texte")

    parts = urlsplit(target)
    query = parse_qs(parts.query)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://lms.example/return"
    assert query == {
        "course": ["7"],
        "return_type": ["url"],
        "url": ["https://example.com/a b"],
        "text": ["Lien & texte"],
    }
    assert "%20" in parts.query


@pytest.mark.parametrize(
    "builder, args, return_type",
    [
        ("build_file", ("https://files.example/doc.pdf",), "file"),
        ("build_iframe", ("https://tool.example/embed",), "iframe"),
        ("build_image_url", ("https://img.example/a.png",), "image_url"),
        ("build_lti_launch_url", ("https://tool.example/lti/launch",), "lti_launch_url"),
        ("build_oembed", ("https://video.example/1",), "oembed"),
        ("build_url", ("https://example.com",), "url"),
    ],
)
def test_builders_set_return_type(builder: str, args: tuple[str, ...], return_type: str) -> None:
    target = getattr(_extension(), builder)(*args)

    query = parse_qs(urlsplit(target).query)
    assert query["return_type"] == [return_type]
    assert query["url"] == [args[0]]


def test_iframe_dimensions_are_serialized() -> None:
    target = _extension().build_iframe("https://tool.example/embed", title="Quiz", width=640, height=480)

    query = parse_qs(urlsplit(target).query)
    assert query["width"] == ["640"]
    assert query["height"] == ["480"]
    assert query["title"] == ["Quiz"]


def test_unsupported_return_type_lists_options() -> None:
    extension = _extension(ext_content_return_types="url,file")

    with pytest.raises(LTIExtensionError) as excinfo:
        extension.build_iframe("https://tool.example/embed")

    assert "url, file" in str(excinfo.value)


def test_return_url_falls_back_to_presentation_url() -> None:
    extension = ContentExtension(
        {
            "ext_content_return_types": "url",
            "launch_presentation_return_url": "https://lms.example/back",
        }
    )

    assert extension.build_url("https://example.com").startswith("https://lms.example/back?")


def test_missing_return_url_raises() -> None:
    extension = ContentExtension({"ext_content_return_types": "url"})

    with pytest.raises(LTIExtensionError):
        extension.build_url("https://example.com")
