"""
Tool registry and catalogue tests.

Run with:
$ pytest -q
"""

import json

import pytest

from conftest import sample_tools
from toolbridge.core.errors import InvalidRequestError
from toolbridge.core.schema import ParameterSpec
from toolbridge.tools import (
    ToolRegistry,
    accepts,
    load_tool_catalogue,
    mime_matches,
)
from toolbridge.tools.catalogue import default_catalogue


def test_available_now_follows_transport_flags() -> None:
    """Availability is derived from the live status of each binding."""

    registry = ToolRegistry(sample_tools())
    assert registry.available_now() == []

    registry.status.container_reachable = True
    assert [t.id for t in registry.available_now()] == ["image_analyzer", "text_processor"]

    registry.status.servers_connected["document_analysis"] = True
    assert len(registry.available_now()) == 3
    assert all(entry["available"] for entry in registry.all())


def test_lookup_and_duplicates() -> None:
    """Lookup by id; duplicated ids are rejected at load."""

    registry = ToolRegistry(sample_tools())

    assert registry.by_id("image_analyzer") is not None
    assert registry.by_id("nope") is None
    assert registry.by_id("text_processor") is not None
    with pytest.raises(InvalidRequestError):
        ToolRegistry(sample_tools() + sample_tools()[:1])


@pytest.mark.parametrize(
    "mime, pattern, expected",
    [
        ("application/pdf", "application/pdf", True),
        ("image/png", "image/*", True),
        ("application/x-pdf", "application/pdf", True),
        ("text/plain", "image/*", False),
        ("text/csv", "text/plain", False),
    ],
)
def test_mime_matching(mime: str, pattern: str, expected: bool) -> None:
    """Exact, wildcard and subtype-substring matches."""

    assert mime_matches(mime, pattern) is expected


def test_accepts_uses_declared_types() -> None:
    """A tool accepts files matching any of its input types."""

    pdf_tool, image_tool, _ = sample_tools()
    assert accepts(pdf_tool, "application/pdf")
    assert accepts(image_tool, "image/jpeg")
    assert not accepts(image_tool, "application/pdf")


def test_default_catalogue() -> None:
    """The built-in catalogue wires PDF tools to the document server."""

    catalogue = default_catalogue()
    ids = [t.id for t in catalogue.tools]

    assert "extract_all_from_pdf" in ids and "audio_processor" in ids
    assert "document_analysis" in catalogue.capability_servers
    pdf = next(t for t in catalogue.tools if t.id == "extract_all_from_pdf")
    assert pdf.transport_binding.input_parameter == "pdf_path"
    assert pdf.defaults() == {"confidence": 0.2}


def test_catalogue_from_json(tmp_path) -> None:
    """A JSON file can replace the built-in catalogue."""

    path = tmp_path / "tools.json"
    path.write_text(
        json.dumps(
            {
                "container": {"api_endpoint": "http://tools:9000"},
                "tools": [
                    {
                        "id": "ocr",
                        "accepted_input_types": ["image/*"],
                        "default_parameters": {"confidence": {"default": 0.5, "min": 0, "max": 1}},
                        "transport_binding": {"kind": "container", "path": "/ocr"},
                    }
                ],
            }
        ),
        encoding="utf-8",
    )

    catalogue = load_tool_catalogue(str(path))

    assert catalogue.container.api_endpoint == "http://tools:9000"
    assert catalogue.tools[0].default_parameters["confidence"] == ParameterSpec(
        default=0.5, min=0, max=1
    )
