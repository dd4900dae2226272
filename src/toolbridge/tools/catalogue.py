"""Built-in tool catalogue: the document-analysis capability server plus the tool container."""

from toolbridge.config import settings
from toolbridge.core.schema import (
    CapabilityServerBinding,
    CapabilityServerConfig,
    ContainerBinding,
    ContainerConfig,
    ParameterSpec,
    ToolDescriptor,
)
from toolbridge.tools import ToolCatalogue

DOCUMENT_SERVER = "document_analysis"

_CONFIDENCE = {"confidence": ParameterSpec(default=0.2, minimum=0.0, maximum=1.0)}

# (tool id, specific path, description, capabilities)
_PDF_TOOLS = [
    ("extract_all_from_pdf", "/extract-all", "Full extraction of text, tables and figures",
     {"pdf", "text", "tables", "figures", "formulas"}),
    ("extract_text_from_pdf", "/extract-text", "Extract the text layer of a PDF", {"pdf", "text"}),
    ("extract_tables_from_pdf", "/extract-tables", "Detect and extract tables", {"pdf", "tables"}),
    ("extract_figures_from_pdf", "/extract-figures", "Detect and crop figures", {"pdf", "figures"}),
    ("extract_formulas_from_pdf", "/extract-formulas", "Detect mathematical formulas",
     {"pdf", "formulas"}),
    ("get_pdf_document_stats", "/get-document-stats", "Page, word and object counts",
     {"pdf", "statistics"}),
    ("analyze_pdf_layout", "/analyze-layout", "Layout regions per page", {"pdf", "layout"}),
]

# (tool id, path, accepted types, description, capabilities)
_CONTAINER_TOOLS = [
    ("excel_processor", "/process/excel",
     ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
      "application/vnd.ms-excel", "text/csv"),
     "Summarise sheets, columns and statistics of a spreadsheet", {"spreadsheet", "statistics"}),
    ("image_analyzer", "/analyze/image", ("image/*",),
     "Describe an image and extract any text in it", {"image", "ocr"}),
    ("text_processor", "/process/text",
     ("text/plain", "application/msword",
      "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
     "Summarise and extract entities from text documents", {"text", "summary"}),
    ("video_processor", "/process/video", ("video/*",),
     "Extract key frames and a transcript from a video", {"video", "transcript"}),
    ("audio_processor", "/process/audio", ("audio/*",),
     "Transcribe an audio recording", {"audio", "transcript"}),
]


def default_catalogue() -> ToolCatalogue:
    """Build the catalogue from the current settings."""
    tools = [
        ToolDescriptor(
            id=tool_id,
            name=tool_id.replace("_", " ").title(),
            description=description,
            capabilities=frozenset(capabilities),
            accepted_input_types=("application/pdf",),
            default_parameters=_CONFIDENCE,
            transport_binding=CapabilityServerBinding(
                server_name=DOCUMENT_SERVER, path=path, input_parameter="pdf_path"
            ),
        )
        for tool_id, path, description, capabilities in _PDF_TOOLS
    ]
    tools += [
        ToolDescriptor(
            id=tool_id,
            name=tool_id.replace("_", " ").title(),
            description=description,
            capabilities=frozenset(capabilities),
            accepted_input_types=accepted,
            transport_binding=ContainerBinding(path=path),
        )
        for tool_id, path, accepted, description, capabilities in _CONTAINER_TOOLS
    ]

    return ToolCatalogue(
        container=ContainerConfig(
            api_endpoint=settings.CONTAINER_ENDPOINT,
            health_check=settings.CONTAINER_HEALTH_PATH,
        ),
        capability_servers={
            DOCUMENT_SERVER: CapabilityServerConfig(
                name=DOCUMENT_SERVER, api_endpoint=settings.DOCUMENT_SERVER_ENDPOINT
            )
        },
        tools=tools,
    )
