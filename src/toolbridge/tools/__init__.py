"""
Tool registry for toolbridge.

The registry is a load-once snapshot of :class:`~toolbridge.core.schema.ToolDescriptor` entries.
Descriptors never change after loading; what changes is whether each tool's transport is
reachable right now, which the capability dispatcher records in the registry's
:class:`TransportStatus`.
"""

import fnmatch
import json
import logging
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
)

from pydantic import (
    BaseModel,
    Field,
)

from toolbridge.core.errors import InvalidRequestError
from toolbridge.core.schema import (
    CapabilityServerBinding,
    CapabilityServerConfig,
    ContainerBinding,
    ContainerConfig,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)


class TransportStatus:
    """
    Live reachability flags for the two transports.

    Written by the dispatcher after each probe, read by :meth:`ToolRegistry.available_now`.
    """

    def __init__(self) -> None:
        self.container_reachable = False
        self.servers_connected: Dict[str, bool] = {}

    def is_available(self, tool: ToolDescriptor) -> bool:
        """Return whether *tool*'s bound transport is currently usable."""
        binding = tool.transport_binding
        if isinstance(binding, ContainerBinding):
            return self.container_reachable
        if isinstance(binding, CapabilityServerBinding):
            return self.servers_connected.get(binding.server_name, False)
        return False


class ToolCatalogue(BaseModel):
    """Everything the tool layer loads from configuration."""

    container: ContainerConfig = Field(default_factory=ContainerConfig)
    capability_servers: Dict[str, CapabilityServerConfig] = Field(default_factory=dict)
    tools: List[ToolDescriptor] = Field(default_factory=list)


class ToolRegistry:
    """Pure lookup over the tool catalogue."""

    def __init__(
        self, tools: Iterable[ToolDescriptor], status: TransportStatus | None = None
    ) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}
        for tool in tools:
            if tool.id in self._tools:
                raise InvalidRequestError(f"Tool '{tool.id}' is declared twice.")
            self._tools[tool.id] = tool
        self.status = status or TransportStatus()

    def __len__(self) -> int:
        return len(self._tools)

    def by_id(self, tool_id: str) -> ToolDescriptor | None:
        """Return the descriptor for *tool_id*, or ``None`` if it is not catalogued."""
        return self._tools.get(tool_id)

    def available_now(self) -> List[ToolDescriptor]:
        """Return the tools whose transport is reachable, in catalogue order."""
        return [tool for tool in self._tools.values() if self.status.is_available(tool)]

    def all(self) -> List[Dict[str, Any]]:
        """Return every catalogued tool with its live ``available`` flag."""
        return [
            {**describe_tool(tool), "available": self.status.is_available(tool)}
            for tool in self._tools.values()
        ]


def mime_matches(mime_type: str, pattern: str) -> bool:
    """
    Return whether *mime_type* satisfies an accepted-input *pattern*.

    A file matches on an exact type, on a ``type/*`` wildcard, or when the pattern's subtype
    occurs inside the file's type (``application/pdf`` matches ``application/x-pdf``).
    """
    if mime_type == pattern:
        return True
    if "*" in pattern:
        return fnmatch.fnmatchcase(mime_type, pattern)
    _, _, subtype = pattern.partition("/")
    return bool(subtype) and subtype in mime_type


def accepts(tool: ToolDescriptor, mime_type: str) -> bool:
    """Return whether *tool* declares an input type matching *mime_type*."""
    return any(mime_matches(mime_type, pattern) for pattern in tool.accepted_input_types)


def describe_tool(tool: ToolDescriptor) -> Dict[str, Any]:
    """Prompt- and API-friendly summary of a tool (no transport details)."""
    return {
        "id": tool.id,
        "name": tool.name or tool.id,
        "description": tool.description,
        "capabilities": sorted(tool.capabilities),
        "input_types": list(tool.accepted_input_types),
        "source": tool.transport_binding.kind,
    }


def load_tool_catalogue(path: str | None = None) -> ToolCatalogue:
    """
    Load the tool catalogue.

    Parameters
    ----------
    path:
        Optional JSON file with the :class:`ToolCatalogue` shape.  When omitted, the built-in
        catalogue from :mod:`toolbridge.tools.catalogue` is used.
    """
    if not path:
        # Lazy import - the built-in catalogue reads settings at call time
        from toolbridge.tools.catalogue import (  # pylint: disable=import-outside-toplevel
            default_catalogue,
        )

        return default_catalogue()

    raw: Mapping[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
    catalogue = ToolCatalogue.model_validate(raw)
    logger.info("Loaded %d tools from %s", len(catalogue.tools), path)
    return catalogue
