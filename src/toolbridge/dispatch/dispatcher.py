"""Dispatches tool invocations to their transport and wraps every failure into a ToolResult."""

import logging
from typing import (
    Any,
    Dict,
)

import httpx

from toolbridge.config import settings
from toolbridge.core.errors import (
    BridgeError,
    NotFoundError,
)
from toolbridge.core.schema import (
    CapabilityServerBinding,
    ContainerBinding,
    ToolDescriptor,
    ToolInvocation,
    ToolResult,
)
from toolbridge.dispatch.capability_server import CapabilityServerClient
from toolbridge.dispatch.container import ContainerTransport
from toolbridge.tools import (
    ToolCatalogue,
    ToolRegistry,
)

logger = logging.getLogger(__name__)


class CapabilityDispatcher:
    """
    Execute one tool invocation against its bound transport.

    :meth:`execute` never raises: every failure, classified or not, becomes a failed
    :class:`ToolResult`.  Retrying is the caller's business.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        catalogue: ToolCatalogue,
        client: httpx.AsyncClient | None = None,
        tool_timeout_s: float | None = None,
        poll_interval_s: float = 2.0,
        max_ready_attempts: int = 30,
    ) -> None:
        self.registry = registry
        self._client = client or httpx.AsyncClient()
        self.container = ContainerTransport(
            catalogue.container,
            self._client,
            registry.status,
            tool_timeout_s if tool_timeout_s is not None else settings.TOOL_TIMEOUT_S,
        )
        self.servers: Dict[str, CapabilityServerClient] = {
            name: CapabilityServerClient(
                config,
                self._client,
                registry.status,
                poll_interval_s=poll_interval_s,
                max_ready_attempts=max_ready_attempts,
            )
            for name, config in catalogue.capability_servers.items()
        }

    async def _run(self, tool: ToolDescriptor, invocation: ToolInvocation) -> Any:
        binding = tool.transport_binding
        if isinstance(binding, ContainerBinding):
            return await self.container.execute(tool, invocation)
        if isinstance(binding, CapabilityServerBinding):
            server = self.servers.get(binding.server_name)
            if server is None:
                raise NotFoundError(f"Capability server {binding.server_name} is not configured")
            return await server.execute(tool, invocation)
        raise NotFoundError(f"Unknown transport for tool {tool.id}")

    async def execute(self, invocation: ToolInvocation) -> ToolResult:
        """Run *invocation* and return its result; never raises."""
        tool = self.registry.by_id(invocation.tool_id)
        if tool is None:
            error = NotFoundError(f"Tool {invocation.tool_id} not found")
            return ToolResult.failed(invocation.tool_id, error.describe(), retryable=False)

        logger.info(
            "Executing tool: %s (source: %s, files: %s)",
            tool.id,
            tool.transport_binding.kind,
            [f.display_name for f in invocation.files],
        )
        try:
            payload = await self._run(tool, invocation)
        except BridgeError as exc:
            logger.warning("Tool %s failed: %s", tool.id, exc.describe())
            return ToolResult.failed(tool.id, exc.describe(), retryable=exc.retryable)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unhandled error in tool '%s'", tool.id)
            return ToolResult.failed(tool.id, f"{exc.__class__.__name__}: {exc}")
        return ToolResult.ok(tool.id, payload)

    # ------------------------------------------------------------------ #
    # Availability & lifecycle
    # ------------------------------------------------------------------ #
    async def initialize(self) -> None:
        """Probe the container and bring every capability server up (launching if needed)."""
        await self.container.probe()
        for server in self.servers.values():
            try:
                await server.ensure_ready()
                logger.info("Capability server %s is connected", server.name)
            except BridgeError as exc:
                logger.warning("Capability server %s unavailable: %s", server.name, exc.describe())

    async def refresh_availability(self) -> None:
        """Re-probe every transport without launching anything."""
        await self.container.probe()
        for server in self.servers.values():
            await server.probe()

    def health(self) -> Dict[str, Any]:
        """Tool-layer status for health endpoints."""
        available = self.registry.available_now()
        return {
            "status": "healthy" if available else "unhealthy",
            "total_tools": len(self.registry),
            "available_tools": len(available),
            "container_status": self.registry.status.container_reachable,
            "capability_servers": {name: s.health() for name, s in self.servers.items()},
        }

    async def shutdown(self) -> None:
        """Stop launched servers and close the shared HTTP client."""
        for server in self.servers.values():
            await server.shutdown()
        await self._client.aclose()
