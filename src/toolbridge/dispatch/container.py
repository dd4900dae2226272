"""Execution strategy for tools served by the long-lived tool container."""

import logging
from typing import Any

import httpx

from toolbridge.core.errors import (
    BridgeError,
    ServiceUnavailableError,
)
from toolbridge.core.schema import (
    ContainerBinding,
    ContainerConfig,
    ToolDescriptor,
    ToolInvocation,
)
from toolbridge.dispatch.transport import (
    classify_transport_error,
    decode_payload,
    form_value,
    multipart_kwargs,
    read_upload,
    remote_error,
)
from toolbridge.tools import TransportStatus

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT_S = 5.0


class ContainerTransport:
    """Multipart POSTs against ``endpoint + tool.path``."""

    def __init__(
        self,
        config: ContainerConfig,
        client: httpx.AsyncClient,
        status: TransportStatus,
        timeout_s: float,
    ) -> None:
        self.config = config
        self._client = client
        self._status = status
        self._timeout_s = timeout_s

    async def probe(self) -> bool:
        """Check the container's health endpoint and record the result."""
        healthy = False
        if self.config.api_endpoint:
            url = f"{self.config.api_endpoint.rstrip('/')}{self.config.health_check}"
            try:
                response = await self._client.get(url, timeout=_PROBE_TIMEOUT_S)
                healthy = response.status_code == 200
            except httpx.HTTPError as exc:
                logger.warning("Tool container health check failed: %s", exc)
        self._status.container_reachable = healthy
        return healthy

    async def execute(self, tool: ToolDescriptor, invocation: ToolInvocation) -> Any:
        """
        Run *tool* in the container and return its payload.

        Raises
        ------
        ServiceUnavailableError
            Connection refused, or no container endpoint configured.
        RemoteError
            The container answered with a non-2xx status.
        TimeoutExceededError
            No answer within the tool timeout.
        """
        binding = tool.transport_binding
        assert isinstance(binding, ContainerBinding)
        base = binding.endpoint or self.config.api_endpoint
        if not base:
            raise ServiceUnavailableError("Tool container endpoint not configured")
        url = f"{base.rstrip('/')}{binding.path}"

        files = [
            ("file", (f.display_name, await read_upload(f), f.mime_type)) for f in invocation.files
        ]
        data = {
            key: form_value(value)
            for key, value in invocation.parameters.items()
            if value is not None
        }

        logger.debug("POST %s with %d file(s), fields=%s", url, len(files), sorted(data))
        try:
            response = await self._client.post(
                url, timeout=self._timeout_s, **multipart_kwargs(data, files)
            )
        except httpx.HTTPError as exc:
            error: BridgeError = classify_transport_error(exc, url)
            if isinstance(error, ServiceUnavailableError):
                self._status.container_reachable = False
            raise error from exc

        if not response.is_success:
            raise remote_error(response)

        self._status.container_reachable = True
        logger.info("Container tool %s executed successfully", tool.id)
        return decode_payload(response)
