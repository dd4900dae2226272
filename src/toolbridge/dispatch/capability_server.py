"""
Execution strategy for tools served by a capability server.

A capability server is a separate HTTP process exposing several tools.  Before every call the
client probes the server's health endpoint; if it does not answer, the configured launch command
is started and the health endpoint is polled until the server comes up.  Concurrent callers share
one start attempt, and a server whose launched process has exited is started again.

Each tool is tried against an ordered list of candidate endpoints:

1. the tool's specific path (multipart: primary file + ``confidence``), if it declares one;
2. the generic ``/mcp/call-tool`` protocol (JSON: ``{"tool_name": ..., "arguments": {...}}``).

The first candidate answering HTTP 200 wins.  If all of them fail, the first failure is raised.
"""

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Tuple,
)

import httpx

from toolbridge.core.errors import (
    BridgeError,
    InvalidRequestError,
    ServiceUnavailableError,
    TimeoutExceededError,
)
from toolbridge.core.schema import (
    CapabilityServerBinding,
    CapabilityServerConfig,
    FileRecord,
    ParameterSpec,
    ToolDescriptor,
    ToolInvocation,
)
from toolbridge.dispatch.transport import (
    classify_transport_error,
    decode_payload,
    multipart_kwargs,
    read_upload,
    remote_error,
)
from toolbridge.tools import (
    TransportStatus,
    accepts,
)

logger = logging.getLogger(__name__)

GENERIC_CALL_PATH = "/mcp/call-tool"
DEFAULT_CONFIDENCE = 0.2
_PROBE_TIMEOUT_S = 5.0

Candidate = Tuple[str, Callable[[], Awaitable[httpx.Response]]]


class CapabilityServerClient:
    """Readiness management and tool calls for one capability server."""

    def __init__(
        self,
        config: CapabilityServerConfig,
        client: httpx.AsyncClient,
        status: TransportStatus,
        poll_interval_s: float = 2.0,
        max_ready_attempts: int = 30,
    ) -> None:
        self.config = config
        self._client = client
        self._status = status
        self._poll_interval_s = poll_interval_s
        self._max_ready_attempts = max_ready_attempts
        self._process: asyncio.subprocess.Process | None = None
        self._log_tasks: List[asyncio.Task] = []
        self._starting: asyncio.Task | None = None

    # ------------------------------------------------------------------ #
    # Readiness
    # ------------------------------------------------------------------ #
    @property
    def name(self) -> str:
        """Server name as referenced by tool bindings."""
        return self.config.name

    @property
    def connected(self) -> bool:
        """Connection flag consulted by the tool registry."""
        return self._status.servers_connected.get(self.name, False)

    def _url(self, path: str) -> str:
        return f"{self.config.api_endpoint.rstrip('/')}{path}"

    async def probe(self) -> bool:
        """GET the health endpoint; HTTP 200 means reachable.  Updates the connection flag."""
        try:
            response = await self._client.get(
                self._url(self.config.health_check), timeout=_PROBE_TIMEOUT_S
            )
            healthy = response.status_code == 200
        except httpx.HTTPError:
            healthy = False
        self._status.servers_connected[self.name] = healthy
        return healthy

    async def ensure_ready(self) -> None:
        """
        Make sure the server answers its health check, launching it if necessary.

        Raises
        ------
        ServiceUnavailableError
            The server is down and cannot be launched, or the launched process exited.
        TimeoutExceededError
            The launched server did not become healthy within the polling budget.
        """
        if await self.probe():
            return

        # one start attempt per outage, awaited by every caller that finds the server down
        if self._starting is None or self._starting.done():
            self._starting = asyncio.create_task(self._start())
        await asyncio.shield(self._starting)

    async def _start(self) -> None:
        if self._process is None or self._process.returncode is not None:
            await self._launch()
        await self._wait_until_ready()

    async def _launch(self) -> None:
        if not self.config.command:
            raise ServiceUnavailableError(
                f"Capability server {self.name} is not accessible and has no launch command"
            )

        logger.info(
            "Starting capability server %s: %s %s",
            self.name,
            self.config.command,
            " ".join(self.config.args),
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.config.cwd,
            )
        except OSError as exc:
            raise ServiceUnavailableError(
                f"Could not start capability server {self.name}: {exc}"
            ) from exc

        for task in self._log_tasks:
            task.cancel()
        self._log_tasks = [
            asyncio.create_task(self._relay_output(self._process.stdout, logging.INFO)),
            asyncio.create_task(self._relay_output(self._process.stderr, logging.WARNING)),
        ]

    async def _relay_output(self, stream: asyncio.StreamReader | None, level: int) -> None:
        if stream is None:
            return
        async for raw in stream:
            logger.log(level, "[%s] %s", self.name, raw.decode("utf-8", errors="replace").rstrip())

    async def _wait_until_ready(self) -> None:
        for attempt in range(1, self._max_ready_attempts + 1):
            if await self.probe():
                logger.info(
                    "Capability server %s is ready after %d attempt(s)", self.name, attempt
                )
                return
            if self._process is not None and self._process.returncode is not None:
                raise ServiceUnavailableError(
                    f"Capability server {self.name} exited with code {self._process.returncode}"
                )
            logger.info(
                "Waiting for capability server %s... (attempt %d/%d)",
                self.name,
                attempt,
                self._max_ready_attempts,
            )
            await asyncio.sleep(self._poll_interval_s)

        raise TimeoutExceededError(
            f"Capability server {self.name} failed to become ready after "
            f"{self._max_ready_attempts} attempts"
        )

    # ------------------------------------------------------------------ #
    # Tool calls
    # ------------------------------------------------------------------ #
    @staticmethod
    def primary_file(tool: ToolDescriptor, invocation: ToolInvocation) -> FileRecord | None:
        """First file whose type matches one of the tool's accepted input types."""
        return next((f for f in invocation.files if accepts(tool, f.mime_type)), None)

    @classmethod
    def translate_parameters(
        cls, tool: ToolDescriptor, invocation: ToolInvocation
    ) -> Dict[str, Any]:
        """
        Convert an invocation into the arguments capability-server tools expect.

        The file list collapses to one primary input path and ``confidence`` is clamped to the
        bounds declared by the tool (default 0.2 when nothing usable was supplied).
        """
        binding = tool.transport_binding
        assert isinstance(binding, CapabilityServerBinding)
        arguments: Dict[str, Any] = {}

        primary = cls.primary_file(tool, invocation)
        if primary is not None:
            arguments[binding.input_parameter] = primary.storage_path

        spec = tool.default_parameters.get("confidence", ParameterSpec(default=DEFAULT_CONFIDENCE))
        fallback = spec.default if spec.default is not None else DEFAULT_CONFIDENCE
        raw = invocation.parameters.get("confidence", fallback)
        try:
            confidence = float(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric confidence %r for %s", raw, tool.id)
            confidence = float(fallback)
        arguments["confidence"] = spec.clamp(confidence)

        logger.info("Converted parameters for %s: %s", tool.id, arguments)
        return arguments

    def _candidates(
        self, tool: ToolDescriptor, invocation: ToolInvocation, arguments: Dict[str, Any]
    ) -> List[Candidate]:
        binding = tool.transport_binding
        assert isinstance(binding, CapabilityServerBinding)
        timeout = self.config.timeout_s
        candidates: List[Candidate] = []

        if binding.path:
            url = self._url(binding.path)
            primary = self.primary_file(tool, invocation)

            async def call_specific() -> httpx.Response:
                files = []
                if primary is not None:
                    content = await read_upload(primary)
                    files.append(("file", (primary.display_name, content, primary.mime_type)))
                data = {"confidence": str(arguments["confidence"])}
                return await self._client.post(
                    url, timeout=timeout, **multipart_kwargs(data, files)
                )

            candidates.append((url, call_specific))

        generic_url = self._url(GENERIC_CALL_PATH)

        async def call_generic() -> httpx.Response:
            return await self._client.post(
                generic_url,
                json={"tool_name": tool.id, "arguments": arguments},
                timeout=timeout,
            )

        candidates.append((generic_url, call_generic))
        return candidates

    async def execute(self, tool: ToolDescriptor, invocation: ToolInvocation) -> Any:
        """Run *tool* on this server and return its payload (first HTTP 200 wins)."""
        await self.ensure_ready()
        arguments = self.translate_parameters(tool, invocation)

        first_error: BridgeError | None = None
        for url, call in self._candidates(tool, invocation, arguments):
            logger.info("Trying %s for tool %s", url, tool.id)
            try:
                response = await call()
            except InvalidRequestError:
                raise
            except httpx.HTTPError as exc:
                error = classify_transport_error(exc, url)
            else:
                if response.status_code == 200:
                    logger.info("Capability tool %s executed successfully via %s", tool.id, url)
                    return decode_payload(response)
                error = remote_error(response)

            logger.warning("Endpoint %s failed for %s: %s", url, tool.id, error.describe())
            if isinstance(error, ServiceUnavailableError):
                self._status.servers_connected[self.name] = False
            if first_error is None:
                first_error = error

        assert first_error is not None
        raise first_error

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def health(self) -> Dict[str, Any]:
        """Status snapshot for health endpoints."""
        return {
            "server": self.name,
            "endpoint": self.config.api_endpoint,
            "connected": self.connected,
            "process_running": self._process is not None and self._process.returncode is None,
        }

    async def shutdown(self) -> None:
        """Stop a server this client launched."""
        if self._starting is not None and not self._starting.done():
            self._starting.cancel()
        if self._process is not None and self._process.returncode is None:
            logger.info("Shutting down capability server %s", self.name)
            self._process.terminate()
            await self._process.wait()
        for task in self._log_tasks:
            task.cancel()
        self._process = None
        self._status.servers_connected[self.name] = False
