"""
Backend for a model running in a worker process on this machine.

The worker (:mod:`toolbridge.models.local_worker` by default) speaks newline-delimited JSON over
stdin/stdout.  It prints a readiness marker once the model is loaded, then answers one request per
line.  Only one request is outstanding at a time: a single owner task takes ``(payload, future)``
pairs off a queue in arrival order, writes the request and reads until the next protocol line.

A caller that times out simply stops waiting.  The owner still consumes the late reply, so it can
never be mistaken for the answer to the next request.
"""

import asyncio
import json
import logging
import sys
from typing import (
    Any,
    Dict,
    List,
    Sequence,
    Tuple,
)

from toolbridge.config import settings
from toolbridge.core.errors import (
    BridgeError,
    RemoteError,
    ServiceUnavailableError,
    TimeoutExceededError,
)
from toolbridge.core.schema import ModelDescriptor
from toolbridge.models.gateway import (
    BaseBackend,
    register_backend,
)

logger = logging.getLogger(__name__)

READY_MARKER = "LOCAL_MODEL_READY"
QUIT_COMMAND = "QUIT"
STARTUP_TIMEOUT_S = 30.0
REQUEST_TIMEOUT_S = 60.0

Request = Tuple[Dict[str, Any], "asyncio.Future[Dict[str, Any]]"]


@register_backend("local")
class LocalProcessBackend(BaseBackend):
    """Generation through a long-lived local worker process."""

    def __init__(
        self,
        descriptor: ModelDescriptor,
        api_key: str | None = None,
        command: Sequence[str] | None = None,
        startup_timeout_s: float = STARTUP_TIMEOUT_S,
        request_timeout_s: float = REQUEST_TIMEOUT_S,
    ) -> None:
        super().__init__(descriptor, api_key)
        self.top_p = float(descriptor.options.get("top_p", 0.9))
        self._command: List[str] = list(command or descriptor.options.get("command") or [])
        self._startup_timeout_s = startup_timeout_s
        self._request_timeout_s = request_timeout_s
        self._process: asyncio.subprocess.Process | None = None
        self._requests: "asyncio.Queue[Request] | None" = None
        self._owner: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None

    def _worker_command(self) -> List[str]:
        if self._command:
            return self._command
        model_path = self.descriptor.options.get("model_path") or settings.LOCAL_MODEL_PATH
        if not model_path:
            raise ServiceUnavailableError(f"{self.descriptor.id}: no local model path configured")
        return [
            sys.executable,
            "-m",
            "toolbridge.models.local_worker",
            "--model-path",
            str(model_path),
            "--max-tokens",
            str(self.max_tokens),
            "--temperature",
            str(self.temperature),
            "--top-p",
            str(self.top_p),
        ]

    @property
    def running(self) -> bool:
        """True once the worker has signalled readiness and has not exited."""
        return (
            self._process is not None
            and self._process.returncode is None
            and self._owner is not None
            and not self._owner.done()
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    async def start(self) -> None:
        """
        Spawn the worker and wait for its readiness marker.

        Raises
        ------
        ServiceUnavailableError
            The worker could not be spawned or exited before becoming ready.
        TimeoutExceededError
            No readiness marker within the startup timeout.
        """
        if self.running:
            return

        command = self._worker_command()
        logger.info("Starting local model worker for %s", self.descriptor.id)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ServiceUnavailableError(f"Could not start local model worker: {exc}") from exc

        self._stderr_task = asyncio.create_task(self._relay_stderr(self._process.stderr))
        try:
            await asyncio.wait_for(self._await_ready(), timeout=self._startup_timeout_s)
        except asyncio.TimeoutError as exc:
            await self._abort()
            raise TimeoutExceededError(
                f"Local model did not become ready within {self._startup_timeout_s:.0f}s"
            ) from exc
        except BridgeError:
            await self._abort()
            raise

        self._requests = asyncio.Queue()
        self._owner = asyncio.create_task(self._serve())
        logger.info("Local model %s is ready", self.descriptor.id)

    async def _await_ready(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        while True:
            line = await self._process.stdout.readline()
            if not line:
                raise ServiceUnavailableError("Local model worker exited before becoming ready")
            text = line.decode("utf-8", errors="replace").strip()
            if READY_MARKER in text:
                return
            logger.debug("[local worker] %s", text)

    async def _relay_stderr(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        async for raw in stream:
            logger.debug("[local worker] %s", raw.decode("utf-8", errors="replace").rstrip())

    async def _abort(self) -> None:
        process, self._process = self._process, None
        if process is not None:
            if process.returncode is None:
                process.kill()
            await process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()

    async def shutdown(self) -> None:
        """Ask the worker to quit, then make sure it is gone."""
        process = self._process
        if process is not None and process.returncode is None:
            try:
                assert process.stdin is not None
                process.stdin.write(f"{QUIT_COMMAND}\n".encode())
                await process.stdin.drain()
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except (OSError, asyncio.TimeoutError):
                if process.returncode is None:
                    process.terminate()
                await process.wait()
        for task in (self._owner, self._stderr_task):
            if task is not None:
                task.cancel()
        self._process = None
        self._owner = None
        self._requests = None

    # ------------------------------------------------------------------ #
    # Request serialisation
    # ------------------------------------------------------------------ #
    async def _serve(self) -> None:
        """Owner loop: one request on the wire at a time, strictly in arrival order."""
        assert self._requests is not None
        while True:
            payload, future = await self._requests.get()
            try:
                reply = await self._exchange(payload)
            except BridgeError as exc:
                if not future.done():
                    future.set_exception(exc)
                continue
            if not future.done():
                future.set_result(reply)
            else:
                logger.info("Discarding late local model reply")

    async def _exchange(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        process = self._process
        if process is None or process.stdin is None or process.stdout is None:
            raise ServiceUnavailableError("Local model worker is not running")
        try:
            process.stdin.write((json.dumps(payload) + "\n").encode())
            await process.stdin.drain()
        except OSError as exc:
            raise ServiceUnavailableError(f"Local model worker rejected input: {exc}") from exc

        while True:
            line = await process.stdout.readline()
            if not line:
                raise ServiceUnavailableError("Local model worker closed its output")
            text = line.decode("utf-8", errors="replace").strip()
            if not text or READY_MARKER in text:
                continue
            try:
                reply = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-protocol worker output: %s", text)
                continue
            if isinstance(reply, dict):
                return reply

    async def generate(self, prompt: str, system_prompt: str = "") -> str:
        if not self.running:
            raise ServiceUnavailableError(f"{self.descriptor.id} worker is not running")
        assert self._requests is not None

        future: "asyncio.Future[Dict[str, Any]]" = asyncio.get_running_loop().create_future()
        payload = {
            "prompt": prompt,
            "system_prompt": system_prompt or "",
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        await self._requests.put((payload, future))
        try:
            reply = await asyncio.wait_for(future, timeout=self._request_timeout_s)
        except asyncio.TimeoutError as exc:
            raise TimeoutExceededError("Local model response timeout") from exc

        if not reply.get("success"):
            raise RemoteError(None, str(reply.get("error") or "Local model generation failed"))
        return str(reply.get("response", "")).strip()
