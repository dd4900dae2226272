"""
Model gateway tests: structured output, health checks, hosted back-ends and the local worker.

Run with:
$ pytest -q
"""

import asyncio
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from conftest import descriptor
from toolbridge.core.errors import (
    AuthError,
    MalformedStructuredResponse,
    NotFoundError,
    RateLimitError,
    RemoteError,
    ServiceUnavailableError,
    TimeoutExceededError,
)
from toolbridge.core.schema import (
    ModelDescriptor,
    ModelKind,
)
from toolbridge.models.gateway import (
    BaseBackend,
    OpenAIBackend,
    TGIBackend,
    build_backend,
)
from toolbridge.models.local_process import LocalProcessBackend


class ScriptedBackend(BaseBackend):
    """Returns a fixed reply and remembers the prompts it was given."""

    def __init__(self, reply: str | Exception) -> None:
        super().__init__(descriptor())
        self.reply = reply
        self.calls: list[tuple[str, str]] = []

    async def generate(self, prompt: str, system_prompt: str = "") -> str:
        self.calls.append((prompt, system_prompt))
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


# ---------------------------------------------------------------------------
# Base behaviour
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_generate_structured_frames_and_extracts() -> None:
    """JSON framing is appended to both prompts; fenced output still parses."""

    backend = ScriptedBackend('```json\n{"selected_tools": ["a"]}\n```')

    value = await backend.generate_structured("pick tools", "be useful")

    assert value == {"selected_tools": ["a"]}
    prompt, system = backend.calls[0]
    assert prompt.startswith("pick tools") and "valid JSON format only" in prompt
    assert system.startswith("be useful") and "IMPORTANT" in system


@pytest.mark.asyncio
async def test_generate_structured_malformed() -> None:
    """No recoverable JSON raises MalformedStructuredResponse."""

    with pytest.raises(MalformedStructuredResponse):
        await ScriptedBackend("I would rather not.").generate_structured("pick")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply, expected",
    [("OK", True), ("ok, connected", True), ("Nope", False), (RemoteError(500), False)],
)
async def test_health_check(reply, expected) -> None:
    """Liveness is a case-insensitive "ok" in the reply; errors mean unhealthy."""

    assert await ScriptedBackend(reply).health_check() is expected


def test_build_backend_unknown_provider() -> None:
    """Providers resolve through the registry table."""

    with pytest.raises(NotFoundError):
        build_backend(descriptor())


@pytest.mark.asyncio
async def test_hosted_backend_requires_key() -> None:
    """Starting a credentialed backend without a key is an AuthError."""

    claude = ModelDescriptor(
        id="claude", kind=ModelKind.HOSTED_API, provider="anthropic", requires_credential=True
    )
    backend = build_backend(claude)

    with pytest.raises(AuthError):
        await backend.start()
    with pytest.raises(AuthError):
        await backend.generate("hi")


# ---------------------------------------------------------------------------
# OpenAI-compatible backend
# ---------------------------------------------------------------------------
def _openai_backend(create: AsyncMock) -> OpenAIBackend:
    desc = ModelDescriptor(
        id="deepseek",
        kind=ModelKind.HOSTED_API,
        provider="openai",
        options={"model": "deepseek-chat", "base_url": "https://api.deepseek.com"},
    )
    backend = OpenAIBackend(desc, api_key="sk-test-123456")
    backend._client = SimpleNamespace(  # pylint: disable=protected-access
        chat=SimpleNamespace(completions=SimpleNamespace(create=create))
    )
    return backend


def _completion(text: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


@pytest.mark.asyncio
async def test_openai_structured_uses_json_mode() -> None:
    """Structured calls request the native JSON response format."""

    create = AsyncMock(return_value=_completion('{"ok": true}'))
    backend = _openai_backend(create)

    assert await backend.generate_structured("plan") == {"ok": True}
    kwargs = create.await_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["model"] == "deepseek-chat"
    assert kwargs["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_openai_errors_are_mapped() -> None:
    """SDK exceptions become toolbridge errors."""

    request = httpx.Request("POST", "https://api.deepseek.com/chat/completions")
    limited = openai.RateLimitError(
        "slow down", response=httpx.Response(429, request=request), body=None
    )
    denied = openai.AuthenticationError(
        "bad key", response=httpx.Response(401, request=request), body=None
    )

    with pytest.raises(RateLimitError):
        await _openai_backend(AsyncMock(side_effect=limited)).generate("hi")
    with pytest.raises(AuthError):
        await _openai_backend(AsyncMock(side_effect=denied)).generate("hi")


# ---------------------------------------------------------------------------
# TGI backend
# ---------------------------------------------------------------------------
def _tgi(handler) -> TGIBackend:
    desc = ModelDescriptor(
        id="tgi",
        kind=ModelKind.HOSTED_API,
        provider="tgi",
        options={"endpoint": "http://tgi/generate"},
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TGIBackend(desc, client=client)


@pytest.mark.asyncio
async def test_tgi_generate() -> None:
    """The prompt is sent as ``inputs`` and ``generated_text`` is returned."""

    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"generated_text": "  hello  "}])

    assert await _tgi(handler).generate("hi", "sys") == "hello"
    body = seen[0].content
    assert b'"inputs"' in body and b"User: hi" in body


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error", [(401, AuthError), (429, RateLimitError), (500, RemoteError)]
)
async def test_tgi_status_mapping(status, error) -> None:
    """HTTP statuses map onto the error taxonomy."""

    backend = _tgi(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(error):
        await backend.generate("hi")


@pytest.mark.asyncio
async def test_tgi_without_endpoint_cannot_start() -> None:
    """A TGI descriptor without endpoint is unavailable."""

    desc = ModelDescriptor(id="tgi", kind=ModelKind.HOSTED_API, provider="tgi")
    with pytest.raises(ServiceUnavailableError):
        await TGIBackend(desc).start()


# ---------------------------------------------------------------------------
# Local process backend
# ---------------------------------------------------------------------------
FAKE_WORKER = r"""
import json, sys, time
print("loading weights...", flush=True)
print("LOCAL_MODEL_READY", flush=True)
for line in sys.stdin:
    line = line.strip()
    if line == "QUIT":
        break
    request = json.loads(line)
    prompt = request["prompt"]
    if prompt == "slow":
        time.sleep(0.6)
    if prompt == "fail":
        print(json.dumps({"success": False, "error": "model exploded"}), flush=True)
        continue
    print("debug: generating", flush=True)
    print(json.dumps({"success": True, "response": "echo: " + prompt}), flush=True)
"""

LOCAL = ModelDescriptor(id="local", kind=ModelKind.LOCAL_PROCESS, provider="local")


def _local(script: str = FAKE_WORKER, **kwargs) -> LocalProcessBackend:
    return LocalProcessBackend(LOCAL, command=[sys.executable, "-u", "-c", script], **kwargs)


@pytest.mark.asyncio
async def test_local_worker_round_trip() -> None:
    """Requests are answered in order; chatter on stdout is ignored."""

    backend = _local()
    await backend.start()
    try:
        assert await backend.generate("one") == "echo: one"
        replies = await asyncio.gather(*(backend.generate(p) for p in ("a", "b", "c")))
        assert replies == ["echo: a", "echo: b", "echo: c"]
        with pytest.raises(RemoteError):
            await backend.generate("fail")
    finally:
        await backend.shutdown()
    assert not backend.running


@pytest.mark.asyncio
async def test_local_worker_timeout_detaches_waiter() -> None:
    """A timed-out request fails; its late reply is not handed to the next caller."""

    backend = _local(request_timeout_s=0.3)
    await backend.start()
    try:
        with pytest.raises(TimeoutExceededError):
            await backend.generate("slow")
        await asyncio.sleep(0.5)
        assert backend.running
        assert await backend.generate("next") == "echo: next"
    finally:
        await backend.shutdown()


@pytest.mark.asyncio
async def test_local_worker_never_ready() -> None:
    """No readiness marker within the startup window is a timeout."""

    backend = _local("import time; time.sleep(5)", startup_timeout_s=0.3)
    with pytest.raises(TimeoutExceededError):
        await backend.start()
    await backend.shutdown()


@pytest.mark.asyncio
async def test_local_worker_exits_early() -> None:
    """A worker that dies while loading is unavailable."""

    backend = _local("import sys; sys.exit(1)")
    with pytest.raises(ServiceUnavailableError):
        await backend.start()
    await backend.shutdown()


@pytest.mark.asyncio
async def test_local_generate_before_start() -> None:
    """Calls before start fail fast."""

    with pytest.raises(ServiceUnavailableError):
        await _local().generate("hi")
