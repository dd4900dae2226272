"""Shared fakes for the toolbridge test-suite."""

from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

import pytest

from toolbridge.agent.orchestrator import Orchestrator
from toolbridge.agent.retry import RetryPolicy
from toolbridge.config import (
    settings,
    upload_root,
)
from toolbridge.core.schema import (
    CapabilityServerBinding,
    ContainerBinding,
    FileRecord,
    ModelDescriptor,
    ModelKind,
    ParameterSpec,
    ToolDescriptor,
    ToolInvocation,
    ToolResult,
)
from toolbridge.memory.conversation_store import ConversationStore
from toolbridge.models.gateway import (
    BaseBackend,
    OrchestrationMixin,
)
from toolbridge.models.manager import ModelManager
from toolbridge.tools import ToolRegistry


# ---------------------------------------------------------------------------
# Model fakes
# ---------------------------------------------------------------------------
class FakeBackend(BaseBackend):
    """Backend returning scripted replies; exceptions in the script are raised."""

    def __init__(
        self,
        descriptor: ModelDescriptor,
        api_key: str | None = None,
        replies: Sequence[Any] = (),
        structured: Any = None,
    ) -> None:
        super().__init__(descriptor, api_key)
        self.replies = list(replies)
        self.structured = structured
        self.prompts: List[str] = []
        self.structured_prompts: List[str] = []
        self.shut_down = False

    async def generate(self, prompt: str, system_prompt: str = "") -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else "OK"
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def generate_structured(self, prompt: str, system_prompt: str = "") -> Any:
        self.structured_prompts.append(prompt)
        if isinstance(self.structured, Exception):
            raise self.structured
        return self.structured

    async def shutdown(self) -> None:
        self.shut_down = True


class FakeOrchestratingBackend(OrchestrationMixin, FakeBackend):
    """Fake that also exposes the dedicated orchestration and synthesis prompts."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.orchestrate_calls: List[Dict[str, Any]] = []
        self.synthesize_calls: List[Dict[str, Any]] = []

    async def orchestrate_tools(self, user_request, available_tools, file_manifest, context=()):
        self.orchestrate_calls.append(
            {"request": user_request, "tools": list(available_tools), "files": list(file_manifest)}
        )
        return await self.generate_structured(user_request)

    async def synthesize_response(self, user_request, tool_results, context=()):
        self.synthesize_calls.append({"request": user_request, "results": list(tool_results)})
        return await self.generate(user_request)


def descriptor(model_id: str = "fake", orchestration: bool = False) -> ModelDescriptor:
    """Credential-free descriptor for tests."""
    return ModelDescriptor(
        id=model_id,
        name=model_id,
        kind=ModelKind.HOSTED_API,
        provider="fake",
        supports_structured_orchestration=orchestration,
    )


async def manager_for(*backends: BaseBackend) -> ModelManager:
    """An initialized ModelManager whose handles wrap *backends* (first one active)."""
    by_id = {b.descriptor.id: b for b in backends}
    manager = ModelManager(
        [b.descriptor for b in backends],
        backend_factory=lambda d, key: by_id[d.id],
        default_model=backends[0].descriptor.id,
    )
    await manager.initialize()
    return manager


# ---------------------------------------------------------------------------
# Tool fakes
# ---------------------------------------------------------------------------
def sample_tools() -> List[ToolDescriptor]:
    """A small catalogue covering both transports."""
    confidence = {"confidence": ParameterSpec(default=0.2, min=0.0, max=1.0)}
    return [
        ToolDescriptor(
            id="extract_all_from_pdf",
            name="PDF extraction",
            capabilities=frozenset({"pdf", "text_extraction"}),
            accepted_input_types=("application/pdf",),
            default_parameters=confidence,
            transport_binding=CapabilityServerBinding(
                server_name="document_analysis", path="/extract-all", input_parameter="pdf_path"
            ),
        ),
        ToolDescriptor(
            id="image_analyzer",
            name="Image analyzer",
            capabilities=frozenset({"image"}),
            accepted_input_types=("image/*",),
            transport_binding=ContainerBinding(path="/analyze/image"),
        ),
        ToolDescriptor(
            id="text_processor",
            name="Text processor",
            capabilities=frozenset({"text"}),
            accepted_input_types=("text/plain",),
            transport_binding=ContainerBinding(path="/process/text"),
        ),
    ]


def all_up(registry: ToolRegistry) -> ToolRegistry:
    """Mark every transport of *registry* reachable."""
    registry.status.container_reachable = True
    registry.status.servers_connected["document_analysis"] = True
    return registry


class FakeDispatcher:
    """
    Stand-in for the capability dispatcher.

    ``outcomes`` maps a tool id to the results returned on successive attempts (the last one
    repeats).  Unlisted tools succeed with ``{"tool": id}``.
    """

    def __init__(self, registry: ToolRegistry, outcomes: Dict[str, List[ToolResult]] | None = None):
        self.registry = registry
        self.outcomes = outcomes or {}
        self.invocations: List[ToolInvocation] = []
        self.refreshes = 0

    async def execute(self, invocation: ToolInvocation) -> ToolResult:
        self.invocations.append(invocation)
        script = self.outcomes.get(invocation.tool_id)
        if not script:
            return ToolResult.ok(invocation.tool_id, {"tool": invocation.tool_id})
        return script.pop(0) if len(script) > 1 else script[0]

    async def refresh_availability(self) -> None:
        self.refreshes += 1

    async def initialize(self) -> None:
        pass

    def health(self) -> Dict[str, Any]:
        return {"status": "healthy" if self.registry.available_now() else "unhealthy"}

    async def shutdown(self) -> None:
        pass


def build(
    registry: ToolRegistry,
    dispatcher: FakeDispatcher,
    manager: ModelManager,
    max_turns: int = 20,
) -> Orchestrator:
    """Orchestrator with zero back-off and an explicit store."""
    return Orchestrator(
        registry,
        dispatcher,  # type: ignore[arg-type]
        manager,
        ConversationStore(max_turns=max_turns),
        retry_policy=RetryPolicy(max_retries=2, base_delay_ms=0),
        max_concurrent_tools=1,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch) -> Path:
    """Point the data directory, and with it the upload directory, at the test's tmp dir."""
    root = tmp_path.resolve()
    monkeypatch.setattr(settings, "DATA_DIR", str(root))
    upload_root().mkdir(parents=True)
    return root


@pytest.fixture
def registry() -> ToolRegistry:
    """Sample registry with every transport reachable."""
    return all_up(ToolRegistry(sample_tools()))


@pytest.fixture
def pdf_file(data_dir) -> FileRecord:
    """A small PDF-typed upload on disk."""
    path = upload_root() / "report.pdf"
    path.write_bytes(b"%PDF-1.4 test")
    return FileRecord(id="f1", name="report.pdf", type="application/pdf", size=13, path=str(path))


@pytest.fixture
def image_file(data_dir) -> FileRecord:
    """A small PNG-typed upload on disk."""
    path = upload_root() / "chart.png"
    path.write_bytes(b"\x89PNG fake")
    return FileRecord(id="f2", name="chart.png", type="image/png", size=9, path=str(path))
