"""
Model manager tests.

Run with:
$ pytest -q
"""

import pytest

from conftest import (
    FakeBackend,
    descriptor,
    manager_for,
)
from toolbridge.config import settings
from toolbridge.core.errors import (
    AuthError,
    NotFoundError,
)
from toolbridge.core.schema import (
    ModelDescriptor,
    ModelKind,
)
from toolbridge.models.catalogue import default_models
from toolbridge.models.manager import ModelManager


@pytest.mark.asyncio
async def test_models_without_credentials_are_skipped(monkeypatch) -> None:
    """Only models whose credential is configured get a handle."""

    monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", None)
    keyed = ModelDescriptor(
        id="claude",
        kind=ModelKind.HOSTED_API,
        provider="anthropic",
        requires_credential=True,
        credential_setting="ANTHROPIC_API_KEY",
        default=True,
    )
    free = descriptor("free")
    manager = ModelManager(
        [keyed, free], backend_factory=lambda d, key: FakeBackend(d, key), default_model=""
    )

    await manager.initialize()

    flags = {m["id"]: m["available"] for m in manager.available_models()}
    assert flags == {"claude": False, "free": True}
    assert manager.active is not None and manager.active.id == "free"
    with pytest.raises(NotFoundError, match="not available"):
        manager.get_model("claude")


@pytest.mark.asyncio
async def test_switch_model() -> None:
    """Switching replaces the active handle; unknown ids are rejected."""

    manager = await manager_for(FakeBackend(descriptor("a")), FakeBackend(descriptor("b")))
    before = manager.active

    manager.switch_model("b")

    assert manager.active is not before and manager.active.id == "b"
    with pytest.raises(NotFoundError):
        manager.switch_model("zzz")
    assert manager.active.id == "b"


@pytest.mark.asyncio
async def test_set_api_key_validates_before_keeping() -> None:
    """A key is only kept when the health check with it passes."""

    desc = descriptor("a")
    built = []

    def factory(d, key):
        backend = FakeBackend(d, key, replies=["OK" if key == "good-key-123" else "denied"])
        built.append(backend)
        return backend

    manager = ModelManager([desc], backend_factory=factory, default_model="a")
    await manager.initialize()
    original = manager.active

    with pytest.raises(AuthError):
        await manager.set_api_key("a", "bad-key-1234")
    assert manager.active is original

    handle = await manager.set_api_key("a", "good-key-123")
    assert manager.active is handle
    assert handle.backend.api_key == "good-key-123"

    with pytest.raises(NotFoundError):
        await manager.set_api_key("missing", "good-key-123")


@pytest.mark.asyncio
async def test_replaced_backend_outlives_key_change() -> None:
    """A turn holding the old handle keeps a working backend until the manager shuts down."""

    local = ModelDescriptor(id="llama", kind=ModelKind.LOCAL_PROCESS, provider="local")
    built = []

    def factory(d, key):
        built.append(FakeBackend(d, key, replies=["OK", "still here"]))
        return built[-1]

    manager = ModelManager([local], backend_factory=factory, default_model="llama")
    await manager.initialize()
    in_flight = manager.active

    await manager.set_api_key("llama", "new-key-1234")

    assert manager.active is not in_flight
    assert built[0].shut_down is False
    assert await in_flight.backend.generate("continue") == "OK"

    await manager.shutdown()

    assert [b.shut_down for b in built] == [True, True]


@pytest.mark.asyncio
async def test_health_check_covers_every_handle() -> None:
    """Each live model reports its own health."""

    manager = await manager_for(
        FakeBackend(descriptor("a"), replies=["OK"]), FakeBackend(descriptor("b"), replies=["no"])
    )

    assert await manager.health_check() == {"a": True, "b": False}


def test_default_catalogue_shape() -> None:
    """One default model, and only it does dedicated orchestration."""

    models = default_models()
    assert [m.id for m in models if m.default] == ["claude-3-sonnet"]
    assert {m.provider for m in models} == {"anthropic", "openai", "tgi", "local"}
    assert [m.id for m in models if m.supports_structured_orchestration] == ["claude-3-sonnet"]
