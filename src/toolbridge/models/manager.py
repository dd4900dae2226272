"""
Model manager: owns the live model handles and the active-model pointer.

Handles are immutable.  Switching models or rotating a key replaces the handle object, so a turn
that has already read :attr:`ModelManager.active` keeps working with the handle it started with.
"""

import logging
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
)

from toolbridge.config import settings
from toolbridge.core.errors import (
    AuthError,
    BridgeError,
    NotFoundError,
)
from toolbridge.core.schema import ModelDescriptor
from toolbridge.models import local_process  # noqa: F401  # pylint: disable=unused-import
from toolbridge.models.gateway import (
    BaseBackend,
    ModelHandle,
    build_backend,
)

logger = logging.getLogger(__name__)

BackendFactory = Callable[[ModelDescriptor, "str | None"], BaseBackend]


class ModelManager:
    """Catalogue of model descriptors plus the handles that could be brought up."""

    def __init__(
        self,
        descriptors: Iterable[ModelDescriptor],
        backend_factory: BackendFactory = build_backend,
        default_model: str | None = None,
    ) -> None:
        self._descriptors: Dict[str, ModelDescriptor] = {d.id: d for d in descriptors}
        self._factory = backend_factory
        self._default_model = default_model if default_model is not None else settings.DEFAULT_MODEL
        self._handles: Dict[str, ModelHandle] = {}
        self._active: ModelHandle | None = None
        # replaced by set_api_key; turns started earlier may still be using them
        self._retired: List[BaseBackend] = []

    @staticmethod
    def _credential(descriptor: ModelDescriptor) -> str | None:
        if not descriptor.credential_setting:
            return None
        return getattr(settings, descriptor.credential_setting, None)

    async def initialize(self) -> None:
        """Build a handle for every model that can start; pick the active one."""
        for descriptor in self._descriptors.values():
            api_key = self._credential(descriptor)
            if descriptor.requires_credential and not api_key:
                logger.warning("Skipping %s: no credential configured", descriptor.id)
                continue
            backend = self._factory(descriptor, api_key)
            try:
                await backend.start()
            except BridgeError as exc:
                logger.warning("Skipping %s: %s", descriptor.id, exc.describe())
                continue
            self._handles[descriptor.id] = ModelHandle(descriptor, backend)
            logger.info("Model %s initialized", descriptor.id)

        self._active = self._pick_default()
        if self._active is None:
            logger.warning("No model could be initialized")
        else:
            logger.info("Active model: %s", self._active.id)

    def _pick_default(self) -> ModelHandle | None:
        if self._default_model and self._default_model in self._handles:
            return self._handles[self._default_model]
        for descriptor in self._descriptors.values():
            if descriptor.default and descriptor.id in self._handles:
                return self._handles[descriptor.id]
        return next(iter(self._handles.values()), None)

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #
    @property
    def active(self) -> ModelHandle | None:
        """Handle new turns should use."""
        return self._active

    def available_models(self) -> List[Dict[str, Any]]:
        """Every catalogued model with its ``available`` flag."""
        return [
            {
                "id": d.id,
                "name": d.name or d.id,
                "kind": d.kind.value,
                "provider": d.provider,
                "description": d.description,
                "capabilities": list(d.capabilities),
                "requires_credential": d.requires_credential,
                "default": d.default,
                "available": d.id in self._handles,
            }
            for d in self._descriptors.values()
        ]

    def get_model(self, model_id: str) -> ModelHandle:
        """
        Return the live handle for *model_id*.

        Raises
        ------
        NotFoundError
            Unknown id, or the model could not be initialized.
        """
        handle = self._handles.get(model_id)
        if handle is None:
            if model_id in self._descriptors:
                raise NotFoundError(f"Model {model_id} is not available")
            raise NotFoundError(f"Model {model_id} not found")
        return handle

    # ------------------------------------------------------------------ #
    # Mutation (whole-handle replacement only)
    # ------------------------------------------------------------------ #
    def switch_model(self, model_id: str) -> ModelHandle:
        """Make *model_id* the active model."""
        handle = self.get_model(model_id)
        self._active = handle
        logger.info("Switched to model: %s", model_id)
        return handle

    async def set_api_key(self, model_id: str, api_key: str) -> ModelHandle:
        """
        Bring up *model_id* with a new credential, keeping it only if it passes a health check.

        Raises
        ------
        NotFoundError
            Unknown model id.
        AuthError
            The health check with the new key failed.
        """
        descriptor = self._descriptors.get(model_id)
        if descriptor is None:
            raise NotFoundError(f"Model {model_id} not found")

        backend = self._factory(descriptor, api_key)
        await backend.start()
        if not await backend.health_check():
            await backend.shutdown()
            raise AuthError(f"Invalid API key for {model_id}")

        previous = self._handles.get(model_id)
        handle = ModelHandle(descriptor, backend)
        self._handles[model_id] = handle
        if self._active is None or self._active is previous:
            self._active = handle
        if previous is not None:
            self._retired.append(previous.backend)
        logger.info("API key set for model: %s", model_id)
        return handle

    async def health_check(self) -> Dict[str, bool]:
        """Run every live handle's health check."""
        return {model_id: await handle.health_check() for model_id, handle in self._handles.items()}

    async def shutdown(self) -> None:
        """Shut every backend down, including the ones replaced by a key change."""
        for handle in self._handles.values():
            await handle.backend.shutdown()
        for backend in self._retired:
            await backend.shutdown()
        self._retired.clear()
