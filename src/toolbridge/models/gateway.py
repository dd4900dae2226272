"""
Model gateway for toolbridge.

This module is the only place that *directly* calls a hosted LLM.  Everything else (orchestrator,
dispatcher, API) talks to a :class:`ModelHandle` and stays provider-agnostic.

Back-ends are registered per provider and selected by table lookup:

1. **anthropic** via the Anthropic SDK.  Also offers dedicated tool orchestration and response
   synthesis.
2. **openai** via the OpenAI SDK.  Any OpenAI-compatible API (DeepSeek, ...) works through the
   ``base_url`` option, and structured calls use the native JSON mode.
3. **tgi** for self-hosted Hugging Face Text-Generation-Inference.
4. **local** for a worker process on this machine (see :mod:`toolbridge.models.local_process`).

Additional providers can be added by subclassing :class:`BaseBackend` and registering via
:func:`register_backend`.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    List,
    Sequence,
    Type,
)

import httpx

from toolbridge.core.errors import (
    AuthError,
    BridgeError,
    NotFoundError,
    RateLimitError,
    RemoteError,
    ServiceUnavailableError,
    TimeoutExceededError,
)
from toolbridge.core.json_extract import parse_structured
from toolbridge.core.schema import (
    ConversationTurn,
    ModelDescriptor,
    ToolResult,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_BACKEND_REGISTRY: Dict[str, Type["BaseBackend"]] = {}


def register_backend(provider: str) -> Callable:
    """Decorator to register a backend class under *provider*."""

    def wrapper(cls: Type["BaseBackend"]) -> Type["BaseBackend"]:
        _BACKEND_REGISTRY[provider] = cls
        return cls

    return wrapper


def build_backend(descriptor: ModelDescriptor, api_key: str | None = None) -> "BaseBackend":
    """Instantiate the backend registered for ``descriptor.provider``."""
    cls = _BACKEND_REGISTRY.get(descriptor.provider.lower())
    if cls is None:
        raise NotFoundError(f"No backend registered for provider '{descriptor.provider}'.")
    return cls(descriptor, api_key=api_key)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseBackend(ABC):
    """Abstract generation backend: plain text, structured JSON and a liveness probe."""

    HEALTH_PROMPT: ClassVar[str] = 'Please respond with exactly "OK" to confirm the connection.'
    HEALTH_SYSTEM_PROMPT: ClassVar[str] = (
        "You are a test assistant. Respond briefly and exactly as requested."
    )
    JSON_SYSTEM_SUFFIX: ClassVar[str] = """

IMPORTANT: You must respond in valid JSON format. Always provide your response in the exact JSON \
structure requested. Never include explanatory text outside the JSON structure."""
    JSON_PROMPT_SUFFIX: ClassVar[str] = """

Please respond in valid JSON format only. Do not include any text outside the JSON structure."""

    def __init__(self, descriptor: ModelDescriptor, api_key: str | None = None) -> None:
        self.descriptor = descriptor
        self.api_key = api_key
        options = descriptor.options
        self.max_tokens: int = int(options.get("max_tokens", 4096))
        self.temperature: float = float(options.get("temperature", 0.7))
        self.timeout_s: float = float(options.get("timeout_s", 120.0))

    @abstractmethod
    async def generate(self, prompt: str, system_prompt: str = "") -> str:
        """
        Return the model's reply to *prompt*.

        Raises
        ------
        AuthError, RateLimitError, RemoteError, TimeoutExceededError, ServiceUnavailableError
        """

    async def _generate_json_text(self, prompt: str, system_prompt: str) -> str:
        """Raw text for a structured call.  Backends with a native JSON mode override this."""
        return await self.generate(prompt, system_prompt)

    async def generate_structured(self, prompt: str, system_prompt: str = "") -> Any:
        """
        Ask for JSON and parse the reply.

        Raises
        ------
        MalformedStructuredResponse
            If neither the reply nor its first ``{...}`` span parses.
        """
        text = await self._generate_json_text(
            prompt + self.JSON_PROMPT_SUFFIX, (system_prompt or "") + self.JSON_SYSTEM_SUFFIX
        )
        logger.debug("%s structured reply: %s", self.descriptor.id, text)
        return parse_structured(text)

    async def health_check(self) -> bool:
        """Liveness only: the reply to the canonical prompt must contain "ok"."""
        try:
            reply = await self.generate(self.HEALTH_PROMPT, self.HEALTH_SYSTEM_PROMPT)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("%s health check failed: %s", self.descriptor.id, exc)
            return False
        return "ok" in reply.lower()

    async def start(self) -> None:
        """Acquire long-lived resources.  Hosted backends only check their credential."""
        if self.descriptor.requires_credential and not self.api_key:
            raise AuthError(f"{self.descriptor.id} requires an API key")

    async def shutdown(self) -> None:
        """Release long-lived resources."""


class OrchestrationMixin:
    """Dedicated planning and synthesis prompts for models that handle them well."""

    generate: Callable
    generate_structured: Callable

    async def orchestrate_tools(
        self,
        user_request: str,
        available_tools: Sequence[Dict[str, Any]],
        file_manifest: Sequence[Dict[str, Any]],
        context: Sequence[ConversationTurn] = (),
    ) -> Any:
        """Return a plan dictionary for *user_request*."""
        system_prompt = f"""\
You are an expert tool orchestrator. Analyze the user request and available tools to determine:
1. Which tools are needed to fulfill the request
2. The optimal execution order
3. Required parameters for each tool
4. Which files are needed for each tool

Available tools: {json.dumps(list(available_tools), indent=2)}
Uploaded files: {json.dumps(list(file_manifest), indent=2)}

Always respond in valid JSON format with this exact structure:
{{
  "selected_tools": ["tool_id_1", "tool_id_2"],
  "reasoning": "explanation of tool selection",
  "execution_order": ["tool_id_1", "tool_id_2"],
  "tool_parameters": {{"tool_id_1": {{"param1": "value1"}}}},
  "file_requirements": {{"tool_id_1": ["file1.pdf"]}}
}}"""
        prompt = f"""\
User request: "{user_request}"

Context from conversation: {_context_json(context)}

Please analyze this request and provide the optimal tool orchestration strategy."""
        return await self.generate_structured(prompt, system_prompt)

    async def synthesize_response(
        self,
        user_request: str,
        tool_results: Sequence[ToolResult],
        context: Sequence[ConversationTurn] = (),
    ) -> str:
        """Turn tool results into the final answer."""
        system_prompt = """\
You are an expert data analyst and report synthesizer. Your job is to:
- analyze the results from the tools,
- organize the key findings into a clear, readable answer,
- reference specific data points.

Be thorough but concise. Use headers and bullet points where they help."""
        results = json.dumps([r.to_wire() for r in tool_results], indent=2, default=str)
        prompt = f"""\
User request: "{user_request}"

Tool execution results:
{results}

Previous conversation context:
{_context_json(context)}

Please synthesize these results into a response that directly addresses the user's request."""
        return await self.generate(prompt, system_prompt)


def _context_json(context: Sequence[ConversationTurn]) -> str:
    return json.dumps([turn.to_prompt_dict() for turn in context], indent=2, default=str)


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ModelHandle:
    """The live pairing of a descriptor and its backend.  Replaced wholesale, never mutated."""

    descriptor: ModelDescriptor
    backend: BaseBackend

    @property
    def id(self) -> str:
        """Model id from the catalogue."""
        return self.descriptor.id

    @property
    def supports_orchestration(self) -> bool:
        """Whether planning should use the backend's dedicated orchestration prompt."""
        return self.descriptor.supports_structured_orchestration and isinstance(
            self.backend, OrchestrationMixin
        )

    @property
    def supports_synthesis(self) -> bool:
        """Whether the backend has a dedicated synthesis prompt."""
        return isinstance(self.backend, OrchestrationMixin)

    async def generate(self, prompt: str, system_prompt: str = "") -> str:
        """See :meth:`BaseBackend.generate`."""
        return await self.backend.generate(prompt, system_prompt)

    async def generate_structured(self, prompt: str, system_prompt: str = "") -> Any:
        """See :meth:`BaseBackend.generate_structured`."""
        return await self.backend.generate_structured(prompt, system_prompt)

    async def health_check(self) -> bool:
        """See :meth:`BaseBackend.health_check`."""
        return await self.backend.health_check()

    async def orchestrate_tools(self, *args: Any, **kwargs: Any) -> Any:
        """See :meth:`OrchestrationMixin.orchestrate_tools`."""
        assert isinstance(self.backend, OrchestrationMixin)
        return await self.backend.orchestrate_tools(*args, **kwargs)

    async def synthesize_response(self, *args: Any, **kwargs: Any) -> str:
        """See :meth:`OrchestrationMixin.synthesize_response`."""
        assert isinstance(self.backend, OrchestrationMixin)
        return await self.backend.synthesize_response(*args, **kwargs)


# ---------------------------------------------------------------------------
# SDK error mapping
# ---------------------------------------------------------------------------
def _map_sdk_error(sdk: Any, exc: Exception, provider: str) -> BridgeError:
    """Translate an anthropic/openai SDK exception (both share the class names)."""
    if isinstance(exc, (sdk.AuthenticationError, sdk.PermissionDeniedError)):
        return AuthError(f"Invalid {provider} API key")
    if isinstance(exc, sdk.RateLimitError):
        return RateLimitError(f"{provider} API rate limit exceeded")
    if isinstance(exc, sdk.APITimeoutError):
        return TimeoutExceededError(f"{provider} API request timed out")
    if isinstance(exc, sdk.APIConnectionError):
        return ServiceUnavailableError(f"{provider} API is not reachable: {exc}")
    if isinstance(exc, sdk.APIStatusError):
        return RemoteError(exc.status_code, getattr(exc, "message", str(exc)))
    return RemoteError(None, str(exc))


def _map_status(status: int, provider: str, detail: str) -> BridgeError:
    if status in (401, 403):
        return AuthError(f"Invalid {provider} credentials")
    if status == 429:
        return RateLimitError(f"{provider} rate limit exceeded")
    return RemoteError(status, detail)


# ---------------------------------------------------------------------------
# Concrete backends
# ---------------------------------------------------------------------------
@register_backend("anthropic")
class AnthropicBackend(OrchestrationMixin, BaseBackend):
    """Anthropic Claude backend."""

    def __init__(self, descriptor: ModelDescriptor, api_key: str | None = None) -> None:
        super().__init__(descriptor, api_key)
        self.model = descriptor.options.get("model", "claude-3-5-sonnet-latest")
        self._client: Any = None

    def _sdk_client(self) -> Any:
        import anthropic  # pylint: disable=import-outside-toplevel

        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=self.timeout_s)
        return self._client

    async def generate(self, prompt: str, system_prompt: str = "") -> str:
        import anthropic  # pylint: disable=import-outside-toplevel

        if not self.api_key:
            raise AuthError("Anthropic API key not set")

        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            request["system"] = system_prompt

        try:
            response = await self._sdk_client().messages.create(**request)
        except anthropic.APIError as exc:
            raise _map_sdk_error(anthropic, exc, "Anthropic") from exc

        # Handle different content block types from Anthropic API
        texts: List[str] = [block.text for block in response.content if block.type == "text"]
        if not texts:
            raise RemoteError(None, "Invalid response format from Claude API")
        return "".join(texts).strip()


@register_backend("openai")
class OpenAIBackend(BaseBackend):
    """OpenAI (or OpenAI-compatible) chat completions backend."""

    def __init__(self, descriptor: ModelDescriptor, api_key: str | None = None) -> None:
        super().__init__(descriptor, api_key)
        self.model = descriptor.options.get("model", "gpt-4o-mini")
        self.base_url: str | None = descriptor.options.get("base_url")
        self.json_mode: bool = bool(descriptor.options.get("json_mode", True))
        self._client: Any = None

    def _sdk_client(self) -> Any:
        import openai  # pylint: disable=import-outside-toplevel

        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key, base_url=self.base_url, timeout=self.timeout_s
            )
        return self._client

    async def _complete(self, prompt: str, system_prompt: str, **extra: Any) -> str:
        import openai  # pylint: disable=import-outside-toplevel

        if not self.api_key:
            raise AuthError(f"{self.descriptor.id} API key not set")

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            resp = await self._sdk_client().chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                **extra,
            )
        except openai.APIError as exc:
            raise _map_sdk_error(openai, exc, self.descriptor.name or "OpenAI") from exc

        if not resp.choices or not resp.choices[0].message.content:
            raise RemoteError(None, f"Empty response from {self.descriptor.id}")
        return resp.choices[0].message.content.strip()

    async def generate(self, prompt: str, system_prompt: str = "") -> str:
        return await self._complete(prompt, system_prompt)

    async def _generate_json_text(self, prompt: str, system_prompt: str) -> str:
        if not self.json_mode:
            return await self._complete(prompt, system_prompt)
        return await self._complete(prompt, system_prompt, response_format={"type": "json_object"})


@register_backend("tgi")
class TGIBackend(BaseBackend):
    """Text-Generation-Inference backend over plain HTTP."""

    def __init__(
        self,
        descriptor: ModelDescriptor,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(descriptor, api_key)
        self.endpoint: str | None = descriptor.options.get("endpoint")
        self._client = client

    async def start(self) -> None:
        await super().start()
        if not self.endpoint:
            raise ServiceUnavailableError(f"{self.descriptor.id} has no TGI endpoint configured")

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        assert self.endpoint
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        if self._client is not None:
            return await self._client.post(
                self.endpoint, json=payload, headers=headers, timeout=self.timeout_s
            )
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            return await client.post(self.endpoint, json=payload, headers=headers)

    async def generate(self, prompt: str, system_prompt: str = "") -> str:
        if not self.endpoint:
            raise ServiceUnavailableError(f"{self.descriptor.id} has no TGI endpoint configured")

        inputs = f"{system_prompt}\n\nUser: {prompt}" if system_prompt else f"User: {prompt}"
        payload = {
            "inputs": f"{inputs}\n\nAssistant:",
            "parameters": {
                "max_new_tokens": self.max_tokens,
                "temperature": self.temperature,
                "stop": ["User:", "</s>"],
            },
        }

        try:
            resp = await self._post(payload)
        except httpx.TimeoutException as exc:
            raise TimeoutExceededError(f"TGI request to {self.endpoint} timed out") from exc
        except httpx.HTTPError as exc:
            raise ServiceUnavailableError(f"TGI endpoint {self.endpoint} unreachable") from exc

        if not resp.is_success:
            raise _map_status(resp.status_code, "TGI", resp.text[:200])
        try:
            body = resp.json()
        except json.JSONDecodeError as exc:
            raise RemoteError(resp.status_code, "TGI returned a non-JSON body") from exc
        if isinstance(body, list):  # some TGI deployments wrap the result in a list
            body = body[0] if body else {}
        text = body.get("generated_text") if isinstance(body, dict) else None
        if text is None:
            raise RemoteError(resp.status_code, "TGI response has no generated_text")
        return str(text).strip()
