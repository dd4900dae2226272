"""
Turn pipeline for toolbridge.

One call to :meth:`Orchestrator.process_request` walks a turn through

    PLANNING -> EXECUTING -> SYNTHESIZING -> COMPLETE

and always produces a :class:`~toolbridge.core.schema.TurnResponse`.  Model failures degrade to
deterministic fallbacks (heuristic plan, bullet-point summary) and anything unexpected ends in
the FAILED state with an apologetic response.  Only request validation errors escape.
"""

import asyncio
import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Sequence,
    Tuple,
)

from pydantic import ValidationError

from toolbridge.agent.retry import (
    RetryPolicy,
    call_with_retry,
)
from toolbridge.config import (
    settings,
    upload_root,
)
from toolbridge.core.errors import (
    InvalidRequestError,
    ServiceUnavailableError,
)
from toolbridge.core.prompts import (
    PromptTemplate,
    load_prompts,
)
from toolbridge.core.schema import (
    ConversationTurn,
    FileRecord,
    Plan,
    ToolDescriptor,
    ToolInvocation,
    ToolResult,
    TurnResponse,
)
from toolbridge.dispatch.dispatcher import CapabilityDispatcher
from toolbridge.memory.conversation_store import ConversationStore
from toolbridge.models.gateway import ModelHandle
from toolbridge.models.manager import ModelManager
from toolbridge.tools import (
    ToolRegistry,
    accepts,
    describe_tool,
)

logger = logging.getLogger(__name__)

CONTEXT_TURNS = 3
PREVIEW_CHARS = 200
EMPTY_TURN_CONFIDENCE = 0.5

NO_TOOLS_MESSAGE = (
    "I apologize, but I couldn't process your request. No tools were successfully executed."
)

# (substrings of the MIME type, tool id); first match wins, one tool per file
HEURISTIC_ROUTES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("pdf",), "extract_all_from_pdf"),
    (("excel", "spreadsheet"), "excel_processor"),
    (("image",), "image_analyzer"),
    (("text", "word"), "text_processor"),
    (("video",), "video_processor"),
    (("audio",), "audio_processor"),
)

SUPPORTED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
        "text/csv",
        "application/json",
    }
)
SUPPORTED_MIME_PREFIXES = ("image/", "video/", "audio/")

_CONFIDENCE_PATTERN = re.compile(r"confidence[:\s]*([0-9.]+)", re.IGNORECASE)


class OrchestrationState(str, Enum):
    """Where a turn is in the pipeline."""

    PLANNING = "planning"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
def is_supported_mime(mime_type: str) -> bool:
    """Return whether uploads of *mime_type* are accepted."""
    return mime_type in SUPPORTED_MIME_TYPES or mime_type.startswith(SUPPORTED_MIME_PREFIXES)


def heuristic_plan(files: Sequence[FileRecord]) -> Plan:
    """Pick one tool per file from its MIME type, without asking a model."""
    selected: List[str] = []
    requirements: Dict[str, List[str]] = {}
    for record in files:
        mime = record.mime_type.lower()
        for needles, tool_id in HEURISTIC_ROUTES:
            if any(needle in mime for needle in needles):
                selected.append(tool_id)
                requirements.setdefault(tool_id, []).append(record.display_name)
                break
    return Plan(
        selected_tools=selected,
        reasoning="Automatic tool selection based on file types",
        file_requirements=requirements,
    )


def confidence_from_message(message: str) -> float | None:
    """Scrape ``confidence: 0.7``-style hints out of the user's text."""
    match = _CONFIDENCE_PATTERN.search(message)
    if match is None:
        return None
    try:
        return float(match.group(1).rstrip("."))
    except ValueError:
        logger.debug("Ignoring unparsable confidence hint %r", match.group(1))
        return None


def calculate_confidence(results: Sequence[ToolResult]) -> float:
    """Share of successful tools; 0.5 when nothing ran."""
    if not results:
        return EMPTY_TURN_CONFIDENCE
    return sum(1 for r in results if r.succeeded) / len(results)


def failure_message(failed: Sequence[ToolResult]) -> str:
    """Deterministic apology used when no tool succeeded."""
    if not failed:
        return NO_TOOLS_MESSAGE
    errors = "; ".join(f"{r.tool_id}: {r.error_message}" for r in failed)
    return (
        f"I encountered errors while processing your request: {errors}. "
        "Please check your files and try again."
    )


def fallback_summary(results: Sequence[ToolResult]) -> str:
    """Bullet-point rendering of the results, used when synthesis by model fails."""
    lines = ["I've analyzed your files. Here's what I found:", ""]
    for result in results:
        if not result.succeeded:
            continue
        rendered = (
            result.payload
            if isinstance(result.payload, str)
            else json.dumps(result.payload, default=str)
        )
        preview = rendered[:PREVIEW_CHARS]
        ellipsis = "..." if len(rendered) > PREVIEW_CHARS else ""
        lines.append(f"- **{result.tool_id}**: {preview}{ellipsis}")

    failed = [r.tool_id for r in results if not r.succeeded]
    if failed:
        lines.extend(["", f"Note: Some tools encountered errors: {', '.join(failed)}"])
    return "\n".join(lines)


def _context_json(context: Sequence[ConversationTurn]) -> str:
    return json.dumps([turn.to_prompt_dict() for turn in context], indent=2, default=str)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class Orchestrator:
    """Plans, executes and answers one user turn at a time."""

    def __init__(
        self,
        registry: ToolRegistry,
        dispatcher: CapabilityDispatcher,
        models: ModelManager,
        conversations: ConversationStore | None = None,
        prompts: Mapping[str, PromptTemplate] | None = None,
        retry_policy: RetryPolicy | None = None,
        max_concurrent_tools: int | None = None,
        max_file_size_mb: int | None = None,
        uploads_dir: str | Path | None = None,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.models = models
        self.conversations = conversations or ConversationStore()
        self.prompts = dict(prompts) if prompts is not None else load_prompts()
        self.retry_policy = retry_policy or RetryPolicy()
        if max_concurrent_tools is None:
            max_concurrent_tools = settings.MAX_CONCURRENT_TOOLS
        self.max_concurrent_tools = max(1, max_concurrent_tools)
        size_mb = max_file_size_mb if max_file_size_mb is not None else settings.MAX_FILE_SIZE_MB
        self.max_file_size_bytes = size_mb * 1024 * 1024
        self._uploads_dir = Path(uploads_dir) if uploads_dir is not None else None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    async def initialize(self) -> None:
        """Bring up the tool transports and the models."""
        await self.dispatcher.initialize()
        await self.models.initialize()
        logger.info(
            "Orchestrator ready: %d/%d tools available",
            len(self.registry.available_now()),
            len(self.registry),
        )

    async def shutdown(self) -> None:
        """Stop launched processes and close clients."""
        await self.dispatcher.shutdown()
        await self.models.shutdown()

    def switch_model(self, model_id: str) -> ModelHandle:
        """Swap the active model; turns already running keep their handle."""
        return self.models.switch_model(model_id)

    async def health(self) -> Dict[str, Any]:
        """Bridge, model and tool status."""
        await self.dispatcher.refresh_availability()
        tools = self.dispatcher.health()
        handle = self.models.active
        model_healthy = await handle.health_check() if handle is not None else False
        healthy = model_healthy and tools["status"] == "healthy"
        return {
            "status": "healthy" if healthy else "degraded",
            "current_model": handle.id if handle is not None else None,
            "model_healthy": model_healthy,
            "tools": tools,
            "conversations": len(self.conversations.summaries()),
        }

    # ------------------------------------------------------------------ #
    # Turn pipeline
    # ------------------------------------------------------------------ #
    @property
    def uploads_dir(self) -> Path:
        """Directory uploaded files are read from; relative file paths are resolved against it."""
        return self._uploads_dir if self._uploads_dir is not None else upload_root()

    def confine_upload(self, record: FileRecord) -> FileRecord:
        """
        Resolve a file's storage path inside the upload directory.

        Returns
        -------
        FileRecord
            The record with an absolute, resolved storage path (unchanged if it has none).

        Raises
        ------
        InvalidRequestError
            The path points outside the upload directory.
        """
        if not record.storage_path:
            return record
        root = self.uploads_dir.resolve()
        path = Path(record.storage_path)
        if not path.is_absolute():
            path = root / path
        path = path.resolve()
        if not path.is_relative_to(root):
            logger.warning("Rejected upload path outside %s: %s", root, record.storage_path)
            raise InvalidRequestError(f"File {record.display_name} is outside the upload directory")
        return record.model_copy(update={"storage_path": str(path)})

    def validate_request(self, message: str, files: Sequence[FileRecord]) -> List[FileRecord]:
        """
        Reject a turn before any work is done.

        Returns
        -------
        list[FileRecord]
            The files with their storage paths resolved inside the upload directory.

        Raises
        ------
        InvalidRequestError
            Empty message, oversized file, unsupported file type or a path outside the
            upload directory.
        """
        if not message or not message.strip():
            raise InvalidRequestError("Message is required")
        limit_mb = self.max_file_size_bytes // (1024 * 1024)
        checked: List[FileRecord] = []
        for record in files:
            if record.size_bytes > self.max_file_size_bytes:
                raise InvalidRequestError(
                    f"File {record.display_name} exceeds {limit_mb}MB limit"
                )
            if not is_supported_mime(record.mime_type):
                raise InvalidRequestError(f"File type {record.mime_type} not supported")
            checked.append(self.confine_upload(record))
        return checked

    async def process_request(
        self,
        conversation_id: str,
        user_message: str,
        files: Sequence[FileRecord] = (),
    ) -> TurnResponse:
        """
        Run one turn end to end.

        Raises
        ------
        InvalidRequestError
            From :meth:`validate_request`; nothing else escapes.
        """
        files = self.validate_request(user_message, files)
        handle = self.models.active
        state = OrchestrationState.PLANNING
        logger.info(
            "Processing request in %s: %s (%d file(s))", conversation_id, user_message, len(files)
        )

        try:
            if handle is None:
                raise ServiceUnavailableError("No model is available")
            context = self.conversations.recent(conversation_id, CONTEXT_TURNS)

            plan = await self._plan(handle, user_message, files, context)
            logger.info("Tool plan: %s (%s)", plan.execution_order, plan.reasoning)

            state = OrchestrationState.EXECUTING
            results = await self._execute(plan, files, user_message)

            state = OrchestrationState.SYNTHESIZING
            response = await self._synthesize(handle, user_message, results, context)
            state = OrchestrationState.COMPLETE
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Turn failed while %s", state.value)
            state = OrchestrationState.FAILED
            logger.debug("Turn in %s ended in state %s", conversation_id, state.value)
            return TurnResponse(
                response=(
                    f"I encountered an error while processing your request: {exc}. "
                    "Please check that your files are valid and the system is properly configured."
                ),
                tools_used=[],
                confidence=0.0,
                conversation_id=conversation_id,
                error=str(exc),
            )

        tools_used = list(plan.execution_order)
        self.conversations.append(
            conversation_id,
            ConversationTurn(
                user_message=user_message,
                tools_used=tools_used,
                tool_results=results,
                response=response,
            ),
        )
        return TurnResponse(
            response=response,
            tools_used=tools_used,
            confidence=calculate_confidence(results),
            conversation_id=conversation_id,
            tool_results=results,
        )

    # ------------------------------------------------------------------ #
    # Planning
    # ------------------------------------------------------------------ #
    async def _plan(
        self,
        handle: ModelHandle,
        user_message: str,
        files: Sequence[FileRecord],
        context: Sequence[ConversationTurn],
    ) -> Plan:
        available = self.registry.available_now()
        if not available:
            await self.dispatcher.refresh_availability()
            available = self.registry.available_now()

        plan: Plan | None = None
        if not available:
            logger.warning("No tools are currently available")
        else:
            plan = await self._plan_with_model(handle, user_message, files, available, context)
        if plan is None:
            plan = heuristic_plan(files)
            logger.info("Using heuristic tool selection: %s", plan.selected_tools)

        allowed = {tool.id for tool in available}
        dropped = [t for t in plan.execution_order if t not in allowed]
        if dropped:
            logger.warning("Dropping unavailable or unknown tools from plan: %s", dropped)
        return plan.restricted_to(allowed)

    async def _plan_with_model(
        self,
        handle: ModelHandle,
        user_message: str,
        files: Sequence[FileRecord],
        available: Sequence[ToolDescriptor],
        context: Sequence[ConversationTurn],
    ) -> Plan | None:
        tools = [describe_tool(tool) for tool in available]
        manifest = [record.manifest_entry() for record in files]
        try:
            if handle.supports_orchestration:
                raw = await handle.orchestrate_tools(user_message, tools, manifest, context)
            else:
                template = self.prompts["tool_selection"]
                prompt = template.render(
                    user_message=user_message,
                    files_list=json.dumps(manifest),
                    tools_list=json.dumps(tools, indent=2),
                )
                raw = await handle.generate_structured(prompt, template.system)
            return Plan.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Model returned an unusable plan: %s", exc)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Model planning failed: %s", exc)
        return None

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    async def _execute(
        self, plan: Plan, files: Sequence[FileRecord], user_message: str
    ) -> List[ToolResult]:
        if not plan.execution_order:
            logger.warning("No tools selected for execution")
            return []

        semaphore = asyncio.Semaphore(self.max_concurrent_tools)

        async def run(tool_id: str) -> ToolResult:
            async with semaphore:
                return await self._run_tool(tool_id, plan, files, user_message)

        # gather keeps plan order regardless of completion order
        return list(await asyncio.gather(*(run(tool_id) for tool_id in plan.execution_order)))

    def files_for_tool(
        self, tool: ToolDescriptor | None, files: Sequence[FileRecord]
    ) -> List[FileRecord]:
        """Files whose MIME type the tool accepts (every file for an unknown tool)."""
        if tool is None:
            return list(files)
        return [record for record in files if accepts(tool, record.mime_type)]

    def merge_parameters(
        self, tool_id: str, tool: ToolDescriptor | None, plan: Plan, user_message: str
    ) -> Dict[str, Any]:
        """Defaults, then the plan's overrides, then a confidence hint from the message."""
        parameters = tool.defaults() if tool is not None else {}
        parameters.update(plan.tool_parameters.get(tool_id, {}))
        confidence = confidence_from_message(user_message)
        if confidence is not None:
            parameters["confidence"] = confidence
        return parameters

    async def _run_tool(
        self, tool_id: str, plan: Plan, files: Sequence[FileRecord], user_message: str
    ) -> ToolResult:
        tool = self.registry.by_id(tool_id)
        relevant = self.files_for_tool(tool, files)
        if files and not relevant:
            logger.warning("No relevant files found for tool %s", tool_id)
        parameters = self.merge_parameters(tool_id, tool, plan, user_message)

        async def attempt() -> ToolResult:
            invocation = ToolInvocation(
                tool_id=tool_id,
                files=relevant,
                user_request=user_message,
                parameters=dict(parameters),
            )
            return await self.dispatcher.execute(invocation)

        result = await call_with_retry(attempt, self.retry_policy, tool_id)
        if result.succeeded:
            logger.info("Tool %s executed successfully", tool_id)
        else:
            logger.warning("Tool %s failed: %s", tool_id, result.error_message)
        return result

    # ------------------------------------------------------------------ #
    # Synthesis
    # ------------------------------------------------------------------ #
    async def _synthesize(
        self,
        handle: ModelHandle,
        user_message: str,
        results: Sequence[ToolResult],
        context: Sequence[ConversationTurn],
    ) -> str:
        succeeded = [r for r in results if r.succeeded]
        if not succeeded:
            return failure_message([r for r in results if not r.succeeded])

        try:
            if handle.supports_synthesis:
                response = await handle.synthesize_response(user_message, list(results), context)
            else:
                template = self.prompts["response_synthesis"]
                prompt = template.render(
                    user_message=user_message,
                    tool_results=json.dumps(
                        [r.to_wire() for r in succeeded], indent=2, default=str
                    ),
                    conversation_context=_context_json(context),
                )
                response = await handle.generate(prompt, template.system)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Response synthesis failed, using summary fallback: %s", exc)
            return fallback_summary(results)

        if not response or not response.strip():
            return fallback_summary(results)
        return response


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
def build_orchestrator() -> Orchestrator:
    """Assemble an orchestrator from ``settings`` (catalogues, prompts, limits)."""
    # pylint: disable=import-outside-toplevel
    from toolbridge.models.catalogue import load_model_catalogue
    from toolbridge.tools import load_tool_catalogue

    catalogue = load_tool_catalogue(settings.TOOLS_CONFIG)
    registry = ToolRegistry(catalogue.tools)
    dispatcher = CapabilityDispatcher(registry, catalogue)
    models = ModelManager(load_model_catalogue(settings.MODELS_CONFIG))
    return Orchestrator(
        registry,
        dispatcher,
        models,
        ConversationStore(),
        prompts=load_prompts(settings.PROMPTS_CONFIG),
    )
