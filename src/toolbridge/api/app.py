"""
HTTP API for toolbridge.

Endpoints:
- **GET /health**  - liveness probe.
- **GET /health/detailed** - bridge, model and tool status.
- **POST /chat/message** - one turn: {"message": "...", "conversationId": "...", "files": [...]}
- **GET|DELETE /chat/history/{conversation_id}** - stored turns of a conversation.
- **GET /chat/conversations** - one summary per conversation.
- **GET /models/available**, **GET /models/current**, **POST /models/switch**,
  **POST /models/api-key**, **GET /models/health**
- **GET /tools** - tool catalogue with live availability.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
)

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Request,
)
from fastapi.middleware.cors import CORSMiddleware

from toolbridge.agent.orchestrator import (
    Orchestrator,
    build_orchestrator,
)
from toolbridge.api.models import (
    ApiKeyRequest,
    ChatMessageRequest,
    HistoryResponse,
    ModelInfo,
    ModelSwitchRequest,
)
from toolbridge.common import (
    AnsiColors,
    colored_print,
)
from toolbridge.config import settings
from toolbridge.core.errors import (
    AuthError,
    BridgeError,
    InvalidRequestError,
    NotFoundError,
)
from toolbridge.core.schema import TurnResponse
from toolbridge.models.gateway import ModelHandle

logger = logging.getLogger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> Orchestrator:
    """Dependency: the orchestrator attached to the running app."""
    return request.app.state.orchestrator


def _model_info(handle: ModelHandle) -> ModelInfo:
    return ModelInfo(
        id=handle.id,
        name=handle.descriptor.name or handle.id,
        provider=handle.descriptor.provider,
        supports_orchestration=handle.supports_orchestration,
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@router.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@router.get("/health/detailed", summary="Detailed health")
async def detailed_health(orch: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """Model and tool status."""
    return await orch.health()


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
@router.post("/chat/message", response_model=TurnResponse, summary="Process a message")
async def chat_message(
    req: ChatMessageRequest, orch: Orchestrator = Depends(get_orchestrator)
) -> TurnResponse:
    """Run one turn of the conversation."""
    conversation_id = req.conversation_id or str(uuid.uuid4())
    try:
        return await orch.process_request(conversation_id, req.message, req.files)
    except InvalidRequestError as exc:
        logger.warning("Rejected request: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get(
    "/chat/history/{conversation_id}", response_model=HistoryResponse, summary="Get history"
)
async def get_history(
    conversation_id: str, orch: Orchestrator = Depends(get_orchestrator)
) -> HistoryResponse:
    """Stored turns of one conversation."""
    try:
        turns = orch.conversations.history(conversation_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return HistoryResponse.from_turns(conversation_id, turns)


@router.delete("/chat/history/{conversation_id}", summary="Clear history")
async def clear_history(
    conversation_id: str, orch: Orchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Forget one conversation."""
    if not orch.conversations.clear(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return {"success": True, "conversationId": conversation_id}


@router.get("/chat/conversations", summary="List conversations")
async def list_conversations(
    orch: Orchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    """One summary per known conversation."""
    return orch.conversations.summaries()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
@router.get("/models/available", summary="List models")
async def available_models(orch: Orchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    """Every catalogued model with its availability."""
    return orch.models.available_models()


@router.get("/models/current", response_model=ModelInfo, summary="Active model")
async def current_model(orch: Orchestrator = Depends(get_orchestrator)) -> ModelInfo:
    """The model new turns will use."""
    handle = orch.models.active
    if handle is None:
        raise HTTPException(status_code=404, detail="No model is active")
    return _model_info(handle)


@router.post("/models/switch", response_model=ModelInfo, summary="Switch model")
async def switch_model(
    req: ModelSwitchRequest, orch: Orchestrator = Depends(get_orchestrator)
) -> ModelInfo:
    """Make another model active."""
    try:
        handle = orch.switch_model(req.model_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _model_info(handle)


@router.post("/models/api-key", response_model=ModelInfo, summary="Set API key")
async def set_api_key(
    req: ApiKeyRequest, orch: Orchestrator = Depends(get_orchestrator)
) -> ModelInfo:
    """Validate and store a credential for a hosted model."""
    try:
        handle = await orch.models.set_api_key(req.model_id, req.api_key)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except BridgeError as exc:
        raise HTTPException(status_code=503, detail=exc.describe()) from exc
    return _model_info(handle)


@router.get("/models/health", summary="Model health")
async def models_health(orch: Orchestrator = Depends(get_orchestrator)) -> Dict[str, bool]:
    """Health check of every live model."""
    return await orch.models.health_check()


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
@router.get("/tools", summary="List tools")
async def list_tools(orch: Orchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    """Tool catalogue with live availability."""
    return orch.registry.all()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------
def create_app(orchestrator: Orchestrator | None = None, initialize: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Parameters
    ----------
    orchestrator:
        Pre-built orchestrator (tests pass one wired to fakes).  Built from settings when omitted.
    initialize:
        Whether startup should probe transports and bring models up.
    """
    orch = orchestrator or build_orchestrator()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if initialize:
            await orch.initialize()
        yield
        await orch.shutdown()

    app = FastAPI(
        title="Toolbridge API",
        version="0.1.0",
        description="Routes user requests with files to analysis tools and answers with an LLM",
        lifespan=lifespan,
    )
    app.state.orchestrator = orch
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.DEBUG else [f"http://localhost:{settings.API_PORT}"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0",
    port: int | None = None,
    reload: bool = False,
    log_level: str | None = None,
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server (port defaults to ``settings.API_PORT``).
    reload:
        If *True*, enable auto-reload.
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn out of the import path of library users
    import uvicorn  # pylint: disable=import-outside-toplevel

    if port is None:
        port = settings.API_PORT
    if log_level is None:
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting toolbridge API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    colored_print(f"Toolbridge API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "toolbridge.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


if __name__ == "__main__":
    run_api(reload=True)
