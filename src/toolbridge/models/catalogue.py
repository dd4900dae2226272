"""Built-in model catalogue and the loader for JSON overrides."""

import json
import logging
from pathlib import Path
from typing import List

from pydantic import TypeAdapter

from toolbridge.config import settings
from toolbridge.core.schema import (
    ModelDescriptor,
    ModelKind,
)

logger = logging.getLogger(__name__)

_DESCRIPTORS = TypeAdapter(List[ModelDescriptor])


def default_models() -> List[ModelDescriptor]:
    """Models known out of the box; endpoints and paths are read from settings."""
    return [
        ModelDescriptor(
            id="claude-3-sonnet",
            name="Claude 3.5 Sonnet",
            kind=ModelKind.HOSTED_API,
            provider="anthropic",
            description="Anthropic's model for analysis, reasoning and tool orchestration",
            capabilities=("text_generation", "analysis", "reasoning", "tool_orchestration"),
            supports_structured_orchestration=True,
            requires_credential=True,
            credential_setting="ANTHROPIC_API_KEY",
            default=True,
            options={"model": "claude-3-5-sonnet-latest", "max_tokens": 4096, "temperature": 0.7},
        ),
        ModelDescriptor(
            id="gpt-4",
            name="GPT-4o",
            kind=ModelKind.HOSTED_API,
            provider="openai",
            description="OpenAI chat model",
            capabilities=("text_generation", "analysis", "reasoning"),
            requires_credential=True,
            credential_setting="OPENAI_API_KEY",
            options={"model": "gpt-4o", "max_tokens": 4096, "temperature": 0.7},
        ),
        ModelDescriptor(
            id="deepseek-coder",
            name="DeepSeek",
            kind=ModelKind.HOSTED_API,
            provider="openai",
            description="DeepSeek chat model through its OpenAI-compatible API",
            capabilities=("text_generation", "code_analysis", "reasoning"),
            requires_credential=True,
            credential_setting="DEEPSEEK_API_KEY",
            options={
                "model": "deepseek-chat",
                "base_url": "https://api.deepseek.com",
                "max_tokens": 4096,
                "temperature": 0.7,
            },
        ),
        ModelDescriptor(
            id="tgi",
            name="Text Generation Inference",
            kind=ModelKind.HOSTED_API,
            provider="tgi",
            description="Self-hosted Hugging Face TGI server",
            capabilities=("text_generation",),
            options={"endpoint": settings.TGI_ENDPOINT, "max_tokens": 1024, "temperature": 0.2},
        ),
        ModelDescriptor(
            id="qwen-3-1.7b",
            name="Qwen 3 1.7B",
            kind=ModelKind.LOCAL_PROCESS,
            provider="local",
            description="Small local model served by a transformers worker process",
            capabilities=("text_generation", "analysis"),
            options={
                "model_path": settings.LOCAL_MODEL_PATH,
                "max_tokens": 2048,
                "temperature": 0.7,
                "top_p": 0.9,
            },
        ),
    ]


def load_model_catalogue(path: str | None = None) -> List[ModelDescriptor]:
    """Return the built-in catalogue, or the list stored in the JSON file at *path*."""
    if not path:
        return default_models()

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("available_models", [])
    models = _DESCRIPTORS.validate_python(raw)
    logger.info("Loaded %d model descriptors from %s", len(models), path)
    return models
