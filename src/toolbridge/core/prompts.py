"""
Prompt templates used by the orchestrator.

Templates use ``{placeholder}`` markers that are substituted with plain string replacement, so
JSON examples inside a template never need brace escaping.  A JSON file named by
``settings.PROMPTS_CONFIG`` may override any template with the same ``{system, template}`` shape.
"""

import json
import logging
from pathlib import Path
from typing import (
    Dict,
    Mapping,
)

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class PromptTemplate(BaseModel):
    """A system prompt plus a user-prompt template."""

    system: str
    template: str

    def render(self, **values: str) -> str:
        """Substitute each ``{name}`` marker with its value."""
        prompt = self.template
        for name, value in values.items():
            prompt = prompt.replace("{" + name + "}", value)
        return prompt


DEFAULT_PROMPTS: Dict[str, PromptTemplate] = {
    "tool_selection": PromptTemplate(
        system=(
            "You are a tool orchestrator. Choose the smallest set of tools that answers the "
            "user's request using the uploaded files. Only choose tools from the list you are "
            "given."
        ),
        template="""\
User request: {user_message}

Uploaded files: {files_list}

Available tools:
{tools_list}

Respond with a JSON object of this shape:
{"selected_tools": ["tool_id"], "reasoning": "why these tools", "execution_order": ["tool_id"],
 "tool_parameters": {"tool_id": {"param": "value"}}, "file_requirements": {"tool_id": ["file"]}}
""",
    ),
    "response_synthesis": PromptTemplate(
        system=(
            "You are an analyst. Turn raw tool output into a clear, well-organised answer that "
            "addresses the user's request directly. Reference concrete findings."
        ),
        template="""\
User request: {user_message}

Tool results:
{tool_results}

Recent conversation:
{conversation_context}

Write the answer for the user.
""",
    ),
}


def load_prompts(path: str | None = None) -> Mapping[str, PromptTemplate]:
    """Return the default templates, overridden by entries from the JSON file at *path*."""
    prompts = dict(DEFAULT_PROMPTS)
    if not path:
        return prompts

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    for name, entry in raw.items():
        prompts[name] = PromptTemplate.model_validate(entry)
        logger.info("Loaded prompt override '%s' from %s", name, path)
    return prompts
