"""Exponential-backoff retry around a tool dispatch."""

import asyncio
import logging
from typing import (
    Awaitable,
    Callable,
)

from pydantic import (
    BaseModel,
    Field,
)

from toolbridge.config import settings
from toolbridge.core.schema import ToolResult

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """``max_retries`` extra attempts, sleeping ``base_delay_ms * multiplier**attempt`` between."""

    max_retries: int = Field(default_factory=lambda: settings.MAX_RETRIES, ge=0)
    base_delay_ms: int = Field(default_factory=lambda: settings.RETRY_BASE_DELAY_MS, ge=0)
    multiplier: float = 2.0

    def delay_s(self, attempt: int) -> float:
        """Back-off before retry number ``attempt + 1``."""
        return self.base_delay_ms / 1000 * self.multiplier**attempt


async def call_with_retry(
    attempt_fn: Callable[[], Awaitable[ToolResult]],
    policy: RetryPolicy,
    label: str = "",
) -> ToolResult:
    """
    Run *attempt_fn* until it succeeds, fails non-retryably or the retries run out.

    Returns
    -------
    ToolResult
        The last attempt's result.  A success is never retried.
    """
    result = await attempt_fn()
    for attempt in range(policy.max_retries):
        if result.succeeded or not result.retryable:
            break
        delay = policy.delay_s(attempt)
        logger.info(
            "Retrying %s in %.1fs (retry %d/%d): %s",
            label or result.tool_id,
            delay,
            attempt + 1,
            policy.max_retries,
            result.error_message,
        )
        await asyncio.sleep(delay)
        result = await attempt_fn()
    return result
