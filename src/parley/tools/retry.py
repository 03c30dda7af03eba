"""Bounded retry for transport-class tool failures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from parley.errors import ToolTransportError
from parley.types import ToolOutput

type ToolCall = Callable[[str, dict[str, Any]], Awaitable[ToolOutput]]
type RetryPredicate = Callable[[BaseException], bool]
type BeforeRetry = Callable[[BaseException, int], Awaitable[None]]

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY_SECONDS = 0.5


def is_transport_error(error: BaseException) -> bool:
    return isinstance(error, ToolTransportError)


class RetryingInvoker:
    """Calls a tool, retrying only failures of the channel itself.

    A result with ``is_error`` set means the tool ran; it is returned as-is
    and never retried. When retries run out the last error is re-raised
    unchanged.
    """

    def __init__(
        self,
        call: ToolCall,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        is_retryable: RetryPredicate | None = None,
        before_retry: BeforeRetry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._call = call
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self._is_retryable = is_retryable
        self._before_retry = before_retry
        self._sleep = sleep

    def retryable(self, error: BaseException) -> bool:
        if is_transport_error(error):
            return True
        return self._is_retryable is not None and self._is_retryable(error)

    async def invoke(self, name: str, args: dict[str, Any]) -> ToolOutput:
        return await self._retrying(name)(self._call, name, args)

    def _retrying(self, name: str) -> AsyncRetrying:
        async def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome is not None else None
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            logger.warning(
                "tool.call.retry name={} attempt={}/{} delay={:.2f}s error={}",
                name,
                state.attempt_number,
                self.max_retries,
                delay,
                error,
            )
            if self._before_retry is None or error is None:
                return
            try:
                await self._before_retry(error, state.attempt_number)
            except Exception as prepare_error:
                # The next attempt reports the channel state.
                logger.warning("tool.call.retry.prepare_failed name={} error={}", name, prepare_error)

        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(1 + self.max_retries),
            wait=wait_exponential(multiplier=self.base_delay),
            retry=retry_if_exception(self.retryable),
            before_sleep=before_sleep,
            sleep=self._sleep,
        )
