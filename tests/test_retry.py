from __future__ import annotations

from typing import Any

import pytest

from parley.errors import ToolTransportError, TransportErrorKind
from parley.tools.retry import RetryingInvoker
from parley.types import TextPart, ToolOutput


class CountingCall:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = outcomes
        self.calls = 0

    async def __call__(self, name: str, args: dict[str, Any]) -> ToolOutput:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _recorder() -> tuple[list[float], Any]:
    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    return delays, sleep


@pytest.mark.asyncio
async def test_transport_failures_are_retried_with_backoff_then_reraised() -> None:
    error = ToolTransportError(TransportErrorKind.RESET, "connection reset by peer")
    call = CountingCall([error])
    delays, sleep = _recorder()
    invoker = RetryingInvoker(call, max_retries=2, base_delay=0.5, sleep=sleep)

    with pytest.raises(ToolTransportError) as exc_info:
        await invoker.invoke("list_orders", {})

    assert exc_info.value is error
    assert call.calls == 3
    assert delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_tool_error_result_is_returned_once() -> None:
    failed = ToolOutput((TextPart("order not found"),), is_error=True)
    call = CountingCall([failed])
    invoker = RetryingInvoker(call, sleep=_recorder()[1])

    assert await invoker.invoke("get_order", {"id": 1}) is failed
    assert call.calls == 1


@pytest.mark.asyncio
async def test_other_exceptions_are_not_retried_unless_predicate_allows() -> None:
    call = CountingCall([ValueError("bad")])
    invoker = RetryingInvoker(call, sleep=_recorder()[1])

    with pytest.raises(ValueError):
        await invoker.invoke("get_order", {})
    assert call.calls == 1

    lenient = CountingCall([ValueError("bad"), ToolOutput((TextPart("ok"),))])
    invoker = RetryingInvoker(lenient, is_retryable=lambda exc: isinstance(exc, ValueError), sleep=_recorder()[1])
    assert (await invoker.invoke("get_order", {})).text == "ok"
    assert lenient.calls == 2


@pytest.mark.asyncio
async def test_before_retry_runs_between_attempts_and_its_failure_is_tolerated() -> None:
    call = CountingCall([ToolTransportError(TransportErrorKind.CLOSED, "closed"), ToolOutput((TextPart("ok"),))])
    attempts: list[int] = []

    async def before_retry(_error: BaseException, attempt: int) -> None:
        attempts.append(attempt)
        raise ConnectionError("still down")

    invoker = RetryingInvoker(call, before_retry=before_retry, sleep=_recorder()[1])

    assert (await invoker.invoke("get_order", {})).text == "ok"
    assert attempts == [1]


@pytest.mark.asyncio
async def test_zero_retries_calls_once() -> None:
    call = CountingCall([ToolTransportError(TransportErrorKind.TIMEOUT, "timed out")])
    invoker = RetryingInvoker(call, max_retries=0, sleep=_recorder()[1])

    with pytest.raises(ToolTransportError):
        await invoker.invoke("get_order", {})
    assert call.calls == 1
