"""Agentic request/response loop over a model provider and a tool channel."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from loguru import logger

from parley.core.cancellation import CancellationToken
from parley.core.history import DEFAULT_MAX_TURNS, HistoryLedger, interrupted_results
from parley.core.hooks import ChatCallbacks, merge_callbacks
from parley.core.provider import ModelProvider, ModelRequest, ModelResponse
from parley.errors import MaxStepsExceededError, RequestCancelledError, ToolValidationError
from parley.logging_utils import bind_session
from parley.tools.retry import DEFAULT_BASE_DELAY_SECONDS, DEFAULT_MAX_RETRIES, RetryingInvoker
from parley.tools.validator import ArgumentValidator
from parley.types import TextBlock, ToolCallResult, ToolDescriptor, ToolResultBlock, ToolUseBlock, Turn

if TYPE_CHECKING:
    from parley.session.store import SessionStore
    from parley.tools.channel import ToolChannel

DEFAULT_MAX_STEPS = 25
CANCELLED_PLACEHOLDER = "(cancelled)"
CANCELLED_RESULT = "Error: cancelled"


class ConversationOrchestrator:
    """Drives one conversation: stream, dispatch tools, repeat until the model stops.

    One instance owns its history and its tool channel; callers must not run
    two ``chat`` calls on the same instance concurrently.
    """

    def __init__(
        self,
        *,
        provider: ModelProvider,
        channel: ToolChannel | None = None,
        model: str,
        system_prompt: str,
        max_tokens: int = 4096,
        max_steps: int = DEFAULT_MAX_STEPS,
        max_history_turns: int = DEFAULT_MAX_TURNS,
        validator: ArgumentValidator | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        callbacks: ChatCallbacks | None = None,
        session_id: str | None = None,
    ) -> None:
        self._provider = provider
        self._channel = channel
        self._model = model
        self._system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.max_steps = max_steps
        self.session_id = session_id
        self._ledger = HistoryLedger(max_turns=max_history_turns)
        self._validator = validator or ArgumentValidator()
        self._callbacks = callbacks
        self._store: SessionStore | None = None
        self._invoker: RetryingInvoker | None = None
        if channel is not None:
            self._invoker = RetryingInvoker(
                channel.call,
                max_retries=max_retries,
                base_delay=retry_base_delay,
                before_retry=self._prepare_retry,
            )

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def set_system_prompt(self, prompt: str) -> None:
        self._system_prompt = prompt

    @property
    def history(self) -> tuple[Turn, ...]:
        return self._ledger.turns

    @property
    def history_length(self) -> int:
        return len(self._ledger)

    @property
    def tools(self) -> tuple[ToolDescriptor, ...]:
        if self._channel is None:
            return ()
        return self._channel.tools

    @property
    def channel(self) -> ToolChannel | None:
        return self._channel

    async def connect(self) -> None:
        if self._channel is not None:
            await self._channel.connect()

    async def disconnect(self) -> None:
        if self._channel is not None:
            await self._channel.disconnect()

    def use_session_store(self, store: SessionStore) -> None:
        """Resume from ``store`` and mirror every later turn into it."""
        self._store = store
        self._ledger.load(store.load_messages())
        logger.info("session.resume session={} turns={}", store.session_id, len(self._ledger))

    def clear_history(self) -> None:
        self._ledger.clear()
        if self._store is not None:
            self._store.clear()

    async def chat(
        self,
        text: str,
        *,
        callbacks: ChatCallbacks | None = None,
        token: CancellationToken | None = None,
    ) -> str:
        """Run the loop for one user message and return the assistant's text."""
        with bind_session(self.session_id):
            return await self._chat(text, merge_callbacks(self._callbacks, callbacks), token or CancellationToken())

    async def _chat(self, text: str, callbacks: ChatCallbacks, token: CancellationToken) -> str:
        open_ids = self._ledger.open_tool_uses()
        if open_ids:
            logger.warning("history.tool_use.interrupted ids={}", open_ids)
            self._append(Turn.tool_results(interrupted_results(open_ids)))
        self._append(Turn.user_text(text))
        texts: list[str] = []
        for step in range(1, self.max_steps + 1):
            token.raise_if_cancelled()
            response = await self._stream(callbacks, token)
            await callbacks.usage(response.usage)

            tool_uses = [block for block in response.content if isinstance(block, ToolUseBlock)]
            if tool_uses and not response.wants_tools:
                logger.warning(
                    "model.response.unpaired_tool_use count={} stop_reason={}", len(tool_uses), response.stop_reason
                )
                content = tuple(block for block in response.content if not isinstance(block, ToolUseBlock))
                tool_uses = []
            else:
                content = response.content
            if content:
                self._append(Turn.assistant(content))
            reply = Turn.assistant(content).text() if content else None
            if reply:
                texts.append(reply)

            if not tool_uses:
                logger.info("chat.done steps={} stop_reason={}", step, response.stop_reason)
                return "\n".join(texts)

            results: list[ToolResultBlock] = []
            try:
                await self._dispatch(tool_uses, callbacks, token, results)
            finally:
                answered = {result.tool_use_id for result in results}
                results.extend(
                    ToolResultBlock(block.id, CANCELLED_RESULT, is_error=True)
                    for block in tool_uses
                    if block.id not in answered
                )
                self._append(Turn.tool_results(results))
            token.raise_if_cancelled()

        logger.warning("chat.max_steps max_steps={}", self.max_steps)
        raise MaxStepsExceededError(self.max_steps)

    async def _stream(self, callbacks: ChatCallbacks, token: CancellationToken) -> ModelResponse:
        streamed: list[str] = []

        async def on_text(delta: str) -> None:
            streamed.append(delta)
            await callbacks.text(delta)

        request = ModelRequest(
            model=self._model,
            system=self._system_prompt,
            messages=self._ledger.to_payloads(),
            tools=[tool.to_model_tool() for tool in self.tools],
            max_tokens=self.max_tokens,
        )
        stream_task = asyncio.create_task(self._provider.stream(request, on_text))
        abort_task = asyncio.create_task(token.wait())
        aborted = False
        try:
            await asyncio.wait({stream_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_task.cancel()
            if not stream_task.done():
                aborted = True
                stream_task.cancel()
                await asyncio.gather(stream_task, return_exceptions=True)

        if not aborted:
            return stream_task.result()

        partial = "".join(streamed) or CANCELLED_PLACEHOLDER
        self._append(Turn.assistant([TextBlock(partial)]))
        logger.info("model.stream.cancelled chars={}", len("".join(streamed)))
        raise RequestCancelledError(token.reason or "Request cancelled")

    async def _dispatch(
        self,
        tool_uses: list[ToolUseBlock],
        callbacks: ChatCallbacks,
        token: CancellationToken,
        results: list[ToolResultBlock],
    ) -> None:
        """Run each tool use in order, collecting into ``results`` as calls finish."""
        for block in tool_uses:
            if token.cancelled:
                results.append(ToolResultBlock(block.id, CANCELLED_RESULT, is_error=True))
                continue
            outcome = await self._run_tool(block, callbacks)
            if token.cancelled:
                # The call finished after the abort; its result is not reported.
                results.append(ToolResultBlock(block.id, CANCELLED_RESULT, is_error=True))
                continue
            results.append(ToolResultBlock(block.id, outcome.result_text, is_error=outcome.is_error))

    async def _run_tool(self, block: ToolUseBlock, callbacks: ChatCallbacks) -> ToolCallResult:
        name = block.name
        raw_args = dict(block.input) if isinstance(block.input, dict) else {}
        await callbacks.tool_call(name, raw_args)

        try:
            tool = self._validator.resolve(name, self.tools)
            args = self._validator.validate(tool, block.input)
        except ToolValidationError as exc:
            logger.warning("tool.call.invalid name={} key={} error={}", name, exc.key, exc)
            return await self._finish(callbacks, block, raw_args, f"Error: {exc}", True, 0.0)

        decision = await callbacks.tool_call_start(name, args)
        if decision is not None:
            if decision.action == "deny":
                logger.info("tool.call.denied name={} reason={}", name, decision.reason)
                return await self._finish(callbacks, block, args, f"Error: {decision.reason}", True, 0.0)
            if decision.action == "respond":
                logger.info("tool.call.responded name={}", name)
                return await self._finish(callbacks, block, args, decision.content or "", False, 0.0)
            if decision.args is not None:
                try:
                    args = self._validator.validate(tool, decision.args)
                except ToolValidationError as exc:
                    logger.warning("tool.call.invalid name={} key={} error={}", name, exc.key, exc)
                    return await self._finish(callbacks, block, decision.args, f"Error: {exc}", True, 0.0)

        logger.info("tool.call.start name={} args={}", name, args)
        started = time.monotonic()
        try:
            if self._invoker is None:
                raise RuntimeError("no tool channel attached")
            output = await self._invoker.invoke(name, args)
            result_text, is_error = output.text, output.is_error
        except Exception as exc:
            logger.warning("tool.call.error name={} error={}", name, exc)
            result_text, is_error = f"Error: {exc}", True
        duration_ms = (time.monotonic() - started) * 1000
        logger.info("tool.call.end name={} is_error={} duration={:.1f}ms", name, is_error, duration_ms)
        return await self._finish(callbacks, block, args, result_text, is_error, duration_ms)

    @staticmethod
    async def _finish(
        callbacks: ChatCallbacks,
        block: ToolUseBlock,
        args: dict[str, Any],
        result_text: str,
        is_error: bool,
        duration_ms: float,
    ) -> ToolCallResult:
        result = ToolCallResult(
            name=block.name,
            args=args,
            result_text=result_text,
            is_error=is_error,
            duration_ms=duration_ms,
            tool_use_id=block.id,
        )
        await callbacks.tool_call_end(result)
        return result

    async def _prepare_retry(self, error: BaseException, attempt: int) -> None:
        if self._channel is not None:
            await self._channel.ensure_connected()

    def _append(self, turn: Turn) -> None:
        if not self._ledger.append(turn):
            logger.warning("history.turn.dropped role={}", turn.role)
            return
        if self._store is None:
            return
        self._store.append_message(turn)
        if turn.is_tool_result_turn:
            return
        text = turn.text()
        if text:
            self._store.append_log(turn.role, text)
