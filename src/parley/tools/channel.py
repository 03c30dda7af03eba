"""MCP tool channel over a stdio subprocess."""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Protocol

import anyio
from loguru import logger
from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import CONNECTION_CLOSED

from parley.errors import ToolConnectError, ToolTransportError, TransportErrorKind
from parley.types import StructuredPart, TextPart, ToolContentPart, ToolDescriptor, ToolOutput

if TYPE_CHECKING:
    from parley.metrics import MetricsCollector

REQUEST_TIMEOUT_CODE = 408


@dataclass(frozen=True)
class ToolChannelConfig:
    """Everything needed to start one tool server; flags are fixed for the connection."""

    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    allow_writes: bool = False
    redact: bool = False
    connect_timeout_seconds: float = 15.0
    disconnect_timeout_seconds: float = 5.0
    call_timeout_seconds: float | None = None
    inherit_env: bool = True

    def subprocess_env(self) -> dict[str, str]:
        env = dict(os.environ) if self.inherit_env else {}
        env.update({key: value.strip() for key, value in self.env.items()})
        env["PARLEY_ALLOW_WRITES"] = "true" if self.allow_writes else "false"
        env["PARLEY_REDACT"] = "true" if self.redact else "false"
        return env


class ToolSession(Protocol):
    """The part of an MCP client session the channel relies on."""

    async def list_tools(self) -> Any: ...

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None, read_timeout_seconds: timedelta | None = None
    ) -> Any: ...


type SessionFactory = Callable[[ToolChannelConfig], AbstractAsyncContextManager[ToolSession]]


@asynccontextmanager
async def stdio_session(config: ToolChannelConfig) -> AsyncIterator[ToolSession]:
    """Spawn the tool server and yield an initialized MCP session."""
    params = StdioServerParameters(command=config.command, args=list(config.args), env=config.subprocess_env())
    async with stdio_client(params) as (read_stream, write_stream), ClientSession(read_stream, write_stream) as session:
        await session.initialize()
        yield session


class ToolChannel:
    """Owns one tool server connection and its catalog.

    The MCP session lives inside a dedicated task so that connect and
    disconnect can be time-boxed from any caller task.
    """

    def __init__(
        self,
        config: ToolChannelConfig,
        *,
        session_factory: SessionFactory = stdio_session,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config
        self._session_factory = session_factory
        self._metrics = metrics
        self._session: ToolSession | None = None
        self._task: asyncio.Task[None] | None = None
        self._closing = asyncio.Event()
        self._tools: tuple[ToolDescriptor, ...] = ()

    @property
    def tools(self) -> tuple[ToolDescriptor, ...]:
        return self._tools

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    def get(self, name: str) -> ToolDescriptor | None:
        for tool in self._tools:
            if tool.name == name:
                return tool
        return None

    async def connect(self) -> tuple[ToolDescriptor, ...]:
        if self._task is not None:
            await self.disconnect()

        started = time.monotonic()
        self._closing = asyncio.Event()
        ready: asyncio.Future[tuple[ToolDescriptor, ...]] = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._serve(ready), name=f"tool-channel:{self.config.command}")
        try:
            tools = await asyncio.wait_for(asyncio.shield(ready), timeout=self.config.connect_timeout_seconds)
        except asyncio.CancelledError:
            await self.disconnect()
            raise
        except TimeoutError as exc:
            await self.disconnect()
            self._record("error", error="connect timeout")
            raise ToolConnectError(
                f"Tool server did not become ready within {self.config.connect_timeout_seconds}s"
            ) from exc
        except Exception as exc:
            await self.disconnect()
            self._record("error", error=str(exc))
            raise ToolConnectError(f"Failed to connect tool server: {exc}") from exc
        finally:
            if ready.done() and not ready.cancelled():
                ready.exception()

        self._tools = tools
        duration_ms = (time.monotonic() - started) * 1000
        self._record("connect", duration_ms=duration_ms)
        logger.info(
            "tool.channel.connect command={} tools={} duration={:.1f}ms",
            self.config.command,
            len(tools),
            duration_ms,
        )
        return tools

    async def disconnect(self) -> None:
        task = self._task
        self._task = None
        self._tools = ()
        if task is None:
            return

        self._closing.set()
        timeout = self.config.disconnect_timeout_seconds
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning("tool.channel.disconnect.timeout command={} timeout={}s", self.config.command, timeout)
            task.cancel()
            await asyncio.wait({task}, timeout=timeout)
        self._session = None
        self._record("disconnect")
        logger.info("tool.channel.disconnect command={}", self.config.command)

    async def ensure_connected(self) -> None:
        """Reconnect when the server went away since the last call."""
        if not self.is_connected:
            logger.info("tool.channel.reconnect command={}", self.config.command)
            await self.connect()

    async def call(self, name: str, args: dict[str, Any]) -> ToolOutput:
        session = self._session
        if session is None or not self.is_connected:
            raise ToolTransportError(TransportErrorKind.NOT_CONNECTED, "tool channel is not connected")

        read_timeout = None
        if self.config.call_timeout_seconds is not None:
            read_timeout = timedelta(seconds=self.config.call_timeout_seconds)
        try:
            result = await session.call_tool(name, arguments=args, read_timeout_seconds=read_timeout)
        except McpError as exc:
            if exc.error.code == REQUEST_TIMEOUT_CODE:
                raise ToolTransportError(TransportErrorKind.TIMEOUT, exc.error.message) from exc
            if exc.error.code == CONNECTION_CLOSED:
                raise self._lost(TransportErrorKind.CLOSED, exc.error.message or "connection closed") from exc
            return ToolOutput((TextPart(exc.error.message),), is_error=True)
        except (anyio.ClosedResourceError, anyio.EndOfStream, EOFError) as exc:
            raise self._lost(TransportErrorKind.CLOSED, str(exc) or "connection closed") from exc
        except (anyio.BrokenResourceError, BrokenPipeError) as exc:
            raise self._lost(TransportErrorKind.BROKEN_PIPE, str(exc) or "broken pipe") from exc
        except ConnectionResetError as exc:
            raise self._lost(TransportErrorKind.RESET, str(exc) or "connection reset") from exc
        except ConnectionError as exc:
            raise self._lost(TransportErrorKind.CLOSED, str(exc) or "connection error") from exc
        except TimeoutError as exc:
            raise ToolTransportError(TransportErrorKind.TIMEOUT, str(exc) or "timed out") from exc
        return tool_output_from_result(result)

    def _lost(self, kind: TransportErrorKind, message: str) -> ToolTransportError:
        # A dead server keeps its session task parked; drop the session so ensure_connected reconnects.
        self._session = None
        self._record("error", error=f"{kind.value}: {message}")
        logger.warning("tool.channel.lost command={} kind={} error={}", self.config.command, kind.value, message)
        return ToolTransportError(kind, message)

    async def _serve(self, ready: asyncio.Future[tuple[ToolDescriptor, ...]]) -> None:
        try:
            async with self._session_factory(self.config) as session:
                listed = await session.list_tools()
                tools = tuple(descriptor_from_tool(tool) for tool in getattr(listed, "tools", ()))
                self._session = session
                if not ready.done():
                    ready.set_result(tools)
                await self._closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("tool.channel.closed command={} error={}", self.config.command, exc)
                self._record("error", error=str(exc))
        finally:
            self._session = None

    def _record(self, kind: str, *, duration_ms: float | None = None, error: str | None = None) -> None:
        if self._metrics is not None:
            self._metrics.record_connection_event(kind, duration_ms=duration_ms, error=error)


def descriptor_from_tool(tool: Any) -> ToolDescriptor:
    schema = getattr(tool, "inputSchema", None)
    if not isinstance(schema, Mapping):
        schema = {"type": "object", "properties": {}}
    return ToolDescriptor(name=str(tool.name), description=getattr(tool, "description", None) or "", input_schema=dict(schema))


def tool_output_from_result(result: Any) -> ToolOutput:
    parts = tuple(_content_part(item) for item in getattr(result, "content", None) or ())
    return ToolOutput(parts=parts, is_error=bool(getattr(result, "isError", False)))


def _content_part(item: Any) -> ToolContentPart:
    if isinstance(item, Mapping):
        if item.get("type") == "text":
            return TextPart(str(item.get("text", "")))
        return StructuredPart(dict(item))
    if getattr(item, "type", None) == "text":
        return TextPart(str(getattr(item, "text", "")))
    if hasattr(item, "model_dump"):
        return StructuredPart(item.model_dump(mode="json", exclude_none=True))
    return StructuredPart({"type": str(getattr(item, "type", "unknown")), "value": repr(item)})
