"""
This module implements the AgentManager class, which runs one Claude Code turn per chat request.
It provides:
- The read-only tool whitelist applied to every turn
- Rule injection for new conversations
- A registry of cancellation handles keyed by request id
- Streaming of engine messages as normalized events ending in exactly one terminal event
"""
import asyncio
import dataclasses
import enum
import io
import logging
import threading
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Optional

from claude_agent_sdk import ClaudeAgentOptions, query
from claude_agent_sdk.types import (
    AssistantMessage,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from rules_loader import RulesStore

logger = logging.getLogger(__name__)

# Tools that can only read content; always granted.
READ_ONLY_TOOLS = (
    "Read",
    "Grep",
    "Glob",
    "LSP",
    "Task",
)
# Never granted, whatever the client sends.
BLOCKED_WRITE_TOOLS = (
    "Write",
    "Edit",
    "Delete",
    "Move",
    "Bash",
)

RULES_SEPARATOR = "\n\n---\nUser message: "
TERMINAL_EVENT_TYPES = frozenset({"done", "aborted", "error"})

_ABORT_ERROR_NAMES = frozenset({"AbortError", "CancelledError"})
_ABORT_MARKER = "aborted by user"
_QUEUE_MAXSIZE = 16
_CANCEL_REASON_USER = "user"
_CANCEL_REASON_TIMEOUT = "timeout"

_PAYLOAD_TYPES: dict[type, str] = {
    AssistantMessage: "assistant",
    UserMessage: "user",
    ResultMessage: "result",
    StreamEvent: "stream_event",
    TextBlock: "text",
    ThinkingBlock: "thinking",
    ToolUseBlock: "tool_use",
    ToolResultBlock: "tool_result",
}


def _is_blocked(tool: str) -> bool:
    return any(tool == blocked or tool.startswith(blocked + "(") for blocked in BLOCKED_WRITE_TOOLS)


def get_allowed_tools(approved_tools: Optional[list[str]] = None) -> list[str]:
    """Merge the read-only whitelist with user-approved tools, dropping write-capable ones."""
    tools = list(READ_ONLY_TOOLS)
    for tool in approved_tools or []:
        if _is_blocked(tool) or tool in tools:
            continue
        tools.append(tool)
    return tools


def prepare_message(message: str, rules: str, session_id: Optional[str] = None) -> str:
    # Resumed conversations already carry the rules in their history.
    if session_id:
        return message
    return f"{rules}{RULES_SEPARATOR}{message}"


def build_option_kwargs(
    *,
    cli_path: str,
    allowed_tools: list[str],
    session_id: Optional[str] = None,
    working_directory: Optional[str] = None,
    permission_mode: Optional[str] = None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "cli_path": cli_path,
        "allowed_tools": allowed_tools,
    }
    if session_id:
        kwargs["resume"] = session_id
    if working_directory:
        kwargs["cwd"] = working_directory
    if permission_mode:
        kwargs["permission_mode"] = permission_mode
    return kwargs


def _payload_type(value: Any) -> Optional[str]:
    tag = _PAYLOAD_TYPES.get(type(value))
    if tag:
        return tag
    for cls, name in _PAYLOAD_TYPES.items():
        if isinstance(value, cls):
            return name
    return None


def to_payload(value: Any) -> Any:
    """Convert an engine message into a JSON-ready document tagged with its `type`."""
    if isinstance(value, SystemMessage):
        payload = dict(value.data or {})
        payload.setdefault("type", "system")
        payload.setdefault("subtype", value.subtype)
        return payload
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        payload: dict[str, Any] = {}
        tag = _payload_type(value)
        if tag:
            payload["type"] = tag
        for field in dataclasses.fields(value):
            payload[field.name] = to_payload(getattr(value, field.name))
        return payload
    if isinstance(value, dict):
        return {key: to_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_payload(item) for item in value]
    return value


def extract_session_id(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    if payload.get("type") != "system" or payload.get("subtype") != "init":
        return None
    session_id = payload.get("session_id")
    return session_id if isinstance(session_id, str) and session_id else None


def _is_abort_error(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return True
    return type(exc).__name__ in _ABORT_ERROR_NAMES or _ABORT_MARKER in str(exc)


def _format_query_error(*, stderr_text: str, exc: Exception) -> RuntimeError:
    stderr_text = (stderr_text or "").strip()
    if stderr_text:
        return RuntimeError(stderr_text)
    return RuntimeError(str(exc) or type(exc).__name__)


class DuplicateRequestError(RuntimeError):
    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} is already in progress")
        self.request_id = request_id


class CancellationHandle:
    def __init__(self, request_id: str):
        self.request_id = request_id
        self.reason: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def attach(self, task: asyncio.Task) -> None:
        with self._lock:
            self._task = task
            triggered = self.cancelled
        if triggered:
            task.cancel()

    def cancel(self, reason: str = _CANCEL_REASON_USER) -> None:
        with self._lock:
            if self.reason is None:
                self.reason = reason
            task = self._task
        if task is None or task.done():
            return
        loop = task.get_loop()
        # Aborts can arrive from another thread while the server shuts down.
        if loop.is_closed():
            logger.debug("Loop for %s already closed; nothing to cancel", self.request_id)
            return
        loop.call_soon_threadsafe(task.cancel)


class CancellationRegistry:
    """Live request ids mapped to their cancellation handles."""

    def __init__(self):
        self._handles: dict[str, CancellationHandle] = {}
        self._lock = threading.Lock()

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def register(self, request_id: str, handle: CancellationHandle) -> None:
        with self._lock:
            if request_id in self._handles:
                raise DuplicateRequestError(request_id)
            self._handles[request_id] = handle

    def trigger(self, request_id: str, reason: str = _CANCEL_REASON_USER) -> bool:
        with self._lock:
            handle = self._handles.get(request_id)
            if handle is None:
                return False
            handle.cancel(reason)
        return True

    def release(self, request_id: str, handle: Optional[CancellationHandle] = None) -> None:
        with self._lock:
            if handle is None or self._handles.get(request_id) is handle:
                self._handles.pop(request_id, None)


class TurnState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclasses.dataclass
class Turn:
    request_id: str
    prompt: str
    options: ClaudeAgentOptions
    state: TurnState = TurnState.IDLE
    # Resume token reported by the engine's init message.
    session_id: Optional[str] = None


QueryFn = Callable[..., AsyncIterator[Any]]


class AgentManager:
    def __init__(
        self,
        *,
        cli_path: str,
        rules: RulesStore,
        registry: Optional[CancellationRegistry] = None,
        query_fn: QueryFn = query,
        turn_timeout: Optional[float] = None,
        queue_size: int = _QUEUE_MAXSIZE,
    ):
        self.cli_path = cli_path
        self.rules = rules
        self.registry = registry if registry is not None else CancellationRegistry()
        self._query = query_fn
        self._turn_timeout = turn_timeout
        self._queue_size = queue_size

    def prepare_turn(
        self,
        *,
        message: str,
        request_id: str,
        session_id: Optional[str] = None,
        allowed_tools: Optional[list[str]] = None,
        working_directory: Optional[str] = None,
        permission_mode: Optional[str] = None,
    ) -> Turn:
        # Slash commands are forwarded without the leading marker.
        processed = message[1:] if message.startswith("/") else message

        tools = get_allowed_tools(allowed_tools)
        logger.debug("Using allowed tools for %s: %s", request_id, tools)

        if not session_id:
            logger.debug("Injecting rules into new session message for %s", request_id)
        prompt = prepare_message(processed, self.rules.get(), session_id)

        options = ClaudeAgentOptions(
            **build_option_kwargs(
                cli_path=self.cli_path,
                allowed_tools=tools,
                session_id=session_id,
                working_directory=working_directory,
                permission_mode=permission_mode,
            )
        )
        return Turn(request_id=request_id, prompt=prompt, options=options)

    def chat_stream(self, **kwargs: Any) -> AsyncIterator[dict]:
        return self.stream_turn(self.prepare_turn(**kwargs))

    def abort(self, request_id: str) -> bool:
        found = self.registry.trigger(request_id)
        if found:
            logger.info("Abort requested for %s", request_id)
        else:
            logger.debug("Abort for unknown request %s ignored", request_id)
        return found

    async def _pump(self, turn: Turn, queue: asyncio.Queue) -> None:
        stderr_buf = io.StringIO()
        opts = dataclasses.replace(turn.options, debug_stderr=stderr_buf)
        try:
            async with aclosing(self._query(prompt=turn.prompt, options=opts)) as messages:
                async for message in messages:
                    logger.debug("Claude SDK message for %s: %r", turn.request_id, message)
                    await queue.put(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if _is_abort_error(e):
                raise
            raise _format_query_error(stderr_text=stderr_buf.getvalue(), exc=e) from e

    @staticmethod
    async def _next_message(queue: asyncio.Queue, producer: asyncio.Task) -> tuple[bool, Any]:
        if not queue.empty():
            return True, queue.get_nowait()
        if producer.done():
            return False, None
        getter = asyncio.ensure_future(queue.get())
        try:
            await asyncio.wait({getter, producer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled():
            return True, getter.result()
        if not queue.empty():
            return True, queue.get_nowait()
        return False, None

    def _finish(self, turn: Turn, handle: CancellationHandle, producer: asyncio.Task) -> dict:
        exc = None if producer.cancelled() else producer.exception()
        # The engine may surface a cancelled subprocess as an ordinary error.
        interrupted = producer.cancelled() or (
            exc is not None and (handle.cancelled or _is_abort_error(exc))
        )
        if interrupted:
            if handle.reason == _CANCEL_REASON_TIMEOUT:
                turn.state = TurnState.FAILED
                logger.warning("Turn %s timed out after %ss", turn.request_id, self._turn_timeout)
                return {"type": "error", "error": f"Turn timed out after {self._turn_timeout:g} seconds"}
            turn.state = TurnState.ABORTED
            logger.debug("Request %s aborted by user", turn.request_id)
            return {"type": "aborted"}

        if exc is None:
            turn.state = TurnState.COMPLETED
            return {"type": "done"}

        turn.state = TurnState.FAILED
        logger.error("Claude Code execution failed for %s", turn.request_id, exc_info=exc)
        return {"type": "error", "error": str(exc) or type(exc).__name__}

    async def stream_turn(self, turn: Turn) -> AsyncIterator[dict]:
        handle = CancellationHandle(turn.request_id)
        try:
            self.registry.register(turn.request_id, handle)
        except DuplicateRequestError as e:
            logger.warning("Rejected duplicate request id %s", turn.request_id)
            turn.state = TurnState.FAILED
            yield {"type": "error", "error": str(e)}
            return

        turn.state = TurnState.STARTING
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        producer = asyncio.create_task(self._pump(turn, queue), name=f"turn-{turn.request_id}")
        handle.attach(producer)
        timer = None
        if self._turn_timeout:
            timer = asyncio.get_running_loop().call_later(
                self._turn_timeout, handle.cancel, _CANCEL_REASON_TIMEOUT
            )

        try:
            turn.state = TurnState.STREAMING
            while True:
                has_message, message = await self._next_message(queue, producer)
                if not has_message:
                    break
                payload = to_payload(message)
                if turn.session_id is None:
                    session_id = extract_session_id(payload)
                    if session_id:
                        turn.session_id = session_id
                        logger.info("Request %s bound to Claude session %s", turn.request_id, session_id)
                yield {"type": "claude_json", "data": payload}

            yield self._finish(turn, handle, producer)
        finally:
            if timer is not None:
                timer.cancel()
            if not producer.done():
                producer.cancel()
            elif not producer.cancelled():
                producer.exception()
            if turn.state not in (TurnState.COMPLETED, TurnState.ABORTED, TurnState.FAILED):
                # Consumer went away before a terminal event.
                turn.state = TurnState.ABORTED
            self.registry.release(turn.request_id, handle)
