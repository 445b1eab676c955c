"""Agent runner collaborator interface.

A runner turns ``(system context, prior history, user text, provider)`` into
reply text. Runners stream: they yield ``delta`` events while text accumulates
and end with one terminal ``success`` (final text + resumable session token)
or ``error`` event. Closing the iterator cancels the underlying request.

A runner may also yield ``tool`` events asking the host to act on the current
conversation (``send_file``, ``send_message``). Runners without structured tool
output write them as directive lines, see :func:`split_tool_directives`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, Optional, Protocol

from dingtalk_connector.errors import RunnerError


Provider = Literal["claude", "codex"]

EMPTY_REPLY = "抱歉，无法生成回复。"

TOOL_NAMES = ("send_file", "send_message")

# [[send_file: /path/to/report.pdf]] on a line of its own
TOOL_DIRECTIVE = re.compile(
    r"^[ \t]*\[\[(" + "|".join(TOOL_NAMES) + r"):[ \t]*(.+?)\]\][ \t]*$\n?",
    re.MULTILINE,
)

TOOL_ARGUMENT = {"send_file": "file_path", "send_message": "text"}


@dataclass
class HistoryTurn:
    role: Literal["user", "assistant"]
    content: str


@dataclass
class RunRequest:
    system_context: str
    user_text: str
    history: list[HistoryTurn] = field(default_factory=list)
    """Turns before the current user message."""
    provider: Provider = "claude"
    model: str = ""
    cwd: str = ""
    session_token: Optional[str] = None
    """Opaque token from a previous ``success`` event, used to resume."""


@dataclass
class RunnerEvent:
    kind: Literal["delta", "success", "error", "tool"]
    text: str = ""
    session_token: Optional[str] = None
    tool: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.kind in ("success", "error")


@dataclass
class RunResult:
    text: str
    session_token: Optional[str] = None


def split_tool_directives(text: str) -> tuple[str, list[RunnerEvent]]:
    """
    Pull ``[[tool: argument]]`` lines out of reply text.

    Returns:
        The text without directive lines, and one ``tool`` event per directive
        in order of appearance.
    """
    calls = [
        RunnerEvent(kind="tool", tool=m.group(1), arguments={TOOL_ARGUMENT[m.group(1)]: m.group(2).strip()})
        for m in TOOL_DIRECTIVE.finditer(text)
    ]
    if not calls:
        return text, []
    return TOOL_DIRECTIVE.sub("", text), calls


class AgentRunner(Protocol):
    """Reply-generation collaborator."""

    def stream(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        """Yield partial events, ending with a terminal event."""
        ...


async def collect(
    runner: AgentRunner,
    request: RunRequest,
    on_delta: Optional[Callable[[str], Awaitable[None]]] = None,
    on_tool: Optional[Callable[[str, dict[str, Any]], Awaitable[str]]] = None,
) -> RunResult:
    """
    Drain a runner stream to its terminal event.

    ``on_delta`` is awaited with the accumulated text after every delta.
    ``on_tool`` is awaited for every ``tool`` event; without it tool events
    are ignored.

    Raises:
        RunnerError: The stream ended with an ``error`` event.
    """
    text = ""
    token: Optional[str] = None
    stream = runner.stream(request)
    try:
        async for event in stream:
            if event.kind == "delta":
                text += event.text
                if on_delta is not None:
                    await on_delta(text)
            elif event.kind == "success":
                text = event.text or text
                token = event.session_token
                break
            elif event.kind == "tool":
                if on_tool is not None:
                    await on_tool(event.tool, event.arguments)
            elif event.kind == "error":
                raise RunnerError(event.text or "agent runner failed")
    finally:
        await _aclose(stream)
    return RunResult(text=text.strip() or EMPTY_REPLY, session_token=token)


async def _aclose(stream: AsyncIterator[RunnerEvent]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
