"""Engine module - agent runners and reconnect backoff."""

from dingtalk_connector.engine.backoff import compute_reconnect_delay
from dingtalk_connector.engine.cli_runner import (
    ClaudeCliRunner,
    CodexCliRunner,
    SubprocessRunner,
    format_transcript,
)
from dingtalk_connector.engine.runner import (
    EMPTY_REPLY,
    AgentRunner,
    HistoryTurn,
    Provider,
    RunnerEvent,
    RunRequest,
    RunResult,
    collect,
    split_tool_directives,
)

__all__ = [
    "compute_reconnect_delay",
    "ClaudeCliRunner",
    "CodexCliRunner",
    "SubprocessRunner",
    "format_transcript",
    "EMPTY_REPLY",
    "AgentRunner",
    "HistoryTurn",
    "Provider",
    "RunnerEvent",
    "RunRequest",
    "RunResult",
    "collect",
    "split_tool_directives",
]
