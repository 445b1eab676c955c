"""Agent runners backed by local coding-agent CLIs.

- ``claude``: ``claude -p ... --output-format stream-json``; resumable with
  ``--resume <session_id>``.
- ``codex``: ``codex exec --json ...``; stateless, so prior history is
  flattened into the prompt.

Both run as subprocesses in the configured workspace. stdout is consumed line
by line as JSON events; closing the stream kills the process.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import AsyncIterator, Optional

from loguru import logger

from dingtalk_connector.engine.runner import EMPTY_REPLY, RunnerEvent, RunRequest, split_tool_directives
from dingtalk_connector.errors import RunnerTimeoutError


def format_transcript(request: RunRequest) -> str:
    """Flatten history + the latest user message into one prompt."""
    lines = [
        f"{'User' if turn.role == 'user' else 'Assistant'}: {turn.content}"
        for turn in request.history
    ]
    lines.append(f"User: {request.user_text}")
    return "\n".join(lines)


class SubprocessRunner:
    """运行 CLI 子进程并把 stdout 的 JSON 行转换为 RunnerEvent。"""

    provider = "base"

    def __init__(self, executable: str, workspace: Optional[Path] = None, timeout: int = 300):
        self.executable = executable
        self.workspace = workspace
        self.timeout = timeout

    def build_command(self, request: RunRequest) -> list[str]:
        raise NotImplementedError

    def parse_line(self, obj: dict, state: dict) -> Optional[RunnerEvent]:
        """Map one JSON line to an event; ``state`` persists across lines."""
        raise NotImplementedError

    def finish(self, state: dict, returncode: Optional[int], stderr: str) -> RunnerEvent:
        """Terminal event when the process exits without emitting one."""
        if returncode:
            return RunnerEvent(kind="error", text=f"{self.provider} exited with {returncode}: {stderr[-500:]}")
        return RunnerEvent(
            kind="success",
            text=state.get("text", "").strip() or EMPTY_REPLY,
            session_token=state.get("session_token"),
        )

    def expand(self, event: RunnerEvent) -> list[RunnerEvent]:
        """Split directive lines out of assistant text into ``tool`` events."""
        if event.kind not in ("delta", "success"):
            return [event]
        text, calls = split_tool_directives(event.text)
        if event.kind == "success":
            # 最终文本只去掉指令行，指令已随 delta 执行过
            return [RunnerEvent(kind="success", text=text.strip() or EMPTY_REPLY, session_token=event.session_token)]
        events = [RunnerEvent(kind="delta", text=text)] if text.strip() else []
        return events + calls

    async def stream(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        cmd = self.build_command(request)
        cwd = request.cwd or (str(self.workspace) if self.workspace else None)
        logger.debug(f"Running {self.provider}: {cmd[0]} ... in {cwd}")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )

        stderr_lines: list[str] = []

        async def read_stderr() -> None:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                stderr_lines.append(line.decode("utf-8", errors="replace").rstrip())

        stderr_task = asyncio.create_task(read_stderr())
        deadline = time.monotonic() + self.timeout
        state: dict = {"text": ""}

        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RunnerTimeoutError(f"{self.provider} timed out after {self.timeout}s")
                try:
                    line = await asyncio.wait_for(process.stdout.readline(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise RunnerTimeoutError(f"{self.provider} timed out after {self.timeout}s")
                if not line:
                    break

                decoded = line.decode("utf-8", errors="replace").strip()
                if not decoded:
                    continue
                try:
                    obj = json.loads(decoded)
                except json.JSONDecodeError:
                    logger.debug(f"{self.provider} non-JSON output: {decoded[:200]}")
                    continue
                if not isinstance(obj, dict):
                    continue

                event = self.parse_line(obj, state)
                if event is None:
                    continue
                for expanded in self.expand(event):
                    yield expanded
                if event.is_terminal:
                    return

            await process.wait()
            await stderr_task
            for expanded in self.expand(self.finish(state, process.returncode, "\n".join(stderr_lines))):
                yield expanded
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()


class ClaudeCliRunner(SubprocessRunner):
    """Claude Code CLI (``stream-json`` 输出)。"""

    provider = "claude"

    def build_command(self, request: RunRequest) -> list[str]:
        # 没有可恢复的会话时，把短期历史拼进 prompt
        prompt = request.user_text if request.session_token or not request.history else format_transcript(request)
        cmd = [self.executable, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if request.system_context:
            cmd.extend(["--append-system-prompt", request.system_context])
        if request.model:
            cmd.extend(["--model", request.model])
        if request.session_token:
            cmd.extend(["--resume", request.session_token])
        return cmd

    def parse_line(self, obj: dict, state: dict) -> Optional[RunnerEvent]:
        msg_type = obj.get("type")
        if obj.get("session_id"):
            state["session_token"] = obj["session_id"]

        if msg_type == "assistant":
            blocks = (obj.get("message") or {}).get("content") or []
            text = "".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")
            if not text:
                return None
            state["text"] += text
            return RunnerEvent(kind="delta", text=text)

        if msg_type == "result":
            if obj.get("is_error") or obj.get("subtype") != "success":
                return RunnerEvent(kind="error", text=str(obj.get("result") or obj.get("subtype") or "claude error"))
            final = (obj.get("result") or state["text"]).strip() or EMPTY_REPLY
            return RunnerEvent(kind="success", text=final, session_token=state.get("session_token"))

        return None


class CodexCliRunner(SubprocessRunner):
    """Codex CLI (``exec --json`` 输出)。"""

    provider = "codex"

    def build_command(self, request: RunRequest) -> list[str]:
        prompt = f"{request.system_context}\n\n{format_transcript(request)}\n\nPlease reply to the latest user message above."
        cmd = [
            self.executable, "exec", "--json",
            "--skip-git-repo-check",
            "--sandbox", "danger-full-access",
        ]
        if request.model:
            cmd.extend(["--model", request.model])
        cmd.append(prompt)
        return cmd

    def parse_line(self, obj: dict, state: dict) -> Optional[RunnerEvent]:
        msg_type = obj.get("type")

        if msg_type == "thread.started":
            state["session_token"] = obj.get("thread_id")
            return None

        if msg_type == "item.completed":
            item = obj.get("item") or {}
            if item.get("type") == "agent_message" and item.get("text"):
                state["text"] += item["text"]
                return RunnerEvent(kind="delta", text=item["text"])
            return None

        if msg_type in ("turn.failed", "error"):
            err = obj.get("error") or {}
            message = err.get("message") if isinstance(err, dict) else None
            return RunnerEvent(kind="error", text=message or obj.get("message") or "codex error")

        return None
