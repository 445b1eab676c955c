"""记忆提供者。

工作区布局（与 ``init`` 命令创建的一致）::

    <workspace>/memory/
    ├── MEMORY.md            长期记忆
    └── daily/YYYY-MM-DD.md  每日对话日志

``build_context`` 把长期记忆和今天的日志拼成 ``<memory>`` 片段注入系统上下文，
``append_entry`` 在每轮回复后追加到当天日志。
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger


# 注入系统上下文的单个文件最多字符数
MAX_SECTION_CHARS = 4000


class MemoryProvider(Protocol):
    def build_context(self, prompt: str) -> str: ...

    def append_entry(self, content: str) -> None: ...


class WorkspaceMemory:
    """基于工作区文件的记忆。"""

    def __init__(self, workspace: Path):
        self.memory_dir = Path(workspace) / "memory"
        self.daily_dir = self.memory_dir / "daily"

    def _daily_path(self, date: Optional[str] = None) -> Path:
        return self.daily_dir / f"{date or datetime.now().strftime('%Y-%m-%d')}.md"

    @staticmethod
    def _read(path: Path) -> str:
        if not path.exists():
            return ""
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning(f"Failed to read memory file {path}: {e}")
            return ""

    def build_context(self, prompt: str) -> str:
        long_term = self._read(self.memory_dir / "MEMORY.md")
        today = self._read(self._daily_path())
        if not long_term and not today:
            return ""

        parts = ["<memory>"]
        if long_term:
            parts.extend(["## 长期记忆", long_term[:MAX_SECTION_CHARS]])
        if today:
            # 只保留今天日志的末尾
            parts.extend(["## 今日记录", today[-MAX_SECTION_CHARS:]])
        parts.append("</memory>")
        return "\n".join(parts)

    def append_entry(self, content: str) -> None:
        path = self._daily_path()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(content if content.endswith("\n") else content + "\n")
        except OSError as e:
            logger.warning(f"Failed to append memory entry: {e}")
