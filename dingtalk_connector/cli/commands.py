"""CLI commands for dingtalk-connector.

命令结构:
- dingtalk-connector run                    # 前台运行所有账号连接
- dingtalk-connector status                 # 查看配置的账号与策略
- dingtalk-connector check <account_id>     # 校验凭证（获取 access token）
- dingtalk-connector send <account_id> ...  # 主动推送一条消息
- dingtalk-connector init                   # 创建默认配置和 workspace
- dingtalk-connector version                # 查看版本信息
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from dingtalk_connector import __logo__, __version__
from dingtalk_connector.bus.events import ConnectionStatus, StatusEvent
from dingtalk_connector.config.loader import get_config_path, load_config
from dingtalk_connector.config.schema import Config, DingTalkAccountConfig
from dingtalk_connector.errors import DingTalkError
from dingtalk_connector.gateway.tokens import TokenGeneration
from dingtalk_connector.runtime import Runtime

console = Console()

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level:8}</level> | {message}"
FILE_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:8} | {name}:{line} | {message}"

STATUS_STYLES = {
    ConnectionStatus.CONNECTED: "green",
    ConnectionStatus.CONNECTING: "cyan",
    ConnectionStatus.ERROR: "red",
    ConnectionStatus.DISCONNECTED: "dim",
}


app = typer.Typer(
    name="dingtalk-connector",
    help=f"{__logo__} dingtalk-connector - 钉钉 Stream 模式机器人连接器",
    no_args_is_help=True,
    add_completion=False,
)


# ============================================================================
# 日志
# ============================================================================

def setup_logging(config: Config, verbose: bool = False) -> None:
    """配置 loguru：终端输出，可选的滚动日志文件。"""
    logger.remove()
    level = "DEBUG" if verbose else config.log_level.upper()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            level=level,
            format=FILE_LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )


# ============================================================================
# Workspace
# ============================================================================

def init_workspace(workspace: Path) -> None:
    """初始化 workspace：创建 memory 目录和长期记忆文件。"""
    workspace = workspace.expanduser()
    workspace.mkdir(parents=True, exist_ok=True)

    memory_dir = workspace / "memory"
    (memory_dir / "daily").mkdir(parents=True, exist_ok=True)

    memory_file = memory_dir / "MEMORY.md"
    if not memory_file.exists():
        memory_file.write_text("# 长期记忆\n\n", encoding="utf-8")
        console.print(f"[green]✓[/green] Created {memory_file}")
    else:
        console.print(f"[dim]{memory_file} already exists[/dim]")


def _require_account(config: Config, account_id: str) -> DingTalkAccountConfig:
    account = config.get_account(account_id)
    if account is None:
        console.print(f"[red]✗ 未找到账号: {account_id}[/red]")
        console.print(f"  配置文件: [cyan]{get_config_path()}[/cyan]")
        raise typer.Exit(1)
    if not account.app_key or not account.app_secret:
        console.print(f"[red]✗ 账号 {account_id} 缺少 app_key / app_secret[/red]")
        raise typer.Exit(1)
    return account


def _print_status(event: StatusEvent) -> None:
    style = STATUS_STYLES.get(event.status, "white")
    detail = f" ({event.detail})" if event.detail else ""
    console.print(f"  [{style}]●[/{style}] {event.account_id}: {event.status.value}{detail}")


# ============================================================================
# 版本
# ============================================================================

def _version_callback(value: bool):
    if value:
        console.print(f"{__logo__} dingtalk-connector v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", is_eager=True, callback=_version_callback),
) -> None:
    """dingtalk-connector - 把钉钉机器人接到 claude / codex 命令行。"""
    pass


@app.command()
def version():
    """查看版本信息。"""
    config = load_config(auto_create=False)
    console.print(f"[bold cyan]{__logo__}[/bold cyan] dingtalk-connector [green]v{__version__}[/green]")
    console.print()
    console.print(f"  Python:     {sys.version.split()[0]}")
    console.print(f"  Platform:   {sys.platform}")
    console.print(f"  Config:     {get_config_path()}")
    console.print(f"  Workspace:  {config.get_workspace()}")
    console.print()


# ============================================================================
# Init 命令
# ============================================================================

@app.command()
def init() -> None:
    """创建默认配置文件和 workspace。"""
    config_path = get_config_path()
    existed = config_path.exists()
    config = load_config(config_path, auto_create=True)
    if existed:
        console.print(f"[dim]Config already exists: {config_path}[/dim]")
    else:
        console.print(f"[green]✓[/green] Created {config_path}")

    init_workspace(Path(config.get_workspace()))
    console.print()
    console.print("下一步：在配置文件中填写 [cyan]app_key[/cyan] / [cyan]app_secret[/cyan]，"
                  "然后运行 [cyan]dingtalk-connector run[/cyan]")


# ============================================================================
# Run 命令
# ============================================================================

@app.command()
def run(
    account_ids: Optional[list[str]] = typer.Argument(None, help="只启动这些账号（默认全部）"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细输出"),
) -> None:
    """前台运行钉钉连接，按 Ctrl+C 停止。"""
    config = load_config()
    setup_logging(config, verbose=verbose)

    accounts = [a for a in config.accounts if a.app_key and a.app_secret]
    if account_ids:
        accounts = [a for a in accounts if a.account_id in account_ids]
    if not accounts:
        console.print("[yellow]No DingTalk accounts with credentials are configured.[/yellow]")
        console.print(f"  配置文件: [cyan]{get_config_path()}[/cyan]")
        raise typer.Exit(1)

    init_workspace(Path(config.get_workspace()))
    console.print(f"[bold]账号:[/bold] {', '.join(a.account_id for a in accounts)}")
    console.print(f"[bold]Workspace:[/bold] {config.get_workspace()}")
    console.print()

    try:
        asyncio.run(_run(config, accounts))
    except KeyboardInterrupt:
        console.print("\n[yellow]已停止[/yellow]")


async def _run(config: Config, accounts: list[DingTalkAccountConfig]) -> None:
    """启动所有账号并阻塞直到被中断。"""
    async with Runtime(config) as runtime:
        runtime.status_signal.subscribe(_print_status)

        console.print("[bold green]连接中...[/bold green]")
        outcome = await runtime.pool.start_all(accounts)
        failed = {aid: err for aid, err in outcome.items() if err is not None}
        for account_id, err in failed.items():
            console.print(f"[red]✗ {account_id}: {err}[/red]")

        if len(failed) == len(accounts):
            console.print("[red]所有账号都连接失败[/red]")
            raise typer.Exit(1)

        console.print("[bold green]✓ 运行中！[/bold green]")
        console.print("[dim]按 Ctrl+C 停止[/dim]")
        try:
            while True:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            console.print("\n[yellow]正在关闭...[/yellow]")
            raise


# ============================================================================
# Status 命令
# ============================================================================

@app.command()
def status() -> None:
    """显示已配置的账号与访问策略。"""
    config = load_config(auto_create=False)

    console.print("[bold]配置信息:[/bold]")
    console.print(f"  Config: [cyan]{get_config_path()}[/cyan]")
    console.print(f"  Workspace: [cyan]{config.get_workspace()}[/cyan]")
    console.print(f"  Claude: [cyan]{config.runner.claude_path}[/cyan]  Codex: [cyan]{config.runner.codex_path}[/cyan]")
    console.print()

    if not config.accounts:
        console.print("[yellow]未配置任何账号[/yellow]")
        return

    table = Table(title="钉钉账号")
    table.add_column("账号", style="cyan")
    table.add_column("名称")
    table.add_column("凭证")
    table.add_column("Provider")
    table.add_column("回复方式")
    table.add_column("私聊策略")
    table.add_column("群聊策略")
    table.add_column("白名单", justify="right")

    for account in config.accounts:
        has_creds = bool(account.app_key and account.app_secret)
        reply_mode = "card" if account.use_card else "markdown"
        table.add_row(
            account.account_id,
            account.name,
            "[green]✓[/green]" if has_creds else "[red]✗[/red]",
            account.provider + (f" ({account.model})" if account.model else ""),
            reply_mode,
            account.dm_policy,
            account.group_policy,
            str(len(account.allow_from)),
        )

    console.print(table)


# ============================================================================
# Check 命令
# ============================================================================

@app.command()
def check(
    account_id: str = typer.Argument(..., help="账号 ID"),
) -> None:
    """获取一次 access token，校验 app_key / app_secret。"""
    config = load_config(auto_create=False)
    account = _require_account(config, account_id)

    async def _check() -> None:
        async with Runtime(config) as runtime:
            await runtime.tokens.get_token(
                account.account_id, account.app_key, account.app_secret, TokenGeneration.V2,
            )

    try:
        asyncio.run(_check())
    except DingTalkError as e:
        console.print(f"[red]✗ {account_id}: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {account_id}: 凭证有效")


# ============================================================================
# Send 命令
# ============================================================================

@app.command()
def send(
    account_id: str = typer.Argument(..., help="账号 ID"),
    text: str = typer.Argument("", help="消息内容（文本或 Markdown）"),
    target: Optional[list[str]] = typer.Option(None, "--target", "-t", help="接收者（user:<staffId> / group:<conversationId>）"),
    title: Optional[str] = typer.Option(None, "--title", help="Markdown 标题"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="发送本地文件而不是文本"),
) -> None:
    """主动推送消息。未指定接收者时发给 owner_staff_ids。"""
    config = load_config(auto_create=False)
    setup_logging(config)
    account = _require_account(config, account_id)
    if not text and file is None:
        console.print("[red]✗ 需要消息内容或 --file[/red]")
        raise typer.Exit(1)

    async def _send():
        async with Runtime(config) as runtime:
            await runtime.pool.start(account)
            if file is not None:
                return await runtime.proactive.send_media(account_id, file, targets=target or None)
            return await runtime.proactive.send(account_id, text, targets=target or None, title=title)

    try:
        result = asyncio.run(_send())
    except DingTalkError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    for delivered in result.delivered:
        console.print(f"[green]✓[/green] {delivered}")
    for error in result.errors:
        console.print(f"[yellow]![/yellow] {error}")
    if not result.ok:
        console.print(f"[red]✗ {result.error}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
