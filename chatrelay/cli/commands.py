"""
CLI 命令模块 - chatrelay 的所有命令行命令定义。

本模块使用 Typer 框架定义 chatrelay 的 CLI 命令体系：
- onboard：生成默认配置文件
- serve：启动 HTTP 服务（/chat、/history、/health）
- chat：直接在终端里对话（单条消息或交互式对话，默认流式输出）
- history：查看 / 清理某个用户的会话历史
- status：查看配置与连接状态

技术栈：
- Typer：CLI 框架（基于 Click，支持类型注解自动生成帮助文档）
- Rich：终端美化输出（Markdown 渲染、表格等）
- prompt_toolkit：交互式输入（历史记录、行编辑）
- Uvicorn：运行 FastAPI 应用的 ASGI 服务器
"""

import asyncio
import os
import select
import signal
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout

from chatrelay import __logo__, __version__

# 创建 Typer 应用实例（CLI 根命令）
app = typer.Typer(
    name="chatrelay",
    help=f"{__logo__} chatrelay - chat turn orchestration with Redis-backed memory",
    no_args_is_help=True,
)

console = Console()
EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}

# ---------------------------------------------------------------------------
# CLI 输入：使用 prompt_toolkit 实现编辑、历史记录和显示
# ---------------------------------------------------------------------------

_PROMPT_SESSION: PromptSession | None = None
_SAVED_TERM_ATTRS = None  # 保存的终端原始属性（用于退出时恢复）


def _flush_pending_tty_input() -> None:
    """清除模型生成期间用户多按的键，避免干扰下一次输入。"""
    try:
        fd = sys.stdin.fileno()
        if not os.isatty(fd):
            return
    except (OSError, ValueError):
        return

    try:
        import termios
        termios.tcflush(fd, termios.TCIFLUSH)
        return
    except (ImportError, OSError):
        pass

    try:
        while True:
            ready, _, _ = select.select([fd], [], [], 0)
            if not ready or not os.read(fd, 4096):
                break
    except OSError:
        return


def _restore_terminal() -> None:
    """恢复终端到原始状态（回显、行缓冲等）。"""
    if _SAVED_TERM_ATTRS is None:
        return
    try:
        import termios
        termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, _SAVED_TERM_ATTRS)
    except (ImportError, OSError):
        pass


def _init_prompt_session() -> None:
    """创建 prompt_toolkit 会话，历史记录保存在 ~/.chatrelay/history/cli_history。"""
    global _PROMPT_SESSION, _SAVED_TERM_ATTRS
    from chatrelay.utils.helpers import ensure_dir, get_data_path

    try:
        import termios
        _SAVED_TERM_ATTRS = termios.tcgetattr(sys.stdin.fileno())
    except (ImportError, OSError):
        pass

    history_file = ensure_dir(get_data_path() / "history") / "cli_history"
    _PROMPT_SESSION = PromptSession(
        history=FileHistory(str(history_file)),
        enable_open_in_editor=False,
        multiline=False,
    )


async def _read_interactive_input_async() -> str:
    """使用 prompt_toolkit 异步读取一行用户输入。"""
    if _PROMPT_SESSION is None:
        raise RuntimeError("Call _init_prompt_session() first")
    try:
        with patch_stdout():
            return await _PROMPT_SESSION.prompt_async(HTML("<b fg='ansiblue'>You:</b> "))
    except EOFError as exc:
        raise KeyboardInterrupt from exc


def _print_reply(reply: str, render_markdown: bool) -> None:
    """以一致的终端样式渲染完整回复（非流式模式）。"""
    body = Markdown(reply or "") if render_markdown else Text(reply or "")
    console.print()
    console.print(f"[cyan]{__logo__} chatrelay[/cyan]")
    console.print(body)
    console.print()


def _is_exit_command(command: str) -> bool:
    return command.lower() in EXIT_COMMANDS


def _set_logging(enabled: bool) -> None:
    if enabled:
        logger.enable("chatrelay")
    else:
        logger.disable("chatrelay")


def version_callback(value: bool):
    """版本号回调：当用户传入 --version/-v 参数时，打印版本号并退出。"""
    if value:
        console.print(f"{__logo__} chatrelay v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """chatrelay CLI 根命令回调。处理全局选项（如 --version）。"""
    pass


# ============================================================================
# Onboard / Serve
# ============================================================================


@app.command()
def onboard():
    """在 ~/.chatrelay/config.json 生成默认配置文件。"""
    from chatrelay.config.loader import get_config_path, save_config
    from chatrelay.config.schema import Config

    config_path = get_config_path()
    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print("\nNext steps:")
    console.print("  1. Set [cyan]server.apiKey[/cyan] (or CHATRELAY_SERVER__API_KEY)")
    console.print("  2. Point [cyan]store.redisUrl[/cyan] and [cyan]model.apiBase[/cyan] at your services")
    console.print("  3. Run: [cyan]chatrelay serve[/cyan]")


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: int = typer.Option(None, "--port", "-p", help="Port (default from config)"),
    logs: bool = typer.Option(True, "--logs/--no-logs", help="Show chatrelay runtime logs"),
):
    """
    启动 HTTP 服务。

    未配置 server.api_key 时拒绝启动（所有对话接口都要求 X-API-KEY）。
    """
    import uvicorn

    from chatrelay.api.app import create_app
    from chatrelay.config.loader import load_config

    config = load_config()
    if not config.server.api_key:
        console.print("[red]Error: server.api_key is not configured.[/red]")
        console.print("Set it in ~/.chatrelay/config.json or via CHATRELAY_SERVER__API_KEY")
        raise typer.Exit(1)

    _set_logging(logs)
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    console.print(f"{__logo__} API server listening on http://{bind_host}:{bind_port}")
    uvicorn.run(create_app(config), host=bind_host, port=bind_port, log_level="info" if logs else "warning")


# ============================================================================
# Chat
# ============================================================================


@app.command()
def chat(
    message: str = typer.Option(None, "--message", "-m", help="Message to send"),
    user_id: str = typer.Option("cli", "--user", "-u", help="User ID owning the session"),
    domain: str = typer.Option(None, "--domain", "-d", help="Session domain (default: universal)"),
    category: str = typer.Option(None, "--category", "-c", help="Session category (default: general)"),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Stream the reply chunk by chunk"),
    markdown: bool = typer.Option(True, "--markdown/--no-markdown", help="Render non-streamed replies as Markdown"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show chatrelay runtime logs"),
):
    """
    直接在终端中对话。

    1. 单条消息模式：chatrelay chat -m "你好"
    2. 交互模式：chatrelay chat → 进入交互式对话循环（exit / Ctrl+C 退出）
    """
    from chatrelay.agent.factory import build_orchestrator
    from chatrelay.config.loader import load_config
    from chatrelay.providers.base import GenerationError
    from chatrelay.session.keys import ScopeError
    from chatrelay.session.store import StoreError

    config = load_config()
    _set_logging(logs)

    async def write_chunk(chunk: str) -> None:
        console.print(chunk, end="", markup=False, highlight=False)

    async def one_turn(orchestrator, text: str) -> None:
        try:
            if stream:
                console.print(f"\n[cyan]{__logo__} chatrelay[/cyan]")
                turn = await orchestrator.open_stream(user_id, text, domain, category)
                await turn.pipe(write_chunk)
                console.print("\n")
            else:
                with console.status("[dim]chatrelay is thinking...[/dim]", spinner="dots"):
                    reply = await orchestrator.run_turn(user_id, text, domain, category)
                _print_reply(reply, render_markdown=markdown)
        except (ScopeError, StoreError, GenerationError) as e:
            console.print(f"[red]Error: {e}[/red]")

    if message:
        async def run_once():
            handle, orchestrator = build_orchestrator(config)
            try:
                await one_turn(orchestrator, message.strip())
            finally:
                await orchestrator.drain()
                await handle.close()

        asyncio.run(run_once())
        return

    _init_prompt_session()
    console.print(f"{__logo__} Interactive mode (type [bold]exit[/bold] or [bold]Ctrl+C[/bold] to quit)\n")

    def _exit_on_sigint(signum, frame):
        _restore_terminal()
        console.print("\nGoodbye!")
        os._exit(0)

    signal.signal(signal.SIGINT, _exit_on_sigint)

    async def run_interactive():
        handle, orchestrator = build_orchestrator(config)
        try:
            while True:
                try:
                    _flush_pending_tty_input()
                    command = (await _read_interactive_input_async()).strip()
                except KeyboardInterrupt:
                    break
                if not command:
                    continue
                if _is_exit_command(command):
                    break
                await one_turn(orchestrator, command)
        finally:
            _restore_terminal()
            console.print("\nGoodbye!")
            await orchestrator.drain()
            await handle.close()

    asyncio.run(run_interactive())


# ============================================================================
# History Commands
# ============================================================================


history_app = typer.Typer(help="Inspect or clear stored session history")
app.add_typer(history_app, name="history")


def _run_store_call(call):
    """在新的事件循环中执行一次存储操作，执行完毕后关闭连接。"""
    from chatrelay.config.loader import load_config
    from chatrelay.session.keys import ScopeError
    from chatrelay.session.store import SessionStore, StoreError, StoreHandle

    config = load_config()
    logger.disable("chatrelay")

    async def run():
        handle = StoreHandle(config.store.redis_url)
        store = SessionStore(handle, config.store.max_messages, config.store.scan_count)
        try:
            return await call(store)
        finally:
            await handle.close()

    try:
        return asyncio.run(run())
    except (ScopeError, StoreError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@history_app.command("show")
def history_show(
    user_id: str = typer.Option(..., "--user", "-u", help="User ID"),
    domain: str = typer.Option(None, "--domain", "-d", help="Session domain"),
    category: str = typer.Option(None, "--category", "-c", help="Session category"),
):
    """显示一个会话的全部历史（最旧在前）。"""
    from chatrelay.session.keys import build_key

    async def call(store):
        return await store.get_history(user_id, domain, category), await store.ttl(user_id, domain, category)

    messages, ttl = _run_store_call(call)
    key = build_key(user_id, domain, category)

    if not messages:
        console.print(f"No history for [cyan]{key}[/cyan].")
        return

    table = Table(title=f"{key} (expires in {ttl}s)" if ttl is not None else key)
    table.add_column("#", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Content")
    for i, m in enumerate(messages, 1):
        table.add_row(str(i), m.role, m.content)
    console.print(table)


@history_app.command("clear")
def history_clear(
    user_id: str = typer.Option(..., "--user", "-u", help="User ID"),
    domain: str = typer.Option(None, "--domain", "-d", help="Session domain (omit to match all)"),
    category: str = typer.Option(None, "--category", "-c", help="Session category (omit to match all)"),
):
    """
    清理会话历史。

    domain 与 category 都给出时只删除该会话；缺省任一字段时按通配模式删除所有匹配的会话。
    """
    async def call(store):
        return await store.clear_history(user_id, domain, category)

    removed = _run_store_call(call)
    console.print(f"[green]✓[/green] Removed {removed} session(s) for {user_id}")


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """显示配置文件、Redis 地址、模型和历史上限。"""
    from chatrelay.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} chatrelay Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[dim]defaults[/dim]'}")
    console.print(f"Redis: {config.store.redis_url}")
    console.print(f"History cap: {config.store.max_messages} messages / session")
    console.print(f"Model: {config.model.model}")
    console.print(f"Model API base: {config.model.api_base or '[dim]not set[/dim]'}")
    console.print(f"API key: {'[green]✓[/green]' if config.server.api_key else '[red]not set[/red]'}")


if __name__ == "__main__":
    app()
