"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)
_quiet = False

_RISK_STYLES = {"read": "green", "write": "yellow", "execute": "red"}


def init(*, color: bool = False, no_color: bool = False, quiet: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _quiet
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)
    _quiet = quiet


def _print(renderable) -> None:
    if not _quiet:
        _console.print(renderable)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Turn {n}/{max_n} (~{token_est} tokens)"
    _print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _print(text)


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _print(Text(f"  ✓ Agent finished: {turns} turns", style="bold green"))
    else:
        _print(Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _print(header)
    if args_json:
        for line in args_json.splitlines():
            _print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _print(header)
    if preview:
        _print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _print(header)


def permission_request(tool: str, description: str, risk_level: str, details: dict) -> None:
    """Panel shown before asking the user to approve a tool call.

    Printed even in quiet mode, since the user must answer it.
    """
    body = Text()
    body.append("Tool: ", style="bold")
    body.append(f"{tool}\n")
    body.append("Risk: ", style="bold")
    body.append(risk_level, style=_RISK_STYLES.get(risk_level, "red"))
    body.append("\n")
    body.append(description)
    command = details.get("command") if details else None
    if command:
        body.append("\n$ ", style="dim")
        body.append(str(command), style="bold")
    _console.print(Panel(body, title="Permission required", border_style="yellow", expand=False))


def security_warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Security: ", style="bold yellow")
    line.append(msg, style="yellow")
    _print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _print(line)


def stream_text(text: str) -> None:
    """Echo a streamed content fragment without a trailing newline."""
    if not _quiet:
        _console.print(Text(text, style="blue"), end="")


def stream_end() -> None:
    if not _quiet:
        _console.print()


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def usage_stats(prompt_tokens: int, completion_tokens: int, total_tokens: int) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_row("Prompt tokens", f"{prompt_tokens:,}")
    table.add_row("Completion tokens", f"{completion_tokens:,}")
    table.add_row("Total tokens", f"{total_tokens:,}", style="bold")
    _console.print(table)


def key_values(rows: list[tuple[str, str]]) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column()
    for key, value in rows:
        table.add_row(key, escape(value))
    _console.print(table)


def session_list(rows: list[tuple[str, str, str, int]]) -> None:
    """Rows of (id, title, updated_at, message_count)."""
    if not rows:
        _console.print(Text("  No saved sessions.", style="dim"))
        return
    table = Table(box=None, padding=(0, 2))
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Updated", style="dim")
    table.add_column("Messages", justify="right")
    for session_id, title, updated, count in rows:
        table.add_row(session_id, escape(title), updated, str(count))
    _console.print(table)


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(model: str, base_dir: str) -> None:
    _print(Text(f"skiff ({model}) in {base_dir}", style="bold cyan"))
    _print(Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim"))
