# display.py
# All console output for the workflow agent.
#
# This module owns presentation entirely. The harness, the extractors and the
# checkpoint log never format strings for the terminal: they call named
# functions here. Output goes to stderr so it never mixes with served content.
#
# Colour language:
#   cyan   : request routing / loop progress
#   blue   : model calls
#   yellow : checkpoints and nudges
#   green  : success / committed
#   red    : failures, rollbacks, dropped output
#   magenta: tool calls and their outcomes

import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from workflow_agent.models import ExecutionRecord, ToolCall

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


def server_started(host: str, port: int, model: str, family: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Workflow Agent[/bold cyan]\n"
            "[dim]LLM tool-calling orchestration over cases, fields and views[/dim]\n\n"
            f"[dim]Listening :[/dim] [white]http://{host}:{port}[/white]\n"
            f"[dim]Model     :[/dim] [white]{model}[/white] [dim]({family} tool calls)[/dim]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def request_received(prompt: str, mode: str, case_id: int | None) -> None:
    console.print()
    target = f"case {case_id}" if case_id is not None else "new case"
    console.print(Rule(f"[cyan]NEW REQUEST — {mode} mode, {target}[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{_mono(prompt, 400)}[/white]",
            title=_label("PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


def iteration_start(iteration: int, cap: int) -> None:
    console.print()
    console.print(f"[bold cyan]  ITERATION [{iteration}/{cap}][/bold cyan]  [blue]→ calling model…[/blue]")


def provider_error(message: str) -> None:
    console.print(f"  [bold red]✗ Provider error[/bold red]  [white]{_mono(message, 200)}[/white]")


def tool_calls_detected(calls: list[ToolCall]) -> None:
    for call in calls:
        console.print(
            f"  [magenta]Call[/magenta]     [bold white]{call.name}[/bold white]"
            f"  [dim]{_mono(json.dumps(call.params), 100)}[/dim]"
        )


def tool_outcome(record: ExecutionRecord) -> None:
    if record.success:
        console.print(f"  [bold green]✓[/bold green] [magenta]{record.tool}[/magenta]  [white]{record.summary}[/white]")
    else:
        console.print(f"  [bold red]✗[/bold red] [magenta]{record.tool}[/magenta]  [red]{_mono(record.error or '', 200)}[/red]")


def dropped_tool_call(name: str | None, reason: str, raw: str) -> None:
    console.print(
        f"  [red]↳ Dropped tool call[/red] [bold white]{name or '?'}[/bold white]"
        f"  [dim]{reason} — {_mono(raw, 80)!r}[/dim]"
    )


def nudge(message: str) -> None:
    console.print(f"  [yellow]↻ Nudge[/yellow]  [dim yellow]{_mono(message.splitlines()[0], 140)}[/dim yellow]")


def stop_decision(reason: str) -> None:
    console.print(f"  [cyan]■ Stop[/cyan]  [dim]{reason}[/dim]")


def iteration_cap_reached(cap: int) -> None:
    console.print(f"  [bold yellow]⚠ Iteration cap reached ({cap}).[/bold yellow]")


def session_fatal(message: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{message}[/bold white]",
            title=_label("SESSION ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def loop_summary(status: str, iterations: int, records: list[ExecutionRecord]) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Tool", width=12)
    table.add_column("OK", justify="center", width=4)
    table.add_column("Outcome", style="dim white")

    for record in records:
        ok = "[bold green]✓[/bold green]" if record.success else "[bold red]✗[/bold red]"
        table.add_row(record.tool, ok, _mono(record.summary or record.error or "", 70))

    color = "green" if status == "completed" else "red"
    console.print(
        Panel(
            table,
            title=_label(f"RUN {status.upper()}", color),
            subtitle=f"[dim]{iterations} iteration(s)[/dim]",
            border_style=color,
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


def checkpoint_opened(session_id: str, target_id: int | None) -> None:
    target = target_id if target_id is not None else "new"
    console.print(f"  [yellow]⛁ Checkpoint opened[/yellow] [dim]{session_id} target={target}[/dim]")


def checkpoint_busy(target_id: int | None) -> None:
    console.print(
        f"  [bold yellow]⚠ Target {target_id} already has an open checkpoint — "
        "continuing without rollback protection.[/bold yellow]"
    )


def checkpoint_committed(session_id: str, operations: int) -> None:
    console.print(f"  [bold green]✓ Checkpoint committed[/bold green] [dim]{session_id} ({operations} operation(s))[/dim]")


def checkpoint_rolled_back(session_id: str, operations: int) -> None:
    console.print(f"  [bold red]↺ Checkpoint rolled back[/bold red] [dim]{session_id} ({operations} operation(s) undone)[/dim]")


def rollback_failed(session_id: str, message: str) -> None:
    console.print(
        Panel(
            f"[bold red]Rollback of {session_id} failed.[/bold red]\n\n[white]{message}[/white]",
            title=_label("ROLLBACK FAILED ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
