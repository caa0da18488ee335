# display.py
# All terminal output for the fixloop CLI.
#
# This module owns presentation entirely. Library modules never print;
# run.py calls named functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan    : workflow routing / phase changes
#   blue    : agent runs
#   yellow  : waiting on the caller
#   green   : success
#   red     : failures and halts

import json

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from fixloop.models import FixResult, WorkflowPhase, WorkflowResponse
from fixloop.usage import ModelUsage

console = Console()

_PHASE_COLORS = {
    WorkflowPhase.CLASSIFY: "cyan",
    WorkflowPhase.ATTEMPT_FIX_A: "blue",
    WorkflowPhase.ATTEMPT_FIX_B: "blue",
    WorkflowPhase.VERIFY: "yellow",
    WorkflowPhase.SUCCESS: "green",
    WorkflowPhase.FAILURE: "red",
}


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
# Agent runs
# ---------------------------------------------------------------------------


def banner(model: str, package_path: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold blue]fixloop code fixer[/bold blue]\n"
            "[dim]Sandboxed agent run: tools → Exit → validation[/dim]\n\n"
            f"[dim]Model   :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Package :[/dim] [white]{escape(package_path)}[/white]",
            border_style="blue",
            padding=(1, 4),
        )
    )


def fix_started(errors: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(_mono(errors, 600))}[/white]",
            title=_label("BUILD ERRORS", "blue"),
            border_style="blue",
            padding=(0, 2),
        )
    )
    console.print(_label("AGENT", "blue"), "[blue] → Running until the model calls Exit…[/blue]")


def fix_result(result: FixResult) -> None:
    console.print()
    if result.success:
        body = f"[bold green]Fix applied.[/bold green]\n\n[white]{escape(result.changes_summary)}[/white]"
        title, color = "FIX APPLIED ✓", "green"
    else:
        body = f"[bold red]Fix not applied.[/bold red]\n\n[white]{escape(result.failure_reason)}[/white]"
        title, color = "FIX FAILED ✗", "red"
    console.print(Panel(body, title=_label(title, color), border_style=color, padding=(0, 2)))


def step_result_json(payload: dict) -> None:
    console.print()
    console.print("[dim]Step result for the workflow:[/dim]")
    console.print_json(json.dumps(payload))


def usage_table(totals: list[ModelUsage]) -> None:
    if not totals:
        return
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Model", style="white")
    table.add_column("Calls", justify="right")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Total", justify="right", style="bold")
    for entry in totals:
        table.add_row(
            escape(entry.model),
            str(entry.calls),
            f"{entry.input_tokens:,}",
            f"{entry.output_tokens:,}",
            f"{entry.total_tokens:,}",
        )
    console.print()
    console.print(Panel(table, title="[dim]TOKEN USAGE[/dim]", border_style="dim", padding=(0, 1)))


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


def workflow_response(response: WorkflowResponse) -> None:
    color = _PHASE_COLORS[response.phase]
    console.print()
    console.print(Rule(f"[{color}]{response.phase.value.upper()}[/{color}]", style=color))
    console.print(f"[bold {color}]{escape(response.message)}[/bold {color}]")
    console.print(f"[dim]Workflow: {escape(response.workflow_id)}[/dim]")

    if response.next_instruction:
        console.print(
            Panel(
                f"[white]{escape(response.next_instruction)}[/white]",
                title=_label("NEXT STEP", color),
                border_style=color,
                padding=(0, 2),
            )
        )
    if response.run_tool:
        args = " ".join(f"--{k.replace('_', '-')} {json.dumps(v)}" for k, v in response.run_tool.args.items())
        console.print(f"  [dim]Suggested:[/dim] [bold white]{escape(response.run_tool.name)}[/bold white] [dim]{escape(_mono(args))}[/dim]")
    if response.summary:
        console.print(Panel(Markdown(response.summary), title=_label(response.status.upper(), color), border_style=color))


def awaiting_step_result(expected_type: str | None) -> None:
    hint = f" ({escape(expected_type)})" if expected_type else ""
    console.print(f"[yellow]Paste the step result JSON{hint} on one line:[/yellow]")


def contract_violation(message: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]{escape(message)}[/bold red]\n"
            "[dim]Nothing was changed. Fix the input and try again.[/dim]",
            title=_label("CONTRACT VIOLATION ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def cancelled() -> None:
    console.print()
    console.print(_label("CANCELLED", "yellow"), "[yellow] Run aborted before a result was accepted.[/yellow]")


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
