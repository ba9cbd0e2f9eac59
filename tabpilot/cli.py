"""
TABPILOT CLI — The Interface

  tabpilot run --page page.json "Find the pricing page"   (plan + act on a page snapshot)
  tabpilot resume <session> --page page.json               (pick up a persisted session)

Plus utilities:
  - tabpilot status     (check config + API keys)
  - tabpilot sessions   (list persisted sessions)
  - tabpilot show       (one session's conversation)
  - tabpilot clear      (delete a session)

The CLI drives a static page snapshot with a dry-run executor: every action
is validated against the snapshot and reported, nothing is clicked.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from tabpilot.audit_logger import AuditLogger
from tabpilot.config_loader import TabPilotConfig, load_config, validate_api_keys
from tabpilot.controller import OrchestrationDriver
from tabpilot.event_bus import bus
from tabpilot.identity import __codename__, __tagline__, __version__, BANNER
from tabpilot.interfaces import Callbacks
from tabpilot.planning import LLMPlanningService
from tabpilot.router import Router
from tabpilot.state import ActionRequest, ActionResult, MidExecDecision, PageState, SessionState
from tabpilot.store import SessionStore

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".tabpilot" / ".env")

app = typer.Typer(
    name="tabpilot",
    help=f"{__codename__} — {__tagline__}",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "error": "red",
    "idle": "yellow",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Page + executor for the terminal
# ---------------------------------------------------------------------------

class StaticPageProvider:
    """Serves a page snapshot read from a JSON file ({"url": ..., "elements": [...]})."""

    def __init__(self, path: Path):
        self.path = path

    async def capture(self) -> PageState:
        return PageState.model_validate_json(self.path.read_text())


class DryRunExecutor:
    """Checks each action against the current snapshot and reports it. Clicks nothing."""

    def __init__(self, page: StaticPageProvider):
        self.page = page
        self.performed: list[ActionRequest] = []

    async def execute(self, action: ActionRequest) -> ActionResult:
        if action.target_id:
            snapshot = await self.page.capture()
            if not any(el.id == action.target_id for el in snapshot.elements):
                return ActionResult(success=False, error=f"Element {action.target_id} not found")
        self.performed.append(action)
        return ActionResult(success=True, result="dry-run")


# ---------------------------------------------------------------------------
# Terminal presentation
# ---------------------------------------------------------------------------

def _prompt_in_background(ask: Callable[[], str], deliver: Callable[[str], Any]) -> None:
    """
    Run a blocking prompt on a daemon thread and hand the reply to the event
    loop. The decision's own timer keeps running meanwhile, and a reply that
    lands after it fired is ignored by the decision. The thread is a daemon so
    an unanswered prompt never holds the process open.
    """
    loop = asyncio.get_running_loop()

    def _worker() -> None:
        try:
            reply = ask()
        except EOFError:
            logger.debug("[CLI] prompt closed without an answer, leaving it to the timer")
            return
        if not loop.is_closed():
            loop.call_soon_threadsafe(deliver, reply)

    threading.Thread(target=_worker, name="tabpilot-prompt", daemon=True).start()


def _terminal_callbacks(auto_approve: bool) -> Callbacks:

    def on_progress(payload: dict[str, Any]) -> None:
        counter = f" [{payload['current']}/{payload['total']}]" if "current" in payload else ""
        console.print(f"[cyan]›{counter}[/] {payload.get('message', '')}")

    def on_confidence_report(payload: dict[str, Any]) -> None:
        c = payload["confidence"]
        console.print(
            f"[dim]confidence {c['overall']:.2f} "
            f"(intent {c['intent_clarity']:.2f}, target {c['target_match']:.2f}, "
            f"value {c['value_confidence']:.2f}) → {payload['zone']}[/]"
        )

    async def on_clarify_needed(payload: dict[str, Any]) -> None:
        console.print(Panel(
            "\n".join(q["question"] for q in payload["questions"]),
            title=f"Clarification (round {payload['round']})",
            border_style="yellow",
        ))
        options = [opt for q in payload["questions"] for opt in q.get("options", [])]
        for i, opt in enumerate(options, start=1):
            console.print(f"  [bold]{i}[/]. {opt['label']}")
        reply = await asyncio.to_thread(Prompt.ask, "Your answer")
        if reply.isdigit() and 1 <= int(reply) <= len(options):
            chosen = options[int(reply) - 1]
            payload["answer"](chosen["label"], chosen["id"])
        else:
            payload["answer"](reply)

    def on_assume_announce(payload: dict[str, Any]) -> None:
        lines = [f"• {a['field']}: {a['assumed_value']}" for a in payload["assumptions"]]
        console.print(Panel(
            "\n".join(lines) or "No explicit assumptions",
            title="Proceeding with assumptions",
            border_style="magenta",
        ))
        if auto_approve:
            return

        def deliver(reply: str) -> None:
            reply = reply.strip()
            if reply.lower() == "cancel":
                payload["cancel"]()
            elif reply:
                payload["correct"](reply)
            else:
                payload["proceed"]()

        seconds = payload["auto_execute_delay_ms"] / 1000
        _prompt_in_background(
            lambda: Prompt.ask(
                f"Enter to proceed, type a correction, or 'cancel' (auto-proceeds in {seconds:g}s)",
                default="",
                show_default=False,
            ),
            deliver,
        )

    async def on_plan_ready(payload: dict[str, Any]) -> bool:
        table = Table(title=payload["summary"] or "Plan", border_style="cyan")
        table.add_column("#", style="dim")
        table.add_column("Action")
        table.add_column("Target")
        table.add_column("Value")
        for i, step in enumerate(payload["steps"], start=1):
            table.add_row(
                str(i),
                step["action"],
                step.get("target_description") or step.get("target_id") or "",
                step.get("value") or "",
            )
        console.print(table)
        for risk in payload["risks"]:
            console.print(f"  [yellow]⚠ {risk}[/]")
        if auto_approve:
            return True
        return await asyncio.to_thread(Confirm.ask, "Execute this plan?", default=True)

    def on_mid_exec_dialog(payload: dict[str, Any]) -> None:
        console.print(Panel(
            payload["error"],
            title=f"Step {payload['step_index'] + 1} failed",
            border_style="red",
        ))
        timeout_ms = payload["timeout_ms"]
        hint = f" (defaults to skip in {timeout_ms / 1000:g}s)" if timeout_ms and timeout_ms > 0 else ""
        _prompt_in_background(
            lambda: Prompt.ask(
                f"What now?{hint}",
                choices=[d.value for d in MidExecDecision],
                default=MidExecDecision.SKIP.value,
            ),
            payload["decide"],
        )

    def on_self_refine_progress(payload: dict[str, Any]) -> None:
        console.print(
            f"[dim]refine {payload['iteration']}/{payload['max_iterations']}: "
            f"score {payload['score']:.2f} (best {payload['best_score']:.2f})[/]"
        )

    def on_action(request: ActionRequest, result: ActionResult) -> None:
        mark = "[green]✓[/]" if result.success else f"[red]✗ {result.error}[/]"
        console.print(f"  {request.action} {request.target_id or ''} {mark}")

    def on_complete(summary: str) -> None:
        console.print(f"\n[bold green]✓ {summary}[/]")

    def on_error(message: str) -> None:
        console.print(f"\n[bold red]✗ {message}[/]")

    return Callbacks(
        on_progress=on_progress,
        on_plan_ready=on_plan_ready,
        on_clarify_needed=on_clarify_needed,
        on_assume_announce=on_assume_announce,
        on_mid_exec_dialog=on_mid_exec_dialog,
        on_self_refine_progress=on_self_refine_progress,
        on_confidence_report=on_confidence_report,
        on_action=on_action,
        on_complete=on_complete,
        on_error=on_error,
    )


def _build_driver(
    config: TabPilotConfig,
    project: Path,
    page_file: Path,
    auto_approve: bool,
) -> OrchestrationDriver:
    page = StaticPageProvider(page_file)
    return OrchestrationDriver(
        planner=LLMPlanningService(Router(config)),
        page=page,
        executor=DryRunExecutor(page),
        store=SessionStore.from_config(config, project),
        config=config,
        callbacks=_terminal_callbacks(auto_approve),
        event_bus=bus,
    )


def _drive(config: TabPilotConfig, project: Path, coro_factory) -> SessionState:
    audit = None
    if config.audit.enabled:
        audit = AuditLogger(project / config.audit.log_file, config.audit.batch_size).attach(bus)
    try:
        return asyncio.run(coro_factory())
    finally:
        if audit:
            audit.detach(bus)


def _print_outcome(state: SessionState) -> None:
    status = state.status.value
    color = STATUS_COLORS.get(status, "white")
    es = state.execution_state
    console.print(Panel(
        f"Status:  [{color}]{status}[/]\n"
        f"Steps:   {len(es.completed_steps)} done, {len(es.failed_steps)} failed\n"
        f"Actions: {state.iteration}\n"
        + (f"Result:  {state.result}\n" if state.result else "")
        + (f"Error:   {state.error}" if state.error else ""),
        title=f"Session {state.session_id}",
        border_style=color,
    ))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    task: str = typer.Argument(..., help="What to do on the page"),
    page_file: Path = typer.Option(..., "--page", "-p", help="Page snapshot JSON"),
    session: str = typer.Option("default", "--session", "-s", help="Session id"),
    project: Path = typer.Option(Path("."), "--project", help="Project dir holding .tabpilot/"),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Skip approval gates"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Plan and (dry-)run a task against a page snapshot."""
    _print_banner()
    _configure_logging(verbose)

    if not page_file.exists():
        console.print(f"[red]Page snapshot not found: {page_file}[/]")
        raise typer.Exit(1)

    project = project.resolve()
    config = load_config(project)
    driver = _build_driver(config, project, page_file, auto_approve)

    console.print(f"[bold]Task:[/] {task}\n")
    state = _drive(config, project, lambda: driver.run(session, task))
    _print_outcome(state)
    if state.status.value == "error":
        raise typer.Exit(1)


@app.command()
def resume(
    session: str = typer.Argument(..., help="Session id"),
    page_file: Path = typer.Option(..., "--page", "-p", help="Page snapshot JSON"),
    project: Path = typer.Option(Path("."), "--project", help="Project dir holding .tabpilot/"),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Skip approval gates"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Continue a persisted session from its saved status."""
    _configure_logging(verbose)
    project = project.resolve()
    config = load_config(project)
    driver = _build_driver(config, project, page_file, auto_approve)

    state = _drive(config, project, lambda: driver.resume(session))
    _print_outcome(state)


@app.command()
def status(
    project: Optional[Path] = typer.Option(None, "--project"),
):
    """Check TABPILOT configuration and readiness."""
    _print_banner()

    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in validate_api_keys().items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    config = load_config(project.resolve() if project else None)
    console.print(f"\n[bold]Routing:[/]")
    console.print(f"  Planner: {config.routing.planner}")
    console.print(f"  Refiner: {config.routing.refiner}")

    d = config.dialogue
    console.print(f"\n[bold]Dialogue:[/]")
    console.print(f"  Ask below:        {d.ask_below}")
    console.print(f"  Proceed at:       {d.proceed_at}")
    console.print(f"  Clarify rounds:   {d.max_clarification_rounds}")
    console.print(f"  Refine rounds:    {d.max_refine_iterations}")
    console.print(f"  Auto-execute in:  {d.auto_execute_delay_ms} ms")
    console.print(f"  Decision timeout: {d.mid_exec_timeout_ms} ms")

    console.print(f"\n[bold]Limits:[/]")
    console.print(f"  Max actions/task: {config.limits.max_iterations}")
    console.print(f"  Max replans:      {config.limits.max_replans}")
    console.print(f"  Max tokens/task:  {config.limits.max_tokens_per_task:,}")
    console.print(f"  Max $/task:       ${config.limits.max_dollars_per_task}")


@app.command()
def sessions(
    project: Path = typer.Option(Path("."), "--project"),
):
    """List persisted sessions."""
    project = project.resolve()
    store = SessionStore.from_config(load_config(project), project)
    keys = store.sessions()
    if not keys:
        console.print("[dim]No sessions yet.[/]")
        return

    table = Table(title="Sessions", border_style="cyan")
    table.add_column("Session")
    table.add_column("Status")
    table.add_column("Task")
    table.add_column("Step")
    table.add_column("Started")
    for key in keys:
        state = store.load(key)
        color = STATUS_COLORS.get(state.status.value, "white")
        es = state.execution_state
        started = (
            datetime.fromtimestamp(state.start_time).strftime("%Y-%m-%d %H:%M")
            if state.start_time else "-"
        )
        table.add_row(
            key,
            f"[{color}]{state.status.value}[/]",
            (state.current_task or "")[:50],
            f"{es.current_step_index}/{es.total_steps}",
            started,
        )
    console.print(table)


@app.command()
def show(
    session: str = typer.Argument(..., help="Session id"),
    project: Path = typer.Option(Path("."), "--project"),
):
    """Print one session's conversation."""
    project = project.resolve()
    store = SessionStore.from_config(load_config(project), project)
    state = store.load(session)

    for entry in state.conversation_history:
        stamp = datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S")
        who = "[bold cyan]you[/]" if entry.role == "user" else "[bold magenta]pilot[/]"
        console.print(f"[dim]{stamp}[/] {who} [dim]({entry.message_type})[/] {entry.content}")
    _print_outcome(state)


@app.command()
def clear(
    session: str = typer.Argument(..., help="Session id"),
    project: Path = typer.Option(Path("."), "--project"),
):
    """Delete a persisted session."""
    project = project.resolve()
    store = SessionStore.from_config(load_config(project), project)
    store.clear(session)
    console.print(f"[green]Cleared session {session}[/]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg.rstrip(), style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg.rstrip(), style="dim", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


if __name__ == "__main__":
    app()
