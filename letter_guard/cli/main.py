"""
CLI interface for letter_guard.

Operator access to allowance accounts, letter generation, the reviewer
workflow, the stale generation sweep and the generation service health
probe.
"""

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from letter_guard.config.loader import AppConfig, load_config
from letter_guard.core.circuit_breaker import CircuitBreaker
from letter_guard.core.errors import LetterGuardError
from letter_guard.core.orchestrator import GenerationOrchestrator
from letter_guard.core.prompts import GenerationParams
from letter_guard.core.review import ReviewService
from letter_guard.sdk.openai_client import OpenAITextGenerator
from letter_guard.storage.audit import AuditLog
from letter_guard.storage.ledger import AllowanceLedger
from letter_guard.storage.models import Letter
from letter_guard.storage.repository import LetterRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@dataclass
class CliState:
    config: AppConfig
    db_path: str


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _build_orchestrator(state: CliState) -> GenerationOrchestrator:
    config = state.config
    return GenerationOrchestrator(
        ledger=AllowanceLedger(state.db_path),
        letters=LetterRepository(state.db_path),
        audit=AuditLog(state.db_path),
        generator=OpenAITextGenerator(),
        retry_policy=config.retry,
        breaker=CircuitBreaker(config.circuit_breaker),
        settings=config.generation
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """letter_guard CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)]
        )
    try:
        app_config = load_config(str(config) if config else None)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(f"Invalid configuration: {e}")
    ctx.obj = CliState(config=app_config, db_path=db or app_config.database.path)

    if ctx.invoked_subcommand is None:
        console.print("letter_guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the letter_guard database."""
    try:
        initialize_schema(_state(ctx).db_path)
    except Exception as e:
        _fail(f"initializing database: {e}")
    console.print("[green]✓[/] Database initialized successfully")


@app.command("open-account")
def open_account(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner identifier"),
    credits: int = typer.Option(0, "--credits", help="Starting credit balance"),
    unlimited: bool = typer.Option(False, "--unlimited", help="Exempt the owner from credit accounting")
):
    """Open an allowance account."""
    try:
        account = AllowanceLedger(_state(ctx).db_path).open_account(owner, credits, unlimited)
    except (ValueError, LetterGuardError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Opened account for {account.owner_id} with {account.credits_remaining} credits")


@app.command()
def grant(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner identifier"),
    amount: int = typer.Argument(..., help="Credits to add")
):
    """Add credits to an owner's allowance."""
    try:
        account = AllowanceLedger(_state(ctx).db_path).grant(owner, amount)
    except (ValueError, LetterGuardError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] {account.owner_id} now has {account.credits_remaining} credits")


@app.command("grant-plan")
def grant_plan(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner identifier"),
    plan: str = typer.Argument(..., help="Subscription plan name")
):
    """Add the credits included in a subscription plan."""
    state = _state(ctx)
    try:
        account = AllowanceLedger(state.db_path).grant_plan(owner, plan, state.config.plans)
    except (ValueError, LetterGuardError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] {account.owner_id} now has {account.credits_remaining} credits")


@app.command()
def balance(ctx: typer.Context, owner: str = typer.Argument(..., help="Owner identifier")):
    """Show an owner's allowance."""
    try:
        account = AllowanceLedger(_state(ctx).db_path).get_account(owner)
    except LetterGuardError as e:
        _fail(str(e))
    if account is None:
        _fail(f"No allowance account for {owner}")

    table = Table(title=f"Allowance: {owner}")
    table.add_column("Credits remaining", justify="right")
    table.add_column("Unlimited")
    table.add_column("Letters generated", justify="right")
    table.add_row(
        "∞" if account.is_unlimited else str(account.credits_remaining),
        "yes" if account.is_unlimited else "no",
        str(account.total_generated)
    )
    console.print(table)


@app.command("create-letter")
def create_letter(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner identifier"),
    letter_type: str = typer.Option(..., "--type", "-t", help="Letter type, e.g. 'Demand Letter'"),
    intake: Path = typer.Option(..., "--intake", "-i", help="YAML file with intake data"),
    title: Optional[str] = typer.Option(None, "--title", help="Letter title")
):
    """Create a draft letter from an intake file."""
    try:
        with open(intake, 'r', encoding='utf-8') as f:
            intake_data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        _fail(f"reading intake file: {e}")
    if not isinstance(intake_data, dict):
        _fail("intake file must contain a mapping")

    letter = LetterRepository(_state(ctx).db_path).create_letter(owner, letter_type, intake_data, title)
    console.print(f"[green]✓[/] Created draft letter {letter.id}")


@app.command()
def generate(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner identifier"),
    letter_id: str = typer.Argument(..., help="Letter to generate"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds after which no retry is started")
):
    """Generate content for a draft or failed letter."""
    state = _state(ctx)
    orchestrator = _build_orchestrator(state)
    try:
        letter = orchestrator.letters.require_letter(letter_id, owner)
        params = GenerationParams(letter_type=letter.letter_type, intake_data=letter.intake_data)
        result = orchestrator.generate_letter(owner, letter_id, params, timeout=timeout)
    except LetterGuardError as e:
        _fail(f"{type(e).__name__}: {e}")

    if not result.success:
        console.print(
            f"[red]✗[/] Generation failed after {result.attempts} attempt(s) "
            f"({result.error.kind.value}): {result.error.raw_message}"
        )
        console.print("Credit refunded.")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Letter {letter_id} is {result.status.value} "
        f"({result.attempts} attempt(s), {result.duration_ms}ms)"
    )
    console.print(result.content)


def _review_service(state: CliState) -> ReviewService:
    return ReviewService(LetterRepository(state.db_path), AuditLog(state.db_path))


def _report_status(letter: Letter) -> None:
    console.print(f"[green]✓[/] Letter {letter.id} is {letter.status.value}")


@app.command()
def submit(ctx: typer.Context, letter_id: str = typer.Argument(..., help="Draft letter to submit")):
    """Send a draft letter to the review queue."""
    try:
        letter = _review_service(_state(ctx)).submit(letter_id)
    except LetterGuardError as e:
        _fail(str(e))
    _report_status(letter)


@app.command("start-review")
def start_review(
    ctx: typer.Context,
    letter_id: str = typer.Argument(..., help="Letter awaiting review"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Reviewer identifier")
):
    """Take a letter from the review queue."""
    try:
        letter = _review_service(_state(ctx)).start_review(letter_id, reviewer)
    except LetterGuardError as e:
        _fail(str(e))
    _report_status(letter)


@app.command("return-to-queue")
def return_to_queue(
    ctx: typer.Context,
    letter_id: str = typer.Argument(..., help="Letter under review"),
    reviewer: Optional[str] = typer.Option(None, "--reviewer", "-r", help="Reviewer identifier")
):
    """Put a letter under review back into the queue."""
    try:
        letter = _review_service(_state(ctx)).return_to_queue(letter_id, reviewer)
    except LetterGuardError as e:
        _fail(str(e))
    _report_status(letter)


@app.command()
def approve(
    ctx: typer.Context,
    letter_id: str = typer.Argument(..., help="Letter to approve"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Reviewer identifier"),
    content_file: Optional[Path] = typer.Option(
        None, "--content-file", help="Final letter text (defaults to the generated draft)"
    ),
    notes: Optional[str] = typer.Option(None, "--notes", help="Review notes")
):
    """Approve a letter with its final content."""
    state = _state(ctx)
    try:
        if content_file is not None:
            with open(content_file, 'r', encoding='utf-8') as f:
                final_content = f.read()
        else:
            final_content = LetterRepository(state.db_path).require_letter(letter_id).ai_draft_content
        letter = _review_service(state).approve(letter_id, reviewer, final_content or "", notes)
    except OSError as e:
        _fail(f"reading content file: {e}")
    except LetterGuardError as e:
        _fail(str(e))
    _report_status(letter)


@app.command()
def reject(
    ctx: typer.Context,
    letter_id: str = typer.Argument(..., help="Letter to reject"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Reviewer identifier"),
    reason: str = typer.Option(..., "--reason", help="Why the letter was rejected")
):
    """Reject a letter."""
    try:
        letter = _review_service(_state(ctx)).reject(letter_id, reviewer, reason)
    except LetterGuardError as e:
        _fail(str(e))
    _report_status(letter)


@app.command()
def complete(ctx: typer.Context, letter_id: str = typer.Argument(..., help="Approved letter")):
    """Mark an approved letter as completed."""
    try:
        letter = _review_service(_state(ctx)).complete(letter_id)
    except LetterGuardError as e:
        _fail(str(e))
    _report_status(letter)


@app.command()
def resubmit(ctx: typer.Context, letter_id: str = typer.Argument(..., help="Rejected or failed letter")):
    """Return a rejected or failed letter to draft."""
    try:
        letter = _review_service(_state(ctx)).resubmit(letter_id)
    except LetterGuardError as e:
        _fail(str(e))
    _report_status(letter)


@app.command()
def health(ctx: typer.Context):
    """Probe the generation service."""
    report = _build_orchestrator(_state(ctx)).health_check()
    if report.healthy:
        console.print(f"[green]✓[/] Generation service healthy ({report.response_time_ms}ms)")
        return
    console.print(f"[red]✗[/] Generation service unhealthy: {report.error}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def sweep(
    ctx: typer.Context,
    max_age: Optional[float] = typer.Option(None, "--max-age", help="Seconds in generating before a letter is swept")
):
    """Fail and refund letters stuck in generating."""
    state = _state(ctx)
    age = max_age if max_age is not None else state.config.recovery.stale_after_seconds
    try:
        swept = _build_orchestrator(state).sweep_stale_generations(age)
    except LetterGuardError as e:
        _fail(str(e))
    console.print(f"Swept {len(swept)} stale generation(s)")
    for letter_id in swept:
        console.print(f"  • {letter_id}")


@app.command()
def audit(ctx: typer.Context, letter_id: str = typer.Argument(..., help="Letter identifier")):
    """Show a letter's audit trail."""
    entries = AuditLog(_state(ctx).db_path).entries_for(letter_id)
    if not entries:
        console.print(f"No audit entries for letter {letter_id}")
        return

    table = Table(title=f"Audit trail: {letter_id}")
    table.add_column("When")
    table.add_column("Action")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Notes")
    for entry in entries:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action,
            entry.old_status or "",
            entry.new_status or "",
            entry.notes or ""
        )
    console.print(table)


if __name__ == "__main__":
    app()
