import typer
import json
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.table import Table

from .bq_loader import BigQueryLoader
from .coaching import CoachingAnalyzer
from .config import Settings, configure_logging
from .errors import BridgeScoreError
from .pivots import PivotMatcher, seed_pivots
from .repositories import InMemoryPivotRepository, ScoreStore
from .rescore import RescoreOrchestrator
from .rules import load_rule_set
from .schemas import FrameworkConfig, RuleVersion, ScoreBreakdown, default_framework
from .scoring import OutputGenerator, TranscriptScorer
from .sqlite_store import open_store

app = typer.Typer(help="BridgeScore - rule-based sales call scoring and coaching")
versions_app = typer.Typer(help="Manage rule versions")
app.add_typer(versions_app, name="versions")
console = Console()


def _settings() -> Settings:
    settings = Settings.from_env()
    configure_logging(settings)
    return settings


def _open(settings: Settings) -> ScoreStore:
    return open_store(settings)


def _fail(message: str):
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


def _read_transcript(path: Path) -> str:
    if not path.exists():
        _fail(f"Transcript file {path} does not exist")
    return path.read_text(encoding="utf-8")


def _print_breakdown(breakdown: ScoreBreakdown, framework: FrameworkConfig, title: str):
    table = Table(title=title)
    table.add_column("Step", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Credit", justify="right")
    table.add_column("Notes")

    for step in breakdown.steps:
        style = step.color.value
        table.add_row(
            framework.step_name(step.step_key),
            str(step.weight),
            f"[{style}]{step.credit:g}[/{style}]",
            step.notes,
        )

    console.print(table)
    console.print(f"[bold]Total: {breakdown.total}/{breakdown.max_score}[/bold]")


def _print_coaching(breakdown: ScoreBreakdown, framework: FrameworkConfig, matcher: PivotMatcher):
    analysis = CoachingAnalyzer().analyze(breakdown)

    console.print("\n[bold green]Strengths[/bold green]")
    if not analysis.strengths:
        console.print("  No strengths identified yet")
    for step in analysis.strengths:
        console.print(f"  • {framework.step_name(step.step_key)} - {step.notes}")

    console.print("\n[bold yellow]Areas for Improvement[/bold yellow]")
    if not analysis.improvements:
        console.print("  Great job! No major areas for improvement identified")
    for step in analysis.improvements:
        console.print(f"  • {framework.step_name(step.step_key)} - {step.notes}")
        suggestions = matcher.lookup(step.step_key)
        if not suggestions.has_suggestions:
            console.print("      [dim]No coaching suggestions available for this step[/dim]")
        for prompt in suggestions.prompts:
            console.print(f"      [blue]→ {prompt}[/blue]")
        if suggestions.more_count:
            console.print(f"      [dim]+{suggestions.more_count} more suggestions available[/dim]")


@app.command()
def score(
    transcript_file: Path = typer.Argument(..., help="Transcript text file"),
    rules_file: Optional[Path] = typer.Option(None, "--rules", help="YAML rule set (defaults to bridge-v1)"),
    as_json: bool = typer.Option(False, "--json", help="Print the persisted breakdown record as JSON"),
):
    """Score a transcript file without storing it."""
    settings = _settings()
    transcript = _read_transcript(transcript_file)
    if rules_file and not rules_file.exists():
        _fail(f"Rule set file {rules_file} does not exist")
    rule_set = load_rule_set(rules_file) if rules_file else None
    framework = default_framework(settings.default_framework_version)

    try:
        breakdown = TranscriptScorer(rule_set).score(transcript, framework)
    except BridgeScoreError as e:
        _fail(str(e))

    if as_json:
        console.print_json(json.dumps(breakdown.to_record()))
        return

    pivots = InMemoryPivotRepository()
    if Path(settings.pivots_path).exists():
        seed_pivots(pivots, settings.pivots_path)

    _print_breakdown(breakdown, framework, f"BridgeScore: {transcript_file.name}")
    _print_coaching(breakdown, framework, PivotMatcher(pivots))


@app.command()
def submit(
    transcript_file: Path = typer.Argument(..., help="Transcript text file"),
    org_id: str = typer.Option(..., "--org", help="Organization the call belongs to"),
    user_id: Optional[str] = typer.Option(None, "--user", help="Rep who made the call"),
):
    """Score a transcript with the organization's active rule version and store the call."""
    settings = _settings()
    transcript = _read_transcript(transcript_file)
    store = _open(settings)
    try:
        call = RescoreOrchestrator(store, settings).submit(org_id, transcript, user_id=user_id)
        framework = store.frameworks.get_for_org(org_id)
        _print_breakdown(call.breakdown, framework, f"Call {call.id}")
    except BridgeScoreError as e:
        _fail(str(e))
    finally:
        store.close()

    console.print(f"[green]✓[/green] Stored call {call.id} (rule version: {call.rule_version_id or 'built-in'})")


@app.command()
def rescore(
    call_id: str = typer.Argument(..., help="Call to rescore"),
    rule_version_id: Optional[str] = typer.Option(None, "--version", help="Rule version (defaults to the active one)"),
):
    """Re-run scoring on a stored call, recording history when the score changes."""
    settings = _settings()
    store = _open(settings)
    try:
        result = RescoreOrchestrator(store, settings).rescore(call_id, rule_version_id)
        call = store.calls.get(call_id)
        framework = store.frameworks.get_for_org(call.org_id)
        _print_breakdown(result.new_breakdown, framework, f"Call {call_id} rescored")
    except BridgeScoreError as e:
        _fail(str(e))
    finally:
        store.close()

    console.print(f"Previous total: {result.previous_total} → new total: {result.new_breakdown.total}")
    if result.history_written:
        console.print("[green]History entry recorded[/green]")
    else:
        console.print("[yellow]Score unchanged or no rule version; no history entry written[/yellow]")


@app.command()
def history(call_id: str = typer.Argument(..., help="Call to show history for")):
    """List every score previously attached to a call."""
    settings = _settings()
    store = _open(settings)
    try:
        if store.calls.get(call_id) is None:
            _fail(f"Call not found: {call_id}")
        entries = store.history.list_for(call_id)
    finally:
        store.close()

    if not entries:
        console.print("[yellow]No score history for this call[/yellow]")
        return

    table = Table(title=f"Score history for {call_id}")
    table.add_column("Recorded", style="cyan")
    table.add_column("Rule Version")
    table.add_column("Framework")
    table.add_column("Total", justify="right", style="magenta")
    for entry in entries:
        table.add_row(entry.created_at.isoformat(timespec="seconds"), entry.rule_version_id,
                      entry.framework_version, str(entry.total))
    console.print(table)


@app.command()
def coach(call_id: str = typer.Argument(..., help="Call to coach")):
    """Show strengths, areas for improvement and pivot prompts for a stored call."""
    settings = _settings()
    store = _open(settings)
    try:
        call = store.calls.get(call_id)
        if call is None:
            _fail(f"Call not found: {call_id}")
        framework = store.frameworks.get_for_org(call.org_id)
        _print_breakdown(call.breakdown, framework, f"Call {call_id}")
        _print_coaching(call.breakdown, framework, PivotMatcher(store.pivots, org_id=call.org_id))
    finally:
        store.close()


@versions_app.command("add")
def versions_add(
    org_id: str = typer.Option(..., "--org", help="Owning organization"),
    name: str = typer.Option(..., "--name", help="Display name"),
    version: str = typer.Option(..., "--version", help="Version label"),
    rules_file: Optional[Path] = typer.Option(None, "--rules", help="YAML rule set (defaults to bridge-v1)"),
    activate: bool = typer.Option(False, "--activate", help="Make this the organization's active version"),
):
    """Register a rule version for an organization."""
    settings = _settings()
    rule_version = RuleVersion(org_id=org_id, name=name, version=version)
    if rules_file:
        if not rules_file.exists():
            _fail(f"Rule set file {rules_file} does not exist")
        rule_version.rule_set = load_rule_set(rules_file)

    store = _open(settings)
    try:
        store.rule_versions.add(rule_version)
        if activate:
            store.rule_versions.activate(rule_version.id)
    finally:
        store.close()

    console.print(f"[green]✓[/green] Added rule version {rule_version.id} ({name} {version})")


@versions_app.command("list")
def versions_list(org_id: str = typer.Option(..., "--org", help="Organization")):
    """List an organization's rule versions, newest first."""
    settings = _settings()
    store = _open(settings)
    try:
        versions = store.rule_versions.list_for_org(org_id)
    finally:
        store.close()

    table = Table(title=f"Rule versions for {org_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Rule Set")
    table.add_column("Active")
    for v in versions:
        table.add_row(v.id, v.name, v.version, v.rule_set.name, "✓" if v.is_active else "")
    console.print(table)


@versions_app.command("activate")
def versions_activate(rule_version_id: str = typer.Argument(..., help="Version to activate")):
    """Make a rule version its organization's active one."""
    settings = _settings()
    store = _open(settings)
    try:
        version = store.rule_versions.activate(rule_version_id)
    except BridgeScoreError as e:
        _fail(str(e))
    finally:
        store.close()

    console.print(f"[green]✓[/green] {version.name} {version.version} is now active for {version.org_id}")


@app.command()
def export(
    output_dir: Path = typer.Option(Path("out"), "--out", help="Output directory"),
    org_id: Optional[str] = typer.Option(None, "--org", help="Only export this organization's calls"),
):
    """Write calls (JSON, CSV, JSONL, leaderboard) and score history (JSONL)."""
    settings = _settings()
    store = _open(settings)
    try:
        calls = store.calls.list(org_id)
        entries = [entry for call in calls for entry in store.history.list_for(call.id)]
        framework = store.frameworks.get_for_org(org_id)
    finally:
        store.close()

    if not calls:
        _fail("No calls to export")

    output_dir.mkdir(parents=True, exist_ok=True)
    generator = OutputGenerator()
    generator.generate_json_output(calls, output_dir / "calls.json")
    generator.generate_csv_output(calls, output_dir / "calls.csv")
    generator.generate_calls_jsonl(calls, output_dir / "calls.jsonl")
    generator.generate_leaderboard(calls, output_dir / "leaderboard.md", framework)
    generator.generate_history_jsonl(entries, output_dir / "history.jsonl")

    console.print(f"\n[bold green]Export completed![/bold green]")
    console.print(f"Calls exported: {len(calls)}")
    console.print(f"History entries exported: {len(entries)}")
    console.print(f"Output directory: {output_dir}")


@app.command("upload-bq")
def upload_bq(
    jsonl_file: Path = typer.Option(Path("out/history.jsonl"), "--file", help="JSONL file to upload"),
    table: str = typer.Option("history", "--table", help="Destination: history or calls"),
):
    """Upload an exported JSONL file to BigQuery."""
    settings = _settings()
    if table not in ("history", "calls"):
        _fail("--table must be 'history' or 'calls'")

    try:
        loader = BigQueryLoader(settings)
    except ValueError as e:
        _fail(str(e))

    rows = loader.upload_history(jsonl_file) if table == "history" else loader.upload_calls(jsonl_file)
    if rows == 0:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
