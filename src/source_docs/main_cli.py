"""source-docs command line.

Capture a sources page into an Evidence Pack, keep every capture as a versioned run,
and drive the Normalize -> Cluster -> Synthesize stages either directly against the
completion endpoint or through an export / import round trip.

Usage:
    source-docs capture https://www.familysearch.org/tree/person/sources/KWJ1-234
    source-docs status KWJ1-234
    source-docs run KWJ1-234 normalize
    source-docs export KWJ1-234 cluster -o cluster-prompt.md
    source-docs import-result KWJ1-234 cluster reply.txt
"""

import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from .capture.extractor import CancellationToken, Extractor, ExtractionProgress, PacingConfig, capture_url
from .capture.fetch import Fetcher
from .capture.page import HtmlPage
from .config import get_settings
from .errors import SourceDocsError, StageError
from .log import get_logger, setup_logging
from .pipeline.ingest import import_evidence_pack
from .pipeline.orchestrator import StageOrchestrator, StageStatus
from .redaction.redactor import redact, redaction_summary
from .schemas.outputs import STAGE_ORDER, StageName
from .store.runs import RunStore

app = typer.Typer(
    name="source-docs",
    help="Capture genealogy sources and turn them into an auditable dossier",
    add_completion=False,
)
console = Console()
logger = get_logger("cli")

STATUS_STYLES = {
    StageStatus.PENDING: "dim",
    StageStatus.PROCESSING: "yellow",
    StageStatus.COMPLETE: "green",
    StageStatus.ERROR: "red",
}


@app.callback()
def main():
    setup_logging()


def get_store(data_dir: Optional[Path]) -> RunStore:
    return RunStore(str(data_dir) if data_dir else get_settings().DATA_DIR)


def resolve_run(store: RunStore, person_id: str, run_id: Optional[str]) -> str:
    if run_id:
        return run_id
    latest = store.get_latest(person_id)
    if latest is None:
        console.print(f"[red]No runs recorded for {person_id}.[/red]")
        raise typer.Exit(1)
    return latest.run_id


def fail(error: Exception):
    if isinstance(error, StageError):
        console.print(f"[bold red]{error.kind} error:[/bold red] {error.message}")
        console.print(f"[dim]Next step: {error.retry_hint}[/dim]")
    else:
        console.print(f"[bold red]Error:[/bold red] {error}")
    raise typer.Exit(1)


def pacing_from_settings() -> PacingConfig:
    settings = get_settings()
    return PacingConfig(
        expand_delay_ms=settings.EXPAND_DELAY_MS,
        action_delay_ms=settings.ACTION_DELAY_MS,
        max_expansions=settings.MAX_EXPANSIONS,
    )


def show_progress(progress: ExtractionProgress):
    label = f" {progress.current_source}" if progress.current_source else ""
    console.print(
        f"[dim]{progress.status}: {progress.current_step}/{progress.total_steps}{label} "
        f"({progress.expanded_count} expanded)[/dim]"
    )


@app.command()
def capture(
    url: str = typer.Argument(..., help="Sources page URL"),
    html_file: Optional[Path] = typer.Option(None, "--html", help="Read a saved copy of the page instead of fetching", exists=True),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Also write the Evidence Pack JSON here"),
    expand_delay_ms: Optional[int] = typer.Option(None, "--expand-delay", help="Delay between sources (ms)"),
    max_expansions: Optional[int] = typer.Option(None, "--max-expansions", help="Cap on reveal actions"),
    no_store: bool = typer.Option(False, "--no-store", help="Do not import the pack into the run store"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Extract an Evidence Pack from a sources page. Ctrl-C stops after the current source."""
    pacing = pacing_from_settings()
    if expand_delay_ms is not None:
        pacing.expand_delay_ms = expand_delay_ms
    if max_expansions is not None:
        pacing.max_expansions = max_expansions

    token = CancellationToken()

    def handle_sigint(signum, frame):
        console.print("[yellow]Cancelling after the current source...[/yellow]")
        token.cancel()

    previous = signal.signal(signal.SIGINT, handle_sigint)
    try:
        extractor = Extractor(pacing=pacing, on_progress=show_progress)
        if html_file:
            pack = extractor.extract(HtmlPage(html_file.read_text(encoding="utf-8"), url=url), token)
        else:
            fetcher = Fetcher(max_attempts=get_settings().FETCH_MAX_ATTEMPTS)
            pack = capture_url(url, extractor, fetcher=fetcher, cancel_token=token)
    finally:
        signal.signal(signal.SIGINT, previous)

    d = pack.diagnostics
    console.print(
        f"\n[bold]{pack.person.name or 'Unknown person'}[/bold]: {d.total_sources} source(s), "
        f"{d.expanded_sections} expanded, {d.failed_expansions} failed, outcome [bold]{d.outcome}[/bold]"
    )
    for w in d.warnings:
        console.print(f"[yellow]{w.code}[/yellow] {w.message}")
    for e in d.errors:
        console.print(f"[red]{e.code}[/red] {e.message}")

    if output:
        output.write_text(pack.to_json() + "\n", encoding="utf-8")
        console.print(f"Wrote {output}")
    if no_store:
        return
    try:
        result = import_evidence_pack(get_store(data_dir), pack)
    except (SourceDocsError, ValueError) as e:
        fail(e)
    console.print(f"[green]Stored run {result.run_id} for {result.person_id}[/green]")


@app.command("import")
def import_pack(
    pack_file: Path = typer.Argument(..., help="Evidence Pack JSON file", exists=True),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Import an Evidence Pack produced elsewhere (e.g. by the browser extension)."""
    try:
        result = import_evidence_pack(get_store(data_dir), pack_file.read_text(encoding="utf-8"))
    except (SourceDocsError, ValueError) as e:
        fail(e)
    verb = "Imported" if result.is_new else "Re-imported"
    console.print(f"[green]{verb} run {result.run_id} for {result.person_id}[/green] ({result.run_path})")


@app.command()
def people(data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root")):
    """List captured people."""
    store = get_store(data_dir)
    records = store.list_people()
    if not records:
        console.print("[dim]No people captured yet.[/dim]")
        return
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Person ID")
    table.add_column("Name")
    table.add_column("Runs", justify="right")
    table.add_column("Updated")
    for record in records:
        table.add_row(
            record.family_search_id,
            record.name,
            str(len(store.list_runs(record.family_search_id))),
            record.updated_at,
        )
    console.print(table)


@app.command()
def runs(
    person_id: str = typer.Argument(...),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """List a person's runs, newest first."""
    store = get_store(data_dir)
    run_ids = store.list_runs(person_id)
    if not run_ids:
        console.print(f"[dim]No runs for {person_id}.[/dim]")
        return
    latest = store.get_latest(person_id)
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Run ID")
    table.add_column("Sources", justify="right")
    table.add_column("Outcome")
    for run_id in run_ids:
        pack = store.load_pack(person_id, run_id)
        marker = " (latest)" if latest and latest.run_id == run_id else ""
        table.add_row(run_id + marker, str(len(pack.sources)), pack.diagnostics.outcome)
    console.print(table)


@app.command()
def raw(
    person_id: str = typer.Argument(...),
    run_id: Optional[str] = typer.Option(None, "--run", help="Run id (default: latest)"),
    plain: bool = typer.Option(False, "--plain", help="Print markdown source instead of rendering it"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Show the raw evidence document of a run."""
    store = get_store(data_dir)
    try:
        text = store.load_raw_document(person_id, resolve_run(store, person_id, run_id))
    except (SourceDocsError, ValueError) as e:
        fail(e)
    if plain:
        sys.stdout.write(text)
    else:
        console.print(Markdown(text))


@app.command("redact")
def redact_run(
    person_id: str = typer.Argument(...),
    run_id: Optional[str] = typer.Option(None, "--run", help="Run id (default: latest)"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Redact a run's pack and store it as the AI stage input."""
    store = get_store(data_dir)
    run_id = resolve_run(store, person_id, run_id)
    try:
        pack = store.load_pack(person_id, run_id)
    except (SourceDocsError, ValueError) as e:
        fail(e)
    result = redact(pack)
    store.save_redacted_pack(person_id, result.redacted_pack)
    console.print(redaction_summary(result.redactions))
    for record in result.redactions:
        console.print(f"[dim]{record.kind:8} {record.field}[/dim]")
    if result.has_living_indicators:
        console.print("[yellow]This person may be living; review the redacted pack before sharing it.[/yellow]")


@app.command()
def status(
    person_id: str = typer.Argument(...),
    run_id: Optional[str] = typer.Option(None, "--run", help="Run id (default: latest)"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Show the state of each AI stage."""
    store = get_store(data_dir)
    run_id = resolve_run(store, person_id, run_id)
    try:
        state = StageOrchestrator(store, person_id, run_id).status()
    except (SourceDocsError, ValueError) as e:
        fail(e)
    table = Table(show_header=True, header_style="bold cyan", title=f"{person_id} / {run_id}")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Path")
    table.add_column("Detail")
    for stage in STAGE_ORDER:
        s = state.stage(stage)
        detail = "awaiting import" if s.awaiting_import else (s.error or "")
        style = STATUS_STYLES[s.status]
        table.add_row(stage.value, f"[{style}]{s.status.value}[/{style}]", s.path or "", detail)
    console.print(table)


@app.command()
def export(
    person_id: str = typer.Argument(...),
    stage: StageName = typer.Argument(...),
    run_id: Optional[str] = typer.Option(None, "--run", help="Run id (default: latest)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the prompt here instead of stdout"),
    no_redact: bool = typer.Option(False, "--no-redact", help="Use the unredacted pack"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Print a self-contained prompt for an external AI tool."""
    store = get_store(data_dir)
    run_id = resolve_run(store, person_id, run_id)
    try:
        text = StageOrchestrator(store, person_id, run_id, use_redacted=not no_redact).export_prompt(stage)
    except (SourceDocsError, ValueError) as e:
        fail(e)
    if output:
        output.write_text(text, encoding="utf-8")
        console.print(f"Wrote {stage.value} prompt to {output}; import the reply with import-result")
    else:
        sys.stdout.write(text)


@app.command("import-result")
def import_result(
    person_id: str = typer.Argument(...),
    stage: StageName = typer.Argument(...),
    reply: str = typer.Argument(..., help="File holding the pasted reply, or '-' for stdin"),
    run_id: Optional[str] = typer.Option(None, "--run", help="Run id (default: latest)"),
    no_redact: bool = typer.Option(False, "--no-redact", help="Use the unredacted pack"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Validate and accept a reply pasted from an external AI tool."""
    text = sys.stdin.read() if reply == "-" else Path(reply).read_text(encoding="utf-8")
    store = get_store(data_dir)
    run_id = resolve_run(store, person_id, run_id)
    try:
        StageOrchestrator(store, person_id, run_id, use_redacted=not no_redact).import_result(stage, text)
    except (SourceDocsError, ValueError) as e:
        fail(e)
    console.print(f"[green]{stage.value} complete[/green]")


@app.command()
def run(
    person_id: str = typer.Argument(...),
    stage: StageName = typer.Argument(...),
    run_id: Optional[str] = typer.Option(None, "--run", help="Run id (default: latest)"),
    no_redact: bool = typer.Option(False, "--no-redact", help="Use the unredacted pack"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Run a stage against the configured completion endpoint."""
    store = get_store(data_dir)
    run_id = resolve_run(store, person_id, run_id)
    try:
        with console.status(f"Running {stage.value}..."):
            StageOrchestrator(store, person_id, run_id, use_redacted=not no_redact).run_stage(stage)
    except (SourceDocsError, ValueError) as e:
        fail(e)
    console.print(f"[green]{stage.value} complete[/green]")


@app.command()
def dossier(
    person_id: str = typer.Argument(...),
    run_id: Optional[str] = typer.Option(None, "--run", help="Run id (default: latest)"),
    plain: bool = typer.Option(False, "--plain", help="Print markdown source instead of rendering it"),
    regenerate: bool = typer.Option(False, "--regenerate", help="Re-render from the stored synthesis even if a dossier exists"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Run store root"),
):
    """Show the contextualized dossier, rendering it from the synthesis if needed."""
    store = get_store(data_dir)
    run_id = resolve_run(store, person_id, run_id)
    try:
        text = None if regenerate else store.load_dossier(person_id, run_id)
        if text is None:
            text = StageOrchestrator(store, person_id, run_id).render_dossier()
    except (SourceDocsError, ValueError) as e:
        fail(e)
    if plain:
        sys.stdout.write(text)
    else:
        console.print(Markdown(text))


if __name__ == "__main__":
    app()
