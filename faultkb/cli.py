"""CLI entry point for faultkb."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import anthropic
import typer
from rich import print as rprint
from rich.logging import RichHandler

from faultkb.activity import ActivityLog
from faultkb.analysis.pipeline import AnalysisOutcome, DiagnosisPipeline
from faultkb.analysis.synthesizer import Synthesizer
from faultkb.config import DEFAULT_DB_PATH, Config
from faultkb.errors import FaultKBError, PersistenceFailed
from faultkb.knowledge.models import (
    SOURCE_TYPES,
    SUBSCRIPTION_TIERS,
    AnalysisRequest,
    AnalysisResult,
    SearchSource,
)
from faultkb.knowledge.retriever import KnowledgeRetriever
from faultkb.search.orchestrator import run_search
from faultkb.storage.db import get_connection
from faultkb.storage.repository import Repository

app = typer.Typer(help="Diagnose device faults from a self-learning knowledge base.")
sources_app = typer.Typer(help="Manage external search sources.")
accounts_app = typer.Typer(help="Manage accounts and query quotas.")
documents_app = typer.Typer(help="Manage uploaded reference documents.")
app.add_typer(sources_app, name="sources")
app.add_typer(accounts_app, name="accounts")
app.add_typer(documents_app, name="documents")

DbOption = typer.Option(str(DEFAULT_DB_PATH), "--db", envvar="FAULTKB_DB_PATH", help="Database file path")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show pipeline logs")) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
    )


def _open_repo(db_path: str, must_exist: bool = True) -> Repository:
    db = Path(db_path)
    if must_exist and not db.exists():
        rprint(f"[red]Database not found at {db}. Run 'faultkb init' first.[/red]")
        raise typer.Exit(1)
    return Repository(get_connection(db))


def _load_config(require_api_key: bool = True) -> Config:
    config = Config.load()
    issues = config.validate(require_api_key=require_api_key)
    if issues:
        for issue in issues:
            rprint(f"[red]Config error: {issue}[/red]")
        raise typer.Exit(1)
    return config


def _build_pipeline(repo: Repository, config: Config) -> DiagnosisPipeline:
    client = anthropic.Anthropic(
        api_key=config.anthropic_api_key,
        max_retries=config.llm_max_retries,
        timeout=config.llm_timeout,
    )
    synthesizer = Synthesizer(client, model=config.model, timeout=config.llm_timeout)
    return DiagnosisPipeline(
        repo,
        synthesizer,
        search=lambda query, timeout: run_search(repo, config, query, timeout),
    )


def _fail(error: FaultKBError) -> None:
    retry = " (may be retried)" if error.retryable else ""
    rprint(f"[red]{error.kind}: {error.message}{retry}[/red]")
    raise typer.Exit(1)


@app.command()
def init(
    admin_email: str = typer.Option(None, help="Create an unmetered admin account"),
    db_path: str = DbOption,
) -> None:
    """Create the knowledge base database."""
    repo = _open_repo(db_path, must_exist=False)
    if admin_email:
        account_id = repo.create_account(admin_email, role="admin")
        rprint(f"Admin account [bold]{account_id}[/bold] created for {admin_email}")
    rprint(f"[green]Knowledge base ready at {db_path}[/green]")


@app.command()
def analyze(
    fault_description: str = typer.Argument(help="What is wrong with the device"),
    account: int = typer.Option(..., "--account", "-a", help="Account id to run as"),
    device_type: str = typer.Option(..., help="e.g. Ventilator"),
    manufacturer: str = typer.Option(..., help="e.g. Acme"),
    model: str = typer.Option(..., help="e.g. V200"),
    symptoms: str = typer.Option("", help="Observed symptoms"),
    error_codes: str = typer.Option("", help="Error codes shown by the device"),
    document: list[int] = typer.Option([], "--document", "-d", help="Uploaded document id (repeatable)"),
    save: bool = typer.Option(True, help="Save the diagnosis to the knowledge base"),
    search_web: bool = typer.Option(False, help="Also search the configured web sources"),
    search_timeout: float = typer.Option(None, help="Give up on slow sources after N seconds"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
    db_path: str = DbOption,
) -> None:
    """Diagnose a device fault."""
    config = _load_config()

    repo = _open_repo(db_path)
    pipeline = _build_pipeline(repo, config)
    request = AnalysisRequest(
        device_type=device_type,
        manufacturer=manufacturer,
        device_model=model,
        fault_description=fault_description,
        symptoms=symptoms,
        error_codes=error_codes,
        document_ids=list(document),
        save_to_knowledge_base=save,
        search_web=search_web,
    )

    try:
        outcome = pipeline.analyze(account, request, search_timeout=search_timeout)
    except PersistenceFailed as e:
        if e.result is not None:
            rprint(_format_result(e.result))
        rprint("[red]This diagnosis was NOT saved.[/red]")
        _fail(e)
    except FaultKBError as e:
        _fail(e)

    if format == "json":
        typer.echo(json.dumps(outcome.to_dict(), indent=2))
    else:
        rprint(_format_outcome(outcome))


@app.command()
def search(
    query: str = typer.Argument(help="What to look for"),
    account: int = typer.Option(..., "--account", "-a", help="Account id to run as"),
    device_type: str = typer.Option("", help="Prefix the query with a device type"),
    learn: bool = typer.Option(True, help="Save discovered procedures to the knowledge base"),
    timeout: float = typer.Option(None, help="Give up on slow sources after N seconds"),
    db_path: str = DbOption,
) -> None:
    """Search all active web sources."""
    config = _load_config(require_api_key=False)
    repo = _open_repo(db_path)
    pipeline = _build_pipeline(repo, config)

    try:
        report = pipeline.search(account, query, device_type=device_type, learn=learn, timeout=timeout)
    except FaultKBError as e:
        _fail(e)

    typer.echo(json.dumps(report.to_dict(), indent=2))


@app.command()
def similar(
    description: str = typer.Argument(help="Fault description"),
    limit: int = typer.Option(5, help="Max results"),
    db_path: str = DbOption,
) -> None:
    """List known faults sharing words with a description, most viewed first."""
    repo = _open_repo(db_path)
    matches = KnowledgeRetriever(repo).find_similar(description, limit=limit)
    if not matches:
        rprint("No similar faults on record.")
        return
    for m in matches:
        rprint(f"  [bold]#{m['id']}[/bold] ({m['views']} views) {m['description']}")


@app.command()
def faults(
    device_type: str = typer.Option(None, help="Filter by device type"),
    manufacturer: str = typer.Option(None, help="Filter by manufacturer"),
    model: str = typer.Option(None, help="Filter by model"),
    limit: int = typer.Option(20, help="Max results"),
    offset: int = typer.Option(0, help="Skip results"),
    db_path: str = DbOption,
) -> None:
    """Browse known faults for a device, most viewed first."""
    repo = _open_repo(db_path)
    rows = repo.search_faults(device_type, manufacturer, model, limit=limit, offset=offset)
    if not rows:
        rprint("No faults found.")
        return
    for r in rows:
        rprint(
            f"  [bold]#{r['id']}[/bold] {r['device_type']} / {r['manufacturer']} / {r['device_model']}"
            f"  [dim]({r['views']} views, {r['helpful']} helpful)[/dim]"
        )
        rprint(f"      {r['fault_description']}")


@app.command()
def fault(
    fault_id: int = typer.Argument(help="Fault id"),
    db_path: str = DbOption,
) -> None:
    """Show a fault (counts as a view)."""
    repo = _open_repo(db_path)
    record = repo.get_fault(fault_id, count_view=True)
    if record is None:
        rprint(f"[red]Fault {fault_id} not found[/red]")
        raise typer.Exit(1)
    typer.echo(json.dumps(record, indent=2, default=str))


@app.command()
def rate(
    fault_id: int = typer.Argument(help="Fault id"),
    helpful: bool = typer.Option(True, "--helpful/--not-helpful"),
    db_path: str = DbOption,
) -> None:
    """Mark a fault's solution as helpful or not."""
    repo = _open_repo(db_path)
    if not repo.rate_fault(fault_id, helpful):
        rprint(f"[red]Fault {fault_id} not found[/red]")
        raise typer.Exit(1)
    rprint("[green]Thanks for the feedback.[/green]")


@app.command()
def suggest(
    device_type: str = typer.Argument(help="Device type"),
    manufacturer: str = typer.Argument(help="Manufacturer"),
    db_path: str = DbOption,
) -> None:
    """Most helpful known solutions for a device."""
    repo = _open_repo(db_path)
    suggestions = KnowledgeRetriever(repo).suggestions(device_type, manufacturer)
    if not suggestions:
        rprint("No suggestions for this device yet.")
        return
    for s in suggestions:
        rprint(f"  [bold]{s['fault_description']}[/bold]\n    {s['solution']}")


@app.command()
def history(
    account: int = typer.Option(..., "--account", "-a", help="Account id"),
    limit: int = typer.Option(20, help="Max entries"),
    offset: int = typer.Option(0, help="Skip entries"),
    db_path: str = DbOption,
) -> None:
    """Show an account's query history, newest first."""
    repo = _open_repo(db_path)
    typer.echo(json.dumps(repo.get_query_history(account, limit=limit, offset=offset), indent=2))


@app.command()
def stats(db_path: str = DbOption) -> None:
    """Show knowledge base statistics."""
    repo = _open_repo(db_path)
    s = repo.get_stats()
    rprint("[bold]faultkb statistics:[/bold]")
    rprint(f"  Total faults:     {s['total_faults']}")
    rprint(f"    synthesized:    {s['synthesized_faults']}")
    rprint(f"    web discovered: {s['web_discovered_faults']}")
    rprint(f"    admin entered:  {s['admin_faults']}")
    rprint(f"  Search sources:   {s['active_sources']} active of {s['total_sources']}")
    rprint(f"  Queries served:   {s['total_queries']}")


@app.command()
def activity(
    limit: int = typer.Option(20, help="Number of entries to show"),
    tool: str = typer.Option(None, help="Only show calls to this MCP tool"),
    account: int = typer.Option(None, "--account", "-a", help="Only show calls for this account"),
    errors: bool = typer.Option(False, "--errors", help="Only show failed calls"),
    summary: bool = typer.Option(False, "--summary", help="Print per-tool and per-account totals as JSON"),
    db_path: str = DbOption,
) -> None:
    """Show recent MCP tool calls from the activity log."""
    log = ActivityLog.for_database(Path(db_path))
    if summary:
        typer.echo(json.dumps(log.summary(), indent=2))
        return

    entries = log.entries(limit=limit, tool_name=tool, account_id=account, errors_only=errors)
    if not entries:
        rprint("[dim]No activity logged yet.[/dim]")
        return
    for entry in entries:
        outcome = entry.get("outcome", "ok")
        if outcome == "ok":
            status = "[green]ok[/green]"
        else:
            retry = " (retryable)" if entry.get("retryable") else ""
            status = f"[red]{outcome}{retry}[/red]"
        who = f"account {entry['account_id']}" if entry.get("account_id") is not None else "-"
        charge = "  [yellow]1 query[/yellow]" if entry.get("billable") else ""
        rprint(
            f"{entry['timestamp']}  [bold]{entry['tool_name']}[/bold]  {who}  {status}  "
            f"{entry.get('duration_ms', 0)}ms{charge}"
        )


@documents_app.command("add")
def add_document(
    path: Path = typer.Argument(help="Plain-text file with the document's extracted text"),
    account: int = typer.Option(..., "--account", "-a", help="Owner account id"),
    document_type: str = typer.Option("other", help="manual, catalog, schematic, troubleshooting, other"),
    db_path: str = DbOption,
) -> None:
    """Register an already-extracted document for use as analysis context."""
    repo = _open_repo(db_path)
    document_id = repo.save_document(account, path.name, path.read_text(), document_type)
    rprint(f"Document [bold]{document_id}[/bold] stored")


@app.command()
def serve() -> None:
    """Start the MCP server."""
    import asyncio
    from faultkb.mcp_server import main as mcp_main
    asyncio.run(mcp_main())


@sources_app.command("add")
def sources_add(
    name: str = typer.Argument(help="Display name"),
    url: str = typer.Argument(help="Page URL; may contain {query}"),
    source_type: str = typer.Option("other", help=f"One of: {', '.join(SOURCE_TYPES)}"),
    robots: bool = typer.Option(True, help="Honor the site's robots.txt"),
    credential_ref: str = typer.Option(None, help="Name of a FAULTKB_CREDENTIAL_<REF> variable"),
    db_path: str = DbOption,
) -> None:
    """Add a search source."""
    if source_type not in SOURCE_TYPES:
        rprint(f"[red]Unknown source type '{source_type}'[/red]")
        raise typer.Exit(1)
    repo = _open_repo(db_path)
    source_id = repo.save_search_source(
        SearchSource(
            name=name,
            url=url,
            source_type=source_type,
            respects_robots_txt=robots,
            requires_auth=bool(credential_ref),
            credential_ref=credential_ref,
        )
    )
    rprint(f"Source [bold]{source_id}[/bold] added")


@sources_app.command("list")
def sources_list(db_path: str = DbOption) -> None:
    """List search sources."""
    repo = _open_repo(db_path)
    for s in repo.get_search_sources():
        state = "[green]active[/green]" if s.is_active else "[dim]inactive[/dim]"
        scraped = s.last_scraped.isoformat(timespec="seconds") if s.last_scraped else "never"
        rprint(f"  [bold]{s.id}[/bold] {s.name} ({s.source_type}) {state}  last scraped: {scraped}")
        rprint(f"      {s.url}")


@sources_app.command("toggle")
def sources_toggle(
    source_id: int = typer.Argument(help="Source id"),
    active: bool = typer.Option(..., "--active/--inactive"),
    db_path: str = DbOption,
) -> None:
    """Enable or disable a search source."""
    repo = _open_repo(db_path)
    if not repo.set_source_active(source_id, active):
        rprint(f"[red]Source {source_id} not found[/red]")
        raise typer.Exit(1)
    rprint(f"Source {source_id} is now {'active' if active else 'inactive'}")


@accounts_app.command("add")
def accounts_add(
    email: str = typer.Argument(help="Account email"),
    tier: str = typer.Option("free", help=f"One of: {', '.join(SUBSCRIPTION_TIERS)}"),
    admin: bool = typer.Option(False, help="Unmetered admin account"),
    db_path: str = DbOption,
) -> None:
    """Create an account."""
    if tier not in SUBSCRIPTION_TIERS:
        rprint(f"[red]Unknown tier '{tier}'[/red]")
        raise typer.Exit(1)
    repo = _open_repo(db_path)
    account_id = repo.create_account(email, role="admin" if admin else "user", tier=tier)
    rprint(f"Account [bold]{account_id}[/bold] created")


@accounts_app.command("top-up")
def accounts_top_up(
    account_id: int = typer.Argument(help="Account id"),
    tier: str = typer.Option(..., help=f"One of: {', '.join(SUBSCRIPTION_TIERS)}"),
    db_path: str = DbOption,
) -> None:
    """Add a tier's queries to an account (payment happens elsewhere)."""
    if tier not in SUBSCRIPTION_TIERS:
        rprint(f"[red]Unknown tier '{tier}'[/red]")
        raise typer.Exit(1)
    repo = _open_repo(db_path)
    if not repo.top_up_account(account_id, tier):
        rprint(f"[red]Account {account_id} not found[/red]")
        raise typer.Exit(1)
    rprint(f"Added {SUBSCRIPTION_TIERS[tier]} queries to account {account_id}")


@accounts_app.command("show")
def accounts_show(
    account_id: int = typer.Argument(help="Account id"),
    db_path: str = DbOption,
) -> None:
    """Show an account's quota."""
    repo = _open_repo(db_path)
    account = repo.get_account(account_id)
    if account is None:
        rprint(f"[red]Account {account_id} not found[/red]")
        raise typer.Exit(1)
    remaining = "unlimited" if account["role"] == "admin" else account["queries_remaining"]
    rprint(f"  {account['email']} ({account['subscription_tier']}, {account['role']})")
    rprint(f"  Queries remaining: {remaining}")
    rprint(f"  Queries used:      {account['total_queries_used']}")


def _format_result(result: AnalysisResult) -> str:
    lines = [
        f"[bold]Root cause:[/bold] {result.root_cause}",
        f"[bold]Solution:[/bold]\n{result.solution}",
        f"[bold]Difficulty:[/bold] {result.difficulty}    "
        f"[bold]Estimated time:[/bold] {result.estimated_repair_time}",
    ]
    if result.parts_required:
        lines.append(f"[bold]Parts:[/bold] {', '.join(result.parts_required)}")
    if result.references:
        lines.append("[bold]References:[/bold]")
        lines.extend(f"  - {r}" for r in result.references)
    if result.related_faults:
        lines.append("[bold]Related faults:[/bold]")
        lines.extend(
            f"  - #{f.id} ({f.similarity_score:.2f}) {f.description}" for f in result.related_faults
        )
    return "\n".join(lines)


def _format_outcome(outcome: AnalysisOutcome) -> str:
    lines = [_format_result(outcome.result), ""]
    if outcome.fault_id is not None:
        lines.append(f"[green]Saved as fault #{outcome.fault_id}[/green]")
    else:
        lines.append("[yellow]Not saved to the knowledge base[/yellow]")
    if outcome.omitted_document_ids:
        lines.append(
            f"[yellow]Documents left out of the context: {outcome.omitted_document_ids}[/yellow]"
        )
    if outcome.queries_remaining is not None:
        lines.append(f"Queries remaining: {outcome.queries_remaining}")
    return "\n".join(lines)


if __name__ == "__main__":
    app()
