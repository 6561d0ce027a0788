import asyncio
import functools
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import httpx
import structlog
import typer
from dotenv import load_dotenv

from .core.config import get_config, load_settings, set_test_mode
from .core.errors import ConfigError, ExitCode, PipelineError
from .core.staging import JsonlLog
from .graph.base import GraphStore
from .graph.memory import MemoryGraphStore
from .graph.neo4j_store import Neo4jGraphStore
from .pipeline.crawler import Crawler, CrawlReport
from .pipeline.merge import DEFAULT_BATCH_SIZE, ImportReport, MergeEngine
from .pipeline.prune import DEFAULT_BATCH_SIZE as DEFAULT_PRUNE_BATCH_SIZE
from .pipeline.prune import DEFAULT_MIN_CITATION_COUNT, Pruner
from .pipeline.reconcile import DEFAULT_MAX_STUBS, ReconcileReport, StubReconciler
from .upstream.openalex import MAX_IDS_PER_FILTER, OpenAlexClient
from .utils.http import RateLimiter, get_client
from .utils.log import bind_run_context, get_logger, setup_logging

load_dotenv()

_log_state: dict[str, Any] = {
    "session_id": datetime.now().strftime("%Y%m%d_%H%M%S"),
    "log_file": None,
    "logger": None,
}

app = typer.Typer(help="Incremental OpenAlex -> Neo4j ingestion pipeline.")

# OpenAlex allows 10 requests per second in the polite pool
RATE_LIMITER = RateLimiter(calls_per_second=10.0)


@app.callback()
def callback(
    ctx: typer.Context,
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress console log output (logs still written to file)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
    test: bool = typer.Option(
        False, "--test", help="Use test environment (separate staging logs and crawl state)"
    ),
) -> None:
    """Initialize structured logging and environment configuration."""
    if test:
        set_test_mode()
    get_config().ensure_directories()

    log_level = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO")
    _log_state["log_file"] = setup_logging(
        session_id=_log_state["session_id"],
        log_level=log_level,
        console_output=not quiet,
        log_dir=get_config().log_dir,
    )
    bind_run_context(
        session_id=_log_state["session_id"],
        command=ctx.invoked_subcommand,
        environment=get_config().mode,
    )
    _log_state["logger"] = get_logger(__name__)
    _log_state["logger"].info(
        "application_started", log_file=str(_log_state["log_file"])
    )


def _get_logger() -> structlog.BoundLogger | Any:
    if _log_state["logger"] is None:
        _log_state["log_file"] = setup_logging(
            session_id=_log_state["session_id"], log_dir=get_config().log_dir
        )
        _log_state["logger"] = get_logger(__name__)
    return _log_state["logger"]


class _LogProxy:
    """Forwards attribute access to the lazily-initialized logger."""

    def __getattr__(self, name: str) -> Any:
        return getattr(_get_logger(), name)


log = _LogProxy()


def _exit(code: ExitCode) -> None:
    if code != ExitCode.OK:
        raise typer.Exit(code=int(code))


def _config_error(e: ConfigError) -> typer.Exit:
    log.error("configuration_error", error=str(e))
    typer.echo(f"Configuration error: {e}", err=True)
    return typer.Exit(code=int(ExitCode.CONFIG_ERROR))


def _stop_on_failure(command: Callable[..., None]) -> Callable[..., None]:
    """Map an escaped error to CONFIG_ERROR or FATAL instead of Python's default status 1."""

    @functools.wraps(command)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            command(*args, **kwargs)
        except (typer.Exit, typer.Abort):
            raise
        except ConfigError as e:
            raise _config_error(e) from e
        except PipelineError as e:
            log.error("command_failed", error=str(e), error_type=type(e).__name__)
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=int(ExitCode.FATAL)) from e
        except Exception as e:
            log.exception("command_crashed", error_type=type(e).__name__)
            typer.echo(f"Unexpected error: {type(e).__name__}: {e}", err=True)
            raise typer.Exit(code=int(ExitCode.FATAL)) from e

    return wrapper


def make_store(dry_run: bool) -> GraphStore:
    """Open the graph store for one command; the caller closes it."""
    if dry_run:
        return MemoryGraphStore()
    settings = load_settings()
    user, password = settings.require_neo4j_auth()
    return Neo4jGraphStore.connect(settings.neo4j_uri, user, password)


def make_http_client(mailto: str) -> httpx.AsyncClient:
    return get_client(email=mailto)


@asynccontextmanager
async def open_openalex() -> AsyncIterator[OpenAlexClient]:
    settings = load_settings()
    mailto = settings.require_mailto()
    async with make_http_client(mailto) as http:
        yield OpenAlexClient(
            http, mailto=mailto, rate_limiter=RATE_LIMITER, base_url=settings.openalex_base_url
        )


def _staging_logs() -> tuple[JsonlLog, JsonlLog]:
    config = get_config()
    return JsonlLog(config.staging_path), JsonlLog(config.failed_path)


def _crawl_exit_code(report: CrawlReport) -> ExitCode:
    if report.failed:
        return ExitCode.PARTIAL_FAILURE
    if report.no_work:
        return ExitCode.NO_WORK
    return ExitCode.OK


def _import_exit_code(report: ImportReport) -> ExitCode:
    if report.no_work:
        return ExitCode.NO_WORK
    if report.has_failures:
        return ExitCode.PARTIAL_FAILURE
    return ExitCode.OK


def _reconcile_exit_code(report: ReconcileReport) -> ExitCode:
    if report.failed_batches:
        return ExitCode.PARTIAL_FAILURE
    if report.no_work or report.stopped_early:
        return ExitCode.NO_WORK
    return ExitCode.OK


async def _crawl(direction: str, repeat: int) -> CrawlReport:
    async with open_openalex() as client:
        crawler = Crawler(client, JsonlLog(get_config().staging_path), get_config().crawl_state_path)
        total = CrawlReport(direction=direction)
        for _ in range(repeat):
            report = await crawler.run(direction)
            total.concept_count = report.concept_count
            total.staged += report.staged
            total.rejected += report.rejected
            total.advanced = report.advanced
            total.resumable = report.resumable
            total.skipped = report.skipped
            total.failed = report.failed
            if report.failed or report.no_work:
                break
        return total


@app.command()
@_stop_on_failure
def fetch(
    direction: str = typer.Argument("forward", help="forward (newer) or backward (older)"),
    repeat: int = typer.Option(1, min=1, help="Crawl invocations to run back to back"),
) -> None:
    """Fetch the next page of each concept's date window into the staging log."""
    if direction not in ("forward", "backward"):
        typer.echo('Direction must be "forward" or "backward".', err=True)
        raise typer.Exit(code=int(ExitCode.CONFIG_ERROR))
    log.info("fetch_started", direction=direction, repeat=repeat)
    try:
        report = asyncio.run(_crawl(direction, repeat))
    except ConfigError as e:
        raise _config_error(e) from e
    typer.echo(
        f"Staged {report.staged} papers ({report.rejected} rejected); "
        f"{len(report.advanced)} windows closed, {len(report.resumable)} resumable, "
        f"{len(report.skipped)} concepts complete, {len(report.failed)} failed"
    )
    _exit(_crawl_exit_code(report))


@app.command("import-papers")
@_stop_on_failure
def import_papers(
    batch_size: int = typer.Option(DEFAULT_BATCH_SIZE, min=1, help="Records per graph transaction"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Write to an in-memory graph instead of Neo4j"),
) -> None:
    """Merge the staging log into the graph; failed batches go to the failed log."""
    staging, failed = _staging_logs()
    try:
        store = make_store(dry_run)
    except ConfigError as e:
        raise _config_error(e) from e
    with store:
        report = MergeEngine(store).import_staged(staging, failed, batch_size=batch_size)
    typer.echo(
        f"Imported {report.merged}/{report.total} papers "
        f"({report.failed} failed, {report.unparseable} unparseable)"
    )
    _exit(_import_exit_code(report))


@app.command("replay-failed")
@_stop_on_failure
def replay_failed(
    batch_size: int = typer.Option(DEFAULT_BATCH_SIZE, min=1, help="Records per graph transaction"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Write to an in-memory graph instead of Neo4j"),
) -> None:
    """Retry records from the failed-batch log."""
    _, failed = _staging_logs()
    try:
        store = make_store(dry_run)
    except ConfigError as e:
        raise _config_error(e) from e
    with store:
        report = MergeEngine(store).replay_failed(failed, batch_size=batch_size)
    still_failing = report.failed + report.unparseable
    typer.echo(f"Replayed {report.merged}/{report.total} papers; {still_failing} still failing")
    _exit(_import_exit_code(report))


async def _reconcile(store: GraphStore, max_stubs: int, lookup_batch_size: int) -> ReconcileReport:
    _, failed = _staging_logs()
    async with open_openalex() as client:
        reconciler = StubReconciler(
            store, client, failed_log=failed, lookup_batch_size=lookup_batch_size
        )
        return await reconciler.reconcile(max_stubs)


@app.command("fill-stubs")
@_stop_on_failure
def fill_stubs(
    max_stubs: int = typer.Option(DEFAULT_MAX_STUBS, min=1, help="Stubs to process in this pass"),
    lookup_batch_size: int = typer.Option(
        MAX_IDS_PER_FILTER, min=1, max=MAX_IDS_PER_FILTER, help="Ids per OpenAlex lookup"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Write to an in-memory graph instead of Neo4j"),
) -> None:
    """Fill stub papers from OpenAlex or delete the unresolvable ones."""
    try:
        store = make_store(dry_run)
        with store:
            report = asyncio.run(_reconcile(store, max_stubs, lookup_batch_size))
    except ConfigError as e:
        raise _config_error(e) from e
    typer.echo(
        f"Found {report.found} stubs: filled {report.filled}, deleted {report.deleted}, "
        f"{report.failed_batches} failed batches"
    )
    _exit(_reconcile_exit_code(report))


@app.command()
@_stop_on_failure
def prune(
    min_citations: int = typer.Option(
        DEFAULT_MIN_CITATION_COUNT, min=0, help="Delete papers cited fewer times than this"
    ),
    batch_size: int = typer.Option(DEFAULT_PRUNE_BATCH_SIZE, min=1, help="Nodes deleted per transaction"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Write to an in-memory graph instead of Neo4j"),
) -> None:
    """Delete low-cited papers, then authors left without papers."""
    try:
        store = make_store(dry_run)
    except ConfigError as e:
        raise _config_error(e) from e
    with store:
        report = Pruner(store).prune(min_citation_count=min_citations, batch_size=batch_size)
    typer.echo(f"Deleted {report.deleted_papers} papers and {report.deleted_authors} orphaned authors")
    _exit(ExitCode.PARTIAL_FAILURE if report.errors else ExitCode.OK)


@app.command("init-schema")
@_stop_on_failure
def init_schema(
    dry_run: bool = typer.Option(False, "--dry-run", help="Write to an in-memory graph instead of Neo4j"),
) -> None:
    """Create uniqueness constraints for every natural key (safe to re-run)."""
    try:
        store = make_store(dry_run)
    except ConfigError as e:
        raise _config_error(e) from e
    with store:
        store.ensure_schema()
    typer.echo("All constraints are in place.")


@app.command()
@_stop_on_failure
def sync(
    direction: str = typer.Argument("forward", help="forward (newer) or backward (older)"),
    max_stubs: int = typer.Option(DEFAULT_MAX_STUBS, min=1, help="Stubs per fill pass"),
    max_fill_passes: int = typer.Option(50, min=1, help="Upper bound on fill passes"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Write to an in-memory graph instead of Neo4j"),
) -> None:
    """Fetch, import, then fill stubs until none are left.

    Exits 0 even when no stage had anything to do; NO_WORK is reported only by
    the single-stage commands. Any failed unit makes it PARTIAL_FAILURE.
    """
    if direction not in ("forward", "backward"):
        typer.echo('Direction must be "forward" or "backward".', err=True)
        raise typer.Exit(code=int(ExitCode.CONFIG_ERROR))

    staging, failed = _staging_logs()
    partial = False
    try:
        crawl_report = asyncio.run(_crawl(direction, 1))
        partial |= bool(crawl_report.failed)
        store = make_store(dry_run)
        with store:
            import_report = MergeEngine(store).import_staged(staging, failed)
            partial |= import_report.has_failures
            for fill_pass in range(1, max_fill_passes + 1):
                report = asyncio.run(_reconcile(store, max_stubs, MAX_IDS_PER_FILTER))
                log.info("sync_fill_pass", fill_pass=fill_pass, filled=report.filled, deleted=report.deleted)
                if report.failed_batches:
                    partial = True
                    break
                if report.no_work or report.stopped_early:
                    break
    except ConfigError as e:
        raise _config_error(e) from e

    typer.echo(
        f"Staged {crawl_report.staged}, imported {import_report.merged}, "
        f"{'with' if partial else 'no'} failures"
    )
    _exit(ExitCode.PARTIAL_FAILURE if partial else ExitCode.OK)


if __name__ == "__main__":
    app()
