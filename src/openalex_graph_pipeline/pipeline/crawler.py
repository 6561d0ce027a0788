"""Date-window crawl of OpenAlex works, one concept at a time.

Each invocation fetches at most one page per concept. A window whose page
comes back full with a next cursor is left open (cursor persisted, frontier
untouched) and resumed by the next invocation; any other page closes the
window and moves the frontier to its boundary, empty windows included.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Literal

from ..core.crawl_state import CrawlState, Frontier, load_crawl_state, save_crawl_state
from ..core.errors import InvalidRecordError, UpstreamError
from ..core.models import CondensedRecord
from ..core.normalize import normalize_work
from ..core.staging import JsonlLog
from ..upstream.openalex import OpenAlexClient
from ..utils.log import get_logger

log = get_logger(__name__)

Direction = Literal["forward", "backward"]


@dataclass(frozen=True)
class Window:
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass
class CrawlReport:
    direction: str
    staged: int = 0
    rejected: int = 0
    advanced: list[str] = field(default_factory=list)
    resumable: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    concept_count: int = 0

    @property
    def no_work(self) -> bool:
        """Every concept has already reached its boundary."""
        return self.concept_count > 0 and len(self.skipped) == self.concept_count


def next_window(
    direction: Direction,
    frontier: Frontier,
    start_date: date,
    date_delta: int,
    today: date,
) -> Window | None:
    """Window to crawl next, or None when this direction has nothing left."""
    if direction == "forward":
        start = frontier.latest_fetched_date + timedelta(days=1)
        if start > today:
            return None
        end = min(frontier.latest_fetched_date + timedelta(days=date_delta), today)
        return Window(start, end)

    if frontier.earliest_fetched_date <= start_date:
        return None
    start = max(start_date, frontier.earliest_fetched_date - timedelta(days=date_delta))
    end = frontier.earliest_fetched_date - timedelta(days=1)
    return Window(start, end)


class Crawler:
    def __init__(
        self,
        client: OpenAlexClient,
        staging: JsonlLog,
        state_path: Path,
        today: date | None = None,
    ) -> None:
        self.client = client
        self.staging = staging
        self.state_path = state_path
        self.today = today or date.today()

    async def run(self, direction: str) -> CrawlReport:
        """Crawl one page of the next window of every concept; return what was staged."""
        if direction not in ("forward", "backward"):
            raise ValueError('direction must be "forward" or "backward"')
        walk: Direction = "forward" if direction == "forward" else "backward"

        state = load_crawl_state(self.state_path)
        report = CrawlReport(direction=direction, concept_count=len(state.concepts))
        try:
            for concept_name, concept_id in state.concepts.items():
                try:
                    await self._crawl_concept(state, walk, concept_name, concept_id, report)
                except UpstreamError as e:
                    # state for this concept is untouched; the window is retried next run
                    report.failed.append(concept_name)
                    log.error(
                        "crawl_concept_failed",
                        concept=concept_name,
                        concept_id=concept_id,
                        status=e.status_code,
                        error=str(e),
                    )
        finally:
            save_crawl_state(state, self.state_path)

        log.info(
            "crawl_completed",
            direction=direction,
            staged=report.staged,
            rejected=report.rejected,
            advanced=len(report.advanced),
            resumable=len(report.resumable),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def _crawl_concept(
        self,
        state: CrawlState,
        direction: Direction,
        concept_name: str,
        concept_id: str,
        report: CrawlReport,
    ) -> None:
        frontier = state.frontier(concept_id)
        window = next_window(direction, frontier, state.start_date, state.date_delta, self.today)
        if window is None:
            log.info("crawl_concept_complete", concept=concept_name, direction=direction)
            report.skipped.append(concept_name)
            return

        cursor = state.get_cursor(concept_id, window.start)
        page = await self.client.fetch_concept_window(
            concept_id, window.start, window.end, per_page=state.page_size, cursor=cursor
        )

        records: list[CondensedRecord] = []
        for raw in page.results:
            try:
                records.append(normalize_work(raw))
            except InvalidRecordError as e:
                report.rejected += 1
                log.warning("crawl_record_rejected", concept=concept_name, error=str(e))
        self.staging.append(records)
        report.staged += len(records)
        log.info(
            "crawl_page_staged",
            concept=concept_name,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            count=len(records),
            resumed=cursor is not None,
        )

        # only now that the page is on disk may the state move
        is_full_page = len(page.results) >= state.page_size
        if is_full_page and page.next_cursor:
            state.set_cursor(concept_id, window.start, page.next_cursor)
            report.resumable.append(concept_name)
            return

        state.drop_cursor(concept_id, window.start)
        if direction == "forward":
            frontier.latest_fetched_date = window.end
        else:
            frontier.earliest_fetched_date = window.start
        report.advanced.append(concept_name)
        log.info(
            "crawl_window_exhausted",
            concept=concept_name,
            direction=direction,
            days=window.days,
            earliest=frontier.earliest_fetched_date.isoformat(),
            latest=frontier.latest_fetched_date.isoformat(),
        )
