from collections.abc import Sequence
from dataclasses import dataclass, field

from pydantic import ValidationError

from ..core.errors import GraphWriteError
from ..core.models import CondensedRecord
from ..core.staging import JsonlLog
from ..graph.base import GraphBatch, GraphStore, iter_chunks
from ..utils.log import get_logger

log = get_logger(__name__)

DEFAULT_BATCH_SIZE = 25


@dataclass
class MergeResult:
    ok: bool
    record_count: int
    error: str | None = None


@dataclass
class ImportReport:
    total: int = 0
    merged: int = 0
    failed: int = 0
    failed_batches: int = 0
    unparseable: int = 0

    @property
    def no_work(self) -> bool:
        return self.total == 0

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.unparseable > 0


def write_record(batch: GraphBatch, record: CondensedRecord, include_citation_edges: bool) -> None:
    """Queue every upsert derived from one record.

    All writes are natural-key upserts, so records in a batch can be applied
    in any order.
    """
    paper = ("paper", record.id)
    batch.upsert("paper", record.id, record.paper_attributes())

    pub = record.publication
    if pub is not None and pub.journal:
        batch.upsert("venue", pub.journal)
        batch.upsert_edge(
            "published_in",
            paper,
            ("venue", pub.journal),
            {
                "date": pub.date,
                "volume": pub.volume,
                "issue": pub.issue,
                "first_page": pub.first_page,
                "last_page": pub.last_page,
            },
        )

    for author in record.authors:
        # Authors are keyed by display name, so namesakes collapse into one node.
        batch.upsert("author", author.name)
        batch.upsert_edge("has_author", paper, ("author", author.name))
        for institution in author.affiliations:
            batch.upsert("institution", institution)
            batch.upsert_edge("affiliated_with", ("author", author.name), ("institution", institution))

    topic = record.primary_topic
    if topic is not None:
        batch.upsert("domain", topic.domain)
        batch.upsert("field", topic.field)
        batch.upsert("subfield", topic.subfield)
        batch.upsert("topic", topic.topic)
        batch.upsert_edge("belongs_to", ("field", topic.field), ("domain", topic.domain))
        batch.upsert_edge("belongs_to", ("subfield", topic.subfield), ("field", topic.field))
        batch.upsert_edge("belongs_to", ("topic", topic.topic), ("subfield", topic.subfield))
        batch.upsert_edge("has_topic", paper, ("topic", topic.topic))

    if include_citation_edges:
        for ref_id in record.citations.referenced_works:
            # creates a stub when the cited paper has not been ingested yet
            batch.upsert("paper", ref_id)
            batch.upsert_edge("cites", paper, ("paper", ref_id))


class MergeEngine:
    """Idempotent batched upsert of condensed records into the graph."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def merge(self, batch: Sequence[CondensedRecord], include_citation_edges: bool = True) -> MergeResult:
        """Apply ``batch`` as one atomic unit. Failures are reported, never retried here."""
        if not batch:
            return MergeResult(ok=True, record_count=0)
        try:
            with self.store.batch() as graph_batch:
                for record in batch:
                    write_record(graph_batch, record, include_citation_edges)
        except GraphWriteError as e:
            log.error(
                "merge_batch_failed",
                record_count=len(batch),
                first_id=batch[0].id,
                error=str(e),
            )
            return MergeResult(ok=False, record_count=len(batch), error=str(e))

        log.debug("merge_batch_committed", record_count=len(batch), citations=include_citation_edges)
        return MergeResult(ok=True, record_count=len(batch))

    def _merge_lines(
        self,
        lines: list[str],
        batch_size: int,
        include_citation_edges: bool,
    ) -> tuple[ImportReport, list[str]]:
        """Merge raw JSONL lines; return the report and the lines that must be kept for replay."""
        report = ImportReport(total=len(lines))
        parsed: list[tuple[str, CondensedRecord]] = []
        rejected: list[str] = []
        for line in lines:
            try:
                parsed.append((line, CondensedRecord.model_validate_json(line)))
            except ValidationError as e:
                report.unparseable += 1
                rejected.append(line)
                log.warning("staged_line_unparseable", error=str(e), line=line[:200])

        for start, chunk in enumerate(iter_chunks(parsed, batch_size)):
            result = self.merge([rec for _, rec in chunk], include_citation_edges)
            first = start * batch_size
            if result.ok:
                report.merged += len(chunk)
                log.info("import_batch_merged", first=first, last=first + len(chunk) - 1)
            else:
                report.failed += len(chunk)
                report.failed_batches += 1
                rejected.extend(line for line, _ in chunk)
        return report, rejected

    def import_staged(
        self,
        staging: JsonlLog,
        failed: JsonlLog,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> ImportReport:
        """Drain the staging log into the graph.

        Lines from failed batches (and lines that no longer parse) are appended
        to the failed log before the staging log is truncated.
        """
        lines = staging.read_lines()
        if not lines:
            log.info("import_nothing_staged", path=str(staging.path))
            return ImportReport()

        report, rejected = self._merge_lines(lines, batch_size, include_citation_edges=True)
        if rejected:
            failed.append_lines(rejected)
            log.warning("import_failures_recorded", count=len(rejected), path=str(failed.path))
        staging.truncate()
        log.info(
            "import_completed",
            total=report.total,
            merged=report.merged,
            failed=report.failed,
            unparseable=report.unparseable,
        )
        return report

    def replay_failed(self, failed: JsonlLog, batch_size: int = DEFAULT_BATCH_SIZE) -> ImportReport:
        """Retry the failed log; only lines that fail again stay in it."""
        lines = failed.read_lines()
        if not lines:
            return ImportReport()
        report, rejected = self._merge_lines(lines, batch_size, include_citation_edges=True)
        failed.rewrite(rejected)
        log.info("replay_completed", total=report.total, merged=report.merged, still_failing=len(rejected))
        return report
