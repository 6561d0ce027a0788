from collections.abc import Callable
from dataclasses import dataclass, field

from ..core.errors import GraphWriteError
from ..graph.base import GraphStore
from ..utils.log import get_logger

log = get_logger(__name__)

DEFAULT_MIN_CITATION_COUNT = 5
DEFAULT_BATCH_SIZE = 500


@dataclass
class PruneReport:
    deleted_papers: int = 0
    deleted_authors: int = 0
    errors: list[str] = field(default_factory=list)


class Pruner:
    """Bounded-batch removal of low-cited papers and the authors they leave orphaned."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def _delete_in_batches(
        self,
        entity: str,
        delete_batch: Callable[[], int],
        batch_size: int,
        report: PruneReport,
    ) -> int:
        total = 0
        while True:
            try:
                # each call runs in its own session and transaction
                deleted = delete_batch()
            except GraphWriteError as e:
                report.errors.append(f"{entity}: {e}")
                log.error("prune_batch_failed", entity=entity, deleted_so_far=total, error=str(e))
                break
            total += deleted
            if deleted > 0:
                log.info("prune_batch_deleted", entity=entity, deleted=deleted, running_total=total)
            if deleted < batch_size:
                break
        return total

    def prune(
        self,
        min_citation_count: int = DEFAULT_MIN_CITATION_COUNT,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> PruneReport:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        report = PruneReport()
        report.deleted_papers = self._delete_in_batches(
            "paper",
            lambda: self.store.delete_low_cited_papers(min_citation_count, batch_size),
            batch_size,
            report,
        )
        if report.deleted_papers == 0:
            log.info("prune_no_low_cited_papers", min_citation_count=min_citation_count)

        report.deleted_authors = self._delete_in_batches(
            "author",
            lambda: self.store.delete_orphan_authors(batch_size),
            batch_size,
            report,
        )
        log.info(
            "prune_completed",
            deleted_papers=report.deleted_papers,
            deleted_authors=report.deleted_authors,
            errors=len(report.errors),
        )
        return report
