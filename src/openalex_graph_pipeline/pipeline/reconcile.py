from dataclasses import dataclass

from ..core.errors import GraphWriteError, InvalidRecordError, UpstreamError
from ..core.models import CondensedRecord
from ..core.normalize import bare_id, is_identity_only, normalize_work
from ..core.staging import JsonlLog
from ..graph.base import GraphStore, iter_chunks
from ..upstream.openalex import MAX_IDS_PER_FILTER, OpenAlexClient
from ..utils.log import get_logger
from .merge import MergeEngine

log = get_logger(__name__)

DEFAULT_MAX_STUBS = 1000


@dataclass
class ReconcileReport:
    found: int = 0
    filled: int = 0
    deleted: int = 0
    failed_batches: int = 0
    stopped_early: bool = False

    @property
    def no_work(self) -> bool:
        return self.found == 0


class StubReconciler:
    """Fill stub papers from upstream metadata or delete the ones that cannot be resolved."""

    def __init__(
        self,
        store: GraphStore,
        client: OpenAlexClient,
        merge_engine: MergeEngine | None = None,
        failed_log: JsonlLog | None = None,
        lookup_batch_size: int = MAX_IDS_PER_FILTER,
    ) -> None:
        if not 1 <= lookup_batch_size <= MAX_IDS_PER_FILTER:
            raise ValueError(f"lookup_batch_size must be between 1 and {MAX_IDS_PER_FILTER}")
        self.store = store
        self.client = client
        self.merge_engine = merge_engine or MergeEngine(store)
        self.failed_log = failed_log
        self.lookup_batch_size = lookup_batch_size

    async def reconcile(self, max_stubs: int = DEFAULT_MAX_STUBS) -> ReconcileReport:
        report = ReconcileReport()
        ids = self.store.stub_paper_ids(max_stubs)
        report.found = len(ids)
        log.info("stubs_found", count=len(ids), max_stubs=max_stubs)
        if not ids:
            return report

        for batch in iter_chunks(ids, self.lookup_batch_size):
            try:
                results = await self.client.fetch_by_ids(batch)
            except UpstreamError as e:
                # transient: leave these stubs for the next pass
                report.failed_batches += 1
                log.error("stub_lookup_failed", batch_size=len(batch), status=e.status_code, error=str(e))
                continue

            usable = self._reconcile_batch(batch, results, report)
            if usable == 0:
                log.warning("stub_batch_unresolvable", ids=batch)
                report.stopped_early = True
                break

        log.info(
            "reconcile_completed",
            found=report.found,
            filled=report.filled,
            deleted=report.deleted,
            failed_batches=report.failed_batches,
            stopped_early=report.stopped_early,
        )
        return report

    def _reconcile_batch(self, requested: list[str], results: list[dict], report: ReconcileReport) -> int:
        """Route one lookup batch's results; return how many carried real metadata."""
        returned = {bare_id(r.get("id")) for r in results if isinstance(r, dict)}
        # ids that changed upstream never resolve again
        doomed = [i for i in requested if i not in returned]
        records: list[CondensedRecord] = []
        for raw in results:
            if not isinstance(raw, dict):
                continue
            result_id = bare_id(raw.get("id"))
            if result_id and is_identity_only(raw):
                doomed.append(result_id)
                continue
            try:
                record = normalize_work(raw)
            except InvalidRecordError as e:
                log.warning("stub_result_rejected", error=str(e))
                continue
            if record.is_stub:
                # merging it would leave a stub that gets selected again next pass
                doomed.append(record.id)
            else:
                records.append(record)

        if doomed:
            try:
                deleted = self.store.delete_stub_papers(doomed)
            except GraphWriteError as e:
                report.failed_batches += 1
                log.error("stub_delete_failed", count=len(doomed), error=str(e))
            else:
                report.deleted += deleted
                log.info("stubs_deleted", requested=len(doomed), deleted=deleted)

        if records:
            result = self.merge_engine.merge(records, include_citation_edges=False)
            if result.ok:
                report.filled += len(records)
                log.info("stubs_filled", count=len(records))
            else:
                report.failed_batches += 1
                if self.failed_log is not None:
                    self.failed_log.append(records)
        return len(records)
