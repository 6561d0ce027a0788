"""Dictionary-backed :class:`GraphStore` used for ``--dry-run`` and in tests.

It follows the same write semantics as the Neo4j store: natural-key upserts,
``is_stub`` set on paper creation, whole-batch commit or nothing.
"""

import copy
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from ..core.errors import GraphWriteError
from ..utils.log import get_logger
from .base import GraphBatch, GraphStore, NodeRef, check_node_type, check_rel_type

log = get_logger(__name__)

EdgeKey = tuple[str, NodeRef, NodeRef]


class _MemoryBatch(GraphBatch):
    def __init__(self) -> None:
        self.node_ops: list[tuple[NodeRef, dict[str, Any] | None]] = []
        self.edge_ops: list[tuple[EdgeKey, dict[str, Any] | None]] = []

    def upsert(self, node_type: str, key: str, attributes: dict[str, Any] | None = None) -> None:
        self.node_ops.append(((check_node_type(node_type), key), attributes))

    def upsert_edge(
        self,
        rel_type: str,
        src: NodeRef,
        dst: NodeRef,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self.edge_ops.append(((check_rel_type(rel_type), src, dst), attributes))


def _set_properties(target: dict[str, Any], attributes: dict[str, Any] | None) -> None:
    for name, value in (attributes or {}).items():
        if value is None:
            target.pop(name, None)
        else:
            target[name] = value


class MemoryGraphStore(GraphStore):
    def __init__(self) -> None:
        self.nodes: dict[NodeRef, dict[str, Any]] = {}
        self.edges: dict[EdgeKey, dict[str, Any]] = {}
        self.committed_batches = 0

    @contextmanager
    def batch(self) -> Iterator[GraphBatch]:
        pending = _MemoryBatch()
        yield pending
        self._commit(pending)

    def _commit(self, pending: _MemoryBatch) -> None:
        nodes = copy.deepcopy(self.nodes)
        edges = copy.deepcopy(self.edges)
        for ref, attributes in pending.node_ops:
            if ref not in nodes:
                nodes[ref] = {"is_stub": True} if ref[0] == "paper" else {}
            _set_properties(nodes[ref], attributes)
        for edge, attributes in pending.edge_ops:
            _, src, dst = edge
            if src not in nodes or dst not in nodes:
                raise GraphWriteError(f"edge endpoint missing for {edge}")
            _set_properties(edges.setdefault(edge, {}), attributes)
        # swap in only once every op applied
        self.nodes, self.edges = nodes, edges
        self.committed_batches += 1

    def ensure_schema(self) -> None:
        log.debug("memory_store_schema_noop")

    def stub_paper_ids(self, limit: int) -> list[str]:
        ids = [
            key
            for (node_type, key), props in self.nodes.items()
            if node_type == "paper" and props.get("is_stub")
        ]
        return ids[:limit]

    def _detach_delete(self, refs: list[NodeRef]) -> int:
        doomed = set(refs)
        for ref in doomed:
            del self.nodes[ref]
        self.edges = {
            edge: props
            for edge, props in self.edges.items()
            if edge[1] not in doomed and edge[2] not in doomed
        }
        return len(doomed)

    def delete_stub_papers(self, ids: list[str]) -> int:
        refs = [("paper", i) for i in dict.fromkeys(ids) if self.nodes.get(("paper", i), {}).get("is_stub")]
        return self._detach_delete(refs)

    def delete_low_cited_papers(self, min_count: int, limit: int) -> int:
        refs = [
            ref
            for ref, props in self.nodes.items()
            if ref[0] == "paper"
            and props.get("cited_by_count") is not None
            and props["cited_by_count"] < min_count
        ]
        return self._detach_delete(refs[:limit])

    def delete_orphan_authors(self, limit: int) -> int:
        authored = {edge[2] for edge in self.edges if edge[0] == "has_author"}
        refs = [ref for ref in self.nodes if ref[0] == "author" and ref not in authored]
        return self._detach_delete(refs[:limit])

    def close(self) -> None:
        pass

    # inspection helpers

    def node(self, node_type: str, key: str) -> dict[str, Any] | None:
        return self.nodes.get((node_type, key))

    def count(self, node_type: str) -> int:
        return sum(1 for ref in self.nodes if ref[0] == node_type)

    def edges_of(self, rel_type: str) -> dict[tuple[NodeRef, NodeRef], dict[str, Any]]:
        return {(src, dst): props for (rel, src, dst), props in self.edges.items() if rel == rel_type}
