from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager
from typing import Any

# node type -> natural key property
NODE_KEYS: dict[str, str] = {
    "paper": "id",
    "author": "name",
    "venue": "name",
    "institution": "name",
    "domain": "name",
    "field": "name",
    "subfield": "name",
    "topic": "name",
}

REL_TYPES = frozenset(
    {"has_author", "affiliated_with", "published_in", "has_topic", "belongs_to", "cites"}
)

NodeRef = tuple[str, str]  # (node type, natural key)


def check_node_type(node_type: str) -> str:
    if node_type not in NODE_KEYS:
        raise ValueError(f"Unknown node type: {node_type!r}")
    return node_type


def check_rel_type(rel_type: str) -> str:
    if rel_type not in REL_TYPES:
        raise ValueError(f"Unknown relationship type: {rel_type!r}")
    return rel_type


class GraphBatch(ABC):
    """Write buffer for one atomic batch.

    Nodes and edges are addressed only by natural key. Upserting a node with
    ``attributes=None`` creates it bare if missing and leaves an existing node
    untouched; an attributes mapping overwrites those properties (a ``None``
    value removes the property).
    """

    @abstractmethod
    def upsert(self, node_type: str, key: str, attributes: dict[str, Any] | None = None) -> None: ...

    @abstractmethod
    def upsert_edge(
        self,
        rel_type: str,
        src: NodeRef,
        dst: NodeRef,
        attributes: dict[str, Any] | None = None,
    ) -> None: ...


class GraphStore(ABC):
    """Graph persistence used by the merge, reconcile and prune stages."""

    @abstractmethod
    def batch(self) -> AbstractContextManager[GraphBatch]:
        """Open a batch; its writes commit together on clean exit and not at all on error."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create uniqueness constraints on every natural key."""

    @abstractmethod
    def stub_paper_ids(self, limit: int) -> list[str]: ...

    @abstractmethod
    def delete_stub_papers(self, ids: list[str]) -> int:
        """Detach-delete the given papers that are still stubs; return the count deleted."""

    @abstractmethod
    def delete_low_cited_papers(self, min_count: int, limit: int) -> int: ...

    @abstractmethod
    def delete_orphan_authors(self, limit: int) -> int: ...

    @abstractmethod
    def close(self) -> None: ...

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def iter_chunks(items: list[Any], size: int) -> Iterator[list[Any]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for i in range(0, len(items), size):
        yield items[i : i + size]
