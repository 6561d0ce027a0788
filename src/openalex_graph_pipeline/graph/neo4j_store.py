"""Neo4j implementation of :class:`GraphStore`.

The driver is created by the caller and handed in; every batch, lookup and
delete opens its own short-lived session so no transaction idles long enough
to hit the server-side timeout.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from neo4j import Driver, GraphDatabase, ManagedTransaction, Session
from neo4j.exceptions import DriverError, Neo4jError

from ..core.errors import GraphStoreError, GraphWriteError
from ..utils.log import get_logger
from .base import NODE_KEYS, GraphBatch, GraphStore, NodeRef, check_node_type, check_rel_type

log = get_logger(__name__)

Statement = tuple[str, dict[str, Any]]


def _node_query(node_type: str) -> str:
    key = NODE_KEYS[node_type]
    query = f"UNWIND $rows AS row MERGE (n:{node_type} {{{key}: row.key}}) "
    if node_type == "paper":
        # a paper first seen as a citation target has no metadata yet
        query += "ON CREATE SET n.is_stub = true "
    return query + "SET n += row.attributes"


def _edge_query(rel_type: str, src_type: str, dst_type: str) -> str:
    return (
        "UNWIND $rows AS row "
        f"MATCH (a:{src_type} {{{NODE_KEYS[src_type]}: row.src}}) "
        f"MATCH (b:{dst_type} {{{NODE_KEYS[dst_type]}: row.dst}}) "
        f"MERGE (a)-[r:{rel_type}]->(b) "
        "SET r += row.attributes"
    )


class Neo4jBatch(GraphBatch):
    """Buffers upserts and turns them into one UNWIND statement per node label / edge shape."""

    def __init__(self) -> None:
        self._nodes: dict[str, list[dict[str, Any]]] = {}
        self._edges: dict[tuple[str, str, str], list[dict[str, Any]]] = {}

    def upsert(self, node_type: str, key: str, attributes: dict[str, Any] | None = None) -> None:
        rows = self._nodes.setdefault(check_node_type(node_type), [])
        rows.append({"key": key, "attributes": attributes or {}})

    def upsert_edge(
        self,
        rel_type: str,
        src: NodeRef,
        dst: NodeRef,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        shape = (check_rel_type(rel_type), check_node_type(src[0]), check_node_type(dst[0]))
        self._edges.setdefault(shape, []).append(
            {"src": src[1], "dst": dst[1], "attributes": attributes or {}}
        )

    def statements(self) -> list[Statement]:
        """Node statements first so every edge finds both endpoints."""
        stmts = [(_node_query(t), {"rows": rows}) for t, rows in self._nodes.items()]
        stmts += [(_edge_query(*shape), {"rows": rows}) for shape, rows in self._edges.items()]
        return stmts


def _run_statements(tx: ManagedTransaction, statements: list[Statement]) -> None:
    for query, params in statements:
        tx.run(query, params).consume()


def _single_count(tx: ManagedTransaction, query: str, params: dict[str, Any]) -> int:
    record = tx.run(query, params).single()
    return int(record["deleted"]) if record else 0


SCHEMA_STATEMENTS = [
    *(
        f"CREATE CONSTRAINT {node_type}_{key}_unique IF NOT EXISTS "
        f"FOR (n:{node_type}) REQUIRE n.{key} IS UNIQUE"
        for node_type, key in NODE_KEYS.items()
    ),
    "CREATE INDEX paper_is_stub IF NOT EXISTS FOR (n:paper) ON (n.is_stub)",
    "CREATE INDEX paper_cited_by_count IF NOT EXISTS FOR (n:paper) ON (n.cited_by_count)",
]


class Neo4jGraphStore(GraphStore):
    def __init__(self, driver: Driver, database: str | None = None) -> None:
        self.driver = driver
        self.database = database

    @classmethod
    def connect(cls, uri: str, user: str, password: str, database: str | None = None) -> "Neo4jGraphStore":
        driver = GraphDatabase.driver(uri, auth=(user, password))
        log.info("neo4j_driver_created", uri=uri, database=database)
        return cls(driver, database=database)

    def _session(self) -> Session:
        return self.driver.session(database=self.database)

    @contextmanager
    def batch(self) -> Iterator[GraphBatch]:
        pending = Neo4jBatch()
        yield pending
        statements = pending.statements()
        if not statements:
            return
        try:
            with self._session() as session:
                session.execute_write(_run_statements, statements)
        except (Neo4jError, DriverError) as e:
            raise GraphWriteError(f"Neo4j batch write failed: {e}") from e

    def ensure_schema(self) -> None:
        try:
            with self._session() as session:
                for stmt in SCHEMA_STATEMENTS:
                    session.execute_write(lambda tx, q=stmt: tx.run(q).consume())
        except (Neo4jError, DriverError) as e:
            raise GraphStoreError(f"Neo4j schema setup failed: {e}") from e
        log.info("neo4j_schema_ensured", statements=len(SCHEMA_STATEMENTS))

    def stub_paper_ids(self, limit: int) -> list[str]:
        def _read(tx: ManagedTransaction) -> list[str]:
            result = tx.run(
                "MATCH (p:paper) WHERE p.is_stub = true RETURN p.id AS id LIMIT toInteger($limit)",
                {"limit": limit},
            )
            return [record["id"] for record in result]

        try:
            with self._session() as session:
                return session.execute_read(_read)
        except (Neo4jError, DriverError) as e:
            raise GraphStoreError(f"Neo4j stub lookup failed: {e}") from e

    def _delete(self, query: str, params: dict[str, Any]) -> int:
        try:
            with self._session() as session:
                return session.execute_write(_single_count, query, params)
        except (Neo4jError, DriverError) as e:
            raise GraphWriteError(f"Neo4j delete failed: {e}") from e

    def delete_stub_papers(self, ids: list[str]) -> int:
        if not ids:
            return 0
        return self._delete(
            """
            MATCH (p:paper)
            WHERE p.id IN $ids AND p.is_stub = true
            DETACH DELETE p
            RETURN count(p) AS deleted
            """,
            {"ids": ids},
        )

    def delete_low_cited_papers(self, min_count: int, limit: int) -> int:
        return self._delete(
            """
            MATCH (p:paper)
            WHERE p.cited_by_count < $min_count
            WITH p
            LIMIT toInteger($limit)
            DETACH DELETE p
            RETURN count(p) AS deleted
            """,
            {"min_count": min_count, "limit": limit},
        )

    def delete_orphan_authors(self, limit: int) -> int:
        return self._delete(
            """
            MATCH (a:author)
            WHERE NOT EXISTS { (:paper)-[:has_author]->(a) }
            WITH a
            LIMIT toInteger($limit)
            DETACH DELETE a
            RETURN count(a) AS deleted
            """,
            {"limit": limit},
        )

    def close(self) -> None:
        self.driver.close()
        log.debug("neo4j_driver_closed")
