"""Statement generation for the Neo4j store; no database needed."""

from unittest.mock import MagicMock

import pytest
from neo4j.exceptions import ServiceUnavailable

from conftest import make_record
from openalex_graph_pipeline.core.errors import GraphStoreError, GraphWriteError
from openalex_graph_pipeline.graph.neo4j_store import SCHEMA_STATEMENTS, Neo4jBatch, Neo4jGraphStore
from openalex_graph_pipeline.pipeline.merge import write_record


def test_batch_groups_rows_by_label_and_shape() -> None:
    batch = Neo4jBatch()
    write_record(batch, make_record("W1", references=["W2", "W3"]), include_citation_edges=True)

    statements = batch.statements()
    queries = [q for q, _ in statements]
    first_edge = next(i for i, q in enumerate(queries) if "MATCH" in q)
    assert all("MATCH" not in q for q in queries[:first_edge])
    assert all("MATCH" in q for q in queries[first_edge:])

    paper_query, paper_params = next((q, p) for q, p in statements if "MERGE (n:paper" in q)
    assert "ON CREATE SET n.is_stub = true" in paper_query
    assert [row["key"] for row in paper_params["rows"]] == ["W1", "W2", "W3"]
    assert paper_params["rows"][1]["attributes"] == {}

    cites_query, cites_params = next((q, p) for q, p in statements if ":cites]" in q)
    assert "MATCH (a:paper {id: row.src})" in cites_query
    assert len(cites_params["rows"]) == 2


def test_non_paper_nodes_merge_on_name() -> None:
    batch = Neo4jBatch()
    batch.upsert("venue", "Nature")
    query, params = batch.statements()[0]
    assert "MERGE (n:venue {name: row.key})" in query
    assert "is_stub" not in query
    assert params == {"rows": [{"key": "Nature", "attributes": {}}]}


def test_unknown_labels_are_refused() -> None:
    batch = Neo4jBatch()
    with pytest.raises(ValueError):
        batch.upsert("paper) DETACH DELETE (x", "W1")


def test_schema_has_constraint_per_label() -> None:
    constraints = [s for s in SCHEMA_STATEMENTS if s.startswith("CREATE CONSTRAINT")]
    assert len(constraints) == 8
    assert any("FOR (n:paper) REQUIRE n.id IS UNIQUE" in s for s in constraints)


def test_driver_errors_become_graph_write_errors() -> None:
    driver = MagicMock()
    session = driver.session.return_value.__enter__.return_value
    session.execute_write.side_effect = ServiceUnavailable("down")
    store = Neo4jGraphStore(driver)

    with pytest.raises(GraphWriteError):
        with store.batch() as batch:
            batch.upsert("venue", "Nature")


def test_empty_batch_skips_the_database() -> None:
    driver = MagicMock()
    with Neo4jGraphStore(driver).batch():
        pass
    driver.session.assert_not_called()


def test_unreachable_database_on_read_is_graph_store_error() -> None:
    driver = MagicMock()
    session = driver.session.return_value.__enter__.return_value
    session.execute_read.side_effect = ServiceUnavailable("down")

    with pytest.raises(GraphStoreError):
        Neo4jGraphStore(driver).stub_paper_ids(10)


def test_schema_failure_is_graph_store_error() -> None:
    driver = MagicMock()
    session = driver.session.return_value.__enter__.return_value
    session.execute_write.side_effect = ServiceUnavailable("down")

    with pytest.raises(GraphStoreError):
        Neo4jGraphStore(driver).ensure_schema()
