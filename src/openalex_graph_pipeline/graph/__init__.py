"""
Graph persistence for the ingestion pipeline.

Stages talk to a :class:`GraphStore` and address nodes only by natural key
(paper id, or name for every other entity):
- Neo4jGraphStore writes through the official driver, one session per batch
- MemoryGraphStore keeps the graph in dictionaries for dry runs and tests
"""

from .base import NODE_KEYS, REL_TYPES, GraphBatch, GraphStore
from .memory import MemoryGraphStore
from .neo4j_store import Neo4jGraphStore

__all__ = [
    "NODE_KEYS",
    "REL_TYPES",
    "GraphBatch",
    "GraphStore",
    "MemoryGraphStore",
    "Neo4jGraphStore",
]
