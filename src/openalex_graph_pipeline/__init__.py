"""Incremental OpenAlex to Neo4j ingestion pipeline."""

__version__ = "0.1.0"
