from collections.abc import Callable
from typing import Any

import httpx
import pytest

from openalex_graph_pipeline.core.models import CondensedRecord
from openalex_graph_pipeline.core.normalize import normalize_work
from openalex_graph_pipeline.graph.memory import MemoryGraphStore
from openalex_graph_pipeline.upstream.openalex import OpenAlexClient
from openalex_graph_pipeline.utils.http import RateLimiter, get_client


def make_work(
    work_id: str,
    title: str | None = "A Paper",
    journal: str | None = "Journal of Tests",
    authors: list[tuple[str, list[str]]] | None = None,
    references: list[str] | None = None,
    cited_by_count: int = 10,
    topic: bool = True,
    **extra: Any,
) -> dict[str, Any]:
    """Build a raw OpenAlex work in the shape the API returns."""
    authors = authors if authors is not None else [("Ada Lovelace", ["University of London"])]
    work: dict[str, Any] = {
        "id": f"https://openalex.org/{work_id}",
        "title": title,
        "doi": f"https://doi.org/10.1000/{work_id.lower()}",
        "type": "article",
        "publication_date": "2024-03-01",
        "cited_by_count": cited_by_count,
        "authorships": [
            {
                "author": {"display_name": name},
                "institutions": [{"display_name": inst} for inst in insts],
            }
            for name, insts in authors
        ],
        "primary_location": {"source": {"display_name": journal}} if journal else None,
        "biblio": {"volume": "12", "issue": "3", "first_page": "1", "last_page": "9"},
        "referenced_works": [f"https://openalex.org/{r}" for r in references or []],
        "keywords": [{"display_name": "graphs"}, {"display_name": "citations"}],
        "primary_topic": (
            {
                "display_name": "Citation Analysis",
                "subfield": {"display_name": "Information Systems"},
                "field": {"display_name": "Computer Science"},
                "domain": {"display_name": "Physical Sciences"},
            }
            if topic
            else None
        ),
        "abstract_inverted_index": {"Graphs": [0], "matter": [1]},
    }
    work.update(extra)
    return work


def make_record(work_id: str, **kwargs: Any) -> CondensedRecord:
    return normalize_work(make_work(work_id, **kwargs))


@pytest.fixture
def store() -> MemoryGraphStore:
    return MemoryGraphStore()


@pytest.fixture
def openalex_factory() -> Callable[[Callable[[httpx.Request], httpx.Response]], OpenAlexClient]:
    """Build an OpenAlexClient whose HTTP traffic goes to ``handler``."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> OpenAlexClient:
        http = get_client(email="dev@example.org", transport=httpx.MockTransport(handler))
        return OpenAlexClient(
            http,
            mailto="dev@example.org",
            rate_limiter=RateLimiter(calls_per_second=1000.0),
            base_url="https://api.test",
        )

    return factory


def works_response(results: list[dict[str, Any]], next_cursor: str | None = None) -> httpx.Response:
    return httpx.Response(200, json={"meta": {"next_cursor": next_cursor}, "results": results})
