from dataclasses import dataclass, field
from datetime import date
from typing import Any

import httpx

from ..core.errors import UpstreamError
from ..utils.http import RateLimiter, get_with_retry
from ..utils.log import get_logger

log = get_logger(__name__)

OPENALEX_BASE_URL = "https://api.openalex.org"
MAX_PAGE_SIZE = 200
# OpenAlex caps an OR-filter at 100 values
MAX_IDS_PER_FILTER = 100


@dataclass
class WorksPage:
    """One page of ``/works`` results plus the cursor for the next page (None when exhausted)."""

    results: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


class OpenAlexClient:
    """Cursor-paginated access to the OpenAlex works endpoint.

    Every request waits on the injected rate limiter first; transient failures
    are retried by :func:`get_with_retry`; anything still unsuccessful surfaces
    as :class:`UpstreamError`.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        mailto: str,
        rate_limiter: RateLimiter | None = None,
        base_url: str = OPENALEX_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        self.client = client
        self.mailto = mailto
        self.rate_limiter = rate_limiter or RateLimiter(calls_per_second=10.0)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def fetch_works_page(
        self,
        filter_expr: str,
        per_page: int,
        cursor: str | None = None,
        sort: str | None = None,
    ) -> WorksPage:
        """Fetch one page of works matching ``filter_expr``."""
        url = f"{self.base_url}/works"
        params: dict[str, Any] = {
            "filter": filter_expr,
            "per-page": min(per_page, MAX_PAGE_SIZE),
            "mailto": self.mailto,
            "cursor": cursor or "*",
        }
        if sort:
            params["sort"] = sort

        await self.rate_limiter.acquire()
        try:
            resp = await get_with_retry(url, params=params, timeout=self.timeout, client=self.client)
        except httpx.HTTPError as e:
            log.error("openalex_http_error", filter=filter_expr, error=str(e))
            status = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
            raise UpstreamError(f"OpenAlex request failed: {e}", status_code=status, url=url) from e

        if resp.status_code != 200:
            log.warning("openalex_non_200", filter=filter_expr, status=resp.status_code)
            raise UpstreamError(
                f"OpenAlex returned HTTP {resp.status_code}", status_code=resp.status_code, url=url
            )

        try:
            data = resp.json()
        except ValueError as je:
            log.error("openalex_json_parse_error", filter=filter_expr, error=str(je))
            raise UpstreamError("OpenAlex returned invalid JSON", status_code=200, url=url) from je

        results = data.get("results") or []
        next_cursor = (data.get("meta") or {}).get("next_cursor") or None
        log.debug(
            "openalex_page_fetched",
            filter=filter_expr,
            result_count=len(results),
            has_next=next_cursor is not None,
        )
        return WorksPage(results=results, next_cursor=next_cursor)

    async def fetch_concept_window(
        self,
        concept_id: str,
        from_date: date,
        to_date: date,
        per_page: int,
        cursor: str | None = None,
    ) -> WorksPage:
        """One page of a concept's works published within ``[from_date, to_date]``."""
        filter_expr = (
            f"concepts.id:{concept_id},"
            f"from_publication_date:{from_date.isoformat()},"
            f"to_publication_date:{to_date.isoformat()}"
        )
        return await self.fetch_works_page(
            filter_expr, per_page, cursor=cursor, sort="publication_date:asc"
        )

    async def fetch_by_ids(self, ids: list[str]) -> list[dict[str, Any]]:
        """Look up works by bare id, following cursors until every id is accounted for."""
        if len(ids) > MAX_IDS_PER_FILTER:
            raise ValueError(f"at most {MAX_IDS_PER_FILTER} ids per lookup, got {len(ids)}")
        filter_expr = "openalex:" + "|".join(ids)
        results: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            page = await self.fetch_works_page(filter_expr, per_page=len(ids), cursor=cursor)
            results.extend(page.results)
            cursor = page.next_cursor
            if cursor is None or not page.results or len(results) >= len(ids):
                break
        return results
