"""Persisted per-concept crawl frontiers and in-flight pagination cursors.

The state document is small JSON, read once at the start of a crawl and
replaced atomically (temp file + rename) when the crawl ends, so a crash can
never leave a half-written document behind.
"""

import json
import os
import tempfile
from datetime import date
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

from ..utils.log import get_logger
from .errors import ConfigError

log = get_logger(__name__)


class Frontier(BaseModel):
    earliest_fetched_date: date
    latest_fetched_date: date

    @model_validator(mode="after")
    def _ordered(self) -> "Frontier":
        if self.earliest_fetched_date > self.latest_fetched_date:
            raise ValueError("earliest_fetched_date is after latest_fetched_date")
        return self


class CrawlState(BaseModel):
    """Crawl configuration and progress for every concept.

    ``earliest_fetched_date``/``latest_fetched_date`` seed the frontier of a
    concept crawled for the first time; after that each concept advances
    independently in ``frontiers``.
    """

    concepts: dict[str, str]  # display name -> OpenAlex concept id
    start_date: date
    earliest_fetched_date: date
    latest_fetched_date: date
    page_size: int = Field(default=200, ge=1, le=200)
    date_delta: int = Field(default=1, ge=1)
    frontiers: dict[str, Frontier] = Field(default_factory=dict)
    cursors: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_bounds(self) -> "CrawlState":
        if not self.start_date <= self.earliest_fetched_date <= self.latest_fetched_date:
            raise ValueError("expected start_date <= earliest_fetched_date <= latest_fetched_date")
        for concept_id, frontier in self.frontiers.items():
            if frontier.earliest_fetched_date < self.start_date:
                raise ValueError(f"frontier of {concept_id} reaches before start_date")
        return self

    def frontier(self, concept_id: str) -> Frontier:
        """Return (creating from the seed dates if needed) the frontier of a concept."""
        if concept_id not in self.frontiers:
            self.frontiers[concept_id] = Frontier(
                earliest_fetched_date=self.earliest_fetched_date,
                latest_fetched_date=self.latest_fetched_date,
            )
        return self.frontiers[concept_id]

    @staticmethod
    def cursor_key(concept_id: str, window_start: date) -> str:
        return f"{concept_id}_{window_start.isoformat()}"

    def get_cursor(self, concept_id: str, window_start: date) -> str | None:
        return self.cursors.get(self.cursor_key(concept_id, window_start))

    def set_cursor(self, concept_id: str, window_start: date, cursor: str) -> None:
        self.cursors[self.cursor_key(concept_id, window_start)] = cursor

    def drop_cursor(self, concept_id: str, window_start: date) -> None:
        self.cursors.pop(self.cursor_key(concept_id, window_start), None)


def load_crawl_state(path: Path) -> CrawlState:
    """Read and validate the crawl state document.

    Raises:
        ConfigError: if the file is missing, not JSON, or violates the date invariants.
    """
    if not path.exists():
        raise ConfigError(f"Crawl state file not found: {path}")
    try:
        state = CrawlState.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        raise ConfigError(f"Invalid crawl state in {path}: {e}") from e
    log.debug(
        "crawl_state_loaded",
        path=str(path),
        concepts=len(state.concepts),
        open_cursors=len(state.cursors),
    )
    return state


def save_crawl_state(state: CrawlState, path: Path) -> None:
    """Atomically replace the crawl state document."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(state.model_dump(mode="json"), indent=4)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    log.debug("crawl_state_saved", path=str(path), open_cursors=len(state.cursors))
