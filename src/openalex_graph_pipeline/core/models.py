import json
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Author(BaseModel):
    # Display name is the author identity key in the graph
    name: str
    affiliations: list[str] = Field(default_factory=list)

    @field_validator("affiliations")
    @classmethod
    def _dedupe_affiliations(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(a for a in value if a))


class Publication(BaseModel):
    journal: str | None = None
    volume: str | None = None
    issue: str | None = None
    date: str | None = None
    first_page: str | None = None
    last_page: str | None = None


class Citations(BaseModel):
    count: int = Field(default=0, ge=0)
    referenced_works: list[str] = Field(default_factory=list)


class PrimaryTopic(BaseModel):
    domain: str
    field: str
    subfield: str
    topic: str


class CondensedRecord(BaseModel):
    """Normalized unit moving from the crawler through the staging log into the graph."""

    id: str
    title: str | None = None
    doi: str | None = None
    type: str | None = None
    authors: list[Author] = Field(default_factory=list)
    full_text_url: str | None = None
    publication: Publication | None = None
    citations: Citations = Field(default_factory=Citations)
    keywords: list[str] = Field(default_factory=list)
    primary_topic: PrimaryTopic | None = None
    abstract_inverted_index: str | None = None  # JSON text: word -> [positions]

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("id must not be empty")
        return value

    @property
    def is_stub(self) -> bool:
        """A paper without title and type carries no descriptive metadata."""
        return self.title is None and self.type is None

    def paper_attributes(self) -> dict[str, Any]:
        """Scalar attributes written on the ``paper`` node."""
        return {
            "doi": self.doi,
            "title": self.title,
            "type": self.type,
            "cited_by_count": self.citations.count,
            "is_open_access": self.full_text_url is not None,
            "full_source": self.full_text_url,
            "keywords": ", ".join(self.keywords),
            "abstract_inverted_index": self.abstract_inverted_index,
            "is_stub": self.is_stub,
        }

    def abstract(self) -> str | None:
        """Rebuild the plain-text abstract from the positional index."""
        if not self.abstract_inverted_index:
            return None
        try:
            idx: dict[str, list[int]] = json.loads(self.abstract_inverted_index)
            max_pos = max(max(v) for v in idx.values() if v)
        except (ValueError, TypeError, AttributeError):
            return None
        words: list[str | None] = [None] * (max_pos + 1)
        for word, positions in idx.items():
            for pos in positions:
                words[pos] = word
        return " ".join(w for w in words if w is not None)
