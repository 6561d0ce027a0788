"""Map raw OpenAlex work records onto :class:`CondensedRecord`.

Everything here is pure: no I/O, no logging side effects beyond debug output.
Upstream records vary in shape, so every nested lookup tolerates a missing or
``null`` parent.
"""

import json
from typing import Any

from pydantic import ValidationError

from .errors import InvalidRecordError
from .models import Author, Citations, CondensedRecord, PrimaryTopic, Publication

OPENALEX_ID_PREFIX = "https://openalex.org/"


def bare_id(value: Any) -> str | None:
    """Strip an OpenAlex entity URL down to its bare token (``W123``)."""
    if not isinstance(value, str) or not value:
        return None
    token = value.strip().rstrip("/").split("/")[-1]
    return token or None


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _authors(raw: dict[str, Any]) -> list[Author]:
    authors = []
    for authorship in raw.get("authorships") or []:
        name = _get(authorship, "author", "display_name")
        if not name:
            continue
        affiliations = [
            inst.get("display_name")
            for inst in (authorship.get("institutions") or [])
            if isinstance(inst, dict) and inst.get("display_name")
        ]
        authors.append(Author(name=name, affiliations=affiliations))
    return authors


def _publication(raw: dict[str, Any]) -> Publication:
    return Publication(
        journal=_get(raw, "primary_location", "source", "display_name"),
        volume=_str_or_none(_get(raw, "biblio", "volume")),
        issue=_str_or_none(_get(raw, "biblio", "issue")),
        date=raw.get("publication_date"),
        first_page=_str_or_none(_get(raw, "biblio", "first_page")),
        last_page=_str_or_none(_get(raw, "biblio", "last_page")),
    )


def _primary_topic(raw: dict[str, Any]) -> PrimaryTopic | None:
    topic = raw.get("primary_topic")
    if not isinstance(topic, dict):
        return None
    levels = {
        "topic": topic.get("display_name"),
        "subfield": _get(topic, "subfield", "display_name"),
        "field": _get(topic, "field", "display_name"),
        "domain": _get(topic, "domain", "display_name"),
    }
    # every level is a MERGE key, a partial hierarchy cannot be written
    if not all(levels.values()):
        return None
    return PrimaryTopic(**levels)


def _count(value: Any) -> int:
    """Non-negative citation count; anything unreadable counts as zero."""
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def _full_text_url(raw: dict[str, Any]) -> str | None:
    return _get(raw, "best_oa_location", "url") or _get(raw, "primary_location", "pdf_url") or None


def normalize_work(raw: dict[str, Any]) -> CondensedRecord:
    """Condense one upstream work into the pipeline's record shape.

    Raises:
        InvalidRecordError: if the record has no usable identity or a field
            has a type the record schema cannot hold.
    """
    if not isinstance(raw, dict):
        raise InvalidRecordError(f"expected an object, got {type(raw).__name__}")
    record_id = bare_id(raw.get("id"))
    if record_id is None:
        raise InvalidRecordError("record has no id")

    try:
        return _condense(raw, record_id)
    except (ValidationError, ValueError, TypeError, AttributeError) as e:
        raise InvalidRecordError(f"malformed record {record_id}: {e}") from e


def _condense(raw: dict[str, Any], record_id: str) -> CondensedRecord:
    index = raw.get("abstract_inverted_index")
    return CondensedRecord(
        id=record_id,
        title=raw.get("title") or raw.get("display_name"),
        doi=raw.get("doi"),
        type=raw.get("type"),
        authors=_authors(raw),
        full_text_url=_full_text_url(raw),
        publication=_publication(raw),
        citations=Citations(
            count=_count(raw.get("cited_by_count")),
            referenced_works=[
                ref_id for ref_id in map(bare_id, raw.get("referenced_works") or []) if ref_id
            ],
        ),
        keywords=[
            k.get("display_name")
            for k in (raw.get("keywords") or [])
            if isinstance(k, dict) and k.get("display_name")
        ],
        primary_topic=_primary_topic(raw),
        abstract_inverted_index=json.dumps(index) if index else None,
    )


def is_identity_only(raw: dict[str, Any]) -> bool:
    """True when upstream returned nothing but an id for this work."""
    return bool(raw.get("id")) and not any(
        value not in (None, "", [], {}) for key, value in raw.items() if key != "id"
    )
