# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""Projection of search hits into citation records. No I/O."""

from __future__ import annotations
from typing import Any, List, Mapping
from relay.schemas import SearchHit, SourceRecord

DESCRIPTION_LIMIT = 150
ELLIPSIS = "..."
NO_DESCRIPTION = "No description available"

TITLE_FIELDS = ("Name", "Title", "Product")
URL_METADATA_FIELDS = ("Product URL",)
URL_CONTENT_FIELDS = ("URL", "url")


def first_non_empty(fields: Mapping[str, Any], *names: str) -> str | None:
    for name in names:
        value = fields.get(name)
        if value is None:
            continue
        text = value if isinstance(value, str) else str(value)
        if text.strip():
            return text
    return None


def resolve_url(value: str, base_origin: str) -> str:
    """Site-relative paths get the base origin; anything else is returned as is."""
    if value.startswith("/"):
        return base_origin.rstrip("/") + value
    return value


def truncate(text: str, limit: int = DESCRIPTION_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


def _description(content: Mapping[str, Any]) -> str:
    desc = first_non_empty(content, "Description")
    if desc is None:
        desc = next((v for v in content.values()
                     if isinstance(v, str) and len(v) > 20), None)
    return truncate(desc) if desc else NO_DESCRIPTION


def _url(hit: SearchHit, base_origin: str) -> str:
    url = first_non_empty(hit.metadata, *URL_METADATA_FIELDS) \
        or first_non_empty(hit.content, *URL_CONTENT_FIELDS)
    return resolve_url(url.strip(), base_origin) if url else ""


def to_sources(hits: List[SearchHit], base_origin: str = "") -> List[SourceRecord]:
    return [
        SourceRecord(
            id=hit.id,
            title=first_non_empty(hit.content, *TITLE_FIELDS) or f"Source {n}",
            description=_description(hit.content),
            url=_url(hit, base_origin),
            score=hit.score,
            metadata=dict(hit.metadata),
        )
        for n, hit in enumerate(hits, start=1)
    ]
