# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations
from typing import Any, Dict, List
from urllib.parse import quote
import httpx
from relay.errors import UpstreamSearchError
from relay.log import get_logger
from relay.metrics import inc as m_inc
from relay.schemas import SearchHit

log = get_logger("search")


def _normalize_hit(raw: Dict[str, Any], index: int) -> SearchHit:
    content = raw.get("data", raw.get("content"))
    if content is None:
        content = {}
    elif not isinstance(content, dict):
        content = {"content": content}
    metadata = raw.get("metadata")
    return SearchHit(
        id=str(raw.get("id") or f"result-{index}"),
        content=content,
        metadata=metadata if isinstance(metadata, dict) else {},
        score=float(raw.get("score") or 0.0),
    )


def rank_hits(hits: List[SearchHit], limit: int | None = None) -> List[SearchHit]:
    """Descending score; equal scores keep upstream order (sorted() is stable)."""
    ranked = sorted(hits, key=lambda h: h.score, reverse=True)
    return ranked if limit is None else ranked[:limit]


class SearchClient:
    """Ranked lookups against an external search index over HTTP."""

    def __init__(self, url: str, token: str, *, timeout_s: float = 15.0,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.url = url.rstrip("/")
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout_s,
            transport=transport,
        )

    async def search(self, index_name: str, query: str, limit: int,
                     filter: str | None = None) -> List[SearchHit]:
        body: Dict[str, Any] = {"query": query, "limit": limit}
        if filter:
            body["filter"] = filter
        m_inc("search_total")
        url = f"{self.url}/search/{quote(index_name, safe='')}"
        try:
            r = await self._client.post(url, json=body)
        except httpx.HTTPError as e:
            raise UpstreamSearchError(
                f"search in index {index_name!r} failed: {e.__class__.__name__}: {e}") from e
        if r.is_error:
            raise UpstreamSearchError(
                f"search in index {index_name!r} failed: {r.status_code} {r.text}",
                status_code=r.status_code)
        try:
            data = r.json()
            raw_hits = data.get("hits") or []
            hits = [_normalize_hit(h, i) for i, h in enumerate(raw_hits)]
        except (ValueError, AttributeError, TypeError) as e:
            raise UpstreamSearchError(
                f"search in index {index_name!r} returned a malformed body: {e}") from e
        log.debug(f"search {index_name!r} q={query!r} limit={limit}: {len(hits)} hits")
        return hits

    async def aclose(self) -> None:
        await self._client.aclose()
