# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio, json
from typing import Any, Dict, List, Tuple
import httpx
from relay.completion import Completion, StreamUsage
from relay.errors import KVStoreError
from relay.schemas import SearchHit
from relay.stores.base import BaseKVStore


class MemoryKV(BaseKVStore):
    """Dict-backed store. Values are kept decoded, as the REST store returns them."""
    def __init__(self, data: Dict[str, Any] | None = None, fail_set: bool = False):
        self.data: Dict[str, Any] = dict(data or {})
        self.fail_set = fail_set
        self.calls: List[Tuple] = []

    async def get(self, key: str) -> Any | None:
        self.calls.append(("get", key))
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self.calls.append(("set", key))
        if self.fail_set:
            raise KVStoreError(f"kv set {key!r} failed: 503 unavailable")
        # stored the way the wire would carry it
        self.data[key] = json.loads(json.dumps(value))


def hit(id: str, score: float, **content) -> SearchHit:
    metadata = content.pop("metadata", {})
    return SearchHit(id=id, score=score, content=content, metadata=metadata)


def catalog_hits() -> List[SearchHit]:
    return [
        hit("b", 0.4, Name="Pad B", Description="A softer pad for long sessions",
            URL="/p/b"),
        hit("a", 0.9, Name="Pad A", Description="The classic pad",
            metadata={"Product URL": "/p/a"}),
        hit("c", 0.7, Name="Pad C", Description="Pad C, now with more grip",
            URL="https://shop.example/p/c"),
    ]


class FakeSearch:
    def __init__(self, hits: List[SearchHit] | None = None, error: Exception | None = None):
        self.hits = list(hits or [])
        self.error = error
        self.calls: List[Tuple] = []

    async def search(self, index_name: str, query: str, limit: int,
                     filter: str | None = None) -> List[SearchHit]:
        self.calls.append(("search", index_name, query, limit))
        if self.error is not None:
            raise self.error
        return list(self.hits)

    async def aclose(self) -> None:
        return None


class FakeCompletion:
    """
    Streams the given fragments, then a usage record. ``error_after`` raises
    ``error`` once that many fragments were yielded; when the test sets
    ``gate`` (an asyncio.Event) each fragment waits on it.
    """
    def __init__(self, fragments: List[str] | None = None, tokens: int | None = None,
                 error: Exception | None = None, error_after: int = 0):
        self.fragments = list(fragments if fragments is not None else ["Hello", " world"])
        self.tokens = len(self.fragments) if tokens is None else tokens
        self.error = error
        self.error_after = error_after
        self.gate: asyncio.Event | None = None
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def _record(self, query, system_prompt, hits, model_name, temperature):
        self.calls.append({
            "query": query, "system_prompt": system_prompt,
            "hits": [h.id for h in hits], "model": model_name,
            "temperature": temperature,
        })

    async def generate(self, query, system_prompt, hits, model_name, temperature=None):
        self._record(query, system_prompt, hits, model_name, temperature)
        if self.error is not None:
            raise self.error
        return Completion(text="".join(self.fragments), token_count=self.tokens)

    async def generate_stream(self, query, system_prompt, hits, model_name, temperature=None):
        self._record(query, system_prompt, hits, model_name, temperature)
        try:
            for i, text in enumerate(self.fragments):
                if self.error is not None and i == self.error_after:
                    raise self.error
                yield text
                if self.gate is not None:
                    await self.gate.wait()
            if self.error is not None and self.error_after >= len(self.fragments):
                raise self.error
            yield StreamUsage(completion_tokens=self.tokens)
        except GeneratorExit:
            self.closed = True
            raise

    async def aclose(self) -> None:
        return None


# ---------------- upstream HTTP helpers ----------------

def sse(*payloads: Any) -> bytes:
    """Frame payloads as ``data:`` lines; dicts are JSON-encoded."""
    out = []
    for p in payloads:
        out.append(f"data: {p if isinstance(p, str) else json.dumps(p)}\n\n")
    return "".join(out).encode("utf-8")


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered in the given chunks; optionally hangs afterwards."""
    def __init__(self, chunks: List[bytes], hang: bool = False):
        self.chunks = list(chunks)
        self.hang = hang
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
            await asyncio.sleep(0)
        if self.hang:
            await asyncio.sleep(3600)

    async def aclose(self) -> None:
        self.closed = True


def run(coro):
    return asyncio.run(coro)


async def collect(agen) -> list:
    return [item async for item in agen]
