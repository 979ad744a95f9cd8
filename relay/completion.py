# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations
import json
from contextlib import AsyncExitStack, aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List
import httpx
from openai import AsyncOpenAI, APIError, APIStatusError
from relay.errors import UpstreamCompletionError
from relay.log import get_logger
from relay.metrics import inc as m_inc
from relay.schemas import SearchHit
from relay.sources import resolve_url
from relay.sse import DONE_SENTINEL, LineDecoder, data_payloads

log = get_logger("completion")

USER_TEMPLATE = (
    "Question: {query}\n\n"
    "Relevant content from the website:\n{context}\n\n"
    "Please provide a comprehensive answer based on this information."
)
BLOCK_SEPARATOR = "\n\n---\n\n"
URL_FIELD_MARKERS = ("url", "link", "href")
DEFAULT_TEMPERATURE = 0.7


@dataclass
class Completion:
    text: str
    token_count: int


@dataclass
class StreamUsage:
    completion_tokens: int = 0
    prompt_tokens: int = 0


# ----------------- context assembly -----------------

def _is_url_field(key: str, value: str) -> bool:
    k = key.lower()
    return any(m in k for m in URL_FIELD_MARKERS) or value.startswith(("http://", "https://"))


def _render_value(key: str, value: Any, base_origin: str) -> str:
    if isinstance(value, str):
        return resolve_url(value.strip(), base_origin) if _is_url_field(key, value) else value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return "" if value is None else str(value)


def render_hit(n: int, hit: SearchHit, base_origin: str = "") -> str:
    lines = [f"Source {n}:"]
    lines += [f"{k}: {_render_value(k, v, base_origin)}" for k, v in hit.content.items()]
    meta = [(k, v) for k, v in hit.metadata.items() if v is not None and v != ""]
    if meta:
        lines.append("Metadata:")
        lines += [f"{k}: {_render_value(k, v, base_origin)}" for k, v in meta]
    return "\n".join(lines)


def build_context(hits: List[SearchHit], base_origin: str = "") -> str:
    """Every field of every hit, numbered in the order given. No truncation."""
    return BLOCK_SEPARATOR.join(
        render_hit(n, hit, base_origin) for n, hit in enumerate(hits, start=1))


def build_messages(query: str, system_prompt: str, hits: List[SearchHit],
                   base_origin: str = "") -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": USER_TEMPLATE.format(
            query=query, context=build_context(hits, base_origin))},
    ]


# ----------------- model families -----------------

def _prefixed(*prefixes: str) -> Callable[[str], bool]:
    return lambda model: model.lower().startswith(prefixes)


def _completion_tokens_shape(max_tokens: int, temperature: float | None) -> Dict[str, Any]:
    shape: Dict[str, Any] = {"max_completion_tokens": max_tokens}
    if temperature is not None:
        shape["temperature"] = temperature
    return shape


def _max_tokens_shape(max_tokens: int, temperature: float | None) -> Dict[str, Any]:
    return {
        "max_tokens": max_tokens,
        "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
    }


# first match wins
REQUEST_SHAPES: List[tuple[Callable[[str], bool], Callable[[int, float | None], Dict[str, Any]]]] = [
    (_prefixed("gpt-5", "o1", "o3", "o4", "gpt-4.1"), _completion_tokens_shape),
    (lambda model: True, _max_tokens_shape),
]


def request_shape(model_name: str, max_tokens: int, temperature: float | None) -> Dict[str, Any]:
    for matches, build in REQUEST_SHAPES:
        if matches(model_name):
            return build(max_tokens, temperature)
    raise LookupError(f"no request shape for model {model_name!r}")


# ----------------- client -----------------

def _mentions_temperature(err: APIStatusError) -> bool:
    return "temperature" in f"{err.message} {err.body}".lower()


def _wrap(err: Exception) -> UpstreamCompletionError:
    if isinstance(err, APIStatusError):
        body = err.response.text if err.response is not None else err.message
        return UpstreamCompletionError(
            f"completion API error: {err.status_code} - {body}",
            status_code=err.status_code)
    return UpstreamCompletionError(
        f"completion API request failed: {err.__class__.__name__}: {err}")


class CompletionClient:
    """Chat completions over an OpenAI-compatible API, single-shot or streamed."""

    def __init__(self, api_key: str, *, base_url: str | None = None,
                 max_tokens: int = 1000, timeout_s: float = 60.0,
                 base_origin: str = "",
                 http_client: httpx.AsyncClient | None = None):
        self.max_tokens = max_tokens
        self.base_origin = base_origin
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or None,
            timeout=timeout_s,
            max_retries=0,
            http_client=http_client,
        )

    def request_kwargs(self, query: str, system_prompt: str, hits: List[SearchHit],
                       model_name: str, temperature: float | None = None) -> Dict[str, Any]:
        return {
            "model": model_name,
            "messages": build_messages(query, system_prompt, hits, self.base_origin),
            **request_shape(model_name, self.max_tokens, temperature),
        }

    async def _send(self, kwargs: Dict[str, Any],
                    send: Callable[[Dict[str, Any]], Awaitable[Any]]) -> Any:
        m_inc("completion_total")
        try:
            return await send(kwargs)
        except APIStatusError as e:
            if "temperature" not in kwargs or not _mentions_temperature(e):
                raise _wrap(e) from e
            log.info(f"model {kwargs['model']!r} rejected temperature; retrying without it")
        except APIError as e:
            raise _wrap(e) from e
        retry = {k: v for k, v in kwargs.items() if k != "temperature"}
        try:
            return await send(retry)
        except APIError as e:
            raise _wrap(e) from e

    async def generate(self, query: str, system_prompt: str, hits: List[SearchHit],
                       model_name: str, temperature: float | None = None) -> Completion:
        kwargs = self.request_kwargs(query, system_prompt, hits, model_name, temperature)
        try:
            resp = await self._send(
                kwargs, lambda kw: self.client.chat.completions.create(**kw))
        except ValueError as e:
            raise UpstreamCompletionError(f"completion API returned a malformed body: {e}") from e
        choices = getattr(resp, "choices", None)
        if not choices:
            raise UpstreamCompletionError("completion API returned no choices")
        usage = getattr(resp, "usage", None)
        return Completion(
            text=choices[0].message.content or "",
            token_count=(usage.completion_tokens or 0) if usage else 0,
        )

    async def generate_stream(self, query: str, system_prompt: str, hits: List[SearchHit],
                              model_name: str, temperature: float | None = None
                              ) -> AsyncIterator[str | StreamUsage]:
        """
        Yields text fragments in generation order, then exactly one StreamUsage.
        Close the generator (``aclosing``) to release the upstream connection early.
        """
        kwargs = self.request_kwargs(query, system_prompt, hits, model_name, temperature)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        async with AsyncExitStack() as stack:
            response = await self._send(kwargs, lambda kw: stack.enter_async_context(
                self.client.chat.completions.with_streaming_response.create(**kw)))
            usage: StreamUsage | None = None
            finished = False
            fragments = 0
            try:
                async with aclosing(_payloads(response)) as payloads:
                    async for payload in payloads:
                        if payload == DONE_SENTINEL:
                            finished = True
                            break
                        chunk = _parse_chunk(payload)
                        if chunk is None:
                            continue
                        if chunk.get("error"):
                            raise UpstreamCompletionError(
                                f"completion stream error: {_error_text(chunk['error'])}")
                        if chunk.get("usage"):
                            usage = StreamUsage(
                                completion_tokens=int(chunk["usage"].get("completion_tokens") or 0),
                                prompt_tokens=int(chunk["usage"].get("prompt_tokens") or 0),
                            )
                        for text in _deltas(chunk):
                            fragments += 1
                            yield text
            except httpx.HTTPError as e:
                raise UpstreamCompletionError(
                    f"completion stream interrupted: {e.__class__.__name__}: {e}") from e

        if usage is None:
            if not finished:
                raise UpstreamCompletionError("completion stream ended before the [DONE] sentinel")
            # upstream sent no usage chunk; one delta per token
            usage = StreamUsage(completion_tokens=fragments)
        yield usage


async def _payloads(response) -> AsyncIterator[str]:
    decoder = LineDecoder()
    async for chunk in response.iter_bytes():
        for payload in data_payloads(decoder.feed(chunk)):
            yield payload
    for payload in data_payloads(decoder.flush()):
        yield payload


def _parse_chunk(payload: str) -> Dict[str, Any] | None:
    try:
        chunk = json.loads(payload)
    except ValueError:
        log.warning(f"skipping malformed stream line: {payload[:120]!r}")
        return None
    if not isinstance(chunk, dict):
        log.warning(f"skipping unexpected stream payload: {payload[:120]!r}")
        return None
    return chunk


def _deltas(chunk: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for choice in chunk.get("choices") or []:
        delta = (choice or {}).get("delta") or {}
        text = delta.get("content")
        if text:
            out.append(text)
    return out


def _error_text(err: Any) -> str:
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return str(err)
