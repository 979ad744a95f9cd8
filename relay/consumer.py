# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Client side of ``POST /chat-search/stream``.

At most one stream is live per consumer: starting a new one cancels the
previous, so stale events from an abandoned query never reach the caller.
"""

from __future__ import annotations
import asyncio
from typing import Any, AsyncIterator
import httpx
from pydantic import ValidationError as PydanticValidationError
from relay.log import get_logger
from relay.schemas import ChatSearchBody, decode_event, is_terminal
from relay.sse import LineDecoder, data_payloads

log = get_logger("consumer")

STREAM_PATH = "/chat-search/stream"


class RelayClientError(Exception):
    """Non-2xx answer from the relay, or the connection failed before one."""

    def __init__(self, status: int | None, message: str, code: str | None = None):
        super().__init__(f"{status}: {message}" if status else message)
        self.status = status
        self.message = message
        self.code = code


class CancellationHandle:
    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def _anext(chunks: AsyncIterator[bytes]) -> bytes:
    return await chunks.__anext__()


async def _next_chunk(chunks: AsyncIterator[bytes], handle: CancellationHandle) -> bytes | None:
    """Next body chunk, or None at end of body or once the handle is cancelled."""
    if handle.cancelled:
        return None
    read = asyncio.ensure_future(_anext(chunks))
    stop = asyncio.ensure_future(handle.wait())
    try:
        done, _ = await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [t for t in (read, stop) if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    if read not in done or handle.cancelled:
        return None
    try:
        return read.result()
    except StopAsyncIteration:
        return None


def _parse(payload: str):
    try:
        return decode_event(payload)
    except PydanticValidationError as e:
        log.warning(f"skipping malformed event ({e.error_count()} error(s)): {payload[:120]!r}")
        return None


def _client_error(response: httpx.Response) -> RelayClientError:
    message, code = response.text or response.reason_phrase, None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = str(body.get("error") or body.get("detail") or message)
        code = body.get("code")
    return RelayClientError(response.status_code, message, code)


class StreamConsumer:
    def __init__(self, base_url: str, api_key: str | None = None, *,
                 timeout_s: float = 90.0,
                 transport: httpx.AsyncBaseTransport | None = None):
        headers = {"Accept": "text/event-stream"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_s,
            transport=transport,
        )
        self._handle: CancellationHandle | None = None

    @property
    def active(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    def cancel(self) -> None:
        """Stop the current stream, if any. Safe to call at any time."""
        if self._handle is not None:
            self._handle.cancel()

    def _claim(self) -> CancellationHandle:
        # no await between reading and replacing the slot
        previous, self._handle = self._handle, CancellationHandle()
        if previous is not None:
            previous.cancel()
        return self._handle

    async def stream(self, query: str, **options: Any) -> AsyncIterator:
        """
        Yields StreamingEvent models until the terminal event, the end of the
        body, or cancellation (by ``cancel()`` or by a newer ``stream()``).
        Cancellation ends the iteration quietly; HTTP failures raise
        RelayClientError.
        """
        handle = self._claim()
        body = ChatSearchBody(query=query, **options).model_dump(
            mode="json", by_alias=True, exclude_none=True)
        try:
            async with self._client.stream("POST", STREAM_PATH, json=body) as response:
                if response.is_error:
                    await response.aread()
                    raise _client_error(response)
                decoder = LineDecoder()
                chunks = response.aiter_bytes()
                while True:
                    chunk = await _next_chunk(chunks, handle)
                    lines = decoder.flush() if chunk is None else decoder.feed(chunk)
                    for payload in data_payloads(lines):
                        if handle.cancelled:
                            return
                        event = _parse(payload)
                        if event is None:
                            continue
                        yield event
                        if is_terminal(event):
                            return
                    if chunk is None:
                        return
        except httpx.HTTPError as e:
            if handle.cancelled:
                return
            raise RelayClientError(None, f"relay stream failed: {e.__class__.__name__}: {e}",
                                   code="network_error") from e
        finally:
            if self._handle is handle:
                self._handle = None

    async def aclose(self) -> None:
        self.cancel()
        await self._client.aclose()
