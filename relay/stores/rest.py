# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations
import json
from typing import Any
from urllib.parse import quote
import httpx
from relay.errors import KVStoreError
from relay.log import get_logger
from relay.stores.base import BaseKVStore, _decode, encode_for_set

log = get_logger("kv")


class RestKVStore(BaseKVStore):
    """
    Key-value store over a REST endpoint (``GET /get/{key}``, ``POST
    /set/{key}``), bearer-token authenticated, e.g. Upstash Redis REST.
    """

    def __init__(self, url: str, token: str, *, timeout_s: float = 10.0,
                 migrate_double_encoded: bool = True,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.url = url.rstrip("/")
        self.migrate_double_encoded = migrate_double_encoded
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout_s,
            transport=transport,
        )

    def _key_url(self, op: str, key: str) -> str:
        return f"{self.url}/{op}/{quote(key, safe='')}"

    async def get(self, key: str) -> Any | None:
        try:
            r = await self._client.get(self._key_url("get", key))
            r.raise_for_status()
            raw = r.json().get("result")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            log.warning(f"kv get {key!r} failed, treating as absent: {e}")
            return None
        if raw is None:
            return None
        value, was_double = _decode(raw)
        if was_double and self.migrate_double_encoded:
            await self._rewrite(key, value)
        return value

    async def _rewrite(self, key: str, value: Any) -> None:
        try:
            await self.set(key, value)
            log.info(f"kv {key!r}: rewrote double-encoded value")
        except KVStoreError as e:
            log.warning(f"kv {key!r}: migration write-back failed: {e}")

    async def set(self, key: str, value: Any) -> None:
        body, content_type = encode_for_set(value)
        try:
            r = await self._client.post(
                self._key_url("set", key),
                content=body.encode("utf-8"),
                headers={"Content-Type": content_type},
            )
        except httpx.HTTPError as e:
            raise KVStoreError(f"kv set {key!r} failed: {e}") from e
        if r.is_error:
            raise KVStoreError(f"kv set {key!r} failed: {r.status_code} {r.text}")
        try:
            ack = r.json()
        except json.JSONDecodeError:
            return
        if isinstance(ack, dict) and ack.get("error"):
            raise KVStoreError(f"kv set {key!r} failed: {ack['error']}")

    async def aclose(self) -> None:
        await self._client.aclose()
