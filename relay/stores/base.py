# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations
import json
from abc import ABC, abstractmethod
from typing import Any


class BaseKVStore(ABC):
    """Async key-value store holding configuration objects.

    ``get`` returns None for absent keys and for read failures; ``set``
    raises ``KVStoreError`` when the write did not go through.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None: ...

    async def aclose(self) -> None:
        return None


def _looks_like_json(s: str) -> bool:
    return s.strip().startswith(("{", "[", '"'))


def _decode(value: Any) -> tuple[Any, bool]:
    """Returns (decoded value, whether it was double-encoded)."""
    if not isinstance(value, str) or not _looks_like_json(value):
        return value, False
    try:
        parsed = json.loads(value)
        # legacy writers stored json.dumps(json.dumps(obj))
        if isinstance(parsed, str) and _looks_like_json(parsed):
            return json.loads(parsed), True
        return parsed, False
    except ValueError:
        return value, False


def decode_lenient(value: Any) -> Any:
    """Decode a stored value that may be raw text, JSON, or JSON encoded twice."""
    return _decode(value)[0]


def encode_for_set(value: Any) -> tuple[str, str]:
    """Returns (body, content type). Strings are never re-encoded."""
    if isinstance(value, str):
        return value, "text/plain; charset=utf-8"
    return json.dumps(value, ensure_ascii=False), "application/json"
