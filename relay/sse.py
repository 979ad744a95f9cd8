# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations
import codecs
from typing import Iterable, List

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class LineDecoder:
    """
    Incremental bytes -> lines splitter for ``data: ...`` framed streams.

    Network reads can end anywhere, including in the middle of a line or of a
    multi-byte UTF-8 sequence; the incomplete tail is kept until the next
    ``feed`` (or ``flush`` at end of stream).
    """

    def __init__(self):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> List[str]:
        if isinstance(chunk, bytes):
            chunk = self._text.decode(chunk)
        self._buffer += chunk
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        tail = self._buffer + self._text.decode(b"", final=True)
        self._buffer = ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


def data_payloads(lines: Iterable[str]) -> List[str]:
    """Keep only ``data:`` lines, with the marker and surrounding blanks removed."""
    out: List[str] = []
    for line in lines:
        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            continue
        out.append(line[len(DATA_PREFIX):].strip())
    return out
