# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations
from .base import BaseKVStore
from ..config import CFG, Config
from ..log import get_logger

log = get_logger("kv")

def get_kv(cfg: Config = CFG) -> BaseKVStore | None:
    """Build the configured store, or None when its credentials are absent."""
    ktype = (cfg.get("kv.type", "rest") or "rest").lower()
    match ktype:
        case "rest" | "upstash":
            url, token = cfg.get("kv.url"), cfg.get("kv.token")
            if not url or not token:
                log.warning("kv.url/kv.token not set; stored prompts and "
                            "chatbot profiles are unavailable, using defaults")
                return None
            from .rest import RestKVStore
            return RestKVStore(
                str(url), str(token),
                timeout_s=float(cfg.get("kv.timeout_s", 10.0)),
                migrate_double_encoded=bool(cfg.get("kv.migrate_double_encoded", True)),
            )
        case _:
            raise RuntimeError(f"Unknown kv.type: {ktype}")
