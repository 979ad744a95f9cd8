# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later
__all__ = [
    "config", "auth", "catalog", "completion", "consumer", "errors", "log",
    "main", "cli", "metrics", "orchestrator", "schemas", "search", "sources",
    "sse", "stores",
]
