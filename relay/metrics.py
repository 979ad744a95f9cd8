# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations
import time, threading
from typing import Dict, Any

_started = time.time()
_lock = threading.Lock()
_COUNTERS = (
    "requests_total",
    "relay_total",
    "relay_completed_total",
    "relay_failed_total",
    "relay_cancelled_total",
    "no_match_total",
    "search_total",
    "completion_total",
    "tokens_total",
    "errors_total",
)
_counters: Dict[str, float] = dict.fromkeys(_COUNTERS, 0.0)

_last_error: str | None = None

def inc(name: str, value: float = 1.0):
    with _lock:
        _counters[name] = _counters.get(name, 0.0) + value

def set_error(msg: str):
    global _last_error
    with _lock:
        _last_error = msg
        _counters["errors_total"] = _counters.get("errors_total", 0.0) + 1.0

def reset():
    global _last_error
    with _lock:
        for k in list(_counters):
            _counters[k] = 0.0
        _last_error = None

def snapshot(extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
    with _lock:
        data: Dict[str, Any] = dict(_counters)
        data.update({
            "uptime_seconds": time.time() - _started,
            "last_error": _last_error,
        })
        if extra:
            data.update(extra)
        return data

def to_prometheus(extra: Dict[str, Any] | None = None, build: Dict[str, str] | None = None) -> str:
    s = []
    for k, v in snapshot(extra).items():
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            s.append(f"ragrelay_{k} {float(v)}")
    if build:
        labels = ",".join([f'{key}="{val}"' for key, val in build.items()])
        s.append(f"ragrelay_build_info{{{labels}}} 1")
    return "\n".join(s) + "\n"
