# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations
import copy, os, re, yaml, threading
from pathlib import Path
from typing import Any, Dict
from dotenv import load_dotenv

load_dotenv()

_ENV_PREFIX = "RAGRELAY_"

_DEFAULT_CONFIG_PATH = os.environ.get(_ENV_PREFIX + "CONFIG", "./config.yml")

_DEFAULTS = {
    "auth": {"mode": "none", "api_keys": {}, "salt": ""},
    "kv": {"type": "rest", "url": None, "token": None, "timeout_s": 10.0,
           "migrate_double_encoded": True},
    "search": {"url": None, "token": None, "default_index": "default",
               "timeout_s": 15.0},
    "completion": {"api_key": None, "base_url": None,
                   "default_model": "gpt-4o-mini", "max_tokens": 1000,
                   "timeout_s": 60.0},
    "relay": {
        "base_origin": "",
        "pool_size": 100,
        "max_results": 10,
        "max_results_cap": 20,
        "default_prompt": "You are a helpful assistant. "
                          "Use provided sources when available.",
        "no_match_message": "I couldn't find any relevant information for "
                            "your query. Please try rephrasing your question "
                            "or contact our support team for assistance.",
    },
    "server": {"host": "127.0.0.1", "port": 8086},
    "log": {"level": "INFO", "ops": None},
}

_ENV_PATTERN = re.compile(r"\$\{([^}:|]+)(?:\|([^}]*))?\}")

# ---------------- utils ----------------
def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        elif v is not None:
            out[k] = v
    return out

def _coerce(s: str) -> Any:
    low = s.lower()
    if low in {"true", "false"}:
        return low == "true"
    if s.isdigit():
        return int(s)
    try:
        return float(s)
    except ValueError:
        return s

def _subst_env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    def repl(m: re.Match) -> str:
        default = m.group(2) if m.group(2) is not None else ""
        return os.environ.get(m.group(1), default)
    return _ENV_PATTERN.sub(repl, value)

def _resolve_env_in_obj(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _resolve_env_in_obj(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_resolve_env_in_obj(v) for v in obj]
    return _subst_env(obj)

def _env_to_dict(prefix: str = _ENV_PREFIX) -> Dict[str, Any]:
    # RAGRELAY_SEARCH__URL -> {"search": {"url": ...}}
    envmap: Dict[str, Any] = {}
    for k, v in os.environ.items():
        if not k.startswith(prefix) or k == prefix + "CONFIG":
            continue
        path = k[len(prefix):].lower().split("__")
        cur = envmap
        for part in path[:-1]:
            cur = cur.setdefault(part, {})
        cur[path[-1]] = _coerce(v)
    return envmap

def _load_yaml(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if p.is_file():
        with p.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    return {}

# --------------- singleton wrapper ----------------
class Config:
    """
    Layered settings: built-in defaults, then config.yml, then RAGRELAY_*
    environment variables. Thread-safe; `get(path, default)` persists the
    default on first read so later readers see the same value.
    """
    def __init__(
            self,
            data: Dict[str, Any] | None = None,
            path: str | Path | None = None):
        self._lock = threading.RLock()
        if data is None:
            data = self._load_dict(path or _DEFAULT_CONFIG_PATH)
        self._cfg: Dict[str, Any] = dict(data)

    @staticmethod
    def _load_dict(path: str | Path) -> Dict[str, Any]:
        file_cfg = _resolve_env_in_obj(_load_yaml(path))
        return _deep_merge(_deep_merge(copy.deepcopy(_DEFAULTS), file_cfg), _env_to_dict())

    # -------- path ops --------
    @staticmethod
    def _get_from(store: Dict[str, Any], path: str):
        cur: Any = store
        for part in path.split("."):
            if not isinstance(cur, dict) or part not in cur:
                return None
            cur = cur[part]
        return cur

    @staticmethod
    def _set_into(store: Dict[str, Any], path: str, value: Any) -> None:
        cur = store
        parts = path.split(".")
        for p in parts[:-1]:
            nxt = cur.get(p)
            if not isinstance(nxt, dict):
                nxt = cur[p] = {}
            cur = nxt
        cur[parts[-1]] = value

    # -------- public API --------
    def get(self, path: str, default: Any = None) -> Any:
        with self._lock:
            val = self._get_from(self._cfg, path)
            if val is not None:
                return val
            if default is not None:
                self._set_into(self._cfg, path, default)
                return default
            return None

    def set(self, path: str, value: Any) -> None:
        with self._lock:
            self._set_into(self._cfg, path, value)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._cfg)

    def replace(self, data: Dict[str, Any] | None = None,
                path: str | Path | None = None) -> None:
        # keeps object identity so modules holding CFG see the reload
        fresh = Config(data=data, path=path)
        with self._lock:
            self._cfg.clear()
            self._cfg.update(fresh._cfg)


_CFG_SINGLETON = Config()

def get_cfg() -> Config:
    return _CFG_SINGLETON

def reload_cfg(path: str | None = None) -> Config:
    _CFG_SINGLETON.replace(path=path)
    return _CFG_SINGLETON

CFG = _CFG_SINGLETON
