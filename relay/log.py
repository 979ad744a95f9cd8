# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import asyncio, functools, json, logging, sys, threading, time
from datetime import datetime, timezone
from typing import Any

_dest: str | None = None
_handle = None
_lock = threading.Lock()


def configure(dest: str | None) -> None:
    """
    Called once from build_app(). dest is None/null, 'stdout', or a file path.
    Reconfiguring closes any previously opened file.
    """
    global _dest, _handle
    with _lock:
        if _handle is not None:
            try:
                _handle.flush()
                _handle.close()
            finally:
                _handle = None
        _dest = None

    if not dest or str(dest).strip().lower() in ("null", "none", ""):
        return

    _dest = str(dest).strip()
    if _dest != "stdout":
        with _lock:
            _handle = open(_dest, "a", encoding="utf-8", buffering=1)


def emit(**fields) -> None:
    """
    Write one JSON line to the ops stream. No-op if not configured.
    None values are dropped before serialisation.
    """
    if _dest is None:
        return
    ts = (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )
    payload: dict = {"ts": ts}
    payload.update({k: v for k, v in fields.items() if v is not None})
    line = json.dumps(payload, separators=(",", ":")) + "\n"
    if _dest == "stdout":
        sys.stdout.write(line)
    else:
        with _lock:
            if _handle is not None:
                _handle.write(line)


def close() -> None:
    """Flush and close the file handle if open. Called on app shutdown."""
    global _handle
    with _lock:
        if _handle is not None:
            try:
                _handle.flush()
                _handle.close()
            finally:
                _handle = None


# --------------- dev stream (stderr) ---------------

class _ColorFormatter(logging.Formatter):
    """Formatter with ANSI colors for terminal output."""
    COLORS = {
        logging.DEBUG:    "\033[36m",   # cyan
        logging.INFO:     "\033[32m",   # green
        logging.WARNING:  "\033[33m",   # yellow
        logging.ERROR:    "\033[31m",   # red
        logging.CRITICAL: "\033[35m",   # magenta
    }
    RESET = "\033[0m"
    BOLD  = "\033[1m"

    def __init__(self, fmt: str, datefmt: str, use_color: bool = True):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_color:
            return super().format(record)
        # color a copy; other handlers must see the plain record
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelno, "")
        if record.name.startswith("relay"):
            record.name = f"{self.BOLD}{record.name}{self.RESET}{color}"
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        record.msg = f"{color}{record.msg}{self.RESET}"
        return super().format(record)


def _init_logger() -> logging.Logger:
    """
    Levels are relative to log.level:
      - relay (base) → bold + colored, to stderr
      - log.watch namespaces (base -1), log.quiet namespaces (base +1)
      - everything else (base +2)
    Lazy import of get_cfg keeps config.py free of logging imports.
    """
    from relay.config import get_cfg
    cfg = get_cfg()
    base_level = getattr(logging, str(cfg.get("log.level", "INFO")).upper(), logging.INFO)

    def shift(level: int, delta: int) -> int:
        return min(logging.CRITICAL, max(logging.DEBUG, level + 10 * delta))

    root = logging.getLogger()
    root.setLevel(shift(base_level, +2))
    root.handlers.clear()

    use_color = hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_ColorFormatter(
        "%(asctime)s %(levelname)-5s %(name)s: %(message)s",
        "%H:%M:%S",
        use_color=use_color,
    ))
    root.addHandler(handler)

    relay_log = logging.getLogger("relay")
    relay_log.setLevel(logging.DEBUG if cfg.get("dev", 0) else base_level)

    for ns in cfg.get("log.debug", []):
        logging.getLogger(ns).setLevel(logging.DEBUG)

    for ns in cfg.get("log.watch", []):
        logging.getLogger(ns).setLevel(shift(base_level, -1))

    for ns in cfg.get("log.quiet", ["uvicorn", "uvicorn.access", "uvicorn.error",
                                     "fastapi", "httpx", "httpcore", "openai"]):
        logging.getLogger(ns).setLevel(shift(base_level, +1))

    return relay_log


_LOGGER_SINGLETON = _init_logger()


def get_logger(name: str | None = None) -> logging.Logger:
    """Returns the relay logger, or a child of it (``relay.<name>``)."""
    if name:
        return _LOGGER_SINGLETON.getChild(name)
    return _LOGGER_SINGLETON


LOG = _LOGGER_SINGLETON

# --------------- ops stream ---------------

def _result_status(result: Any) -> tuple[str, str | None]:
    """Return (status, error_code) from a handler return value."""
    sc = getattr(result, "status_code", None)
    if sc is not None:
        if sc >= 400:
            try:
                code = json.loads(result.body).get("code")
            except (AttributeError, TypeError, ValueError):
                code = None
            return "error", code
        return "ok", None
    if isinstance(result, dict) and not result.get("success", True):
        return "error", result.get("code")
    return "ok", None


def ops_event(op: str, **extra_keys):
    """
    Route decorator: times the call and emits one ops line.
    Works for both sync and async handlers.

    Parameters
    ----------
    op:
        Operation name emitted in the ``op`` field (e.g. ``"chat_search"``).
    **extra_keys:
        Additional event fields.
        - str value  → resolved as ``kwargs[value]``
        - callable   → called as ``fn(kwargs, result)`` after the handler returns
    """
    def _extras(kwargs: dict, result: Any) -> dict:
        out: dict = {}
        for field, src in extra_keys.items():
            try:
                out[field] = src(kwargs, result) if callable(src) else kwargs.get(src)
            except Exception:
                out[field] = None
        return out

    def _emit(t0: float, status: str, code: str | None, kwargs: dict, result: Any):
        emit(
            op=op,
            latency_ms=round((time.perf_counter() - t0) * 1000, 2),
            status=status, error_code=code,
            **_extras(kwargs, result),
        )

    def decorator(fn):
        if asyncio.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def awrapper(*args, **kwargs):
                t0 = time.perf_counter()
                status, code, result = "error", None, None
                try:
                    result = await fn(*args, **kwargs)
                    status, code = _result_status(result)
                    return result
                finally:
                    _emit(t0, status, code, kwargs, result)
            return awrapper

        @functools.wraps(fn)
        def swrapper(*args, **kwargs):
            t0 = time.perf_counter()
            status, code, result = "error", None, None
            try:
                result = fn(*args, **kwargs)
                status, code = _result_status(result)
                return result
            finally:
                _emit(t0, status, code, kwargs, result)
        return swrapper
    return decorator
