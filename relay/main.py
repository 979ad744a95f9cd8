# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from contextlib import aclosing, asynccontextmanager
from typing import Any, Dict
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
import uvicorn
from .auth import KeyValidation, require_key
from .catalog import Catalog, load_request_context
from .completion import CompletionClient
from .config import CFG, Config
from .errors import RelayError, RateLimitExceeded, AuthenticationError
from .log import LOG as log, configure as configure_ops, close as close_ops, ops_event
from .metrics import inc, set_error, snapshot, to_prometheus
from .orchestrator import Relay, RelayOptions
from .schemas import ChatSearchBody, ErrorResponse, encode_event
from .search import SearchClient
from .stores.factory import get_kv


VERSION = "0.3.1"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def build_search(cfg: Config) -> SearchClient | None:
    url, token = cfg.get("search.url"), cfg.get("search.token")
    if not url or not token:
        log.warning("search.url/search.token not set; relay requests will fail "
                    "with a configuration error")
        return None
    return SearchClient(str(url), str(token),
                        timeout_s=float(cfg.get("search.timeout_s", 15.0)))


def build_completion(cfg: Config) -> CompletionClient | None:
    api_key = cfg.get("completion.api_key")
    if not api_key:
        log.warning("completion.api_key not set; relay requests will fail "
                    "with a configuration error")
        return None
    return CompletionClient(
        str(api_key),
        base_url=cfg.get("completion.base_url") or None,
        max_tokens=int(cfg.get("completion.max_tokens", 1000)),
        timeout_s=float(cfg.get("completion.timeout_s", 60.0)),
        base_origin=str(cfg.get("relay.base_origin") or ""),
    )


def _error_response(err: RelayError) -> JSONResponse:
    headers: Dict[str, str] = {}
    if isinstance(err, AuthenticationError):
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(err, RateLimitExceeded) and err.retry_after:
        headers["Retry-After"] = str(err.retry_after)
    body = ErrorResponse(error=err.message, code=err.code, kind=err.kind)
    return JSONResponse(body.wire(), status_code=err.http_status,
                        headers=headers or None)


def _describe(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request body"
    first = errors[0]
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))


def build_app(cfg: Config = CFG) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for client in (app.state.relay.search, app.state.relay.completion):
            closer = getattr(client, "aclose", None)
            if closer is not None:
                await closer()
        if app.state.kv is not None:
            await app.state.kv.aclose()
        close_ops()

    app = FastAPI(title="ragrelay - retrieval-augmented chat relay",
                  version=VERSION, lifespan=lifespan)
    configure_ops(cfg.get("log.ops"))
    app.state.cfg = cfg
    app.state.kv = get_kv(cfg)
    app.state.catalog = Catalog(app.state.kv) if app.state.kv is not None else None
    app.state.relay = Relay(build_search(cfg), build_completion(cfg),
                            RelayOptions.from_cfg(cfg))

    def current_relay(request: Request) -> Relay:
        return request.app.state.relay

    def current_catalog(request: Request) -> Catalog | None:
        return request.app.state.catalog

    # -------------------- Errors --------------------

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            ErrorResponse(error=_describe(exc), code="invalid_request",
                          kind="validation").wire(),
            status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        log.exception(f"unhandled error on {request.url.path}")
        set_error(f"{exc.__class__.__name__}: {exc}")
        return _error_response(RelayError("internal server error"))

    # -------------------- Health --------------------

    def _components() -> Dict[str, Any]:
        relay: Relay = app.state.relay
        return {
            "search_configured": relay.search is not None,
            "completion_configured": relay.completion is not None,
            "kv_configured": app.state.kv is not None,
        }

    @app.get("/health")
    def health():
        inc("requests_total")
        d = _components()
        ok = bool(d["search_configured"] and d["completion_configured"])
        return {"ok": ok, "status": "ready" if ok else "degraded",
                "version": VERSION, **d}

    @app.get("/health/live")
    def health_live():
        inc("requests_total")
        return {"ok": True, "status": "live", "version": VERSION}

    @app.get("/health/metrics")
    def health_metrics():
        inc("requests_total")
        return snapshot({"version": VERSION, "kv_type": cfg.get("kv.type", "rest")})

    @app.get("/metrics")
    def metrics_prom():
        inc("requests_total")
        txt = to_prometheus(build={"version": VERSION, "kv": cfg.get("kv.type", "rest")})
        return PlainTextResponse(txt, media_type="text/plain; version=0.0.4")

    # ----------------- Relay ------------------

    @app.post("/chat-search")
    @ops_event("chat_search", index=lambda kw, r: kw["body"].search_index)
    async def chat_search(
        body: ChatSearchBody,
        key: KeyValidation = Depends(require_key),
        relay: Relay = Depends(current_relay),
        catalog: Catalog | None = Depends(current_catalog),
    ):
        inc("requests_total")
        session, snap = await load_request_context(catalog)
        try:
            result = await relay.answer(body, session, snap)
        except RelayError as e:
            return _error_response(e)
        return JSONResponse(result.wire())

    @app.post("/chat-search/stream")
    @ops_event("chat_search_stream", index=lambda kw, r: kw["body"].search_index)
    async def chat_search_stream(
        body: ChatSearchBody,
        key: KeyValidation = Depends(require_key),
        relay: Relay = Depends(current_relay),
        catalog: Catalog | None = Depends(current_catalog),
    ):
        inc("requests_total")
        session, snap = await load_request_context(catalog)

        async def frames():
            async with aclosing(relay.stream(body, session, snap)) as events:
                async for event in events:
                    yield encode_event(event)

        return StreamingResponse(frames(), media_type="text/event-stream",
                                 headers=SSE_HEADERS)

    return app


_app: FastAPI | None = None


def __getattr__(name: str):
    # `uvicorn relay.main:app` resolves this; plain imports stay side-effect free
    global _app
    if name == "app":
        if _app is None:
            _app = build_app()
        return _app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def main_srv():
    """
    ragrelay server entrypoint.
    Precedence: env > config.yml > defaults (all through CFG).
    """
    host = str(CFG.get("server.host", "127.0.0.1"))
    port = int(CFG.get("server.port", 8086))
    reload = bool(CFG.get("server.reload", False))
    workers = int(CFG.get("server.workers", 1))
    log_level = str(CFG.get("server.log_level", "info"))

    uvicorn.run("relay.main:app",
                host=host,
                port=port,
                reload=reload,
                workers=workers,
                log_level=log_level)


if __name__ == "__main__":
    main_srv()
