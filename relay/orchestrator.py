# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
The relay: one query in, one event stream out.

    IDLE -> SEARCHING -> CONTEXT_BUILDING -> GENERATING -> STREAMING -> COMPLETED
                 \\-> STREAMING (no hits)          any non-terminal -> FAILED | CANCELLED

A run emits ``start`` (when search succeeded), then ``content`` fragments,
then exactly one ``done`` or ``error``. Sending anything after the terminal
event, or taking a transition not in the table, is a bug and raises
RelayStateError instead of reaching the caller as an event.
"""

from __future__ import annotations
import time
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, FrozenSet
from relay import log as ops_log
from relay.catalog import CatalogSnapshot, SessionState
from relay.completion import CompletionClient, StreamUsage
from relay.config import Config
from relay.errors import ConfigurationError, RelayError, ValidationError
from relay.log import get_logger
from relay.metrics import inc as m_inc, set_error
from relay.schemas import (
    ChatbotConfig, ChatbotProfile, ChatSearchBody, ChatSearchData, ChatSearchResponse,
    ContentEvent, DoneEvent, ErrorEvent, PromptTemplate, StartEvent, Usage, is_terminal,
)
from relay.search import SearchClient, rank_hits
from relay.sources import to_sources

log = get_logger("relay")


class RelayState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    CONTEXT_BUILDING = "context_building"
    GENERATING = "generating"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


S = RelayState
_TRANSITIONS: Dict[RelayState, FrozenSet[RelayState]] = {
    S.IDLE: frozenset({S.SEARCHING, S.FAILED, S.CANCELLED}),
    S.SEARCHING: frozenset({S.CONTEXT_BUILDING, S.STREAMING, S.FAILED, S.CANCELLED}),
    S.CONTEXT_BUILDING: frozenset({S.GENERATING, S.FAILED, S.CANCELLED}),
    S.GENERATING: frozenset({S.STREAMING, S.FAILED, S.CANCELLED}),
    S.STREAMING: frozenset({S.COMPLETED, S.FAILED, S.CANCELLED}),
}
TERMINAL_STATES = frozenset({S.COMPLETED, S.FAILED, S.CANCELLED})


class RelayStateError(RuntimeError):
    pass


class RelayRun:
    """State and terminal-event guard for a single relay invocation."""

    def __init__(self):
        self.state = S.IDLE
        self.terminal_sent = False

    def advance(self, new: RelayState) -> None:
        if new not in _TRANSITIONS.get(self.state, frozenset()):
            raise RelayStateError(f"illegal transition {self.state.value} -> {new.value}")
        self.state = new

    def emit(self, event):
        if self.terminal_sent:
            raise RelayStateError(f"{event.type!r} event after terminal event")
        if is_terminal(event):
            self.terminal_sent = True
        return event


@dataclass
class RelayOptions:
    default_index: str = "default"
    default_model: str = "gpt-4o-mini"
    pool_size: int = 100
    max_results: int = 10
    max_results_cap: int = 20
    base_origin: str = ""
    default_prompt: str | None = "You are a helpful assistant. Use provided sources when available."
    no_match_message: str = "I couldn't find any relevant information for your query."

    @classmethod
    def from_cfg(cls, cfg: Config) -> "RelayOptions":
        return cls(
            default_index=str(cfg.get("search.default_index", cls.default_index)),
            default_model=str(cfg.get("completion.default_model", cls.default_model)),
            pool_size=int(cfg.get("relay.pool_size", cls.pool_size)),
            max_results=int(cfg.get("relay.max_results", cls.max_results)),
            max_results_cap=int(cfg.get("relay.max_results_cap", cls.max_results_cap)),
            base_origin=str(cfg.get("relay.base_origin") or ""),
            default_prompt=cfg.get("relay.default_prompt") or None,
            no_match_message=str(cfg.get("relay.no_match_message", cls.no_match_message)),
        )


@dataclass
class RelayPlan:
    query: str
    index: str
    model: str
    temperature: float | None
    max_results: int
    prompt: PromptTemplate
    profile: ChatbotProfile | None = None


def _ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 2)


class Relay:
    def __init__(self, search: SearchClient | None, completion: CompletionClient | None,
                 options: RelayOptions | None = None):
        self.search = search
        self.completion = completion
        self.options = options or RelayOptions()

    # ---------------- entry guard ----------------

    def resolve(self, request: ChatSearchBody, session: SessionState,
                snapshot: CatalogSnapshot) -> RelayPlan:
        missing = []
        if self.search is None:
            missing.append("search.url/search.token")
        if self.completion is None:
            missing.append("completion.api_key")
        if missing:
            raise ConfigurationError(f"relay is not configured; missing {', '.join(missing)}")

        query = (request.query or "").strip()
        if not query:
            raise ValidationError("query must not be empty")

        profile = self._profile(session, snapshot)
        prompt = self._prompt(request, profile, session, snapshot)
        conf = profile.config if profile else ChatbotConfig()
        max_results = request.max_results or conf.max_results or self.options.max_results
        return RelayPlan(
            query=query,
            index=request.search_index or conf.search_index or self.options.default_index,
            model=request.model or conf.model_name or self.options.default_model,
            temperature=request.temperature if request.temperature is not None else conf.temperature,
            max_results=max(1, min(max_results, self.options.max_results_cap)),
            prompt=prompt,
            profile=profile,
        )

    @staticmethod
    def _profile(session: SessionState, snapshot: CatalogSnapshot) -> ChatbotProfile | None:
        if session.active_chatbot_id:
            profile = snapshot.profile(session.active_chatbot_id)
            if profile is None:
                raise ValidationError(
                    f"active chatbot profile {session.active_chatbot_id!r} not found")
            return profile
        return next((c for c in snapshot.profiles if c.is_active), None) \
            or (snapshot.profiles[0] if snapshot.profiles else None)

    def _prompt(self, request: ChatSearchBody, profile: ChatbotProfile | None,
                session: SessionState, snapshot: CatalogSnapshot) -> PromptTemplate:
        if request.prompt_id:
            prompt = snapshot.prompt(request.prompt_id)
            if prompt is None:
                raise ValidationError(f"prompt template {request.prompt_id!r} not found")
            return prompt
        if profile is not None and profile.system_prompt_id:
            prompt = snapshot.prompt(profile.system_prompt_id)
            if prompt is None:
                raise ValidationError(
                    f"prompt template {profile.system_prompt_id!r} of chatbot "
                    f"{profile.name!r} not found")
            return prompt
        if session.active_prompt_id:
            prompt = snapshot.prompt(session.active_prompt_id)
            if prompt is not None:
                return prompt
        prompt = next((p for p in snapshot.prompts if p.is_default), None) \
            or (snapshot.prompts[0] if snapshot.prompts else None)
        if prompt is not None:
            return prompt
        if self.options.default_prompt:
            return PromptTemplate(id="default", name="Default",
                                  content=self.options.default_prompt, is_default=True)
        raise ValidationError("no prompt template available")

    # ---------------- streaming ----------------

    async def stream(self, request: ChatSearchBody, session: SessionState | None = None,
                     snapshot: CatalogSnapshot | None = None) -> AsyncIterator:
        """
        Yields StreamingEvent models. Closing the generator early (client went
        away, new query) cancels the run: the upstream completion stream is
        closed and no error event is produced.
        """
        run = RelayRun()
        t0 = time.perf_counter()
        plan: RelayPlan | None = None
        error: RelayError | None = None
        hits_used = tokens = 0
        m_inc("relay_total")
        try:
            try:
                plan = self.resolve(request, session or SessionState(), snapshot or CatalogSnapshot())

                run.advance(S.SEARCHING)
                s0 = time.perf_counter()
                hits = await self.search.search(plan.index, plan.query, self.options.pool_size)
                search_ms = _ms(s0)

                if not hits:
                    run.advance(S.STREAMING)
                    m_inc("no_match_total")
                    yield run.emit(StartEvent(sources=[]))
                    yield run.emit(ContentEvent(text=self.options.no_match_message))
                    run.advance(S.COMPLETED)
                    yield run.emit(DoneEvent(usage=Usage(search_latency_ms=search_ms)))
                    return

                run.advance(S.CONTEXT_BUILDING)
                top = rank_hits(hits, plan.max_results)
                hits_used = len(top)
                yield run.emit(StartEvent(sources=to_sources(top, self.options.base_origin)))

                run.advance(S.GENERATING)
                parts = self.completion.generate_stream(
                    plan.query, plan.prompt.content, top, plan.model, plan.temperature)
                async with aclosing(parts):
                    async for part in parts:
                        if isinstance(part, StreamUsage):
                            tokens = part.completion_tokens
                            continue
                        if run.state is S.GENERATING:
                            run.advance(S.STREAMING)
                        yield run.emit(ContentEvent(text=part))

                if run.state is S.GENERATING:
                    run.advance(S.STREAMING)
                run.advance(S.COMPLETED)
                yield run.emit(DoneEvent(usage=Usage(
                    search_results_count=hits_used,
                    response_tokens=tokens,
                    search_latency_ms=search_ms,
                )))
            except RelayStateError:
                raise
            except RelayError as e:
                error = e
            except Exception as e:
                log.exception("relay failed unexpectedly")
                error = RelayError(f"unexpected error: {e.__class__.__name__}: {e}")

            if error is not None:
                log.warning(f"relay failed in state {run.state.value}: [{error.code}] {error.message}")
                run.advance(S.FAILED)
                yield run.emit(ErrorEvent(message=error.message, kind=error.kind, code=error.code))
        finally:
            if run.state not in TERMINAL_STATES:
                log.info(f"relay cancelled in state {run.state.value}")
                run.state = S.CANCELLED
            self._record(run.state, plan, error, hits_used, tokens, _ms(t0))

    # ---------------- single-shot ----------------

    async def answer(self, request: ChatSearchBody, session: SessionState | None = None,
                     snapshot: CatalogSnapshot | None = None) -> ChatSearchResponse:
        """Non-streaming variant; raises RelayError for the HTTP layer to map."""
        t0 = time.perf_counter()
        plan: RelayPlan | None = None
        hits_used = tokens = 0
        m_inc("relay_total")
        try:
            plan = self.resolve(request, session or SessionState(), snapshot or CatalogSnapshot())
            s0 = time.perf_counter()
            hits = await self.search.search(plan.index, plan.query, self.options.pool_size)
            search_ms = _ms(s0)
            top = rank_hits(hits, plan.max_results)
            hits_used = len(top)
            if top:
                completion = await self.completion.generate(
                    plan.query, plan.prompt.content, top, plan.model, plan.temperature)
                text, tokens = completion.text, completion.token_count
            else:
                m_inc("no_match_total")
                text = self.options.no_match_message
        except RelayError as e:
            self._record(S.FAILED, plan, e, hits_used, tokens, _ms(t0))
            raise

        self._record(S.COMPLETED, plan, None, hits_used, tokens, _ms(t0))
        return ChatSearchResponse(
            data=ChatSearchData(
                query=plan.query,
                response=text,
                sources=to_sources(top, self.options.base_origin),
                search_results=top,
                prompt_used=plan.prompt.name,
                model=plan.model,
                timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
            ),
            usage=Usage(search_results_count=hits_used, response_tokens=tokens,
                        search_latency_ms=search_ms),
        )

    @staticmethod
    def _record(state: RelayState, plan: RelayPlan | None, error: RelayError | None,
                hits: int, tokens: int, latency_ms: float) -> None:
        status = {S.COMPLETED: "ok", S.FAILED: "error"}.get(state, "cancelled")
        m_inc(f"relay_{state.value}_total")
        m_inc("tokens_total", float(tokens))
        if error is not None:
            set_error(f"{error.code}: {error.message}")
        ops_log.emit(
            op="relay",
            status=status,
            error_code=error.code if error else None,
            index=plan.index if plan else None,
            model=plan.model if plan else None,
            hits=hits,
            tokens=tokens,
            latency_ms=latency_ms,
        )
