# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import httpx
from relay.auth import hash_key
from relay.catalog import ACTIVE_CHATBOT_KEY, PROFILES_KEY, PROMPTS_KEY
from relay.consumer import StreamConsumer
from relay.errors import UpstreamSearchError
from relay.orchestrator import Relay, RelayOptions
from relay.schemas import decode_event
from utils import FakeSearch, collect, run


def _frames(text):
    return [decode_event(line[len("data: "):])
            for line in text.split("\n") if line.startswith("data: ")]


# ---------------- streaming ----------------

def test_stream_endpoint_emits_ordered_events(client):
    r = client.post("/chat-search/stream", json={"query": "which pad?", "maxResults": 2})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-cache"
    events = _frames(r.text)
    assert [e.type for e in events] == ["start", "content", "content", "content", "done"]
    assert [s.title for s in events[0].sources] == ["Pad A", "Pad C"]
    assert events[0].sources[0].url == "https://shop.example/p/a"
    assert events[-1].usage.search_results_count == 2
    assert events[-1].usage.response_tokens == 7


def test_stream_uses_stored_profile_and_prompt(client, kv, completion):
    kv.data.update({
        PROMPTS_KEY: [{"id": "p1", "name": "Shop", "content": "You sell pads."}],
        PROFILES_KEY: [{"id": "c1", "name": "Shop bot", "systemPromptId": "p1",
                        "config": {"modelName": "gpt-5-mini", "searchIndex": "catalog"}}],
        ACTIVE_CHATBOT_KEY: "c1",
    })
    r = client.post("/chat-search/stream", json={"query": "pads"})
    assert r.status_code == 200
    call = completion.calls[0]
    assert call["system_prompt"] == "You sell pads."
    assert call["model"] == "gpt-5-mini"


def test_stream_upstream_failure_is_an_error_frame(app, client):
    app.state.relay.search = FakeSearch(error=UpstreamSearchError("search failed: 503"))
    r = client.post("/chat-search/stream", json={"query": "pads"})
    assert r.status_code == 200
    events = _frames(r.text)
    assert [e.type for e in events] == ["error"]
    assert events[0].code == "search_failed"


def test_stream_unknown_prompt_is_an_error_frame(client):
    r = client.post("/chat-search/stream", json={"query": "pads", "promptId": "ghost"})
    events = _frames(r.text)
    assert [e.type for e in events] == ["error"]
    assert events[0].kind == "validation"


def test_consumer_reads_the_live_endpoint(app):
    consumer = StreamConsumer("http://relay.test", transport=httpx.ASGITransport(app=app))
    events = run(collect(consumer.stream("which pad?", max_results=2)))
    assert [e.type for e in events] == ["start", "content", "content", "content", "done"]
    assert "".join(e.text for e in events if e.type == "content") == "Pad A is the best."


# ---------------- single-shot ----------------

def test_envelope_endpoint(client):
    r = client.post("/chat-search", json={"query": "which pad?", "maxResults": 2})
    assert r.status_code == 200
    j = r.json()
    assert j["success"] is True
    assert j["data"]["response"] == "Pad A is the best."
    assert j["data"]["query"] == "which pad?"
    assert [s["title"] for s in j["data"]["sources"]] == ["Pad A", "Pad C"]
    assert len(j["data"]["searchResults"]) == 2
    assert j["data"]["timestamp"].endswith("Z")
    assert j["usage"]["responseTokens"] == 7


def test_envelope_configuration_error_is_400(app, client):
    app.state.relay = Relay(None, None, RelayOptions())
    r = client.post("/chat-search", json={"query": "pads"})
    assert r.status_code == 400
    j = r.json()
    assert j["success"] is False
    assert (j["code"], j["kind"]) == ("configuration_error", "configuration")
    assert "search.url" in j["error"]


def test_envelope_upstream_error_is_500(app, client):
    app.state.relay.search = FakeSearch(error=UpstreamSearchError("search failed: 502"))
    r = client.post("/chat-search", json={"query": "pads"})
    assert r.status_code == 500
    assert r.json()["code"] == "search_failed"


def test_envelope_no_hits_returns_canned_answer(app, client):
    app.state.relay.search = FakeSearch([])
    j = client.post("/chat-search", json={"query": "pads"}).json()
    assert j["data"]["sources"] == []
    assert j["data"]["response"] == app.state.relay.options.no_match_message


# ---------------- request validation ----------------

def test_malformed_bodies_are_400(client):
    r = client.post("/chat-search/stream", json={})
    assert r.status_code == 400
    j = r.json()
    assert j["code"] == "invalid_request"
    assert "query" in j["error"]

    r = client.post("/chat-search", json={"query": "x", "temperature": 5})
    assert r.status_code == 400
    assert r.json()["kind"] == "validation"


# ---------------- auth ----------------

def _keys(cfg, limit=100):
    cfg.set("auth.mode", "static")
    cfg.set("auth.api_keys", {"web": {"hash": hash_key("k-1"), "rate_limit_per_hour": limit}})


def test_static_auth_requires_bearer(client, cfg):
    _keys(cfg)
    r = client.post("/chat-search/stream", json={"query": "pads"})
    assert r.status_code == 401
    assert r.headers["www-authenticate"] == "Bearer"
    assert r.json()["code"] == "unauthorized"

    r = client.post("/chat-search", json={"query": "pads"},
                    headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401

    r = client.post("/chat-search", json={"query": "pads"},
                    headers={"Authorization": "Bearer k-1"})
    assert r.status_code == 200


def test_static_auth_rate_limit_is_429(client, cfg):
    _keys(cfg, limit=1)
    h = {"Authorization": "Bearer k-1"}
    assert client.post("/chat-search/stream", json={"query": "pads"}, headers=h).status_code == 200
    r = client.post("/chat-search/stream", json={"query": "pads"}, headers=h)
    assert r.status_code == 429
    assert int(r.headers["retry-after"]) > 0
    assert r.json()["code"] == "rate_limited"


def test_health_is_open_under_static_auth(client, cfg):
    _keys(cfg)
    assert client.get("/health/live").status_code == 200
