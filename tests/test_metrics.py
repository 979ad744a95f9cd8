# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from relay import metrics
from relay.errors import UpstreamSearchError
from utils import FakeSearch

def test_metrics_counters(client):
    # one streamed answer, one envelope answer -> counters move
    r = client.post("/chat-search/stream", json={"query": "which pad?"})
    assert r.status_code == 200
    r = client.post("/chat-search", json={"query": "which pad?"})
    assert r.status_code == 200

    snap = client.get("/health/metrics").json()
    assert snap["relay_total"] == 2
    assert snap["relay_completed_total"] == 2
    assert snap["tokens_total"] == 14
    assert snap["requests_total"] >= 2
    assert snap["last_error"] is None

def test_failures_are_counted_and_remembered(app, client):
    app.state.relay.search = FakeSearch(error=UpstreamSearchError("search failed: 503"))
    client.post("/chat-search/stream", json={"query": "pads"})
    snap = metrics.snapshot()
    assert snap["relay_failed_total"] == 1
    assert snap["errors_total"] == 1
    assert "search_failed" in snap["last_error"]

def test_prometheus_exposition(client):
    client.post("/chat-search/stream", json={"query": "pads"})
    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    lines = r.text.splitlines()
    assert "ragrelay_relay_total 1.0" in lines
    assert any(l.startswith("ragrelay_build_info{") for l in lines)
    assert not any("last_error" in l for l in lines)
