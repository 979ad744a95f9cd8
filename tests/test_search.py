# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import json
import httpx
import pytest
from relay.errors import UpstreamSearchError
from relay.search import SearchClient, rank_hits
from utils import hit, run


def _client(handler):
    return SearchClient("https://search.example", "s3cr3t",
                        transport=httpx.MockTransport(handler))


def test_search_posts_query_and_normalizes_hits():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"hits": [
            {"id": "x1", "data": {"Name": "Pad A"}, "metadata": {"Brand": "Acme"}, "score": 0.8},
            {"content": "plain text hit"},
        ]})

    hits = run(_client(handler).search("products", "pads", 100))
    req = seen[0]
    assert req.method == "POST"
    assert req.url.path == "/search/products"
    assert req.headers["authorization"] == "Bearer s3cr3t"
    assert json.loads(req.content) == {"query": "pads", "limit": 100}

    assert hits[0].id == "x1"
    assert hits[0].content == {"Name": "Pad A"}
    assert hits[0].metadata == {"Brand": "Acme"}
    assert hits[0].score == 0.8
    assert hits[1].id == "result-1"
    assert hits[1].content == {"content": "plain text hit"}
    assert hits[1].score == 0.0


def test_search_sends_filter_when_given():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"hits": []})

    assert run(_client(handler).search("products", "pads", 5, filter="brand = 'Acme'")) == []
    assert bodies[0]["filter"] == "brand = 'Acme'"


def test_search_http_error_raises_with_status():
    client = _client(lambda r: httpx.Response(403, text="forbidden index"))
    with pytest.raises(UpstreamSearchError) as ei:
        run(client.search("products", "pads", 10))
    assert ei.value.status_code == 403
    assert "forbidden index" in ei.value.message
    assert ei.value.code == "search_failed"


def test_search_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamSearchError):
        run(_client(handler).search("products", "pads", 10))


def test_search_malformed_body_raises():
    client = _client(lambda r: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(UpstreamSearchError):
        run(client.search("products", "pads", 10))


def test_rank_hits_orders_by_score_and_truncates():
    hits = [hit("b", 0.4), hit("a", 0.9), hit("c", 0.7)]
    assert [h.id for h in rank_hits(hits, 2)] == ["a", "c"]
    assert [h.id for h in rank_hits(hits)] == ["a", "c", "b"]


def test_rank_hits_keeps_upstream_order_for_ties():
    hits = [hit("first", 0.5), hit("second", 0.5), hit("top", 0.9)]
    assert [h.id for h in rank_hits(hits, 10)] == ["top", "first", "second"]
