# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from relay.main import VERSION
from relay.orchestrator import Relay, RelayOptions

def test_health_endpoints(client):
    r = client.get("/health/live")
    assert r.status_code == 200 and r.json()["ok"] is True

    r2 = client.get("/health")
    assert r2.status_code == 200
    j = r2.json()
    assert j["version"] == VERSION
    assert j["ok"] is True and j["status"] == "ready"
    assert j["kv_configured"] is True

def test_health_degraded_without_upstreams(app, client):
    app.state.relay = Relay(None, None, RelayOptions())
    j = client.get("/health").json()
    assert j["ok"] is False
    assert j["status"] == "degraded"
    assert j["search_configured"] is False
    assert j["completion_configured"] is False

def test_build_app_from_bare_config_reports_missing_pieces(cfg):
    from relay.main import build_app
    from fastapi.testclient import TestClient
    j = TestClient(build_app(cfg)).get("/health").json()
    assert (j["search_configured"], j["completion_configured"], j["kv_configured"]) == \
        (False, False, False)
