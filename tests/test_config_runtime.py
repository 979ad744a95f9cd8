# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from relay.config import get_cfg, reload_cfg

def test_overlay_get_set_snapshot(cfg):
    assert cfg.get("auth.mode", "none") == "none"
    assert cfg.get("kv.type", "xpto") == "rest"

    # runtime overlay supersedes defaults and file
    cfg.set("auth.mode", "static")
    cfg.set("relay.max_results", 4)
    assert cfg.get("auth.mode") == "static"
    assert cfg.get("relay.max_results") == 4

    snap = cfg.snapshot()
    assert snap["auth"]["mode"] == "static"
    snap["auth"]["mode"] = "mutated"
    assert cfg.get("auth.mode") == "static"

def test_reload_does_not_inherit_runtime_overlay(cfg):
    cfg.set("relay.max_results", 3)
    reload_cfg()
    assert get_cfg().get("relay.max_results") == 10
    assert get_cfg() is cfg

def test_env_overrides_with_coercion(monkeypatch):
    monkeypatch.setenv("RAGRELAY_SEARCH__URL", "https://search.example")
    monkeypatch.setenv("RAGRELAY_RELAY__MAX_RESULTS", "5")
    monkeypatch.setenv("RAGRELAY_KV__MIGRATE_DOUBLE_ENCODED", "false")
    monkeypatch.setenv("RAGRELAY_COMPLETION__TIMEOUT_S", "12.5")
    cfg = reload_cfg()
    assert cfg.get("search.url") == "https://search.example"
    assert cfg.get("relay.max_results") == 5
    assert cfg.get("kv.migrate_double_encoded") is False
    assert cfg.get("completion.timeout_s") == 12.5

def test_yaml_file_with_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("SHOP_ORIGIN", "https://shop.example")
    monkeypatch.delenv("SEARCH_INDEX", raising=False)
    p = tmp_path / "config.yml"
    p.write_text(
        "relay:\n"
        "  base_origin: ${SHOP_ORIGIN}\n"
        "  pool_size: 50\n"
        "search:\n"
        "  default_index: ${SEARCH_INDEX|products}\n",
        encoding="utf-8")
    cfg = reload_cfg(str(p))
    assert cfg.get("relay.base_origin") == "https://shop.example"
    assert cfg.get("relay.pool_size") == 50
    assert cfg.get("search.default_index") == "products"
    # untouched sections keep their defaults
    assert cfg.get("completion.default_model") == "gpt-4o-mini"

def test_runtime_overlay_reflected_in_app(app, client):
    app.state.cfg.set("kv.type", "upstash")
    j = client.get("/health/metrics").json()
    assert j["kv_type"] == "upstash"
