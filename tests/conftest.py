# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import os
import pytest
from fastapi.testclient import TestClient
from relay import log as ops_log, metrics
from relay.auth import VALIDATOR
from relay.catalog import Catalog
from relay.config import get_cfg, reload_cfg
from relay.main import build_app
from relay.orchestrator import Relay, RelayOptions
from utils import FakeCompletion, FakeSearch, MemoryKV, catalog_hits


@pytest.fixture(autouse=True)
def _reset_cfg_between_tests(monkeypatch):
    for k in list(os.environ):
        if k.startswith("RAGRELAY_"):
            monkeypatch.delenv(k, raising=False)
    reload_cfg()
    cfg = get_cfg()
    cfg.set("auth.mode", "none")
    cfg.set("auth.api_keys", {})
    cfg.set("kv.url", None)
    cfg.set("kv.token", None)
    cfg.set("search.url", None)
    cfg.set("search.token", None)
    cfg.set("completion.api_key", None)
    cfg.set("relay.base_origin", "https://shop.example")
    cfg.set("log.ops", None)
    metrics.reset()
    VALIDATOR.reset()
    yield
    ops_log.configure(None)


@pytest.fixture()
def kv():
    return MemoryKV()


@pytest.fixture()
def search():
    return FakeSearch(catalog_hits())


@pytest.fixture()
def completion():
    return FakeCompletion(["Pad A ", "is the ", "best."], tokens=7)


@pytest.fixture()
def app(kv, search, completion):
    cfg = get_cfg()
    app = build_app(cfg)
    app.state.kv = kv
    app.state.catalog = Catalog(kv)
    app.state.relay = Relay(search, completion, RelayOptions.from_cfg(cfg))
    return app


@pytest.fixture()
def client(app):
    return TestClient(app)


@pytest.fixture()
def cfg(app):
    return app.state.cfg
