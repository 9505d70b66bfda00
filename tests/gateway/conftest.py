import json
import os

import httpx
import pytest
from fastapi.testclient import TestClient

from leaflow.gateway.app import create_app
from leaflow.gateway.config import GatewayConfig

UPSTREAM = "http://upstream.test"
INNER_TOKEN = "svc-inner-token"


class UpstreamRecorder:
    """MockTransport handler that remembers every request it receives."""

    def __init__(self, handler=None):
        self.handler = handler or default_upstream
        self.calls = []
        self.config = None

    def __call__(self, request: httpx.Request):
        self.calls.append(request)
        return self.handler(request)

    @property
    def last_json(self):
        return json.loads(self.calls[-1].content)


def default_upstream(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/v1/models":
        return httpx.Response(
            200, json={"object": "list", "data": [{"id": "m1", "object": "model"}]}
        )
    return httpx.Response(
        200,
        content=b'{"id":"x","choices":[]}',
        headers={"content-type": "application/json"},
    )


def make_config(tmp_path, **overrides) -> GatewayConfig:
    values = {
        "inner_token": INNER_TOKEN,
        "upstream_base_url": UPSTREAM,
        "access_log_path": str(tmp_path / "logs" / "access.jsonl"),
    }
    values.update(overrides)
    return GatewayConfig(**values)


@pytest.fixture
def gateway(tmp_path):
    """Return ``build(handler=None, **cfg) -> (TestClient, UpstreamRecorder)``."""

    def build(handler=None, **overrides):
        recorder = UpstreamRecorder(handler)
        cfg = make_config(tmp_path, **overrides)
        recorder.config = cfg
        app = create_app(cfg, transport=httpx.MockTransport(recorder))
        return TestClient(app), recorder

    return build


_LEGACY_ENV_NAMES = ("PORT", "LLM_BASE_URL", "LLM_REQUEST_TIMEOUT_MS", "INNER_TOKEN", "AUTHORIZATION_KEY")


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Drop LEAFLOW_* and legacy variables and point the config file into tmp_path."""

    for key in list(os.environ):
        if key.startswith("LEAFLOW_") or key in _LEGACY_ENV_NAMES:
            monkeypatch.delenv(key, raising=False)
    config_path = tmp_path / "leaflow.toml"
    monkeypatch.setenv("LEAFLOW_CONFIG_FILE", str(config_path))
    return config_path
