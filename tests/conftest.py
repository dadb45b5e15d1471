import json
import os
import sys
import time
from typing import Callable, Dict, List
from urllib.parse import parse_qsl

import httpx
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config import Config  # noqa: E402
from store import MemoryStore  # noqa: E402

UPSTREAM_TOKEN_URL = "https://oauth.dev.tidbcloud.com/v1/token"
UPSTREAM_AUTHORIZE_URL = "https://dev.tidbcloud.com/oauth/authorize"
UPSTREAM_DEVICE_URL = "https://oauth.dev.tidbcloud.com/v1/device_authorization"


class FakeClock:
    """Controllable replacement for time.time"""

    def __init__(self, start: float = None):
        # Whole seconds keep TTL arithmetic exact
        self.now = start if start is not None else float(int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Scriptable TiDB Cloud token and device authorization endpoints behind httpx.MockTransport"""

    def __init__(self):
        self.requests: List[Dict] = []
        self.responder: Callable[[Dict], httpx.Response] = self.default_response
        self.device_requests: List[Dict] = []
        self.device_responder: Callable[[Dict], httpx.Response] = self.default_device_response

    @staticmethod
    def default_response(body: Dict) -> httpx.Response:
        if body["grant_type"] == "refresh_token":
            return httpx.Response(200, json={
                "access_token": "upstream-access-2",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "upstream-refresh-2",
            })
        return httpx.Response(200, json={
            "access_token": "upstream-access-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "upstream-refresh-1",
            "scope": "org:owner",
        })

    @staticmethod
    def default_device_response(body: Dict) -> httpx.Response:
        return httpx.Response(200, json={
            "device_code": "upstream-device-code",
            "user_code": "WDJB-MJHT",
            "verification_uri": "https://dev.tidbcloud.com/device",
            "verification_uri_complete": "https://dev.tidbcloud.com/device?user_code=WDJB-MJHT",
            "expires_in": 900,
            "interval": 5,
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == UPSTREAM_DEVICE_URL:
            body = dict(parse_qsl(request.content.decode("utf-8")))
            self.device_requests.append(body)
            return self.device_responder(body)

        assert str(request.url) == UPSTREAM_TOKEN_URL
        body = json.loads(request.content)
        self.requests.append(body)
        return self.responder(body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oauth_env(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("TIDB_CLOUD_OAUTH_CLIENT_ID", "proxy-client")
    monkeypatch.setenv("TIDB_CLOUD_OAUTH_CLIENT_SECRET", "proxy-secret")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("TIDB_CLOUD_OAUTH_AUTHORIZE_URL", raising=False)
    monkeypatch.delenv("TIDB_CLOUD_OAUTH_TOKEN_URL", raising=False)
    monkeypatch.delenv("TIDB_CLOUD_OAUTH_DEVICE_AUTHORIZATION_URL", raising=False)
    monkeypatch.delenv("OAUTH_REFRESH_TOKEN_ROTATION", raising=False)
    monkeypatch.delenv("OAUTH_CALLBACK_PATH", raising=False)
    return monkeypatch


@pytest.fixture
def config(oauth_env):
    return Config()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def upstream():
    return FakeUpstream()
