import json
import os
import socket
import sys
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
API_DIR = REPO_ROOT / "apps" / "api"

# apps/api のモジュールはトップレベル import（from settings import settings）で書かれている
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

PORTAL = "https://portal.example.test/portal"
SERVER = "https://gis.example.test/server/rest/services"
NOW_MS = 1_700_000_000_000
HOUR_MS = 60 * 60 * 1000


@pytest.fixture(autouse=True)
def block_network(monkeypatch):
    if os.getenv("LIVE") == "1":
        return

    real_connect = socket.socket.connect

    def guarded_connect(sock, address):
        host = address[0]
        if host not in ("127.0.0.1", "localhost"):
            raise RuntimeError("Network access blocked in tests")
        return real_connect(sock, address)

    monkeypatch.setattr(socket.socket, "connect", guarded_connect)


class Clock:
    def __init__(self, now=NOW_MS):
        self.now = now

    def __call__(self):
        return self.now


class TokenIssuer:
    """Stands in for the portal's generateToken endpoint."""

    def __init__(self, lifetime_ms=HOUR_MS, clock=None, body=None, status=200):
        self.lifetime_ms = lifetime_ms
        self.clock = clock or Clock()
        self.body = body
        self.status = status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is not None:
            return httpx.Response(self.status, json=self.body)
        n = len(self.requests)
        return httpx.Response(
            self.status,
            json={"token": f"tok-{n}", "expires": self.clock() + self.lifetime_ms, "ssl": True},
        )

    @property
    def calls(self):
        return len(self.requests)

    def form(self, index=-1):
        raw = parse_qs(self.requests[index].content.decode())
        return {k: v[0] for k, v in raw.items()}


def query_params(request: httpx.Request):
    params = dict(request.url.params)
    if "outStatistics" in params:
        params["outStatistics"] = json.loads(params["outStatistics"])
    return params


def features(*attrs):
    return {"features": [{"attributes": a} for a in attrs]}


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(clock=clock)


@pytest.fixture
def token_manager(issuer, clock):
    from services.arcgis_token import TokenManager

    return TokenManager(
        portal_url=PORTAL,
        username="svc_dashboard",
        password="secret",
        referer="https://dashboard.example.test",
        transport=httpx.MockTransport(issuer),
        clock=clock,
    )
