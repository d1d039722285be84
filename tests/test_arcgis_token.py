import asyncio

import httpx
import pytest

from conftest import HOUR_MS, PORTAL, TokenIssuer
from services.arcgis_token import TokenManager, expires_at_iso
from services.errors import CredentialError, UpstreamTimeout


def _manager(issuer, clock=None, **kwargs):
    return TokenManager(
        portal_url=PORTAL,
        username="svc_dashboard",
        password="secret",
        transport=httpx.MockTransport(issuer),
        clock=clock or issuer.clock,
        **kwargs,
    )


def test_cached_token_is_reused(token_manager, issuer):
    first = asyncio.run(token_manager.get_valid_token())
    second = asyncio.run(token_manager.get_valid_token())
    assert first.token == second.token == "tok-1"
    assert first.ssl is True
    assert issuer.calls == 1


def test_token_request_form(token_manager, issuer):
    asyncio.run(token_manager.get_valid_token())
    request = issuer.requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"{PORTAL}/sharing/rest/generateToken"
    assert issuer.form() == {
        "username": "svc_dashboard",
        "password": "secret",
        "referer": "https://dashboard.example.test",
        "f": "json",
        "expiration": "60",
        "client": "referer",
    }


def test_token_regenerated_inside_refresh_threshold(token_manager, issuer, clock):
    asyncio.run(token_manager.get_valid_token())

    # 期限 6 分前: まだ使える
    clock.now += HOUR_MS - 6 * 60 * 1000
    assert asyncio.run(token_manager.get_valid_token()).token == "tok-1"

    # 期限 4 分前: 再発行
    clock.now += 2 * 60 * 1000
    assert asyncio.run(token_manager.get_valid_token()).token == "tok-2"
    assert issuer.calls == 2


def test_invalidate_forces_new_generation(token_manager, issuer):
    asyncio.run(token_manager.get_valid_token())
    token_manager.invalidate_token()
    assert token_manager.cached is None
    assert asyncio.run(token_manager.get_valid_token()).token == "tok-2"
    assert issuer.calls == 2


def test_concurrent_misses_share_one_request(clock):
    issuer = TokenIssuer(clock=clock)

    async def slow(request):
        await asyncio.sleep(0.01)
        return issuer(request)

    manager = _manager(slow, clock=clock)

    async def run():
        return await asyncio.gather(*[manager.get_valid_token() for _ in range(5)])

    results = asyncio.run(run())
    assert {c.token for c in results} == {"tok-1"}
    assert issuer.calls == 1


def test_missing_configuration():
    manager = TokenManager(portal_url=None, username=None, password=None)
    with pytest.raises(CredentialError, match="Missing ArcGIS Enterprise credentials"):
        asyncio.run(manager.get_valid_token())


@pytest.mark.parametrize(
    "body,status,message",
    [
        ({"error": {"code": 400, "message": "Invalid username or password.", "details": []}}, 200, "Invalid username"),
        ({"token": "abc"}, 200, "Invalid token response"),
        ({"expires": 1}, 200, "Invalid token response"),
        ({"token": "abc", "expires": 1}, 503, "status: 503"),
        ({"token": "abc", "expires": "soon"}, 200, "Invalid token response"),
        ({"error": "Invalid credentials"}, 200, "Invalid credentials"),
        (["tok"], 200, "Invalid token response"),
    ],
)
def test_bad_token_responses(clock, body, status, message):
    issuer = TokenIssuer(clock=clock, body=body, status=status)
    manager = _manager(issuer)
    with pytest.raises(CredentialError, match=message):
        asyncio.run(manager.get_valid_token())
    assert manager.cached is None


def test_network_error_is_credential_error(clock):
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    manager = _manager(boom, clock=clock)
    with pytest.raises(CredentialError):
        asyncio.run(manager.get_valid_token())


def test_timeout_is_retryable(clock):
    def slow(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    manager = _manager(slow, clock=clock)
    with pytest.raises(UpstreamTimeout) as excinfo:
        asyncio.run(manager.get_valid_token())
    assert excinfo.value.to_response() == {
        "success": False,
        "error": "ArcGIS token request timed out",
        "retryable": True,
    }
    assert manager.cached is None


def test_expires_at_iso():
    assert expires_at_iso(1700000000000) == "2023-11-14T22:13:20.000Z"
