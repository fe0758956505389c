from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from copytrader.common import secrets
from copytrader.common.errors import ConfigError, RemoteCallError, SecretError
from copytrader.execution.models import SyntheticOrder
from copytrader.execution.order_client import HttpOrderClient, ShadowOrderClient, resolve_order_service_api_key
from copytrader.marketdata.positions import Position

THEM = "0x" + "e" * 40


def _order() -> SyntheticOrder:
    return SyntheticOrder(
        side="SELL",
        usdc_size=75.0,
        price=0.42,
        condition_id="c1",
        asset="a1",
        user_address=THEM,
        trade_ids=("t1", "t2"),
        slug="market",
    )


def _submit(client, *, own=None, theirs=None):
    return asyncio.run(client.submit("SELL", own, theirs, _order(), 100.0, 900.0, THEM))


def _http_client(handler, *, token="secret-token") -> HttpOrderClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpOrderClient("https://orders.example", client=http, timeout_s=2.0, api_key=token)


def test_http_submit_posts_order_with_bearer_token():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"accepted": True, "order_id": "o-1"})

    theirs = Position(condition_id="c1", asset="a1", size=5, current_value=2.0)
    assert _submit(_http_client(handler), theirs=theirs) is True

    req = seen[0]
    assert req.method == "POST"
    assert req.url.path == "/orders"
    assert req.headers["Authorization"] == "Bearer secret-token"
    body = json.loads(req.content)
    assert body["side"] == "SELL"
    assert body["order"]["trade_ids"] == ["t1", "t2"]
    assert body["order"]["usdc_size"] == 75.0
    assert body["own_position"] is None
    assert body["counterparty_position"]["condition_id"] == "c1"
    assert body["own_balance"] == 100.0
    assert body["counterparty_balance"] == 900.0
    assert body["counterparty_address"] == THEM


def test_http_submit_without_token_sends_no_auth_header():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    assert _submit(_http_client(handler, token=None)) is True
    assert "Authorization" not in seen[0].headers


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(422, json={"detail": "insufficient balance"}),
        httpx.Response(200, json={"accepted": False}),
    ],
)
def test_http_submit_rejections_return_false(response):
    assert _submit(_http_client(lambda request: response)) is False


def test_http_submit_server_error_raises_remote_call_error():
    with pytest.raises(RemoteCallError):
        _submit(_http_client(lambda request: httpx.Response(503)))


def test_http_submit_transport_error_raises_remote_call_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(RemoteCallError) as ei:
        _submit(_http_client(handler))
    assert isinstance(ei.value.cause, httpx.ConnectError)


def test_shadow_client_records_and_always_succeeds(caplog):
    client = ShadowOrderClient()
    with caplog.at_level("INFO"):
        assert _submit(client) is True
        assert _submit(client) is True

    assert len(client.submissions) == 2
    assert client.submissions[0].payload["order"]["condition_id"] == "c1"
    assert any(getattr(r, "event_type", None) == "order.shadow_submit" for r in caplog.records)


def test_api_key_resolution_maps_lookup_failures_to_config_error(monkeypatch):
    def denied(path):
        raise SecretError(f"failed to access secret {path}")

    monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "proj")
    monkeypatch.setattr(secrets, "_access_secret_version", denied)
    with pytest.raises(ConfigError):
        resolve_order_service_api_key(required=False)


def test_optional_api_key_resolves_to_none_without_project(monkeypatch):
    for name in secrets.PROJECT_ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    assert resolve_order_service_api_key(required=False) is None
    with pytest.raises(ConfigError):
        resolve_order_service_api_key(required=True)
