from __future__ import annotations

import asyncio
import hashlib
import hmac
from dataclasses import replace

import pytest

from helpers import NOW, SHOP_ID, token_response
from shopsync.errors import AuthError, TransportError, ValidationError
from shopsync.shopee.client import ShopeeClient
from shopsync.shopee.signing import api_path, sign


def _expected_sign(key: str, base: str) -> str:
    return hmac.new(key.encode(), base.encode(), hashlib.sha256).hexdigest()


def test_sign_shop_scoped_and_partner_only() -> None:
    path = "/api/v2/ads/get_all_cpc_ads_daily_performance"
    shop = sign(partner_id=1000, partner_key="k", path=path, timestamp=1700000000, access_token="tok", shop_id=42)
    assert shop == _expected_sign("k", f"1000{path}1700000000tok42")

    auth = sign(partner_id=1000, partner_key="k", path="/api/v2/auth/access_token/get", timestamp=1700000000)
    assert auth == _expected_sign("k", "1000/api/v2/auth/access_token/get1700000000")


def test_api_path_prefixes_v2() -> None:
    assert api_path("ads/edit_auto_product_ads") == "/api/v2/ads/edit_auto_product_ads"
    assert api_path("/api/v2/order/get_order_list") == "/api/v2/order/get_order_list"


def test_call_sends_signed_query_with_params(settings, repo, shopee, clock) -> None:
    shopee.on("ads/get_total_balance", {"error": "", "response": {"total_balance": 10}})
    client = ShopeeClient(settings, repo, http=shopee.http(), clock=clock)

    data = asyncio.run(client.get(SHOP_ID, "ads/get_total_balance", foo="bar", skip=None))

    assert data["response"]["total_balance"] == 10
    [call] = shopee.calls
    assert call.host == "partner.shopeemobile.com"
    assert call.params["partner_id"] == "1000"
    assert call.params["shop_id"] == str(SHOP_ID)
    assert call.params["access_token"] == "tok-1"
    assert call.params["timestamp"] == str(int(NOW))
    assert call.params["foo"] == "bar"
    assert "skip" not in call.params
    base = f"1000{call.path}{int(NOW)}tok-1{SHOP_ID}"
    assert call.params["sign"] == _expected_sign("partner-secret", base)


def test_call_routes_through_proxy(settings, repo, shopee, clock) -> None:
    shopee.on("ads/get_total_balance", {"error": "", "response": {}})
    proxied = replace(settings, proxy_url="https://proxy.example/fn")
    client = ShopeeClient(proxied, repo, http=shopee.http(), clock=clock)

    asyncio.run(client.get(SHOP_ID, "ads/get_total_balance"))

    [call] = shopee.calls
    assert call.via_proxy is True
    assert call.host == "proxy.example"
    assert call.path == "/api/v2/ads/get_total_balance"
    assert call.params["shop_id"] == str(SHOP_ID)


def test_auth_failure_refreshes_once_and_retries_same_request(settings, repo, shopee, clock) -> None:
    attempts = []

    def balance(call):
        attempts.append(call)
        if call.params["access_token"] == "tok-1":
            return 403, {"error": "error_auth", "message": "Invalid access_token."}
        return {"error": "", "response": {"ok": True}}

    shopee.on("ads/get_total_balance", balance)
    shopee.on("auth/access_token/get", token_response())
    client = ShopeeClient(settings, repo, http=shopee.http(), clock=clock)

    data = asyncio.run(client.get(SHOP_ID, "ads/get_total_balance", page=3))

    assert data["response"]["ok"] is True
    assert len(shopee.calls_to("auth/access_token/get")) == 1
    assert [a.params["access_token"] for a in attempts] == ["tok-1", "tok-2"]
    assert attempts[0].params["page"] == attempts[1].params["page"] == "3"
    assert attempts[0].params["sign"] != attempts[1].params["sign"]

    refresh_call = shopee.calls_to("auth/access_token/get")[0]
    assert refresh_call.method == "POST"
    assert refresh_call.body == {"refresh_token": "ref-1", "partner_id": 1000, "shop_id": SHOP_ID}
    assert "access_token" not in refresh_call.params

    stored = repo.get_shop(SHOP_ID)
    assert stored["access_token"] == "tok-2"
    assert stored["refresh_token"] == "ref-2"
    assert stored["expires_at"] == int(NOW) + 14400


def test_second_auth_failure_is_terminal(settings, repo, shopee, clock) -> None:
    shopee.on("ads/get_total_balance", {"error": "error_auth", "message": "Invalid access_token."})
    shopee.on("auth/access_token/get", token_response())
    client = ShopeeClient(settings, repo, http=shopee.http(), clock=clock)

    with pytest.raises(AuthError):
        asyncio.run(client.get(SHOP_ID, "ads/get_total_balance"))

    assert len(shopee.calls_to("ads/get_total_balance")) == 2
    assert len(shopee.calls_to("auth/access_token/get")) == 1


def test_token_inside_buffer_is_refreshed_before_the_call(settings, repo, shopee, clock) -> None:
    repo.save_token(shop_id=SHOP_ID, access_token="tok-1", refresh_token="ref-1", expires_at=int(NOW) + 60)
    shopee.on("ads/get_total_balance", {"error": "", "response": {}})
    shopee.on("auth/access_token/get", token_response())
    client = ShopeeClient(settings, repo, http=shopee.http(), clock=clock)

    asyncio.run(client.get(SHOP_ID, "ads/get_total_balance"))

    assert [c.path for c in shopee.calls] == ["/api/v2/auth/access_token/get", "/api/v2/ads/get_total_balance"]
    assert shopee.calls[1].params["access_token"] == "tok-2"


def test_refresh_rejection_raises_auth_error_and_keeps_tokens(settings, repo, shopee, clock) -> None:
    repo.save_token(shop_id=SHOP_ID, access_token="tok-1", refresh_token="ref-1", expires_at=int(NOW) - 10)
    shopee.on("auth/access_token/get", {"error": "error_auth", "message": "refresh_token expired"})
    client = ShopeeClient(settings, repo, http=shopee.http(), clock=clock)

    with pytest.raises(AuthError):
        asyncio.run(client.get(SHOP_ID, "ads/get_total_balance"))

    assert repo.get_shop(SHOP_ID)["access_token"] == "tok-1"
    assert shopee.calls_to("ads/get_total_balance") == []


def test_error_param_is_validation_error(settings, repo, shopee, clock) -> None:
    shopee.on("ads/get_total_balance", {"error": "error_param", "message": "bad campaign_id_list"})
    client = ShopeeClient(settings, repo, http=shopee.http(), clock=clock)

    with pytest.raises(ValidationError):
        asyncio.run(client.get(SHOP_ID, "ads/get_total_balance"))


def test_other_api_errors_and_rate_limits_are_transport_errors(settings, repo, shopee, clock) -> None:
    shopee.on("ads/get_total_balance", {"error": "error_server", "message": "busy"})
    shopee.on("ads/get_product_level_campaign_id_list", (429, {"error": "too_many"}))
    client = ShopeeClient(settings, repo, http=shopee.http(), clock=clock)

    with pytest.raises(TransportError) as exc:
        asyncio.run(client.get(SHOP_ID, "ads/get_total_balance"))
    assert exc.value.code == "error_server"

    with pytest.raises(TransportError) as exc:
        asyncio.run(client.get(SHOP_ID, "ads/get_product_level_campaign_id_list"))
    assert exc.value.code == "rate_limited"
