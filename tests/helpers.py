from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from zoneinfo import ZoneInfo

import httpx


VN = ZoneInfo("Asia/Ho_Chi_Minh")
# 2026-01-20 10:15 local
NOW = datetime(2026, 1, 20, 10, 15, tzinfo=VN).timestamp()
SHOP_ID = 42


@dataclass
class Call:
    method: str
    path: str
    params: dict[str, str]
    body: dict[str, Any] | None
    host: str
    via_proxy: bool


class FakeShopee:
    """httpx.MockTransport handler that routes by API path and records every call."""

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.routes: dict[str, Any] = {}

    def on(self, name: str, response: Any) -> None:
        self.routes[f"/api/v2/{name.strip('/')}"] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        params = dict(url.params)
        via_proxy = False
        if "url" in params and not url.path.startswith("/api/"):
            inner = httpx.URL(params["url"])
            url = inner
            params = dict(inner.params)
            via_proxy = True
        body = json.loads(request.content) if request.content else None
        call = Call(
            method=request.method,
            path=url.path,
            params=params,
            body=body,
            host=request.url.host,
            via_proxy=via_proxy,
        )
        self.calls.append(call)

        route = self.routes.get(url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not_found", "message": url.path})
        out = route(call) if callable(route) else route
        status = 200
        if isinstance(out, tuple):
            status, out = out
        return httpx.Response(status, json=out)

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls_to(self, name: str) -> list[Call]:
        path = f"/api/v2/{name.strip('/')}"
        return [c for c in self.calls if c.path == path]


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def token_response(access_token: str = "tok-2", refresh_token: str = "ref-2", expire_in: int = 14400) -> Callable[[Call], dict[str, Any]]:
    def _respond(call: Call) -> dict[str, Any]:
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expire_in": expire_in,
            "error": "",
            "message": "",
        }

    return _respond
