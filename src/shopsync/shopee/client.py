from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from shopsync.config import Settings
from shopsync.errors import AuthError, TransportError, ValidationError
from shopsync.models import Credential
from shopsync.repo import Repo
from shopsync.shopee.auth import TokenRefresher
from shopsync.shopee.signing import api_path, signed_query
from shopsync.shopee.transport import Transport


logger = logging.getLogger(__name__)


def is_auth_failure(data: dict[str, Any]) -> bool:
    err = str(data.get("error") or "")
    msg = str(data.get("message") or "")
    return err in {"error_auth", "invalid_access_token"} or "Invalid access_token" in msg


def raise_for_api_error(path: str, data: dict[str, Any]) -> dict[str, Any]:
    err = str(data.get("error") or "")
    if not err:
        return data
    msg = str(data.get("message") or "")
    if err.startswith("error_param"):
        raise ValidationError(f"{path}: {err}: {msg}")
    raise TransportError(f"{path}: {err}: {msg}", code=err)


class ShopeeClient:
    """
    Signed, shop-scoped Shopee Open Platform calls.

    The stored credential is re-read before every attempt. A token inside the
    expiry buffer is refreshed up front; an auth rejection triggers one refresh
    and one retry of the same request with a fresh timestamp and signature.
    """

    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        *,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.repo = repo
        self.clock = clock
        self.transport = Transport(settings, http=http)
        self.refresher = TokenRefresher(settings, repo, self.transport, clock=clock)

    def credential(self, shop_id: int) -> Credential:
        return self.repo.get_credential(
            shop_id,
            default_partner_id=self.settings.partner_id,
            default_partner_key=self.settings.partner_key,
        )

    async def _send(
        self,
        cred: Credential,
        path: str,
        method: str,
        params: dict[str, Any] | None,
        body: dict[str, Any] | None,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {k: v for k, v in (params or {}).items() if v is not None}
        query.update(
            signed_query(
                partner_id=cred.partner_id,
                partner_key=cred.partner_key,
                path=path,
                timestamp=int(self.clock()),
                access_token=cred.access_token or "",
                shop_id=cred.shop_id,
            )
        )
        return await self.transport.send(method, path, query=query, body=body)

    async def call(
        self,
        shop_id: int,
        path: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        path = api_path(path)
        cred = self.credential(shop_id)
        if self.refresher.needs_refresh(cred):
            await self.refresher.refresh(cred)
            cred = self.credential(shop_id)

        data = await self._send(cred, path, method, params, body)
        if is_auth_failure(data):
            logger.info("shop %s: auth rejected on %s, refreshing token", shop_id, path)
            await self.refresher.refresh(cred)
            cred = self.credential(shop_id)
            data = await self._send(cred, path, method, params, body)
            if is_auth_failure(data):
                raise AuthError(f"shop {shop_id}: {path} rejected after token refresh: {data.get('message') or data.get('error')}")
        return raise_for_api_error(path, data)

    async def get(self, shop_id: int, path: str, **params: Any) -> dict[str, Any]:
        return await self.call(shop_id, path, method="GET", params=params)

    async def post(self, shop_id: int, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self.call(shop_id, path, method="POST", body=body)
