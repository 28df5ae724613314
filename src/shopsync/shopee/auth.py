from __future__ import annotations

import logging
import time
from typing import Callable

from shopsync.config import Settings
from shopsync.errors import AuthError, ShopSyncError
from shopsync.models import Credential
from shopsync.repo import Repo
from shopsync.shopee.signing import api_path, signed_query
from shopsync.shopee.transport import Transport


logger = logging.getLogger(__name__)

TOKEN_PATH = api_path("auth/access_token/get")


class TokenRefresher:
    """Exchanges a refresh token for a new token pair and persists it. Never retries."""

    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        transport: Transport,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.repo = repo
        self.transport = transport
        self.clock = clock

    def needs_refresh(self, credential: Credential, now: float | None = None) -> bool:
        if not credential.access_token or credential.expires_at is None:
            return True
        now = self.clock() if now is None else now
        return credential.expires_at - now <= self.settings.token_buffer_sec

    async def refresh(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise AuthError(f"shop {credential.shop_id}: no refresh_token")
        ts = int(self.clock())
        query = signed_query(
            partner_id=credential.partner_id,
            partner_key=credential.partner_key,
            path=TOKEN_PATH,
            timestamp=ts,
        )
        body = {
            "refresh_token": credential.refresh_token,
            "partner_id": credential.partner_id,
            "shop_id": credential.shop_id,
        }
        try:
            data = await self.transport.send("POST", TOKEN_PATH, query=query, body=body)
        except ShopSyncError as e:
            raise AuthError(f"shop {credential.shop_id}: token refresh failed: {e}") from e

        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if data.get("error") or not access_token or not refresh_token:
            msg = data.get("message") or data.get("error") or "empty token response"
            raise AuthError(f"shop {credential.shop_id}: token refresh rejected: {msg}")

        expire_in = int(data.get("expire_in") or 14400)
        expires_at = ts + expire_in
        self.repo.save_token(
            shop_id=credential.shop_id,
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_at=expires_at,
        )
        logger.info("refreshed token for shop %s (expires in %ss)", credential.shop_id, expire_in)
        return Credential(
            shop_id=credential.shop_id,
            partner_id=credential.partner_id,
            partner_key=credential.partner_key,
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_at=expires_at,
        )
