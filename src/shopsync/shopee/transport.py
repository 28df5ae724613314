from __future__ import annotations

import logging
from typing import Any

import httpx

from shopsync.config import Settings
from shopsync.errors import TransportError


logger = logging.getLogger(__name__)


class Transport:
    """
    Sends one already-signed request and returns the decoded JSON object.

    Routes through `proxy_url?url=<target>` when a proxy is configured. An
    injected AsyncClient is reused; otherwise a short-lived one is opened per call.
    """

    def __init__(self, settings: Settings, *, http: httpx.AsyncClient | None = None):
        self.settings = settings
        self._http = http

    def _target(self, path: str, query: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        target = f"{self.settings.base_url.rstrip('/')}{path}"
        if not self.settings.proxy_url:
            return target, query
        full = str(httpx.URL(target, params=query))
        return self.settings.proxy_url, {"url": full}

    async def send(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any],
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url, params = self._target(path, query)
        logger.debug("shopee %s %s", method, path)
        try:
            if self._http is not None:
                r = await self._http.request(method, url, params=params, json=body, timeout=self.settings.http_timeout_sec)
            else:
                async with httpx.AsyncClient(timeout=self.settings.http_timeout_sec) as client:
                    r = await client.request(method, url, params=params, json=body)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {type(e).__name__}: {e}", code="http_error") from e

        if r.status_code == 429:
            raise TransportError(f"{method} {path} rate limited", code="rate_limited")
        try:
            data = r.json()
        except ValueError as e:
            body_text = (r.text or "").strip()[:500]
            raise TransportError(
                f"{method} {path} returned non-JSON ({r.status_code}): {body_text}",
                code=f"http_{r.status_code}",
            ) from e
        if not isinstance(data, dict):
            raise TransportError(f"{method} {path} returned unexpected payload", code="bad_payload")
        if r.status_code // 100 != 2 and not data.get("error"):
            raise TransportError(f"{method} {path} failed: {r.status_code}", code=f"http_{r.status_code}")
        return data
