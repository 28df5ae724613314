from __future__ import annotations

from shopsync.util import hmac_sha256_hex


API_PREFIX = "/api/v2"


def api_path(name: str) -> str:
    """`ads/get_product_level_campaign_id_list` -> `/api/v2/ads/get_product_level_campaign_id_list`."""
    name = name.strip("/")
    if name.startswith("api/"):
        return f"/{name}"
    return f"{API_PREFIX}/{name}"


def sign(
    *,
    partner_id: int,
    partner_key: str,
    path: str,
    timestamp: int,
    access_token: str | None = None,
    shop_id: int | None = None,
) -> str:
    """
    HMAC-SHA256 hex of `partner_id + path + timestamp [+ access_token + shop_id]`.

    Shop-scoped calls sign all five parts; auth endpoints sign only the first three.
    """
    base = f"{partner_id}{path}{timestamp}"
    if access_token is not None and shop_id is not None:
        base += f"{access_token}{shop_id}"
    return hmac_sha256_hex(partner_key, base)


def signed_query(
    *,
    partner_id: int,
    partner_key: str,
    path: str,
    timestamp: int,
    access_token: str | None = None,
    shop_id: int | None = None,
) -> dict[str, str]:
    q = {
        "partner_id": str(partner_id),
        "timestamp": str(timestamp),
        "sign": sign(
            partner_id=partner_id,
            partner_key=partner_key,
            path=path,
            timestamp=timestamp,
            access_token=access_token,
            shop_id=shop_id,
        ),
    }
    if access_token is not None and shop_id is not None:
        q["access_token"] = access_token
        q["shop_id"] = str(shop_id)
    return q
