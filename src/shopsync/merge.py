from __future__ import annotations

from typing import Any

from shopsync.models import METRIC_FIELDS, PRESERVED_FIELDS


_INT_FIELDS = {"impression", "clicks", "direct_order", "broad_order", "direct_item_sold", "broad_item_sold"}


def _num(v: Any) -> float:
    if v is None:
        return 0.0
    try:
        return float(str(v).replace(",", "").strip() or 0)
    except ValueError:
        return 0.0


def normalize_metrics(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Base metrics only, missing/blank values as 0."""
    raw = raw or {}
    out: dict[str, Any] = {}
    for k in METRIC_FIELDS:
        v = _num(raw.get(k))
        out[k] = int(v) if k in _INT_FIELDS else v
    return out


def safe_div(a: float, b: float) -> float:
    return a / b if b else 0.0


def derive_ratios(metrics: dict[str, Any]) -> dict[str, float]:
    impression = _num(metrics.get("impression"))
    clicks = _num(metrics.get("clicks"))
    expense = _num(metrics.get("expense"))
    broad_gmv = _num(metrics.get("broad_gmv"))
    return {
        "ctr": safe_div(clicks, impression) * 100,
        "roas": safe_div(broad_gmv, expense),
        "acos": safe_div(expense, broad_gmv) * 100,
    }


def with_ratios(metrics: dict[str, Any]) -> dict[str, Any]:
    out = dict(metrics)
    out.update(derive_ratios(metrics))
    return out


def preserve(incoming: Any, derived: Any, stored: Any) -> int:
    """First nonzero of incoming, derived, stored; otherwise 0."""
    for v in (incoming, derived, stored):
        n = int(_num(v))
        if n:
            return n
    return 0


def merge_shop_level(
    incoming: dict[str, Any],
    derived: dict[str, Any] | None = None,
    stored: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Merge one shop-level rollup row.

    Base metrics come from `incoming`. Preserved fields never regress to zero:
    the API value wins, then the per-campaign sum for the same key, then the
    stored value. Ratios are recomputed from the merged base metrics.
    """
    merged = normalize_metrics(incoming)
    for f in PRESERVED_FIELDS:
        merged[f] = preserve(
            (incoming or {}).get(f),
            (derived or {}).get(f),
            (stored or {}).get(f),
        )
    for k in ("performance_date", "hour"):
        if k in incoming and incoming[k] is not None:
            merged[k] = incoming[k]
    return with_ratios(merged)
