"""
Automatic promotion discounts for PDV carts.

Pure functions over plain dicts: no I/O and no hidden state, so the cart can
recompute savings on every read. Promotion rows come from the backend
(`promotions` + `promotion_items`) and go through `normalize_promotion`, which
drops anything it cannot understand instead of raising.

Overlap policy: every active promotion is evaluated on its own against the full
scoped quantity and the resulting savings are summed, so one line can receive
discounts from several promotions at once.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

log = logging.getLogger(__name__)

PROMO_PERCENT = "percentual"
PROMO_BUY_X_PAY_Y = "leve_x_pague_y"
PROMO_FIXED_PRICE = "preco_fixo"
PROMO_TYPES = (PROMO_PERCENT, PROMO_BUY_X_PAY_Y, PROMO_FIXED_PRICE)

SCOPE_PRODUCT = "product"
SCOPE_CATEGORY = "category"
SCOPES = (SCOPE_PRODUCT, SCOPE_CATEGORY)

_MISSING = object()


def _as_float(value: Any, default: float = 0.0) -> float:
    if value in (None, "", False):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes", "sim")
    return bool(value)


def _as_aware(value: datetime) -> datetime:
    # naive timestamps are read as terminal-local time
    return value if value.tzinfo else value.astimezone()


def _parse_ts(value: Any) -> Any:
    """Return an aware datetime, None when absent, or _MISSING when unparsable."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return _as_aware(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _as_aware(datetime.fromisoformat(text))
    except ValueError:
        return _MISSING


def _js_weekday(moment: datetime) -> int:
    """0=Sunday .. 6=Saturday, matching how active_days are stored."""
    return (moment.weekday() + 1) % 7


def normalize_promotion(row: Dict[str, Any], product_ids: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
    """Build the engine's promotion shape from a backend row.

    Returns None when the row is malformed (unknown type or scope, no id,
    unparsable dates) so callers can simply skip it.
    """
    if not isinstance(row, dict):
        return None
    promo_id = row.get("id")
    promo_type = (row.get("promo_type") or "").strip()
    scope = (row.get("scope") or "").strip()
    if not promo_id or promo_type not in PROMO_TYPES or scope not in SCOPES:
        return None

    starts_at = _parse_ts(row.get("starts_at"))
    ends_at = _parse_ts(row.get("ends_at"))
    if starts_at is _MISSING or ends_at is _MISSING:
        return None

    ids = product_ids if product_ids is not None else row.get("product_ids")
    if ids is None:
        ids = []
    if isinstance(ids, str) or not isinstance(ids, (list, tuple, set)):
        return None

    days = row.get("active_days") or []
    try:
        active_days = [int(d) for d in days]
    except (TypeError, ValueError):
        return None

    return {
        "id": str(promo_id),
        "name": row.get("name") or "",
        "promo_type": promo_type,
        "scope": scope,
        "product_ids": [str(p) for p in ids if p],
        "category_name": (row.get("category_name") or "").strip() or None,
        "discount_percent": _as_float(row.get("discount_percent")),
        "fixed_price": _as_float(row.get("fixed_price")),
        "buy_quantity": _as_float(row.get("buy_quantity")),
        "pay_quantity": _as_float(row.get("pay_quantity")),
        "min_quantity": _as_float(row.get("min_quantity")),
        "starts_at": starts_at,
        "ends_at": ends_at,
        "active_days": active_days,
        "is_active": _as_bool(row.get("is_active"), default=True),
    }


def is_promotion_active(promo: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Activation flag, start/end window and weekday filter at `now`."""
    moment = _as_aware(now) if now else datetime.now().astimezone()
    if not promo.get("is_active"):
        return False
    starts_at = promo.get("starts_at")
    ends_at = promo.get("ends_at")
    if starts_at and starts_at > moment:
        return False
    if ends_at and ends_at < moment:
        return False
    days = promo.get("active_days") or []
    if days and _js_weekday(moment) not in days:
        return False
    return True


def _scoped_lines(promo: Dict[str, Any], lines: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if promo["scope"] == SCOPE_PRODUCT:
        wanted = set(promo["product_ids"])
        return [ln for ln in lines if str(ln.get("id")) in wanted]
    category = (promo.get("category_name") or "").lower()
    if not category:
        return []
    return [ln for ln in lines if (ln.get("category") or "").lower() == category]


def _percent_savings(promo, scoped, scoped_qty):
    percent = promo["discount_percent"]
    if percent <= 0 or scoped_qty < promo["min_quantity"]:
        return 0.0, []
    percent = min(percent, 100.0)
    scope_subtotal = sum(_as_float(ln.get("price")) * _as_float(ln.get("quantity")) for ln in scoped)
    return scope_subtotal * percent / 100, [ln["id"] for ln in scoped]


def _buy_x_pay_y_savings(promo, scoped, scoped_qty):
    buy = promo["buy_quantity"]
    pay = promo["pay_quantity"]
    if buy <= 0 or pay <= 0 or pay >= buy:
        return 0.0, []
    groups = int((scoped_qty + 1e-9) // buy)
    if groups <= 0:
        return 0.0, []
    # min() keeps the first line on ties
    cheapest = min(scoped, key=lambda ln: _as_float(ln.get("price")))
    free_units = groups * (buy - pay)
    return free_units * _as_float(cheapest.get("price")), [ln["id"] for ln in scoped]


def _fixed_price_savings(promo, scoped, scoped_qty):
    fixed = promo["fixed_price"]
    if fixed < 0 or scoped_qty < promo["min_quantity"]:
        return 0.0, []
    savings = 0.0
    touched = []
    for ln in scoped:
        price = _as_float(ln.get("price"))
        if fixed < price:
            savings += (price - fixed) * _as_float(ln.get("quantity"))
            touched.append(ln["id"])
    return savings, touched


_CALCULATORS = {
    PROMO_PERCENT: _percent_savings,
    PROMO_BUY_X_PAY_Y: _buy_x_pay_y_savings,
    PROMO_FIXED_PRICE: _fixed_price_savings,
}


def apply_promotions(promotions: Iterable[Dict[str, Any]], lines: Iterable[Dict[str, Any]],
                     now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    promotions: backend rows or already-normalized promotions; normalization
                is idempotent.
    lines:      [ {'id': 'p1', 'name': 'Arroz', 'price': 10.0, 'quantity': 3, 'category': 'Mercearia'} ]

    Returns one entry per promotion that saved something, in input order:
      {'promotion_id', 'promotion_name', 'promo_type', 'product_ids', 'total_savings'}
    """
    moment = _as_aware(now) if now else datetime.now().astimezone()
    cart_lines = [ln for ln in lines if ln.get("id") is not None and _as_float(ln.get("quantity")) > 0]
    results: List[Dict[str, Any]] = []

    for raw in promotions or []:
        promo = normalize_promotion(raw)
        if promo is None:
            log.debug("Skipping malformed promotion %r", raw)
            continue
        if not is_promotion_active(promo, moment):
            continue
        scoped = _scoped_lines(promo, cart_lines)
        if not scoped:
            continue
        scoped_qty = sum(_as_float(ln.get("quantity")) for ln in scoped)
        savings, touched = _CALCULATORS[promo["promo_type"]](promo, scoped, scoped_qty)
        savings = round(savings, 2)
        if savings <= 0:
            continue
        results.append({
            "promotion_id": promo["id"],
            "promotion_name": promo["name"],
            "promo_type": promo["promo_type"],
            "product_ids": touched,
            "total_savings": savings,
        })
    return results


def total_savings(applied: Iterable[Dict[str, Any]]) -> float:
    return round(sum(_as_float(a.get("total_savings")) for a in applied), 2)
