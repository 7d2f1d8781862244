"""
In-memory cart for one PDV terminal.

Lines are plain dicts in scan order:
  {'id', 'name', 'price', 'quantity', 'unit', 'category', 'sku', 'barcode', 'ncm', 'stock_quantity'}

Totals are derived on every read; promotions are recomputed each time through
promotion_engine.apply_promotions.
"""
import copy
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from promotion_engine import apply_promotions, total_savings
from scale_barcode import parse_scale_barcode
from pdv_service import normalize_sale_items

log = logging.getLogger(__name__)

QTY_DECIMALS = 3
MONEY_DECIMALS = 2


def _as_float(value: Any) -> float:
    if value in (None, "", False):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _clamp_percent(value: Any) -> float:
    return max(0.0, min(100.0, _as_float(value)))


def _default_notify(level: str, message: str) -> None:
    log.log(logging.WARNING if level in ("warning", "error") else logging.INFO, message)


class SaleSnapshot:
    """Frozen copy of the cart taken at checkout."""

    def __init__(self, lines: List[Dict[str, Any]], item_discounts: Dict[str, float],
                 totals: Dict[str, Any], payment_results: List[Dict[str, Any]], captured_at: datetime):
        self.lines = tuple(copy.deepcopy(lines))
        self.item_discounts = dict(item_discounts)
        self.subtotal = totals["subtotal"]
        self.global_discount_percent = totals["global_discount_percent"]
        self.global_discount_value = totals["global_discount_value"]
        self.promotions = tuple(copy.deepcopy(totals["promotions"]))
        self.promotion_savings = totals["promotion_savings"]
        self.total = totals["total"]
        self.payment_results = tuple(copy.deepcopy(payment_results or []))
        self.captured_at = captured_at

    def sale_items(self) -> List[Dict[str, Any]]:
        items = []
        for ln in self.lines:
            item = {
                "product_id": ln["id"],
                "name": ln.get("name") or "",
                "sku": ln.get("sku") or "",
                "quantity": ln["quantity"],
                "unit_price": ln["price"],
                "unit": ln.get("unit") or "UN",
                "discount_percent": self.item_discounts.get(ln["id"], 0.0),
            }
            if ln.get("ncm"):
                item["ncm"] = ln["ncm"]
            items.append(item)
        return items


class PDVCart:
    def __init__(self, products: Optional[List[Dict[str, Any]]] = None,
                 promotions: Optional[List[Dict[str, Any]]] = None,
                 notify: Optional[Callable[[str, str], None]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.lines: List[Dict[str, Any]] = []
        self.item_discounts: Dict[str, float] = {}
        self.global_discount_percent = 0.0
        self.last_sale_items: List[Dict[str, Any]] = []
        self.products: List[Dict[str, Any]] = list(products or [])
        self.promotions: List[Dict[str, Any]] = list(promotions or [])
        self._notify = notify or _default_notify
        self._clock = clock or (lambda: datetime.now().astimezone())

    # ---------- inputs ----------
    def set_products(self, products: List[Dict[str, Any]]) -> None:
        self.products = list(products or [])

    def set_promotions(self, promotions: List[Dict[str, Any]]) -> None:
        self.promotions = list(promotions or [])

    def _find(self, product_id: Any) -> Optional[Dict[str, Any]]:
        key = str(product_id)
        for ln in self.lines:
            if ln["id"] == key:
                return ln
        return None

    def find_product(self, code: str) -> Optional[Dict[str, Any]]:
        """Catalog lookup by sku, barcode or id."""
        for p in self.products:
            if code in (p.get("sku"), p.get("barcode"), str(p.get("id"))):
                return p
        return None

    def _find_by_scale_code(self, code: str) -> Optional[Dict[str, Any]]:
        product = self.find_product(code)
        if product:
            return product
        # labels zero-pad the internal code
        stripped = code.lstrip("0")
        for p in self.products:
            for candidate in (p.get("sku"), p.get("barcode")):
                if candidate and str(candidate).isdigit() and str(candidate).lstrip("0") == stripped:
                    return p
        return None

    def _new_line(self, product: Dict[str, Any], quantity: float) -> Dict[str, Any]:
        return {
            "id": str(product["id"]),
            "name": product.get("name") or "",
            "price": round(_as_float(product.get("price")), MONEY_DECIMALS),
            "quantity": round(quantity, QTY_DECIMALS),
            "unit": product.get("unit") or "UN",
            "category": product.get("category"),
            "sku": product.get("sku") or "",
            "barcode": product.get("barcode"),
            "ncm": product.get("ncm"),
            "stock_quantity": _as_float(product.get("stock_quantity")),
        }

    # ---------- mutations ----------
    def _add_quantity(self, product: Dict[str, Any], quantity: float) -> bool:
        stock = _as_float(product.get("stock_quantity"))
        name = product.get("name") or product.get("id")
        if stock <= 0:
            self._notify("warning", f"{name} sem estoque")
            return False
        existing = self._find(product["id"])
        current = existing["quantity"] if existing else 0.0
        new_qty = round(current + quantity, QTY_DECIMALS)
        if new_qty > stock + 1e-9:
            self._notify("warning", f"Estoque insuficiente para {name} (disponivel: {stock:g})")
            return False
        if existing:
            existing["quantity"] = new_qty
        else:
            self.lines.append(self._new_line(product, new_qty))
        return True

    def add_to_cart(self, product: Dict[str, Any]) -> bool:
        """Add one unit; False (cart untouched) when out of stock."""
        return self._add_quantity(product, 1.0)

    def add_weighed(self, product: Dict[str, Any], quantity: float) -> bool:
        qty = round(_as_float(quantity), QTY_DECIMALS)
        if qty <= 0:
            self._notify("warning", f"Quantidade invalida para {product.get('name') or product.get('id')}")
            return False
        return self._add_quantity(product, qty)

    def update_quantity(self, product_id: Any, delta: float) -> None:
        line = self._find(product_id)
        if not line:
            return
        line["quantity"] = max(0.0, round(line["quantity"] + _as_float(delta), QTY_DECIMALS))
        if line["quantity"] <= 0:
            self.remove_item(product_id)

    def remove_item(self, product_id: Any) -> None:
        key = str(product_id)
        self.lines = [ln for ln in self.lines if ln["id"] != key]

    def clear_cart(self) -> None:
        self.lines = []
        self.item_discounts = {}
        self.global_discount_percent = 0.0

    def set_item_discount(self, product_id: Any, percent: Any) -> None:
        key = str(product_id)
        value = _clamp_percent(percent)
        if value <= 0:
            self.item_discounts.pop(key, None)
        else:
            self.item_discounts[key] = value

    def set_global_discount(self, percent: Any) -> None:
        self.global_discount_percent = _clamp_percent(percent)

    # ---------- barcode ----------
    def handle_barcode_scan(self, barcode: str) -> bool:
        """Scale label first, then catalog lookup. The scan is consumed either way."""
        code = str(barcode or "").strip()
        if not code:
            return False
        scale = parse_scale_barcode(code)
        if scale:
            product = self._find_by_scale_code(scale["product_code"])
            if product:
                if scale["is_weight"]:
                    quantity = scale["weight_kg"]
                else:
                    price = _as_float(product.get("price"))
                    if price <= 0:
                        self._notify("error", f"{product.get('name')} sem preco cadastrado")
                        return False
                    quantity = scale["price_value"] / price
                ok = self.add_weighed(product, quantity)
                if ok:
                    self._notify("info", f"{product.get('name')} adicionado")
                return ok
        product = self.find_product(code)
        if product:
            ok = self.add_to_cart(product)
            if ok:
                self._notify("info", f"{product.get('name')} adicionado")
            return ok
        self._notify("error", f"Produto nao encontrado: {code}")
        return False

    # ---------- derived values ----------
    def _line_total(self, ln: Dict[str, Any]) -> float:
        discount = self.item_discounts.get(ln["id"], 0.0)
        return ln["price"] * (1 - discount / 100) * ln["quantity"]

    @property
    def subtotal(self) -> float:
        return round(sum(self._line_total(ln) for ln in self.lines), MONEY_DECIMALS)

    @property
    def global_discount_value(self) -> float:
        return round(self.subtotal * self.global_discount_percent / 100, MONEY_DECIMALS)

    def promo_lines(self) -> List[Dict[str, Any]]:
        return [{
            "id": ln["id"],
            "name": ln["name"],
            "price": ln["price"],
            "quantity": ln["quantity"],
            "category": ln.get("category"),
        } for ln in self.lines]

    def applied_promotions(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return apply_promotions(self.promotions, self.promo_lines(), now or self._clock())

    @property
    def promotion_savings(self) -> float:
        return total_savings(self.applied_promotions())

    @property
    def total(self) -> float:
        return self.totals()["total"]

    def totals(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        subtotal = self.subtotal
        global_value = round(subtotal * self.global_discount_percent / 100, MONEY_DECIMALS)
        promos = self.applied_promotions(now)
        savings = total_savings(promos)
        return {
            "subtotal": subtotal,
            "global_discount_percent": self.global_discount_percent,
            "global_discount_value": global_value,
            "promotions": promos,
            "promotion_savings": savings,
            "total": round(max(0.0, subtotal - global_value - savings), MONEY_DECIMALS),
        }

    def is_empty(self) -> bool:
        return not self.lines

    # ---------- checkout support ----------
    def snapshot(self, payment_results: Optional[List[Dict[str, Any]]] = None) -> SaleSnapshot:
        now = self._clock()
        return SaleSnapshot(self.lines, self.item_discounts, self.totals(now), payment_results or [], now)

    def repeat_last_sale(self) -> bool:
        """Reload the previous sale's items into an emptied cart."""
        items = normalize_sale_items(self.last_sale_items)
        if not items:
            return False
        self.clear_cart()
        for item in items:
            existing = self._find(item["product_id"])
            if existing:
                existing["quantity"] = round(existing["quantity"] + item["quantity"], QTY_DECIMALS)
                continue
            catalog = self.find_product(item["product_id"]) or {}
            product = dict(catalog)
            product.update({
                "id": item["product_id"],
                "name": item["name"] or catalog.get("name"),
                "price": item["unit_price"],
                "unit": item["unit"],
                "sku": item["sku"] or catalog.get("sku"),
            })
            if item.get("ncm"):
                product["ncm"] = item["ncm"]
            self.lines.append(self._new_line(product, item["quantity"]))
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = self.totals()
        data["items"] = [dict(ln, discount_percent=self.item_discounts.get(ln["id"], 0.0)) for ln in self.lines]
        data["last_sale_available"] = bool(self.last_sale_items)
        return data
