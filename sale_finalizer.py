"""
Checkout for one cart: validate, snapshot, then dispatch.

  training mode  -> simulated receipt, no I/O
  online         -> one create_sale call on the backend
  offline / fail -> 'sale' queued in the local sync queue (priority 1, 5 attempts)

Every path ends with an emptied cart and a receipt reference; the online
attempt is never retried here, the sync worker owns retries.
"""
import logging
import random
import sqlite3
import time
from typing import Any, Dict, List, Optional, Tuple

import pdv_service as ps
from pdv_cart import PDVCart, SaleSnapshot
from terminal_context import TerminalContext

log = logging.getLogger(__name__)

OFFLINE_PRIORITY = 1
OFFLINE_MAX_ATTEMPTS = 5
CREDIT_METHODS = ("prazo",)


class SaleValidationError(ValueError):
    """Checkout refused before anything was touched."""


def payment_method_label(payment_results: List[Dict[str, Any]]) -> str:
    methods = [str(p.get("method")) for p in payment_results or [] if p.get("method")]
    if not methods:
        return "outros"
    return methods[0] if len(methods) == 1 else "+".join(methods)


def credit_customer(payment_results: List[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    """(cpf, name) from the first credit-sale payment entry, if any."""
    for pr in payment_results or []:
        if pr.get("credit_client_id") or pr.get("method") in CREDIT_METHODS:
            cpf = pr.get("credit_client_cpf") or pr.get("customer_cpf")
            name = pr.get("credit_client_name") or pr.get("customer_name")
            return cpf, name
    return None, None


def _now_ms() -> int:
    return int(time.time() * 1000)


class SaleFinalizer:
    def __init__(self, ctx: TerminalContext, cart: PDVCart, client: Any = None,
                 conn: Optional[sqlite3.Connection] = None):
        self.ctx = ctx
        self.cart = cart
        self.client = client
        self.conn = conn

    def build_payload(self, snapshot: SaleSnapshot, session_id: Optional[str] = None) -> Dict[str, Any]:
        results = [dict(p) for p in snapshot.payment_results]
        cpf, name = credit_customer(results)
        return {
            "company_id": self.ctx.company_id,
            "user_id": self.ctx.user_id,
            "session_id": session_id,
            "terminal_id": self.ctx.terminal_id,
            "items": snapshot.sale_items(),
            "subtotal": snapshot.subtotal,
            "global_discount": snapshot.global_discount_value,
            "promotion_savings": snapshot.promotion_savings,
            "promotions": [dict(p) for p in snapshot.promotions],
            "total": snapshot.total,
            "payment_method": payment_method_label(results),
            "payment_results": results,
            "customer_cpf": cpf,
            "customer_name": name,
            "created_at": snapshot.captured_at.isoformat(),
        }

    def finalize(self, payment_results: List[Dict[str, Any]],
                 session: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.ctx.company_id or not self.ctx.user_id:
            raise SaleValidationError("Dados incompletos para finalizar venda")
        if self.cart.is_empty():
            raise SaleValidationError("Carrinho vazio")

        snapshot = self.cart.snapshot(payment_results)
        self.cart.last_sale_items = snapshot.sale_items()
        self.cart.clear_cart()

        if self.ctx.training_mode:
            log.info("Training sale simulated (total=%.2f)", snapshot.total)
            return {
                "status": "simulated",
                "fiscal_doc_id": f"training-{_now_ms()}",
                "nfce_number": "000000",
                "total": snapshot.total,
            }

        payload = self.build_payload(snapshot, (session or {}).get("id"))

        if self.client is not None and self.ctx.can_reach_backend():
            try:
                result = self.client.create_sale(payload)
                log.info("Sale %s created online (total=%.2f)", result.get("fiscal_doc_id"), snapshot.total)
                return {
                    "status": "online",
                    "fiscal_doc_id": result.get("fiscal_doc_id"),
                    "nfce_number": result.get("nfce_number"),
                    "total": snapshot.total,
                }
            except Exception:
                log.warning("Online sale failed, queueing for sync", exc_info=True)

        return self._queue_offline(snapshot, payload)

    def _queue_offline(self, snapshot: SaleSnapshot, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.conn is None:
            self.conn = ps.connect()
        try:
            queue_id = ps.enqueue(self.conn, "sale", payload,
                                  priority=OFFLINE_PRIORITY, max_retries=OFFLINE_MAX_ATTEMPTS)
        except sqlite3.Error:
            # put the lines back so the cashier can retry the checkout
            self.cart.lines = [dict(ln) for ln in snapshot.lines]
            self.cart.item_discounts = dict(snapshot.item_discounts)
            self.cart.global_discount_percent = snapshot.global_discount_percent
            log.exception("Could not queue sale locally")
            raise
        log.info("Sale queued offline as %s (total=%.2f)", queue_id, snapshot.total)
        return {
            "status": "offline",
            "fiscal_doc_id": f"offline-{_now_ms()}",
            "nfce_number": f"{random.randint(0, 999999):06d}",
            "queue_id": queue_id,
            "total": snapshot.total,
        }
