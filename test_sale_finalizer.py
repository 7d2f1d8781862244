import unittest
from datetime import datetime, timezone

import pdv_service as ps
from backend_client import BackendError
from pdv_cart import PDVCart
from sale_finalizer import SaleFinalizer, SaleValidationError, credit_customer, payment_method_label
from terminal_context import TerminalContext

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

PRODUCTS = [
    {"id": "p1", "name": "Arroz 5kg", "price": 10.0, "sku": "ARZ5", "unit": "UN", "stock_quantity": 10},
]


class FakeClient:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def create_sale(self, payload):
        self.calls.append(payload)
        if self.error:
            raise self.error
        return {"fiscal_doc_id": "doc-1", "nfce_number": "000042"}


class SaleFinalizerTest(unittest.TestCase):
    def setUp(self):
        self.conn = ps.connect(":memory:")
        self.ctx = TerminalContext(company_id="c1", user_id="u1", terminal_id="02")
        self.cart = PDVCart(products=PRODUCTS, clock=lambda: NOW)
        product = self.cart.find_product("p1")
        for _ in range(3):
            self.cart.add_to_cart(product)
        self.payments = [{"method": "dinheiro", "amount": 30.0, "approved": True}]

    def tearDown(self):
        self.conn.close()

    def _finalizer(self, client=None):
        return SaleFinalizer(self.ctx, self.cart, client=client, conn=self.conn)

    def test_offline_checkout_queues_sale(self):
        self.ctx.online = False
        client = FakeClient()
        receipt = self._finalizer(client).finalize(self.payments, session={"id": "s1"})

        self.assertEqual(receipt["status"], "offline")
        self.assertTrue(receipt["fiscal_doc_id"].startswith("offline-"))
        self.assertEqual(len(receipt["nfce_number"]), 6)
        self.assertEqual(receipt["total"], 30.0)
        self.assertEqual(client.calls, [])
        self.assertTrue(self.cart.is_empty())

        pending = ps.get_pending(self.conn)
        self.assertEqual(len(pending), 1)
        item = pending[0]
        self.assertEqual(item["id"], receipt["queue_id"])
        self.assertEqual(item["entity_type"], "sale")
        self.assertEqual(item["priority"], 1)
        self.assertEqual(item["max_retries"], 5)
        payload = item["payload"]
        self.assertEqual(payload["company_id"], "c1")
        self.assertEqual(payload["session_id"], "s1")
        self.assertEqual(payload["terminal_id"], "02")
        self.assertEqual(payload["total"], 30.0)
        self.assertEqual(payload["payment_method"], "dinheiro")
        self.assertEqual(payload["items"][0]["product_id"], "p1")
        self.assertEqual(payload["items"][0]["quantity"], 3)

    def test_queue_only_mode_skips_backend(self):
        self.ctx.queue_only = True
        client = FakeClient()
        receipt = self._finalizer(client).finalize(self.payments)
        self.assertEqual(receipt["status"], "offline")
        self.assertEqual(client.calls, [])

    def test_online_checkout_creates_sale_once(self):
        client = FakeClient()
        receipt = self._finalizer(client).finalize(self.payments)
        self.assertEqual(receipt["status"], "online")
        self.assertEqual(receipt["fiscal_doc_id"], "doc-1")
        self.assertEqual(receipt["nfce_number"], "000042")
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(ps.get_pending(self.conn), [])
        self.assertTrue(self.cart.is_empty())
        self.assertEqual(self.cart.last_sale_items[0]["product_id"], "p1")

    def test_online_failure_falls_back_to_queue(self):
        client = FakeClient(error=BackendError("boom", status=500))
        receipt = self._finalizer(client).finalize(self.payments)
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(receipt["status"], "offline")
        self.assertEqual(len(ps.get_pending(self.conn)), 1)

    def test_training_mode_has_no_side_effects(self):
        self.ctx.training_mode = True
        client = FakeClient()
        receipt = self._finalizer(client).finalize(self.payments)
        self.assertEqual(receipt["status"], "simulated")
        self.assertTrue(receipt["fiscal_doc_id"].startswith("training-"))
        self.assertEqual(receipt["nfce_number"], "000000")
        self.assertEqual(client.calls, [])
        self.assertEqual(ps.get_pending(self.conn), [])
        self.assertTrue(self.cart.is_empty())

    def test_validation_leaves_cart_untouched(self):
        self.ctx.user_id = None
        with self.assertRaises(SaleValidationError):
            self._finalizer().finalize(self.payments)
        self.assertFalse(self.cart.is_empty())

        self.ctx.user_id = "u1"
        self.cart.clear_cart()
        with self.assertRaises(SaleValidationError):
            self._finalizer().finalize(self.payments)

    def test_promotions_and_discounts_reach_payload(self):
        self.cart.set_promotions([{
            "id": "promo-1", "name": "Leve 3 pague 2", "promo_type": "leve_x_pague_y",
            "scope": "product", "product_ids": ["p1"], "buy_quantity": 3, "pay_quantity": 2,
            "is_active": True,
        }])
        self.ctx.online = False
        receipt = self._finalizer().finalize(self.payments)
        payload = ps.get_item(self.conn, receipt["queue_id"])["payload"]
        self.assertEqual(payload["subtotal"], 30.0)
        self.assertEqual(payload["promotion_savings"], 10.0)
        self.assertEqual(payload["total"], 20.0)
        self.assertEqual(payload["promotions"][0]["promotion_id"], "promo-1")


class PaymentHelpersTest(unittest.TestCase):
    def test_payment_method_label(self):
        self.assertEqual(payment_method_label([]), "outros")
        self.assertEqual(payment_method_label([{"method": "pix"}]), "pix")
        self.assertEqual(payment_method_label([{"method": "pix"}, {"method": "dinheiro"}]), "pix+dinheiro")

    def test_credit_customer(self):
        results = [
            {"method": "dinheiro", "amount": 10},
            {"method": "prazo", "amount": 20, "credit_client_id": "cl1",
             "credit_client_cpf": "12345678900", "credit_client_name": "Maria"},
        ]
        self.assertEqual(credit_customer(results), ("12345678900", "Maria"))
        self.assertEqual(credit_customer([{"method": "pix"}]), (None, None))


if __name__ == "__main__":
    unittest.main()
