import importlib
import logging
import unittest
from unittest import mock

import pdv_service as ps
import sync_worker
from backend_client import BackendError


class FakeClient:
    def __init__(self, errors=None):
        self.errors = list(errors or [])
        self.sent = []

    def create_sale(self, payload):
        self.sent.append(payload)
        if self.errors:
            error = self.errors.pop(0)
            if error:
                raise error
        return {"fiscal_doc_id": f"doc-{len(self.sent)}", "nfce_number": "000001"}


class PushPendingTest(unittest.TestCase):
    def setUp(self):
        self.conn = ps.connect(":memory:")

    def tearDown(self):
        self.conn.close()

    def _queue_sale(self, **extra):
        payload = {"company_id": "c1", "total": 10.0,
                   "items": [{"id": "p1", "name": "Arroz", "quantity": 1, "price": 10.0}]}
        payload.update(extra)
        return ps.enqueue(self.conn, "sale", payload, priority=1)

    def test_successful_push_marks_synced(self):
        item_id = self._queue_sale()
        client = FakeClient()
        result = sync_worker.push_pending(self.conn, client)
        self.assertEqual(result, {"synced": 1, "failed": 0})
        self.assertEqual(ps.get_item(self.conn, item_id)["status"], "synced")
        self.assertIsNotNone(ps.get_meta(self.conn, "last_cloud_sync"))
        # items are normalized to sale-item shape before sending
        self.assertEqual(client.sent[0]["items"][0]["product_id"], "p1")
        self.assertEqual(client.sent[0]["items"][0]["unit_price"], 10.0)

    def test_duplicate_counts_as_synced(self):
        item_id = self._queue_sale()
        client = FakeClient(errors=[BackendError("duplicate key value", status=409, code="23505")])
        result = sync_worker.push_pending(self.conn, client)
        self.assertEqual(result["synced"], 1)
        self.assertEqual(ps.get_item(self.conn, item_id)["status"], "synced")

    def test_failure_goes_back_to_pending_then_failed(self):
        item_id = ps.enqueue(self.conn, "sale", {"items": []}, max_retries=2)
        client = FakeClient(errors=[BackendError("server error", status=500), RuntimeError("timeout")])

        self.assertEqual(sync_worker.push_pending(self.conn, client), {"synced": 0, "failed": 1})
        item = ps.get_item(self.conn, item_id)
        self.assertEqual(item["status"], "pending")
        self.assertEqual(item["retry_count"], 1)

        sync_worker.push_pending(self.conn, client)
        item = ps.get_item(self.conn, item_id)
        self.assertEqual(item["status"], "failed")
        self.assertEqual(item["error"], "timeout")
        self.assertIsNone(ps.get_meta(self.conn, "last_cloud_sync"))

    def test_concurrent_pushers_send_each_sale_once(self):
        self._queue_sale(ref="A")
        self._queue_sale(ref="B")
        conn = self.conn
        sent = []

        class ReentrantClient:
            def create_sale(self, payload):
                sent.append(payload["ref"])
                if len(sent) == 1:
                    # a second pusher (worker process or /api/sync/push) runs mid-request
                    sync_worker.push_pending(conn, self)
                return {"fiscal_doc_id": f"doc-{payload['ref']}", "nfce_number": "000001"}

        sync_worker.push_pending(self.conn, ReentrantClient())
        self.assertEqual(sent, ["A", "B"])
        self.assertEqual(ps.queue_stats(self.conn)["synced"], 2)

    def test_queue_id_sent_as_offline_id(self):
        item_id = self._queue_sale()
        client = FakeClient()
        sync_worker.push_pending(self.conn, client)
        self.assertEqual(client.sent[0]["offline_id"], item_id)

    def test_claimed_item_is_not_claimed_twice(self):
        item_id = self._queue_sale()
        self.assertTrue(ps.claim_item(self.conn, item_id))
        self.assertFalse(ps.claim_item(self.conn, item_id))
        self.assertEqual(ps.get_item(self.conn, item_id)["status"], "syncing")

    def test_unsupported_entity_type_fails_without_calling_backend(self):
        item_id = ps.enqueue(self.conn, "stock_movement", {"qty": 1}, max_retries=1)
        client = FakeClient()
        result = sync_worker.push_pending(self.conn, client)
        self.assertEqual(result, {"synced": 0, "failed": 1})
        self.assertEqual(client.sent, [])
        self.assertEqual(ps.get_item(self.conn, item_id)["status"], "failed")


class LoggingSetupTest(unittest.TestCase):
    def test_import_leaves_root_logging_alone(self):
        with mock.patch.object(logging, "basicConfig") as basic_config:
            importlib.reload(sync_worker)
        basic_config.assert_not_called()

    def test_main_configures_worker_format(self):
        with mock.patch.object(logging, "basicConfig") as basic_config, \
                mock.patch.object(sync_worker.ps, "connect", side_effect=KeyboardInterrupt):
            with self.assertRaises(KeyboardInterrupt):
                sync_worker.main()
        self.assertIn("[sync]", basic_config.call_args.kwargs["format"])


if __name__ == "__main__":
    unittest.main()
