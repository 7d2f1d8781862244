import json
import os
import tempfile
import unittest

import pdv_service as ps


class SyncQueueTest(unittest.TestCase):
    def setUp(self):
        self.conn = ps.connect(":memory:")

    def tearDown(self):
        self.conn.close()

    def test_pending_order_is_priority_then_age(self):
        low = ps.enqueue(self.conn, "stock_movement", {"n": 1}, priority=5)
        first = ps.enqueue(self.conn, "sale", {"n": 2}, priority=1)
        second = ps.enqueue(self.conn, "sale", {"n": 3}, priority=1)
        ids = [item["id"] for item in ps.get_pending(self.conn)]
        self.assertEqual(ids, [first, second, low])
        self.assertEqual(ps.get_item(self.conn, first)["payload"], {"n": 2})

    def test_unknown_entity_type_is_rejected(self):
        with self.assertRaises(ValueError):
            ps.enqueue(self.conn, "voucher", {})

    def test_failures_retry_until_max_then_fail(self):
        item_id = ps.enqueue(self.conn, "sale", {}, max_retries=2)
        self.assertEqual(ps.handle_failure(self.conn, item_id, "timeout"), "pending")
        self.assertEqual(ps.handle_failure(self.conn, item_id, "timeout"), "failed")
        item = ps.get_item(self.conn, item_id)
        self.assertEqual(item["retry_count"], 2)
        self.assertEqual(item["error"], "timeout")
        self.assertEqual(ps.get_pending(self.conn), [])
        self.assertIsNone(ps.handle_failure(self.conn, "missing", "x"))

        self.assertEqual(ps.retry_failed(self.conn), 1)
        self.assertEqual(ps.get_item(self.conn, item_id)["status"], "pending")

    def test_update_status_and_stats(self):
        a = ps.enqueue(self.conn, "sale", {})
        ps.enqueue(self.conn, "sale", {})
        ps.update_status(self.conn, a, "synced")
        stats = ps.queue_stats(self.conn)
        self.assertEqual(stats["synced"], 1)
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["failed"], 0)
        with self.assertRaises(ValueError):
            ps.update_status(self.conn, a, "lost")

    def test_cleanup_removes_only_old_finished_items(self):
        old = ps.enqueue(self.conn, "sale", {})
        ps.enqueue(self.conn, "sale", {})
        ps.update_status(self.conn, old, "synced")
        self.conn.execute("UPDATE sync_queue SET created_utc='2020-01-01T00:00:00Z' WHERE id=?", (old,))
        self.conn.commit()
        self.assertEqual(ps.cleanup(self.conn), 1)
        self.assertEqual(ps.queue_stats(self.conn)["pending"], 1)


class EntityCacheTest(unittest.TestCase):
    def setUp(self):
        self.conn = ps.connect(":memory:")

    def tearDown(self):
        self.conn.close()

    def test_cache_upserts_by_id(self):
        ps.cache_entities(self.conn, "products", "c1", [{"id": "p1", "price": 1.0}, {"name": "no id"}])
        ps.cache_entities(self.conn, "products", "c1", [{"id": "p1", "price": 2.0}])
        ps.cache_entities(self.conn, "products", "c2", [{"id": "p2"}])
        self.assertEqual(ps.get_cached_entities(self.conn, "products", "c1"), [{"id": "p1", "price": 2.0}])
        self.assertEqual(len(ps.get_cached_entities(self.conn, "products")), 2)
        self.assertEqual(ps.clear_entity_cache(self.conn, "products"), 2)

    def test_meta(self):
        self.assertIsNone(ps.get_meta(self.conn, "last_cloud_sync"))
        ps.set_meta(self.conn, "last_cloud_sync", "2026-10-19T12:00:00Z")
        self.assertEqual(ps.get_meta(self.conn, "last_cloud_sync"), "2026-10-19T12:00:00Z")


class NormalizeSaleItemsTest(unittest.TestCase):
    def test_all_historical_shapes(self):
        sale_item = {"product_id": "p1", "name": "Arroz", "quantity": 2, "unit_price": 10.0}
        cart_line = {"id": "p2", "name": "Queijo", "quantity": 0.5, "price": 40.0, "unit": "KG"}
        self.assertEqual(ps.normalize_sale_items([sale_item])[0]["unit_price"], 10.0)
        self.assertEqual(ps.normalize_sale_items([cart_line])[0]["product_id"], "p2")
        self.assertEqual(ps.normalize_sale_items(json.dumps([sale_item]))[0]["quantity"], 2)
        self.assertEqual(len(ps.normalize_sale_items({"items": [sale_item, cart_line]})), 2)
        self.assertEqual(len(ps.normalize_sale_items({"items_json": json.dumps([cart_line])})), 1)

    def test_drops_unusable_entries(self):
        raw = [{"product_id": "p1", "quantity": 0}, {"name": "no id", "quantity": 1}, "x",
               {"id": "p3", "qty": 1, "rate": 5}]
        items = ps.normalize_sale_items(raw)
        self.assertEqual([i["product_id"] for i in items], ["p3"])
        self.assertEqual(items[0]["unit_price"], 5.0)
        self.assertEqual(ps.normalize_sale_items("not json"), [])
        self.assertEqual(ps.normalize_sale_items(None), [])


class BackupTest(unittest.TestCase):
    def test_backup_writes_one_line_per_sale(self):
        conn = ps.connect(":memory:")
        try:
            ps.enqueue(conn, "sale", {"total": 10.0})
            ps.enqueue(conn, "stock_movement", {"qty": 1})
            with tempfile.TemporaryDirectory() as tmp:
                path = ps.backup_ndjson(conn, backup_dir=tmp)
                self.assertTrue(os.path.exists(path))
                with open(path, encoding="utf-8") as f:
                    lines = [json.loads(line) for line in f]
            self.assertEqual(len(lines), 1)
            self.assertEqual(lines[0]["payload"], {"total": 10.0})
        finally:
            conn.close()


if __name__ == "__main__":
    unittest.main()
