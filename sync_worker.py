#!/usr/bin/env python3
"""
PDV Sync Worker

Drains the local sync queue (sales queued while offline or after a failed
online checkout) into the backend, lowest priority number first.

Env vars:
  PDV_DB_PATH      SQLite DB path (default: pdv.db)
  SYNC_INTERVAL    seconds between loops (default: 10)
  SYNC_BATCH_SIZE  items per loop (default: 50)
  SYNC_CLEANUP     '1' to delete synced/failed items older than a day each loop (default: 1)

Run:
  python sync_worker.py
"""
import logging
import os
import sqlite3
import time
from typing import Any, Dict

from dotenv import load_dotenv

import pdv_service as ps
from backend_client import BackendClient, BackendError

load_dotenv()

log = logging.getLogger('sync_worker')

PDV_DB_PATH = os.environ.get('PDV_DB_PATH', 'pdv.db')
SYNC_INTERVAL = float(os.environ.get('SYNC_INTERVAL', '10'))
SYNC_BATCH_SIZE = int(os.environ.get('SYNC_BATCH_SIZE', '50'))
SYNC_CLEANUP = os.environ.get('SYNC_CLEANUP', '1') == '1'


def build_client() -> BackendClient:
    return BackendClient()


def _push_item(client: Any, item: Dict[str, Any]) -> Dict[str, Any]:
    if item['entity_type'] == 'sale':
        payload = dict(item['payload'])
        payload['items'] = ps.normalize_sale_items(payload.get('items'))
        payload['offline_id'] = item['id']
        return client.create_sale(payload)
    raise BackendError(f"Unsupported entity type: {item['entity_type']}")


def push_pending(conn: sqlite3.Connection, client: Any, limit: int = SYNC_BATCH_SIZE) -> Dict[str, int]:
    """One pass over pending items. Returns {'synced': n, 'failed': n}."""
    synced = 0
    failed = 0
    for item in ps.get_pending(conn, limit):
        item_id = item['id']
        if not ps.claim_item(conn, item_id):
            log.debug('%s %s claimed by another pusher; skipping', item['entity_type'], item_id)
            continue
        try:
            result = _push_item(client, item)
        except Exception as exc:
            if isinstance(exc, BackendError) and exc.is_duplicate:
                ps.update_status(conn, item_id, 'synced')
                log.info('%s %s already on backend; marked synced', item['entity_type'], item_id)
                synced += 1
                continue
            status = ps.handle_failure(conn, item_id, str(exc))
            log.warning('Failed pushing %s %s (%s): %s', item['entity_type'], item_id, status, exc)
            failed += 1
            continue
        ps.update_status(conn, item_id, 'synced')
        log.info('Pushed %s %s -> %s', item['entity_type'], item_id, (result or {}).get('fiscal_doc_id'))
        synced += 1
    if synced:
        ps.set_meta(conn, 'last_cloud_sync', ps.iso_now())
    return {'synced': synced, 'failed': failed}


def main():
    logging.basicConfig(level=logging.INFO, format='[sync] %(asctime)s %(levelname)s %(message)s')
    log.info('starting worker, interval=%ss, db=%s', SYNC_INTERVAL, PDV_DB_PATH)
    conn = ps.connect(PDV_DB_PATH)
    client = build_client()
    if not client.configured:
        log.warning('PDV_BACKEND_URL/PDV_BACKEND_KEY not set; items will stay queued')
    try:
        while True:
            if client.configured:
                result = push_pending(conn, client)
                if result['synced'] or result['failed']:
                    log.info('loop done: synced=%d failed=%d', result['synced'], result['failed'])
            if SYNC_CLEANUP:
                removed = ps.cleanup(conn)
                if removed:
                    log.info('cleaned up %d old item(s)', removed)
            time.sleep(SYNC_INTERVAL)
    except KeyboardInterrupt:
        log.info('exiting on Ctrl+C')
    finally:
        conn.close()


if __name__ == '__main__':
    main()
