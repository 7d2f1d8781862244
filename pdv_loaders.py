"""
Cache-aside loaders for the product catalog, promotions and the open cash session.

Read order: terminal memory cache -> local SQLite entity cache (native builds
only) -> backend. The first non-empty tier answers and refreshes the faster
tiers. Every load takes a generation token from the TerminalContext and its
result is applied only while that token is still the latest one issued.
"""
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

import pdv_service as ps
from terminal_context import TerminalContext

log = logging.getLogger(__name__)


class _TieredLoader:
    kind = ""

    def __init__(self, ctx: TerminalContext, client: Any = None,
                 conn: Optional[sqlite3.Connection] = None,
                 on_result: Optional[Callable[[Any], None]] = None):
        self.ctx = ctx
        self.client = client
        self.conn = conn
        self.on_result = on_result
        self.last_source: Optional[str] = None

    def _local_enabled(self) -> bool:
        return bool(self.ctx.local_db_enabled and self.conn is not None)

    # subclasses fill these in
    def _read_local(self, company_id: str, *args) -> Any:
        raise NotImplementedError

    def _write_local(self, company_id: str, value: Any) -> None:
        raise NotImplementedError

    def _read_remote(self, company_id: str, *args) -> Any:
        raise NotImplementedError

    def _cache_key(self, company_id: str, *args) -> str:
        return company_id

    def load(self, company_id: Optional[str], *args) -> Any:
        """Return the value that was applied, or None when the result went stale."""
        if not company_id:
            return None
        generation = self.ctx.next_generation(self.kind)
        value, source = self._resolve(company_id, *args)
        if not self.ctx.is_current(self.kind, generation):
            log.info("Discarding stale %s load (generation %d, source=%s)", self.kind, generation, source)
            return None
        self.last_source = source
        self._refresh_faster_tiers(company_id, value, source, *args)
        if self.on_result:
            self.on_result(value)
        return value

    def _refresh_faster_tiers(self, company_id: str, value: Any, source: str, *args) -> None:
        if source in ("local", "remote"):
            self.ctx.cache_put(self.kind, self._cache_key(company_id, *args), value)
        if source == "remote" and self._local_enabled():
            try:
                self._write_local(company_id, value)
            except sqlite3.Error:
                log.exception("Local %s cache write failed", self.kind)

    def _resolve(self, company_id: str, *args):
        cached = self.ctx.cache_get(self.kind, self._cache_key(company_id, *args))
        if cached:
            return cached, "memory"

        if self._local_enabled():
            try:
                local = self._read_local(company_id, *args)
            except sqlite3.Error:
                log.exception("Local %s read failed", self.kind)
                local = None
            if local:
                return local, "local"

        if self.client is not None and self.ctx.can_reach_backend():
            try:
                remote = self._read_remote(company_id, *args)
            except Exception:
                log.exception("Backend %s fetch failed", self.kind)
                remote = None
            if remote:
                return remote, "remote"
        return self._empty(), "none"

    def _empty(self) -> Any:
        return None


class ProductLoader(_TieredLoader):
    kind = "products"

    def __init__(self, *args, limit: int = 1000, **kwargs):
        super().__init__(*args, **kwargs)
        self.limit = limit

    def _read_local(self, company_id: str, *args) -> List[Dict[str, Any]]:
        return ps.get_cached_entities(self.conn, "products", company_id)

    def _write_local(self, company_id: str, value: List[Dict[str, Any]]) -> None:
        ps.cache_entities(self.conn, "products", company_id, value)

    def _read_remote(self, company_id: str, *args) -> List[Dict[str, Any]]:
        return self.client.fetch_products(company_id, limit=self.limit)

    def _empty(self) -> List[Dict[str, Any]]:
        return []


class SessionLoader(_TieredLoader):
    kind = "cash_session"

    def _cache_key(self, company_id: str, *args) -> str:
        terminal_id = args[0] if args else None
        return f"{company_id}:{terminal_id or ''}"

    def _read_local(self, company_id: str, *args) -> Optional[Dict[str, Any]]:
        terminal_id = args[0] if args else None
        open_sessions = [
            s for s in ps.get_cached_entities(self.conn, "cash_sessions", company_id)
            if s.get("status") == "aberto" and (not terminal_id or s.get("terminal_id") == terminal_id)
        ]
        if not open_sessions:
            return None
        # a reopened register leaves the older row cached; newest opened_at wins, then latest cached
        ranked = sorted(enumerate(open_sessions), key=lambda pair: (str(pair[1].get("opened_at") or ""), pair[0]))
        return ranked[-1][1]

    def _write_local(self, company_id: str, value: Dict[str, Any]) -> None:
        ps.cache_entities(self.conn, "cash_sessions", company_id, [value])

    def _read_remote(self, company_id: str, *args) -> Optional[Dict[str, Any]]:
        terminal_id = args[0] if args else None
        return self.client.fetch_current_session(company_id, terminal_id)


class PromotionLoader(_TieredLoader):
    kind = "promotions"

    def _read_local(self, company_id: str, *args) -> List[Dict[str, Any]]:
        return ps.get_cached_entities(self.conn, "promotions", company_id)

    def _write_local(self, company_id: str, value: List[Dict[str, Any]]) -> None:
        ps.cache_entities(self.conn, "promotions", company_id, value)

    def _read_remote(self, company_id: str, *args) -> List[Dict[str, Any]]:
        return self.client.fetch_promotions(company_id)

    def _empty(self) -> List[Dict[str, Any]]:
        return []
