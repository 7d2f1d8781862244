"""
Per-terminal state shared by the cart, loaders and finalizer.

One instance lives as long as the cashier's terminal session; nothing here is
a module-level global.
"""
import threading
from typing import Any, Dict, Optional


class TerminalContext:
    def __init__(self, company_id: Optional[str] = None, user_id: Optional[str] = None,
                 terminal_id: str = "01", training_mode: bool = False, online: bool = True,
                 queue_only: bool = False, local_db_enabled: bool = False):
        self.company_id = company_id
        self.user_id = user_id
        self.terminal_id = terminal_id or "01"
        self.training_mode = training_mode
        self.online = online
        self.queue_only = queue_only
        self.local_db_enabled = local_db_enabled
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._generations: Dict[str, int] = {}
        self._lock = threading.Lock()

    def can_reach_backend(self) -> bool:
        return self.online and not self.queue_only

    # ---------- session cache (keyed by company id) ----------
    def cache_get(self, kind: str, company_id: str) -> Any:
        with self._lock:
            return self._cache.get(kind, {}).get(company_id)

    def cache_put(self, kind: str, company_id: str, value: Any) -> None:
        with self._lock:
            self._cache.setdefault(kind, {})[company_id] = value

    def cache_clear(self, kind: Optional[str] = None) -> None:
        with self._lock:
            if kind is None:
                self._cache.clear()
            else:
                self._cache.pop(kind, None)

    # ---------- load generations ----------
    def next_generation(self, kind: str) -> int:
        """Issue a new load token; any older token for `kind` becomes stale."""
        with self._lock:
            gen = self._generations.get(kind, 0) + 1
            self._generations[kind] = gen
            return gen

    def is_current(self, kind: str, generation: int) -> bool:
        with self._lock:
            return self._generations.get(kind, 0) == generation

    def cancel_loads(self) -> None:
        """Invalidate every in-flight load (terminal teardown, company switch)."""
        with self._lock:
            for kind in list(self._generations):
                self._generations[kind] += 1
