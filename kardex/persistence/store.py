"""
In-memory data store with an all-or-nothing unit of work.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from ..core.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class InMemoryDataStore:
    """Named tables of entities keyed by id.

    Writers hold the store lock for the length of a transaction and readers take
    it for each lookup, so a reader sees either all of a transaction's writes or
    none of them. Transactions nest; only the outermost one commits or rolls back.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def table(self, name: str) -> Dict[str, Any]:
        """Get (creating if needed) the row dictionary for a table."""
        with self._lock:
            return self._tables.setdefault(name, {})

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator["InMemoryDataStore"]:
        """Run a block of writes atomically, restoring every table on error."""
        with self._lock:
            outermost = self._depth == 0
            snapshot = None
            if outermost:
                snapshot = {name: dict(rows) for name, rows in self._tables.items()}
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._restore(snapshot)
                    logger.debug("Transaction rolled back")
                raise
            finally:
                self._depth -= 1

    def _restore(self, snapshot: Dict[str, Dict[str, Any]]) -> None:
        for name in list(self._tables):
            if name in snapshot:
                self._tables[name] = snapshot[name]
            else:
                del self._tables[name]

    def clear(self) -> None:
        with self._lock:
            if self._depth:
                raise PersistenceError("Cannot clear the store inside a transaction")
            self._tables.clear()
