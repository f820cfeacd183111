import copy
import threading
from contextlib import contextmanager

from loguru import logger
from tinydb import TinyDB
from tinydb.storages import MemoryStorage

TABLES = ("members", "aliases", "debts", "payments", "pending", "chats", "messages", "action_logs", "meta")


class Store:
    """TinyDB handle with an all-or-nothing transaction boundary.

    TinyDB has no transactions of its own, so ``transaction()`` snapshots the
    whole document set on entry and writes the snapshot back if the block
    raises. Nested ``transaction()`` calls join the outermost one.
    """

    def __init__(self, db_path: str | None = "group_ledger.json"):
        if db_path is None or db_path == ":memory:":
            self.db = TinyDB(storage=MemoryStorage)
        else:
            self.db = TinyDB(db_path, encoding="utf-8", ensure_ascii=False)
        self._lock = threading.RLock()
        self._depth = 0

    def table(self, name: str):
        return self.db.table(name)

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy(self.db.storage.read() or {})
            self._depth = 1
            try:
                yield self
            except BaseException:
                logger.warning("Rolling back store transaction")
                self._restore(snapshot)
                raise
            finally:
                self._depth = 0

    def _restore(self, snapshot: dict) -> None:
        self.db.storage.write(snapshot)
        for name in set(TABLES) | set(snapshot):
            self.db.table(name).clear_cache()

    def close(self) -> None:
        self.db.close()
