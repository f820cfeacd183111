"""Idempotent schema patches for the TinyDB document store.

Run once at startup; every step only fills in fields that are missing, so
running it again is a no-op.
"""

from datetime import datetime

from loguru import logger
from tinydb import Query

from app.db.store import Store

SCHEMA_VERSION = 2


def _backfill(table, defaults: dict) -> int:
    patched = 0
    for doc in table.all():
        missing = {k: v(doc) if callable(v) else v for k, v in defaults.items() if k not in doc}
        if missing:
            table.update(missing, doc_ids=[doc.doc_id])
            patched += 1
    return patched


def migrate(store: Store) -> int:
    """Bring stored documents up to SCHEMA_VERSION. Returns the number of patched rows."""
    now = datetime.now().isoformat()
    with store.transaction():
        patched = _backfill(
            store.table("aliases"),
            {"source": "learned", "last_used_at": now},
        )
        patched += _backfill(
            store.table("members"),
            {"merged_into": None, "username": None, "platform_user_id": None},
        )
        patched += _backfill(
            store.table("debts"),
            {"remaining_amount": lambda doc: 0 if doc.get("settled") else doc.get("amount", 0)},
        )
        M = Query()
        store.table("meta").upsert(
            {"key": "schema_version", "value": SCHEMA_VERSION}, M.key == "schema_version"
        )

    if patched:
        logger.info("Migrated {} row(s) to schema v{}", patched, SCHEMA_VERSION)
    return patched
