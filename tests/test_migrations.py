from app.db.migrations import SCHEMA_VERSION, migrate
from helpers import CHAT


def test_migrate_backfills_old_rows_once(store, members, aliases, ledger, resolver):
    store.table("members").insert(
        {"member_id": "tg:1", "chat_id": CHAT, "display_name": "Minh", "is_virtual": False}
    )
    store.table("aliases").insert(
        {"chat_id": CHAT, "alias_text": "minh béo", "member_id": "tg:1", "confidence": 1.0}
    )
    store.table("debts").insert(
        {
            "chat_id": CHAT,
            "creditor_member_id": "tg:1",
            "debtor_member_id": "v:abc",
            "amount": 50,
            "currency": "VND",
            "settled": False,
        }
    )

    assert migrate(store) == 3
    assert migrate(store) == 0

    assert members.get(CHAT, "tg:1").merged_into is None
    assert aliases.find(CHAT, "minh béo", "tg:1").source == "learned"
    assert ledger.list_debts(CHAT)[0].remaining_amount == 50
    assert resolver.require(CHAT, "Minh béo") == "tg:1"
    assert store.table("meta").all() == [{"key": "schema_version", "value": SCHEMA_VERSION}]
