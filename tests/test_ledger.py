from datetime import datetime

import pytest

from app.models.schemas import Applied, LedgerMutation, Rejected
from app.services.ledger import summarize_balances
from helpers import CHAT


@pytest.fixture
def four(group, members):
    members.upsert_real(CHAT, 4, "Nam")
    return ["tg:1", "tg:2", "tg:3", "tg:4"]


def _m(kind, creditor, debtor, amount=None, **kwargs):
    return LedgerMutation(
        chat_id=kwargs.pop("chat_id", CHAT),
        kind=kind,
        creditor_member_id=creditor,
        debtor_member_id=debtor,
        amount=amount,
        **kwargs,
    )


def test_batch_with_self_debt_is_rejected_whole(four, executor, ledger):
    a, b, c, d = four
    batch = [_m("debt", a, b, 100), _m("debt", a, a, 50), _m("debt", c, d, 30)]

    result = executor.apply(CHAT, batch)

    assert isinstance(result, Rejected)
    assert result.reason == "self_reference"
    assert ledger.list_debts(CHAT) == []
    assert ledger.list_payments(CHAT) == []


@pytest.mark.parametrize(
    "mutation,reason",
    [
        (_m("debt", "tg:1", "tg:99", 100), "unknown_member"),
        (_m("debt", "tg:1", "tg:2", -5), "invalid_amount"),
        (_m("debt", "tg:1", "tg:2", float("nan")), "invalid_amount"),
        (_m("payment", "tg:1", "tg:2"), "invalid_amount"),
        (_m("debt", "tg:1", "tg:2", 10, chat_id="other"), "chat_mismatch"),
        (_m("debt", "tg:1", None, 10), "unknown_member"),
    ],
)
def test_invalid_batches_are_rejected(four, executor, ledger, mutation, reason):
    result = executor.apply(CHAT, [mutation])

    assert isinstance(result, Rejected)
    assert result.reason == reason
    assert ledger.list_debts(CHAT) == []


def test_empty_batch_applies_nothing(executor):
    result = executor.apply(CHAT, [])

    assert isinstance(result, Applied)
    assert result.mutations == []


def test_payment_pays_oldest_debt_first(four, executor, ledger):
    a, b, _, _ = four
    executor.apply(
        CHAT,
        [
            _m("debt", a, b, 100, occurred_at=datetime(2024, 1, 1)),
            _m("debt", a, b, 50, occurred_at=datetime(2024, 1, 2)),
        ],
    )

    result = executor.apply(CHAT, [_m("payment", a, b, 120)])

    assert isinstance(result, Applied)
    older, newer = ledger.list_debts(CHAT)
    assert older.settled and older.remaining_amount == 0
    assert not newer.settled and newer.remaining_amount == 30
    assert len(result.payment_ids) == 2
    assert sum(p.amount for p in ledger.list_payments(CHAT)) == 120


def test_overpayment_keeps_leftover_payment_row(four, executor, ledger):
    a, b, _, _ = four
    executor.apply(CHAT, [_m("debt", a, b, 100)])

    executor.apply(CHAT, [_m("payment", a, b, 150)])

    payments = ledger.list_payments(CHAT)
    assert sorted(p.amount for p in payments) == [50, 100]
    assert [p.debt_id for p in payments if p.amount == 50] == [None]
    assert ledger.list_debts(CHAT, settled=False) == []


def test_payment_only_touches_same_currency(four, executor, ledger):
    a, b, _, _ = four
    executor.apply(CHAT, [_m("debt", a, b, 20, currency="USD"), _m("debt", a, b, 100)])

    executor.apply(CHAT, [_m("payment", a, b, 100)])

    open_debts = ledger.list_debts(CHAT, settled=False)
    assert [(d.currency, d.remaining_amount) for d in open_debts] == [("USD", 20)]


def test_settle_without_amount_clears_the_pair(four, executor, ledger):
    a, b, c, _ = four
    executor.apply(CHAT, [_m("debt", a, b, 100), _m("debt", a, b, 40), _m("debt", c, b, 10)])

    executor.apply(CHAT, [_m("settle", a, b)])

    open_debts = ledger.list_debts(CHAT, settled=False)
    assert [(d.creditor_member_id, d.remaining_amount) for d in open_debts] == [(c, 10)]
    notes = {p.note for p in ledger.list_payments(CHAT)}
    assert notes == {"Full settlement"}


def test_settle_with_nothing_open_is_flagged(four, executor, ledger):
    a, b, _, _ = four

    result = executor.apply(CHAT, [_m("settle", a, b)])

    assert isinstance(result, Applied)
    assert [(m.creditor_member_id, m.debtor_member_id) for m in result.empty_settlements] == [(a, b)]
    assert result.payment_ids == []
    assert ledger.list_payments(CHAT) == []


def test_settle_that_pays_something_is_not_flagged(four, executor):
    a, b, _, _ = four
    executor.apply(CHAT, [_m("debt", a, b, 100)])

    result = executor.apply(CHAT, [_m("settle", a, b)])

    assert result.empty_settlements == []
    assert len(result.payment_ids) == 1


def test_each_committed_batch_writes_one_action_log(four, executor, ledger):
    a, b, c, _ = four

    executor.apply(CHAT, [_m("debt", a, b, 100), _m("debt", c, b, 10)], actor_id=a)
    executor.apply(CHAT, [_m("debt", a, a, 5)], actor_id=a)

    [action] = ledger.list_actions(CHAT)
    assert action.action_type == "ledger_batch"
    assert action.actor_member_id == a
    assert len(action.payload["mutations"]) == 2
    assert action.payload["debt_ids"] == [d.debt_id for d in ledger.list_debts(CHAT)]


def test_store_failure_rolls_back_everything(four, executor, ledger, members, monkeypatch):
    a, b, c, d = four
    real_add_debt = ledger.add_debt
    calls = []

    def flaky_add_debt(debt):
        calls.append(debt)
        if len(calls) == 2:
            raise OSError("disk full")
        return real_add_debt(debt)

    monkeypatch.setattr(ledger, "add_debt", flaky_add_debt)
    batch = [
        _m("debt", a, None, 200000, debtor_reference="Huy"),
        _m("debt", c, d, 30),
    ]

    result = executor.apply(CHAT, batch)

    assert isinstance(result, Rejected)
    assert result.reason == "store_error"
    assert ledger.list_debts(CHAT) == []
    assert ledger.list_actions(CHAT) == []
    assert members.find_virtual_by_name(CHAT, "Huy") is None


def test_provisional_side_creates_virtual_member(four, executor, members, aliases, ledger):
    result = executor.apply(CHAT, [_m("debt", "tg:1", None, 200000, debtor_reference="Huy")])

    assert isinstance(result, Applied)
    assert len(result.created_member_ids) == 1
    virtual_id = result.created_member_ids[0]
    huy = members.get(CHAT, virtual_id)
    assert huy.is_virtual and huy.display_name == "Huy"
    assert aliases.find(CHAT, "Huy", virtual_id).confidence == 0.5
    assert ledger.list_debts(CHAT)[0].debtor_member_id == virtual_id


def test_committed_use_reinforces_alias(four, executor, aliases):
    aliases.upsert(CHAT, "Long", "tg:2", 0.5)

    executor.apply(CHAT, [_m("debt", "tg:1", "tg:2", 10, debtor_reference="Long")])

    assert aliases.find(CHAT, "Long", "tg:2").confidence == pytest.approx(0.55)


def test_balances_net_each_pair(four, executor, members, ledger):
    a, b, c, _ = four
    executor.apply(CHAT, [_m("debt", a, b, 100), _m("debt", b, a, 30), _m("debt", c, a, 5)])

    balances = summarize_balances(members, ledger, CHAT)

    assert [(x.creditor_member_id, x.debtor_member_id, x.amount) for x in balances] == [
        (a, b, 70),
        (c, a, 5),
    ]
