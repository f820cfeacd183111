import math
from collections import defaultdict

from loguru import logger

from app.db.repository import AliasRepository, LedgerRepository, MemberRepository
from app.db.store import Store
from app.errors import LedgerRejected
from app.models.schemas import (
    ActionLog,
    Applied,
    ApplyResult,
    Balance,
    Debt,
    LedgerMutation,
    Payment,
    Rejected,
)
from app.text import normalize_reference


class LedgerExecutor:
    """Applies one turn's ledger mutations as a single all-or-nothing batch."""

    def __init__(
        self,
        store: Store,
        members: MemberRepository,
        aliases: AliasRepository,
        ledger: LedgerRepository,
        provisional_confidence: float = 0.5,
        alias_reinforcement: float = 0.1,
    ):
        self.store = store
        self.members = members
        self.aliases = aliases
        self.ledger = ledger
        self.provisional_confidence = provisional_confidence
        self.alias_reinforcement = alias_reinforcement

    def validate(self, chat_id: str, mutations: list[LedgerMutation]) -> str | None:
        """Return a rejection reason for the batch, or None if it may be applied."""
        for m in mutations:
            if m.chat_id != chat_id:
                return "chat_mismatch"

            if m.amount is not None and (not math.isfinite(m.amount) or m.amount <= 0):
                return "invalid_amount"
            if m.kind in ("debt", "payment") and m.amount is None:
                return "invalid_amount"

            for member_id, reference in (
                (m.creditor_member_id, m.creditor_reference),
                (m.debtor_member_id, m.debtor_reference),
            ):
                if member_id is None:
                    if not (reference or "").strip():
                        return "unknown_member"
                elif self.members.get_live(chat_id, member_id) is None:
                    return "unknown_member"

            if m.creditor_member_id is not None or m.debtor_member_id is not None:
                if m.creditor_member_id == m.debtor_member_id:
                    return "self_reference"
            elif normalize_reference(m.creditor_reference) == normalize_reference(m.debtor_reference):
                return "self_reference"
        return None

    def apply(
        self,
        chat_id: str,
        mutations: list[LedgerMutation],
        actor_id: str | None = None,
    ) -> ApplyResult:
        reason = self.validate(chat_id, mutations)
        if reason is not None:
            logger.warning("Rejected batch of {} in chat {}: {}", len(mutations), chat_id, reason)
            return Rejected(reason=reason)
        if not mutations:
            return Applied()

        result = Applied()
        try:
            with self.store.transaction():
                for mutation in mutations:
                    resolved = self._materialize(mutation, result.created_member_ids)
                    if resolved.creditor_member_id == resolved.debtor_member_id:
                        raise LedgerRejected("self_reference")
                    self._reinforce(mutation)
                    self._write(resolved, result)
                    result.mutations.append(resolved)
                self.ledger.log_action(
                    ActionLog(
                        chat_id=chat_id,
                        action_type="ledger_batch",
                        actor_member_id=actor_id,
                        payload={
                            "mutations": [m.model_dump(mode="json") for m in result.mutations],
                            "debt_ids": result.debt_ids,
                            "payment_ids": result.payment_ids,
                            "created_member_ids": result.created_member_ids,
                        },
                    )
                )
        except LedgerRejected as e:
            logger.warning("Rejected batch in chat {}: {}", chat_id, e.reason)
            return Rejected(reason=e.reason)
        except Exception as e:
            logger.error("Ledger write failed in chat {}: {}", chat_id, e)
            return Rejected(reason="store_error")

        logger.info(
            "Applied {} mutation(s) in chat {} ({} new member(s))",
            len(result.mutations),
            chat_id,
            len(result.created_member_ids),
        )
        return result

    def _materialize(self, mutation: LedgerMutation, created: list[str]) -> LedgerMutation:
        """Create virtual members for provisional sides. Runs inside the transaction."""
        resolved = mutation.model_copy()
        for id_field, ref_field in (
            ("creditor_member_id", "creditor_reference"),
            ("debtor_member_id", "debtor_reference"),
        ):
            if getattr(resolved, id_field) is not None:
                continue
            reference = getattr(resolved, ref_field).strip()
            member_id = self.members.get_or_create_virtual(mutation.chat_id, reference)
            self.aliases.upsert(
                mutation.chat_id, reference, member_id, self.provisional_confidence
            )
            if member_id not in created:
                created.append(member_id)
            setattr(resolved, id_field, member_id)
        return resolved

    def _reinforce(self, mutation: LedgerMutation) -> None:
        for member_id, reference in (
            (mutation.creditor_member_id, mutation.creditor_reference),
            (mutation.debtor_member_id, mutation.debtor_reference),
        ):
            if member_id and reference:
                self.aliases.reinforce(
                    mutation.chat_id, reference, member_id, self.alias_reinforcement
                )

    def _write(self, m: LedgerMutation, result: Applied) -> None:
        if m.kind == "debt":
            debt = self.ledger.add_debt(
                Debt(
                    chat_id=m.chat_id,
                    creditor_member_id=m.creditor_member_id,
                    debtor_member_id=m.debtor_member_id,
                    amount=m.amount,
                    remaining_amount=m.amount,
                    currency=m.currency,
                    note=m.note,
                    occurred_at=m.occurred_at,
                )
            )
            result.debt_ids.append(debt.debt_id)
        elif m.kind == "payment":
            leftover = self._allocate(m, m.amount, result)
            if leftover > 0:
                # Nothing left to allocate against; keep the payment on record.
                payment = self.ledger.add_payment(
                    Payment(
                        chat_id=m.chat_id,
                        payer_member_id=m.debtor_member_id,
                        payee_member_id=m.creditor_member_id,
                        amount=leftover,
                        currency=m.currency,
                        paid_at=m.occurred_at,
                        note=m.note,
                    )
                )
                result.payment_ids.append(payment.payment_id)
        elif m.kind == "settle":
            written = len(result.payment_ids)
            self._allocate(m, m.amount, result, note=m.note or "Full settlement")
            if len(result.payment_ids) == written:
                result.empty_settlements.append(m)
        else:
            raise LedgerRejected("unknown_kind")

    def _allocate(
        self,
        m: LedgerMutation,
        limit: float | None,
        result: Applied,
        note: str | None = None,
    ) -> float:
        """Pay down open debts oldest-first; returns the unallocated amount."""
        remaining = limit
        for debt in self.ledger.open_debts(m.chat_id, m.creditor_member_id, m.debtor_member_id):
            if debt.currency != m.currency:
                continue
            if remaining is not None and remaining <= 0:
                break
            portion = debt.remaining_amount if remaining is None else min(remaining, debt.remaining_amount)
            left_on_debt = round(debt.remaining_amount - portion, 2)
            self.ledger.update_debt(
                debt.debt_id,
                remaining_amount=max(left_on_debt, 0),
                settled=left_on_debt <= 0,
            )
            payment = self.ledger.add_payment(
                Payment(
                    chat_id=m.chat_id,
                    debt_id=debt.debt_id,
                    payer_member_id=m.debtor_member_id,
                    payee_member_id=m.creditor_member_id,
                    amount=portion,
                    currency=m.currency,
                    paid_at=m.occurred_at,
                    note=note or m.note,
                )
            )
            result.payment_ids.append(payment.payment_id)
            if remaining is not None:
                remaining = round(remaining - portion, 2)
        return remaining or 0.0


def summarize_balances(
    members: MemberRepository, ledger: LedgerRepository, chat_id: str
) -> list[Balance]:
    """Net open balance per member pair and currency, largest first."""
    net: dict[tuple[str, str, str], float] = defaultdict(float)
    for debt in ledger.list_debts(chat_id, settled=False):
        a, b = sorted((debt.creditor_member_id, debt.debtor_member_id))
        sign = 1 if debt.creditor_member_id == a else -1
        net[(a, b, debt.currency)] += sign * debt.remaining_amount

    names = {m.member_id: m.display_name for m in members.get_all(chat_id, include_tombstones=True)}
    balances = []
    for (a, b, currency), amount in net.items():
        amount = round(amount, 2)
        if amount == 0:
            continue
        creditor, debtor = (a, b) if amount > 0 else (b, a)
        balances.append(
            Balance(
                creditor_member_id=creditor,
                creditor_name=names.get(creditor, creditor),
                debtor_member_id=debtor,
                debtor_name=names.get(debtor, debtor),
                amount=abs(amount),
                currency=currency,
            )
        )
    return sorted(balances, key=lambda b: -b.amount)
