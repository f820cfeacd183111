import uuid
from datetime import datetime

from tinydb import Query

from app.db.store import Store
from app.models.schemas import ActionLog, AliasEntry, ChatMessage, Debt, Member, Payment, PendingAmbiguity
from app.text import normalize_reference


class MemberRepository:
    def __init__(self, store: Store):
        self.store = store
        self.table = store.table("members")

    def add(self, member: Member) -> Member:
        with self.store.transaction():
            self.table.insert(member.model_dump(mode="json"))
        return member

    def get(self, chat_id: str, member_id: str) -> Member | None:
        M = Query()
        doc = self.table.get((M.chat_id == chat_id) & (M.member_id == member_id))
        if doc is None:
            return None
        return Member(**doc)

    def get_live(self, chat_id: str, member_id: str) -> Member | None:
        member = self.get(chat_id, member_id)
        if member is None or not member.is_live:
            return None
        return member

    def get_all(self, chat_id: str, include_tombstones: bool = False) -> list[Member]:
        M = Query()
        docs = self.table.search(M.chat_id == chat_id)
        members = [Member(**doc) for doc in docs]
        if not include_tombstones:
            members = [m for m in members if m.is_live]
        return members

    def upsert_real(
        self,
        chat_id: str,
        platform_user_id: int,
        display_name: str,
        username: str | None = None,
    ) -> Member:
        """Create or refresh a real member on a chat-platform sighting."""
        member_id = f"tg:{platform_user_id}"
        with self.store.transaction():
            existing = self.get(chat_id, member_id)
            if existing is None:
                member = Member(
                    member_id=member_id,
                    chat_id=chat_id,
                    display_name=display_name,
                    username=username,
                    platform_user_id=platform_user_id,
                )
                return self.add(member)

            if existing.display_name != display_name or existing.username != username:
                M = Query()
                self.table.update(
                    {"display_name": display_name, "username": username},
                    (M.chat_id == chat_id) & (M.member_id == member_id),
                )
                existing.display_name = display_name
                existing.username = username
            return existing

    def find_virtual_by_name(self, chat_id: str, display_name: str) -> Member | None:
        wanted = normalize_reference(display_name)
        for member in self.get_all(chat_id):
            if member.is_virtual and normalize_reference(member.display_name) == wanted:
                return member
        return None

    def get_or_create_virtual(self, chat_id: str, display_name: str) -> str:
        with self.store.transaction():
            existing = self.find_virtual_by_name(chat_id, display_name)
            if existing is not None:
                return existing.member_id
            member = Member(
                member_id=f"v:{uuid.uuid4().hex[:12]}",
                chat_id=chat_id,
                display_name=display_name.strip(),
                is_virtual=True,
            )
            self.add(member)
            return member.member_id

    def mark_merged(self, chat_id: str, virtual_id: str, real_id: str) -> None:
        M = Query()
        with self.store.transaction():
            self.table.update(
                {"merged_into": real_id},
                (M.chat_id == chat_id) & (M.member_id == virtual_id),
            )


class AliasRepository:
    def __init__(self, store: Store):
        self.store = store
        self.table = store.table("aliases")

    def _key(self, chat_id: str, alias_text: str, member_id: str):
        A = Query()
        return (
            (A.chat_id == chat_id)
            & (A.alias_text == alias_text)
            & (A.member_id == member_id)
        )

    def get_all(self, chat_id: str) -> list[AliasEntry]:
        A = Query()
        return [AliasEntry(**doc) for doc in self.table.search(A.chat_id == chat_id)]

    def list_for_member(self, chat_id: str, member_id: str) -> list[AliasEntry]:
        A = Query()
        docs = self.table.search((A.chat_id == chat_id) & (A.member_id == member_id))
        return [AliasEntry(**doc) for doc in docs]

    def find(self, chat_id: str, alias_text: str, member_id: str) -> AliasEntry | None:
        doc = self.table.get(self._key(chat_id, normalize_reference(alias_text), member_id))
        if doc is None:
            return None
        return AliasEntry(**doc)

    def upsert(
        self,
        chat_id: str,
        alias_text: str,
        member_id: str,
        confidence: float,
        source: str = "learned",
    ) -> AliasEntry:
        """Insert or update the single entry for (chat, alias, member).

        Confidence only ever moves up on a write.
        """
        alias_text = normalize_reference(alias_text)
        now = datetime.now()
        with self.store.transaction():
            existing = self.find(chat_id, alias_text, member_id)
            if existing is None:
                entry = AliasEntry(
                    chat_id=chat_id,
                    alias_text=alias_text,
                    member_id=member_id,
                    confidence=confidence,
                    last_used_at=now,
                    source=source,
                )
                self.table.insert(entry.model_dump(mode="json"))
                return entry

            existing.confidence = max(existing.confidence, confidence)
            existing.last_used_at = now
            self.table.update(
                {
                    "confidence": existing.confidence,
                    "last_used_at": now.isoformat(),
                },
                self._key(chat_id, alias_text, member_id),
            )
            return existing

    def reinforce(self, chat_id: str, alias_text: str, member_id: str, step: float) -> AliasEntry | None:
        """Move an existing entry's confidence toward 1.0 after a confirmed use."""
        existing = self.find(chat_id, alias_text, member_id)
        if existing is None:
            return None
        boosted = min(1.0, existing.confidence + (1.0 - existing.confidence) * step)
        return self.upsert(chat_id, alias_text, member_id, boosted)

    def repoint(self, chat_id: str, from_id: str, to_id: str) -> int:
        """Move every alias of ``from_id`` onto ``to_id``, collapsing duplicates."""
        moved = 0
        with self.store.transaction():
            for entry in self.list_for_member(chat_id, from_id):
                target = self.find(chat_id, entry.alias_text, to_id)
                if target is None:
                    self.table.update(
                        {"member_id": to_id},
                        self._key(chat_id, entry.alias_text, from_id),
                    )
                else:
                    last_used = max(target.last_used_at, entry.last_used_at)
                    self.table.update(
                        {
                            "confidence": max(target.confidence, entry.confidence),
                            "last_used_at": last_used.isoformat(),
                        },
                        self._key(chat_id, entry.alias_text, to_id),
                    )
                    self.table.remove(self._key(chat_id, entry.alias_text, from_id))
                moved += 1
        return moved


class LedgerRepository:
    def __init__(self, store: Store):
        self.store = store
        self.debts = store.table("debts")
        self.payments = store.table("payments")
        self.actions = store.table("action_logs")

    def add_debt(self, debt: Debt) -> Debt:
        data = debt.model_dump(mode="json")
        data.pop("debt_id", None)
        with self.store.transaction():
            debt.debt_id = self.debts.insert(data)
        return debt

    def add_payment(self, payment: Payment) -> Payment:
        data = payment.model_dump(mode="json")
        data.pop("payment_id", None)
        with self.store.transaction():
            payment.payment_id = self.payments.insert(data)
        return payment

    def get_debt(self, debt_id: int) -> Debt | None:
        doc = self.debts.get(doc_id=debt_id)
        if doc is None:
            return None
        return Debt(debt_id=doc.doc_id, **doc)

    def list_debts(self, chat_id: str, settled: bool | None = None) -> list[Debt]:
        D = Query()
        cond = D.chat_id == chat_id
        if settled is not None:
            cond = cond & (D.settled == settled)
        debts = [Debt(debt_id=doc.doc_id, **doc) for doc in self.debts.search(cond)]
        return sorted(debts, key=lambda d: (d.occurred_at, d.debt_id))

    def open_debts(self, chat_id: str, creditor_id: str, debtor_id: str) -> list[Debt]:
        """Unsettled debts from debtor to creditor, oldest first."""
        return [
            d
            for d in self.list_debts(chat_id, settled=False)
            if d.creditor_member_id == creditor_id and d.debtor_member_id == debtor_id
        ]

    def list_payments(self, chat_id: str) -> list[Payment]:
        P = Query()
        docs = self.payments.search(P.chat_id == chat_id)
        return [Payment(payment_id=doc.doc_id, **doc) for doc in docs]

    def log_action(self, action: ActionLog) -> ActionLog:
        data = action.model_dump(mode="json")
        data.pop("action_id", None)
        with self.store.transaction():
            action.action_id = self.actions.insert(data)
        return action

    def list_actions(self, chat_id: str) -> list[ActionLog]:
        A = Query()
        docs = self.actions.search(A.chat_id == chat_id)
        return [ActionLog(action_id=doc.doc_id, **doc) for doc in sorted(docs, key=lambda d: d.doc_id)]

    def update_debt(self, debt_id: int, **fields) -> None:
        with self.store.transaction():
            self.debts.update(fields, doc_ids=[debt_id])

    def repoint(self, chat_id: str, from_id: str, to_id: str) -> int:
        """Repoint every debt and payment row that names ``from_id``."""
        R = Query()
        touched = 0
        with self.store.transaction():
            for table, fields in (
                (self.debts, ("creditor_member_id", "debtor_member_id")),
                (self.payments, ("payer_member_id", "payee_member_id")),
            ):
                for field in fields:
                    touched += len(
                        table.update(
                            {field: to_id},
                            (R.chat_id == chat_id) & (R[field] == from_id),
                        )
                    )
        return touched


class PendingRepository:
    def __init__(self, store: Store):
        self.store = store
        self.table = store.table("pending")
        self.chats = store.table("chats")

    def get_open(self, chat_id: str, reference_text: str) -> PendingAmbiguity | None:
        P = Query()
        doc = self.table.get((P.chat_id == chat_id) & (P.reference_text == reference_text))
        if doc is None:
            return None
        return PendingAmbiguity(**doc)

    def list_open(self, chat_id: str) -> list[PendingAmbiguity]:
        P = Query()
        pendings = [PendingAmbiguity(**doc) for doc in self.table.search(P.chat_id == chat_id)]
        return sorted(pendings, key=lambda p: p.opened_at)

    def save(self, pending: PendingAmbiguity) -> PendingAmbiguity:
        P = Query()
        with self.store.transaction():
            self.table.upsert(
                pending.model_dump(mode="json"), P.pending_id == pending.pending_id
            )
        return pending

    def delete(self, pending_id: str) -> bool:
        P = Query()
        with self.store.transaction():
            return bool(self.table.remove(P.pending_id == pending_id))

    def current_turn(self, chat_id: str) -> int:
        C = Query()
        doc = self.chats.get(C.chat_id == chat_id)
        return doc["turn"] if doc else 0

    def next_turn(self, chat_id: str) -> int:
        C = Query()
        with self.store.transaction():
            turn = self.current_turn(chat_id) + 1
            self.chats.upsert({"chat_id": chat_id, "turn": turn}, C.chat_id == chat_id)
        return turn


class ConversationRepository:
    """Chat transcript used as oracle history; survives restarts."""

    def __init__(self, store: Store):
        self.store = store
        self.table = store.table("messages")

    def append(self, chat_id: str, role: str, content: str, sender_member_id: str | None = None) -> ChatMessage:
        message = ChatMessage(chat_id=chat_id, role=role, content=content, sender_member_id=sender_member_id)
        with self.store.transaction():
            self.table.insert(message.model_dump(mode="json"))
        return message

    def recent(self, chat_id: str, limit: int) -> list[ChatMessage]:
        """The last ``limit`` messages of the chat, oldest first."""
        if limit <= 0:
            return []
        M = Query()
        docs = sorted(self.table.search(M.chat_id == chat_id), key=lambda d: d.doc_id)
        return [ChatMessage(**doc) for doc in docs[-limit:]]
