import asyncio

from loguru import logger

from app.db.repository import (
    AliasRepository,
    ConversationRepository,
    LedgerRepository,
    MemberRepository,
    PendingRepository,
)
from app.errors import (
    AmbiguousReference,
    MalformedEnvelope,
    OracleTimeout,
    StoreError,
    UnresolvableReference,
)
from app.llm.parser import IntentOracle, build_context, parse_envelope
from app.models.schemas import (
    Applied,
    ConfirmedAlias,
    DispatchEnvelope,
    LedgerMutation,
    MessageFragment,
    MutationIntent,
    SELF_REFERENCE,
    TurnResult,
)
from app.services import replies
from app.services.ledger import LedgerExecutor, summarize_balances
from app.services.negotiator import AmbiguityNegotiator
from app.services.pacing import FragmentPacer, RecordingTransport, Transport
from app.services.resolver import Resolver
from app.text import normalize_reference

NOTICE_DELAY_MS = 900


class ChatLocks:
    """One lazily created asyncio.Lock per chat id."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        return lock


class TurnDispatcher:
    """Per-chat turn controller.

    Turns for one chat are strictly serialized behind that chat's lock, from
    the oracle call through the last paced fragment. Different chats run
    independently.
    """

    def __init__(
        self,
        *,
        members: MemberRepository,
        aliases: AliasRepository,
        ledger: LedgerRepository,
        pending: PendingRepository,
        conversation: ConversationRepository,
        resolver: Resolver,
        negotiator: AmbiguityNegotiator,
        executor: LedgerExecutor,
        pacer: FragmentPacer,
        transport: Transport | None = None,
        oracle: IntentOracle | None = None,
        create_virtual_members: bool = True,
        default_currency: str = "VND",
        max_history_messages: int = 10,
    ):
        self.members = members
        self.aliases = aliases
        self.ledger = ledger
        self.pending = pending
        self.conversation = conversation
        self.resolver = resolver
        self.negotiator = negotiator
        self.executor = executor
        self.pacer = pacer
        self.transport = transport or RecordingTransport()
        self.oracle = oracle
        self.create_virtual_members = create_virtual_members
        self.default_currency = default_currency
        self.max_history_messages = max_history_messages
        self.locks = ChatLocks()

    # ── History ───────────────────────────────────────────────────

    def history(self, chat_id: str) -> list[dict]:
        return [
            {"role": m.role, "content": m.content}
            for m in self.conversation.recent(chat_id, self.max_history_messages)
        ]

    def _remember(self, chat_id: str, sender_id: str | None, text: str, envelope: DispatchEnvelope) -> None:
        try:
            self.conversation.append(chat_id, "user", text, sender_member_id=sender_id)
            self.conversation.append(chat_id, "assistant", " ".join(m.text for m in envelope.messages))
        except Exception as e:
            logger.error("Could not save conversation for chat {}: {}", chat_id, e)

    def oracle_context(self, chat_id: str, sender_id: str | None = None) -> str:
        members = self.members.get_all(chat_id)
        aliases: dict[str, list[str]] = {}
        for entry in self.aliases.get_all(chat_id):
            aliases.setdefault(entry.member_id, []).append(entry.alias_text)
        sender = self.members.get(chat_id, sender_id) if sender_id else None
        return build_context(
            members,
            aliases,
            self.negotiator.list_open(chat_id),
            summarize_balances(self.members, self.ledger, chat_id),
            sender=sender,
        )

    # ── Entry points ──────────────────────────────────────────────

    async def handle_message(
        self,
        chat_id: str,
        text: str,
        sender_id: str | None = None,
        transport: Transport | None = None,
    ) -> TurnResult:
        """Full pipeline for one inbound chat message."""
        transport = transport or self.transport
        if self.oracle is None:
            raise RuntimeError("TurnDispatcher has no oracle configured")

        async with self.locks.get(chat_id):
            turn = self.pending.next_turn(chat_id)
            try:
                envelope = await self.oracle.propose(
                    text,
                    context=self.oracle_context(chat_id, sender_id),
                    history=self.history(chat_id),
                )
            except OracleTimeout:
                return await self._abort(transport, chat_id, "oracle_timeout", replies.FALLBACK_TIMEOUT)
            except MalformedEnvelope as e:
                logger.warning("Malformed envelope in chat {}: {}", chat_id, e)
                return await self._abort(transport, chat_id, "malformed", replies.FALLBACK_MALFORMED)

            result = await self._run_turn(transport, chat_id, envelope, turn, sender_id, text)
            self._remember(chat_id, sender_id, text, envelope)
            return result

    async def handle_turn(
        self,
        chat_id: str,
        envelope: DispatchEnvelope | dict | str,
        *,
        sender_id: str | None = None,
        inbound_text: str = "",
        transport: Transport | None = None,
    ) -> TurnResult:
        """Run one turn from an already produced (possibly raw) envelope."""
        transport = transport or self.transport
        async with self.locks.get(chat_id):
            turn = self.pending.next_turn(chat_id)
            if not isinstance(envelope, DispatchEnvelope):
                try:
                    envelope = parse_envelope(envelope)
                except MalformedEnvelope as e:
                    logger.warning("Malformed envelope in chat {}: {}", chat_id, e)
                    return await self._abort(transport, chat_id, "malformed", replies.FALLBACK_MALFORMED)
            return await self._run_turn(transport, chat_id, envelope, turn, sender_id, inbound_text)

    async def _abort(self, transport: Transport, chat_id: str, status: str, text: str) -> TurnResult:
        delivered, failed = await self.pacer.send(
            transport, chat_id, [MessageFragment(text=text, delay_ms=NOTICE_DELAY_MS)]
        )
        return TurnResult(
            chat_id=chat_id,
            status=status,
            delivered_fragments=delivered,
            failed_fragments=failed,
        )

    # ── Turn body ─────────────────────────────────────────────────

    async def _run_turn(
        self,
        transport: Transport,
        chat_id: str,
        envelope: DispatchEnvelope,
        turn: int,
        sender_id: str | None,
        inbound_text: str,
    ) -> TurnResult:
        result = TurnResult(chat_id=chat_id)
        notices: list[str] = []
        overrides: dict[str, str] = {}
        resumed: list[MutationIntent] = []

        # An open question gets first claim on the new message.
        try:
            confirmations = self.negotiator.answer(chat_id, inbound_text, envelope.answers)
        except StoreError:
            confirmations = []
        for c in confirmations:
            overrides.update(c.override)
            resumed.extend(c.intents)
            result.confirmed_aliases.append(
                ConfirmedAlias(reference_text=c.pending.reference_text, member_id=c.member_id)
            )
            if not c.intents:
                notices.append(replies.ambiguity_confirmed(c.pending.reference_text, self._name(chat_id, c.member_id)))

        # Resumed intents keep the sender of the message that first proposed them.
        fresh = [intent.model_copy(update={"requested_by": sender_id}) for intent in envelope.mutations]
        batch: list[LedgerMutation] = []
        resumed_count = 0
        for index, intent in enumerate(resumed + fresh):
            planned = self._plan(chat_id, intent, overrides, turn, result, notices)
            if planned is not None:
                batch.append(planned)
                if index < len(resumed):
                    resumed_count += 1

        # Expire after planning, so a question named again this turn is reused.
        try:
            expired = self.negotiator.expire(chat_id, turn)
        except StoreError:
            expired = []
        for p in expired:
            result.expired_pending_ids.append(p.pending_id)
            if p.suspended_intents:
                notices.append(replies.ambiguity_expired(p.reference_text))

        messages = list(envelope.messages)
        if batch:
            outcome = self.executor.apply(chat_id, batch, actor_id=sender_id)
            if isinstance(outcome, Applied):
                result.applied = outcome.mutations
                result.created_member_ids = outcome.created_member_ids
                result.empty_settlements = outcome.empty_settlements
                for m in outcome.empty_settlements:
                    notices.append(
                        replies.nothing_to_settle(
                            self._name(chat_id, m.creditor_member_id),
                            self._name(chat_id, m.debtor_member_id),
                        )
                    )
                for m in outcome.mutations[:resumed_count]:
                    if m in outcome.empty_settlements:
                        continue
                    notices.append(
                        replies.mutation_summary(
                            m.kind,
                            self._name(chat_id, m.creditor_member_id),
                            self._name(chat_id, m.debtor_member_id),
                            m.amount,
                            m.currency,
                        )
                    )
                for member_id in outcome.created_member_ids:
                    notices.append(replies.virtual_member_created(self._name(chat_id, member_id)))
            else:
                result.rejection_reason = outcome.reason
                # Nothing committed, so the oracle's confirmation text is dropped.
                if envelope.kind == "mutate":
                    messages = []
                notices.append(replies.LEDGER_REJECTED)

        if envelope.continuation == "stop":
            try:
                self.negotiator.discard(chat_id, before_turn=turn)
            except StoreError:
                pass

        fragments = messages + [
            MessageFragment(text=text, delay_ms=NOTICE_DELAY_MS) for text in notices
        ]
        result.delivered_fragments, result.failed_fragments = await self.pacer.send(
            transport, chat_id, fragments
        )
        logger.info(
            "Turn {} in chat {}: {} applied, {} suspended, {} dropped",
            turn,
            chat_id,
            len(result.applied),
            len(result.suspended_pending_ids),
            len(result.dropped_references),
        )
        return result

    def _name(self, chat_id: str, member_id: str | None) -> str:
        member = self.members.get(chat_id, member_id) if member_id else None
        return member.display_name if member else (member_id or "?")

    def _plan(
        self,
        chat_id: str,
        intent: MutationIntent,
        overrides: dict[str, str],
        turn: int,
        result: TurnResult,
        notices: list[str],
    ) -> LedgerMutation | None:
        """Resolve both sides of an intent.

        Returns a mutation ready for the batch, or None when the intent was
        suspended on an ambiguity or dropped.
        """
        ids: dict[str, str | None] = {}
        refs: dict[str, str | None] = {}
        ambiguous: list[AmbiguousReference] = []
        unresolved: list[str] = []

        for role, reference in (("creditor", intent.creditor), ("debtor", intent.debtor)):
            if reference.strip().casefold() == SELF_REFERENCE:
                if intent.requested_by is None:
                    unresolved.append(reference)
                    continue
                ids[role], refs[role] = intent.requested_by, None
                continue

            refs[role] = reference
            forced = overrides.get(normalize_reference(reference))
            if forced is not None:
                ids[role] = forced
                continue

            try:
                ids[role] = self.resolver.require(chat_id, reference)
            except AmbiguousReference as e:
                ambiguous.append(e)
            except UnresolvableReference:
                ids[role] = None
                unresolved.append(reference)

        if ambiguous:
            # The intent waits on the first question only; later sides are
            # re-resolved when it resumes.
            for position, clash in enumerate(ambiguous):
                reference = clash.reference
                try:
                    pending = self.negotiator.open(
                        chat_id,
                        reference,
                        clash.candidate_ids,
                        intent if position == 0 else None,
                        turn,
                    )
                except StoreError:
                    result.dropped_references.append(reference)
                    notices.append(replies.unresolved_reference(reference))
                    return None
                if pending.pending_id not in result.suspended_pending_ids:
                    result.suspended_pending_ids.append(pending.pending_id)
                    names = [self._name(chat_id, cid) for cid in pending.candidate_member_ids]
                    notices.append(replies.clarifying_question(reference, names))
            return None

        if unresolved:
            provisional_ok = (
                self.create_virtual_members
                and intent.kind == "debt"
                and SELF_REFERENCE not in (r.strip().casefold() for r in unresolved)
            )
            if not provisional_ok:
                for reference in unresolved:
                    result.dropped_references.append(reference)
                    notices.append(replies.unresolved_reference(reference))
                return None

        return LedgerMutation(
            chat_id=chat_id,
            kind=intent.kind,
            creditor_member_id=ids.get("creditor"),
            debtor_member_id=ids.get("debtor"),
            amount=intent.amount,
            currency=(intent.currency or self.default_currency).upper(),
            note=intent.note,
            creditor_reference=refs.get("creditor"),
            debtor_reference=refs.get("debtor"),
        )
