import re
import uuid
from dataclasses import dataclass, field

from loguru import logger

from app.db.repository import AliasRepository, MemberRepository, PendingRepository
from app.db.store import Store
from app.errors import StoreError
from app.models.schemas import AmbiguityAnswer, MutationIntent, PendingAmbiguity
from app.services.resolver import Resolver
from app.text import fold_reference, normalize_reference

_ORDINAL = re.compile(r"^\s*(?:số\s*|so\s*|#)?(\d{1,2})\s*[.)]?\s*$", re.IGNORECASE)


@dataclass
class Confirmation:
    """A pending ambiguity settled by the user."""

    pending: PendingAmbiguity
    member_id: str
    intents: list[MutationIntent] = field(default_factory=list)

    @property
    def override(self) -> dict[str, str]:
        return {self.pending.reference_text: self.member_id}


class AmbiguityNegotiator:
    """Tracks open "which X?" questions per chat.

    State per (chat, reference): NONE -> OPEN -> CONFIRMED | EXPIRED.
    At most one OPEN row exists per pair; reopening reuses it.
    """

    def __init__(
        self,
        store: Store,
        resolver: Resolver,
        aliases: AliasRepository,
        members: MemberRepository,
        pending: PendingRepository,
        ttl_turns: int = 1,
    ):
        self.store = store
        self.resolver = resolver
        self.aliases = aliases
        self.members = members
        self.pending = pending
        self.ttl_turns = ttl_turns

    def open(
        self,
        chat_id: str,
        reference_text: str,
        candidate_ids: list[str],
        intent: MutationIntent | None,
        turn: int,
    ) -> PendingAmbiguity:
        reference = normalize_reference(reference_text)
        with self.store.transaction():
            existing = self.pending.get_open(chat_id, reference)
            if existing is not None:
                # A turn that names the reference again keeps the question alive.
                existing.expires_after_turn = max(existing.expires_after_turn, turn + self.ttl_turns)
                if intent is not None:
                    existing.suspended_intents.append(intent)
                self.pending.save(existing)
                logger.debug("Reusing pending {} for '{}'", existing.pending_id, reference)
                return existing

            pending = PendingAmbiguity(
                pending_id=uuid.uuid4().hex[:12],
                chat_id=chat_id,
                reference_text=reference,
                candidate_member_ids=candidate_ids,
                opened_turn=turn,
                expires_after_turn=turn + self.ttl_turns,
                suspended_intents=[intent] if intent is not None else [],
            )
            self.pending.save(pending)

        logger.info(
            "Opened ambiguity {} for '{}' in chat {} ({} candidates)",
            pending.pending_id,
            reference,
            chat_id,
            len(candidate_ids),
        )
        return pending

    def list_open(self, chat_id: str) -> list[PendingAmbiguity]:
        return self.pending.list_open(chat_id)

    def match(
        self,
        pending: PendingAmbiguity,
        inbound_text: str,
        answers: list[AmbiguityAnswer],
    ) -> str | None:
        """Pick the candidate this turn's message points at, if exactly one."""
        candidates = [
            cid
            for cid in pending.candidate_member_ids
            if self.members.get_live(pending.chat_id, cid) is not None
        ]
        if not candidates:
            return None

        for answer in answers:
            if normalize_reference(answer.reference) != pending.reference_text:
                continue
            if answer.member_id in candidates:
                return answer.member_id
            if answer.text:
                chosen = self._match_text(pending.chat_id, candidates, answer.text)
                if chosen:
                    return chosen

        ordinal = _ORDINAL.match(inbound_text or "")
        if ordinal:
            index = int(ordinal.group(1)) - 1
            if 0 <= index < len(pending.candidate_member_ids):
                chosen = pending.candidate_member_ids[index]
                return chosen if chosen in candidates else None
            return None

        return self._match_text(pending.chat_id, candidates, inbound_text)

    def _is_name_fragment(self, reply: str, name: str) -> bool:
        """The reply is the name itself or whole words taken from it."""
        if self.resolver.score(reply, name) < self.resolver.policy.acceptance_threshold:
            return False
        reply_f = fold_reference(reply).lstrip("@")
        name_f = fold_reference(name).lstrip("@")
        return f" {reply_f} " in f" {name_f} "

    def _match_text(self, chat_id: str, candidates: list[str], text: str) -> str | None:
        if not normalize_reference(text):
            return None
        hits = []
        for cid in candidates:
            if normalize_reference(text) == normalize_reference(cid):
                return cid
            member = self.members.get_live(chat_id, cid)
            names = [member.display_name, member.username] if member else []
            if any(name and self._is_name_fragment(text, name) for name in names):
                hits.append(cid)
        return hits[0] if len(hits) == 1 else None

    def confirm(self, pending: PendingAmbiguity, member_id: str) -> Confirmation:
        """Learn the alias and close the pending in one transaction."""
        try:
            with self.store.transaction():
                self.aliases.upsert(pending.chat_id, pending.reference_text, member_id, 1.0)
                self.pending.delete(pending.pending_id)
        except Exception as e:
            logger.error("Could not confirm pending {}: {}", pending.pending_id, e)
            raise StoreError("ambiguity confirmation failed") from e

        logger.info(
            "Confirmed '{}' -> {} in chat {}",
            pending.reference_text,
            member_id,
            pending.chat_id,
        )
        return Confirmation(pending=pending, member_id=member_id, intents=list(pending.suspended_intents))

    def answer(
        self,
        chat_id: str,
        inbound_text: str,
        answers: list[AmbiguityAnswer] | None = None,
    ) -> list[Confirmation]:
        """Treat this turn's message as a candidate answer to every open question."""
        confirmations = []
        for pending in self.list_open(chat_id):
            chosen = self.match(pending, inbound_text, answers or [])
            if chosen is not None:
                confirmations.append(self.confirm(pending, chosen))
        return confirmations

    def expire(self, chat_id: str, current_turn: int) -> list[PendingAmbiguity]:
        """Drop pendings whose turn window has passed, with their suspended intents."""
        expired = [p for p in self.list_open(chat_id) if p.expires_after_turn <= current_turn]
        return self._drop(chat_id, expired, "expired")

    def discard(self, chat_id: str, before_turn: int) -> list[PendingAmbiguity]:
        stale = [p for p in self.list_open(chat_id) if p.opened_turn < before_turn]
        return self._drop(chat_id, stale, "discarded")

    def _drop(self, chat_id: str, pendings: list[PendingAmbiguity], why: str) -> list[PendingAmbiguity]:
        if not pendings:
            return []
        try:
            with self.store.transaction():
                for p in pendings:
                    self.pending.delete(p.pending_id)
        except Exception as e:
            logger.error("Could not drop pendings in chat {}: {}", chat_id, e)
            raise StoreError("pending cleanup failed") from e
        for p in pendings:
            logger.warning(
                "Ambiguity {} for '{}' {} ({} intent(s) dropped)",
                p.pending_id,
                p.reference_text,
                why,
                len(p.suspended_intents),
            )
        return pendings
