from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from app.db.repository import AliasRepository, MemberRepository
from app.errors import AmbiguousReference, UnresolvableReference
from app.models.schemas import Ambiguous, Candidate, Resolution, Resolved, Unresolved
from app.text import fold_reference, normalize_reference


@dataclass
class ResolverPolicy:
    acceptance_threshold: float = 0.8
    containment_score: float = 0.8
    fuzzy_containment: bool = False
    display_name_confidence: float = 0.9
    alias_decay_per_day: float = 0.0
    # A single exact match on a fully confirmed alias beats containment-only rivals.
    confirmed_exact_wins: bool = True


class Resolver:
    """Scores a free-text reference against a chat's aliases and members.

    Read-only: never writes to the alias store. A call that races a
    concurrent alias write may see the old state; the next turn re-resolves.
    """

    def __init__(
        self,
        members: MemberRepository,
        aliases: AliasRepository,
        policy: ResolverPolicy | None = None,
    ):
        self.members = members
        self.aliases = aliases
        self.policy = policy or ResolverPolicy()

    def score(self, reference: str, alias_text: str) -> float:
        """1.0 on exact normalized match, the containment score if either
        folded string contains the other, else 0."""
        ref = normalize_reference(reference).lstrip("@")
        alias = normalize_reference(alias_text).lstrip("@")
        if not ref or not alias:
            return 0.0
        if ref == alias:
            return 1.0

        ref_f, alias_f = fold_reference(ref), fold_reference(alias)
        # Containment is checked on word boundaries so "An" does not match "Hoàng".
        if f" {ref_f} " in f" {alias_f} " or f" {alias_f} " in f" {ref_f} ":
            base = self.policy.containment_score
            if not self.policy.fuzzy_containment:
                return base
            ratio = min(len(ref_f), len(alias_f)) / max(len(ref_f), len(alias_f))
            return base + (0.99 - base) * ratio
        return 0.0

    def _effective_confidence(self, confidence: float, last_used_at: datetime, now: datetime) -> float:
        if self.policy.alias_decay_per_day <= 0:
            return confidence
        days = max((now - last_used_at).total_seconds() / 86400, 0.0)
        return max(confidence - self.policy.alias_decay_per_day * days, 0.0)

    def candidates(self, chat_id: str, reference_text: str) -> list[Candidate]:
        """All members scoring at or above the acceptance threshold, best first."""
        now = datetime.now()
        live = {m.member_id: m for m in self.members.get_all(chat_id)}
        best: dict[str, Candidate] = {}

        def consider(member_id: str, score: float, confidence: float, last_used_at: datetime):
            if score < self.policy.acceptance_threshold:
                return
            current = best.get(member_id)
            candidate = Candidate(
                member_id=member_id,
                score=score,
                confidence=confidence,
                last_used_at=last_used_at,
            )
            if current is None or (score, confidence, last_used_at) > (
                current.score,
                current.confidence,
                current.last_used_at,
            ):
                best[member_id] = candidate

        for entry in self.aliases.get_all(chat_id):
            if entry.member_id not in live:
                continue
            consider(
                entry.member_id,
                self.score(reference_text, entry.alias_text),
                self._effective_confidence(entry.confidence, entry.last_used_at, now),
                entry.last_used_at,
            )

        for member in live.values():
            for name in (member.display_name, member.username):
                if name:
                    consider(
                        member.member_id,
                        self.score(reference_text, name),
                        self.policy.display_name_confidence,
                        member.created_at,
                    )

        return sorted(
            best.values(),
            key=lambda c: (-c.score, -c.confidence, -c.last_used_at.timestamp(), c.member_id),
        )

    def resolve(self, chat_id: str, reference_text: str) -> Resolution:
        if not normalize_reference(reference_text):
            return Unresolved()

        found = self.candidates(chat_id, reference_text)
        if not found:
            logger.debug("'{}' unresolved in chat {}", reference_text, chat_id)
            return Unresolved()
        if len(found) == 1:
            return Resolved(member_id=found[0].member_id, confidence=found[0].confidence)

        exact = [c for c in found if c.score >= 1.0]
        if self.policy.confirmed_exact_wins and len(exact) == 1 and exact[0].confidence >= 1.0:
            return Resolved(member_id=exact[0].member_id, confidence=exact[0].confidence)

        logger.debug(
            "'{}' ambiguous in chat {}: {}",
            reference_text,
            chat_id,
            [c.member_id for c in found],
        )
        return Ambiguous(candidates=found)

    def require(self, chat_id: str, reference_text: str) -> str:
        """Like ``resolve`` but returns the member id or raises.

        Raises AmbiguousReference or UnresolvableReference.
        """
        resolution = self.resolve(chat_id, reference_text)
        if isinstance(resolution, Resolved):
            return resolution.member_id
        if isinstance(resolution, Ambiguous):
            raise AmbiguousReference(reference_text, resolution.member_ids)
        raise UnresolvableReference(reference_text)
