from datetime import datetime, timedelta

import pytest

from app.errors import AmbiguousReference, UnresolvableReference
from app.models.schemas import AliasEntry, Ambiguous, Resolved, Unresolved
from app.services.resolver import Resolver, ResolverPolicy
from helpers import CHAT


def test_shared_nickname_is_ambiguous_never_a_silent_pick(group, aliases, resolver):
    aliases.upsert(CHAT, "Long ú", "tg:2", 1.0)
    aliases.upsert(CHAT, "Long ú", "tg:3", 1.0)

    result = resolver.resolve(CHAT, "Long ú")

    assert isinstance(result, Ambiguous)
    assert set(result.member_ids) == {"tg:2", "tg:3"}


def test_containment_includes_member_for_full_and_partial_name(group, aliases, resolver):
    aliases.upsert(CHAT, "Ngọc Long", "tg:3", 1.0)

    full = [c.member_id for c in resolver.candidates(CHAT, "Ngọc Long")]
    partial = [c.member_id for c in resolver.candidates(CHAT, "Long")]

    assert "tg:3" in full
    assert "tg:3" in partial
    # "Long" is also inside "Long Nguyễn"
    assert isinstance(resolver.resolve(CHAT, "Long"), Ambiguous)


def test_unknown_reference_is_unresolved(group, resolver):
    assert isinstance(resolver.resolve(CHAT, "Sobbin"), Unresolved)


def test_blank_reference_is_unresolved(group, resolver):
    assert isinstance(resolver.resolve(CHAT, "   "), Unresolved)


def test_resolving_twice_gives_same_member(group, resolver):
    first = resolver.resolve(CHAT, "Minh")
    second = resolver.resolve(CHAT, "Minh")

    assert isinstance(first, Resolved)
    assert first.member_id == second.member_id == "tg:1"


def test_match_ignores_case_and_diacritics(group, resolver):
    result = resolver.resolve(CHAT, "ngoc long")

    assert isinstance(result, Resolved)
    assert result.member_id == "tg:3"


def test_containment_respects_word_boundaries(members, resolver):
    members.upsert_real(CHAT, 7, "Hoàng")

    assert isinstance(resolver.resolve(CHAT, "An"), Unresolved)


def test_username_with_at_sign_resolves(group, resolver):
    result = resolver.resolve(CHAT, "@minhng")

    assert isinstance(result, Resolved)
    assert result.member_id == "tg:1"


def test_ambiguous_candidates_ordered_by_score_then_confidence(group, aliases, resolver):
    aliases.upsert(CHAT, "Long", "tg:2", 0.7)
    aliases.upsert(CHAT, "Long", "tg:3", 0.95)

    result = resolver.resolve(CHAT, "Long")

    assert isinstance(result, Ambiguous)
    assert result.member_ids == ["tg:3", "tg:2"]
    assert [c.score for c in result.candidates] == [1.0, 1.0]


def test_confirmed_exact_alias_beats_containment(group, aliases, resolver):
    aliases.upsert(CHAT, "Long", "tg:3", 1.0)

    result = resolver.resolve(CHAT, "Long")

    assert isinstance(result, Resolved)
    assert result.member_id == "tg:3"


def test_confirmed_exact_wins_can_be_disabled(group, members, aliases):
    aliases.upsert(CHAT, "Long", "tg:3", 1.0)
    strict = Resolver(members, aliases, ResolverPolicy(confirmed_exact_wins=False))

    assert isinstance(strict.resolve(CHAT, "Long"), Ambiguous)


def test_alias_decay_lowers_effective_confidence(group, members, aliases):
    stale = AliasEntry(
        chat_id=CHAT,
        alias_text="long",
        member_id="tg:3",
        confidence=1.0,
        last_used_at=datetime.now() - timedelta(days=10),
    )
    aliases.table.insert(stale.model_dump(mode="json"))
    decaying = Resolver(members, aliases, ResolverPolicy(alias_decay_per_day=0.05))

    result = decaying.resolve(CHAT, "Long")

    assert isinstance(result, Ambiguous)
    top = result.candidates[0]
    assert top.member_id == "tg:3"
    assert top.confidence == pytest.approx(0.5, abs=0.01)
    # The stored value is untouched.
    assert aliases.find(CHAT, "Long", "tg:3").confidence == 1.0


def test_fuzzy_containment_scales_with_length(group, members, aliases):
    fuzzy = Resolver(members, aliases, ResolverPolicy(fuzzy_containment=True))

    close = fuzzy.score("Long Nguyen", "Long Nguyễn Văn")
    far = fuzzy.score("Long", "Long Nguyễn Văn")

    assert 0.8 < far < close < 0.99


def test_merged_member_is_not_a_candidate(group, members, aliases, resolver):
    virtual_id = members.get_or_create_virtual(CHAT, "Huy")
    aliases.upsert(CHAT, "Huy", virtual_id, 0.5)
    members.mark_merged(CHAT, virtual_id, "tg:1")

    assert isinstance(resolver.resolve(CHAT, "Huy"), Unresolved)


def test_require_raises_on_ambiguous_and_unresolved(group, aliases, resolver):
    aliases.upsert(CHAT, "Long ú", "tg:2", 1.0)
    aliases.upsert(CHAT, "Long ú", "tg:3", 1.0)

    with pytest.raises(AmbiguousReference) as exc:
        resolver.require(CHAT, "Long ú")
    assert set(exc.value.candidate_ids) == {"tg:2", "tg:3"}

    with pytest.raises(UnresolvableReference):
        resolver.require(CHAT, "Sobbin")

    assert resolver.require(CHAT, "Minh") == "tg:1"
