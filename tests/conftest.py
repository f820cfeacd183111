import os

# app.deps builds module-level singletons from settings on import.
os.environ.setdefault("DB_PATH", ":memory:")
os.environ.setdefault("ADMIN_TOKEN", "")
os.environ.setdefault("OPENROUTER_API_KEY", "test-key")

import pytest

from app.db.repository import (
    AliasRepository,
    ConversationRepository,
    LedgerRepository,
    MemberRepository,
    PendingRepository,
)
from app.db.store import Store
from app.services.directory import MemberDirectory
from app.services.dispatcher import TurnDispatcher
from app.services.ledger import LedgerExecutor
from app.services.negotiator import AmbiguityNegotiator
from app.services.pacing import FragmentPacer
from app.services.resolver import Resolver, ResolverPolicy
from helpers import CHAT, ClockTransport, FakeClock, FakeOracle


@pytest.fixture
def store():
    s = Store(None)
    yield s
    s.close()


@pytest.fixture
def members(store):
    return MemberRepository(store)


@pytest.fixture
def aliases(store):
    return AliasRepository(store)


@pytest.fixture
def ledger(store):
    return LedgerRepository(store)


@pytest.fixture
def pending(store):
    return PendingRepository(store)


@pytest.fixture
def conversation(store):
    return ConversationRepository(store)


@pytest.fixture
def resolver(members, aliases):
    return Resolver(members, aliases, ResolverPolicy())


@pytest.fixture
def negotiator(store, resolver, aliases, members, pending):
    return AmbiguityNegotiator(store, resolver, aliases, members, pending, ttl_turns=1)


@pytest.fixture
def executor(store, members, aliases, ledger):
    return LedgerExecutor(store, members, aliases, ledger)


@pytest.fixture
def directory(store, members, aliases, ledger):
    return MemberDirectory(store, members, aliases, ledger)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport(clock):
    return ClockTransport(clock)


@pytest.fixture
def pacer(clock):
    return FragmentPacer(retry_wait_seconds=0.01, sleep=clock.sleep, clock=clock.now)


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def dispatcher(members, aliases, ledger, pending, conversation, resolver, negotiator, executor, pacer, transport, oracle):
    return TurnDispatcher(
        members=members,
        aliases=aliases,
        ledger=ledger,
        pending=pending,
        conversation=conversation,
        resolver=resolver,
        negotiator=negotiator,
        executor=executor,
        pacer=pacer,
        transport=transport,
        oracle=oracle,
    )


@pytest.fixture
def group(members):
    """A chat with three real members; two of them share the word "Long"."""
    minh = members.upsert_real(CHAT, 1, "Minh", "minhng")
    long_a = members.upsert_real(CHAT, 2, "Long Nguyễn")
    long_b = members.upsert_real(CHAT, 3, "Ngọc Long")
    return {"minh": minh, "long_a": long_a, "long_b": long_b}

