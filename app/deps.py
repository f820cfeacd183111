from app.config import get_settings
from app.db.repository import (
    AliasRepository,
    ConversationRepository,
    LedgerRepository,
    MemberRepository,
    PendingRepository,
)
from app.db.store import Store
from app.llm.parser import IntentOracle
from app.services.catalog import FoodCatalog
from app.services.directory import MemberDirectory
from app.services.dispatcher import TurnDispatcher
from app.services.ledger import LedgerExecutor
from app.services.negotiator import AmbiguityNegotiator
from app.services.pacing import FragmentPacer
from app.services.resolver import Resolver, ResolverPolicy

settings = get_settings()

store = Store(settings.db_path)
members = MemberRepository(store)
aliases = AliasRepository(store)
ledger = LedgerRepository(store)
conversation = ConversationRepository(store)
pending = PendingRepository(store)

resolver = Resolver(
    members,
    aliases,
    ResolverPolicy(
        acceptance_threshold=settings.acceptance_threshold,
        containment_score=settings.containment_score,
        fuzzy_containment=settings.fuzzy_containment,
        display_name_confidence=settings.display_name_confidence,
        alias_decay_per_day=settings.alias_decay_per_day,
        confirmed_exact_wins=settings.confirmed_exact_wins,
    ),
)
negotiator = AmbiguityNegotiator(
    store, resolver, aliases, members, pending, ttl_turns=settings.ambiguity_ttl_turns
)
executor = LedgerExecutor(
    store,
    members,
    aliases,
    ledger,
    provisional_confidence=settings.provisional_alias_confidence,
    alias_reinforcement=settings.alias_reinforcement,
)
directory = MemberDirectory(store, members, aliases, ledger)
pacer = FragmentPacer(
    min_delay_ms=settings.min_fragment_delay_ms,
    max_delay_ms=settings.max_fragment_delay_ms,
    max_attempts=settings.fragment_max_attempts,
    retry_wait_seconds=settings.fragment_retry_wait_seconds,
)
oracle = IntentOracle(
    api_key=settings.openrouter_api_key,
    model=settings.llm_model,
    timeout_seconds=settings.oracle_timeout_seconds,
)
catalog = FoodCatalog()

dispatcher = TurnDispatcher(
    members=members,
    aliases=aliases,
    ledger=ledger,
    pending=pending,
    conversation=conversation,
    resolver=resolver,
    negotiator=negotiator,
    executor=executor,
    pacer=pacer,
    oracle=oracle,
    create_virtual_members=settings.create_virtual_members,
    default_currency=settings.default_currency,
    max_history_messages=settings.max_history_messages,
)
