from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    openrouter_api_key: str = ""
    telegram_bot_token: str = ""
    admin_token: str = ""
    db_path: str = "group_ledger.json"
    llm_model: str = "google/gemini-2.0-flash-exp"
    oracle_timeout_seconds: float = 8.0
    log_level: str = "INFO"

    # Resolution policy
    acceptance_threshold: float = 0.8
    containment_score: float = 0.8
    fuzzy_containment: bool = False
    display_name_confidence: float = 0.9
    provisional_alias_confidence: float = 0.5
    alias_decay_per_day: float = 0.0
    alias_reinforcement: float = 0.1
    confirmed_exact_wins: bool = True

    # Ambiguity / virtual members
    ambiguity_ttl_turns: int = 1
    create_virtual_members: bool = True

    # Outgoing fragment pacing
    min_fragment_delay_ms: int = 200
    max_fragment_delay_ms: int = 3500
    fragment_max_attempts: int = 3
    fragment_retry_wait_seconds: float = 0.5

    max_history_messages: int = 10
    default_currency: str = "VND"


@lru_cache
def get_settings() -> Settings:
    return Settings()
