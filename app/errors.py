"""Error taxonomy for a chat turn.

Every failure below the dispatcher is converted to one of these before it
reaches a user-visible reply.
"""


class LedgerBotError(Exception):
    """Base class for all turn-level errors."""


class MalformedEnvelope(LedgerBotError):
    """Oracle output failed validation."""


class OracleTimeout(LedgerBotError):
    """Oracle did not answer within the configured bound."""


class AmbiguousReference(LedgerBotError):
    """A reference matched several members. Used as control flow only."""

    def __init__(self, reference: str, candidate_ids: list[str]):
        self.reference = reference
        self.candidate_ids = candidate_ids
        super().__init__(f"'{reference}' matches {len(candidate_ids)} members")


class UnresolvableReference(LedgerBotError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Could not resolve '{reference}'")


class LedgerRejected(LedgerBotError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class TransportFailure(LedgerBotError):
    """A fragment could not be delivered after bounded retries."""


class StoreError(LedgerBotError):
    """Wraps an underlying storage failure."""


class InvalidAdminRequest(LedgerBotError):
    """An administrative merge or seed request was not valid."""
