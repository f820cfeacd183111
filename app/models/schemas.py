import math
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MutationKind = Literal["debt", "payment", "settle"]

# Reserved reference meaning "whoever sent the inbound message"
SELF_REFERENCE = "@me"


class Member(BaseModel):
    member_id: str
    chat_id: str
    display_name: str
    username: str | None = None
    platform_user_id: int | None = None
    is_virtual: bool = False
    created_at: datetime = Field(default_factory=datetime.now)
    merged_into: str | None = None

    @property
    def is_live(self) -> bool:
        return self.merged_into is None


class AliasEntry(BaseModel):
    chat_id: str
    alias_text: str
    member_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    last_used_at: datetime = Field(default_factory=datetime.now)
    source: Literal["learned", "seeded"] = "learned"


class MutationIntent(BaseModel):
    """A proposed ledger change that still names people by reference text.

    On the wire the oracle sends ``{"queryShape": ..., "params": {...}}``;
    the flat form is accepted too.
    """

    kind: MutationKind
    creditor: str = Field(min_length=1)
    debtor: str = Field(min_length=1)
    amount: float | None = None
    currency: str | None = None
    note: str | None = None
    # Member id that "@me" stands for; stamped by the dispatcher, never by the oracle.
    requested_by: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_wire_shape(cls, data):
        if isinstance(data, dict) and "queryShape" in data:
            params = data.get("params")
            if not isinstance(params, dict):
                raise ValueError("params must be an object")
            return {"kind": data["queryShape"], **params}
        return data

    @field_validator("creditor", "debtor")
    @classmethod
    def _strip_reference(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reference must not be blank")
        return v

    @model_validator(mode="after")
    def _check_amount(self):
        if self.amount is not None and not math.isfinite(self.amount):
            raise ValueError("amount must be finite")
        if self.kind in ("debt", "payment") and (self.amount is None or self.amount <= 0):
            raise ValueError(f"{self.kind} requires a positive amount")
        if self.kind == "settle" and self.amount is not None and self.amount <= 0:
            raise ValueError("settle amount must be positive when given")
        return self


class PendingAmbiguity(BaseModel):
    pending_id: str
    chat_id: str
    reference_text: str
    candidate_member_ids: list[str]
    opened_at: datetime = Field(default_factory=datetime.now)
    opened_turn: int
    expires_after_turn: int
    suspended_intents: list[MutationIntent] = []


class LedgerMutation(BaseModel):
    """One validated-shape ledger change with resolved member ids.

    A side with ``None`` as member id and a reference set is provisional:
    the executor materializes a virtual member for it.
    """

    chat_id: str
    kind: MutationKind
    creditor_member_id: str | None
    debtor_member_id: str | None
    amount: float | None = None
    currency: str = "VND"
    note: str | None = None
    occurred_at: datetime = Field(default_factory=datetime.now)
    creditor_reference: str | None = None
    debtor_reference: str | None = None


class Debt(BaseModel):
    debt_id: int | None = None
    chat_id: str
    creditor_member_id: str
    debtor_member_id: str
    amount: float
    remaining_amount: float
    currency: str = "VND"
    note: str | None = None
    occurred_at: datetime = Field(default_factory=datetime.now)
    settled: bool = False


class Payment(BaseModel):
    payment_id: int | None = None
    chat_id: str
    debt_id: int | None = None
    payer_member_id: str
    payee_member_id: str
    amount: float
    currency: str = "VND"
    paid_at: datetime = Field(default_factory=datetime.now)
    note: str | None = None


class ChatMessage(BaseModel):
    chat_id: str
    role: Literal["user", "assistant"]
    content: str
    sender_member_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class ActionLog(BaseModel):
    """Audit row written with every committed ledger batch."""

    action_id: int | None = None
    chat_id: str
    action_type: str
    actor_member_id: str | None = None
    payload: dict = {}
    created_at: datetime = Field(default_factory=datetime.now)


class Balance(BaseModel):
    creditor_member_id: str
    creditor_name: str
    debtor_member_id: str
    debtor_name: str
    amount: float
    currency: str


# ── Resolution results ────────────────────────────────────────────


class Candidate(BaseModel):
    member_id: str
    score: float
    confidence: float
    last_used_at: datetime


class Resolved(BaseModel):
    status: Literal["resolved"] = "resolved"
    member_id: str
    confidence: float


class Ambiguous(BaseModel):
    status: Literal["ambiguous"] = "ambiguous"
    candidates: list[Candidate]

    @property
    def member_ids(self) -> list[str]:
        return [c.member_id for c in self.candidates]


class Unresolved(BaseModel):
    status: Literal["unresolved"] = "unresolved"


Resolution = Resolved | Ambiguous | Unresolved


# ── Ledger execution results ──────────────────────────────────────


class Applied(BaseModel):
    status: Literal["applied"] = "applied"
    mutations: list[LedgerMutation] = []
    debt_ids: list[int] = []
    payment_ids: list[int] = []
    created_member_ids: list[str] = []
    # Settlements that found no open debt for the pair.
    empty_settlements: list[LedgerMutation] = []


class Rejected(BaseModel):
    status: Literal["rejected"] = "rejected"
    reason: str


ApplyResult = Applied | Rejected


# ── Oracle envelope ───────────────────────────────────────────────


class MessageFragment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    delay_ms: float = Field(alias="delayMs")

    @field_validator("delay_ms", mode="before")
    @classmethod
    def _numeric_delay(cls, v):
        if isinstance(v, bool):
            raise ValueError("delayMs must be numeric")
        if isinstance(v, str):
            try:
                v = float(v.strip())
            except ValueError:
                raise ValueError("delayMs must be numeric") from None
        if isinstance(v, (int, float)) and not math.isfinite(v):
            raise ValueError("delayMs must be finite")
        return v


class AmbiguityAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reference: str
    member_id: str | None = Field(default=None, alias="memberId")
    text: str | None = None


class DispatchEnvelope(BaseModel):
    kind: Literal["reply", "mutate", "stop"]
    messages: list[MessageFragment] = Field(min_length=1)
    mutations: list[MutationIntent] = []
    answers: list[AmbiguityAnswer] = []
    continuation: Literal["continue", "stop"]


class ConfirmedAlias(BaseModel):
    reference_text: str
    member_id: str


class TurnResult(BaseModel):
    chat_id: str
    status: Literal["completed", "malformed", "oracle_timeout"] = "completed"
    applied: list[LedgerMutation] = []
    empty_settlements: list[LedgerMutation] = []
    rejection_reason: str | None = None
    suspended_pending_ids: list[str] = []
    dropped_references: list[str] = []
    expired_pending_ids: list[str] = []
    created_member_ids: list[str] = []
    confirmed_aliases: list[ConfirmedAlias] = []
    delivered_fragments: int = 0
    failed_fragments: int = 0


# ── Admin API requests ────────────────────────────────────────────


class SeedAliasRequest(BaseModel):
    alias_text: str = Field(min_length=1)
    member_id: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class MergeRequest(BaseModel):
    virtual_id: str
    real_id: str


class TurnRequest(BaseModel):
    text: str
    sender_id: int | None = None
    sender_name: str | None = None
    sender_username: str | None = None


class TurnResponse(BaseModel):
    result: TurnResult
    fragments: list[str]
