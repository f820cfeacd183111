import asyncio
import json

from loguru import logger
from openai import APITimeoutError, OpenAI
from pydantic import ValidationError

from app.errors import MalformedEnvelope, OracleTimeout
from app.llm.prompts import SYSTEM_PROMPT
from app.models.schemas import Balance, DispatchEnvelope, Member, PendingAmbiguity


def strip_code_fences(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith("```"):
        lines = raw.split("\n")
        lines = [l for l in lines if not l.startswith("```")]
        raw = "\n".join(lines)
    return raw


def parse_envelope(raw: str | dict) -> DispatchEnvelope:
    """Validate untrusted oracle output into a DispatchEnvelope.

    Raises MalformedEnvelope on anything that does not fit; nothing is
    partially trusted.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as e:
            raise MalformedEnvelope(f"not JSON: {e}") from e
    if not isinstance(raw, dict):
        raise MalformedEnvelope("envelope must be a JSON object")
    try:
        return DispatchEnvelope.model_validate(raw)
    except ValidationError as e:
        raise MalformedEnvelope(str(e)) from e


def build_context(
    members: list[Member],
    aliases: dict[str, list[str]],
    pending: list[PendingAmbiguity],
    balances: list[Balance],
    sender: Member | None = None,
) -> str:
    lines = ["Chat members:"]
    for m in members:
        line = f"- {m.display_name} (id={m.member_id}"
        if m.username:
            line += f", @{m.username}"
        if m.is_virtual:
            line += ", virtual"
        line += ")"
        if aliases.get(m.member_id):
            line += f" aka {', '.join(aliases[m.member_id])}"
        lines.append(line)

    if sender is not None:
        lines.append(f"\nMessage sender: {sender.display_name} (id={sender.member_id}), refer to them as \"@me\"")

    if pending:
        lines.append("\nOpen questions waiting for an answer:")
        names = {m.member_id: m.display_name for m in members}
        for p in pending:
            options = ", ".join(f"{names.get(c, c)} (id={c})" for c in p.candidate_member_ids)
            lines.append(f'- "{p.reference_text}" could be: {options}')

    if balances:
        lines.append("\nOpen balances:")
        for b in balances:
            lines.append(f"- {b.debtor_name} owes {b.creditor_name} {b.amount:,.0f} {b.currency}")

    return "\n".join(lines)


class IntentOracle:
    def __init__(self, api_key: str, model: str, timeout_seconds: float = 8.0):
        self.client = OpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key,
            timeout=timeout_seconds,
        )
        self.model = model
        self.timeout_seconds = timeout_seconds

    def _complete(self, messages: list[dict]) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0.2,
        )
        return (response.choices[0].message.content or "").strip()

    async def propose(
        self,
        user_message: str,
        context: str | None = None,
        history: list[dict] | None = None,
    ) -> DispatchEnvelope:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        if context:
            messages.append({"role": "system", "content": context})
        if history:
            messages.extend(history)
        messages.append({"role": "user", "content": user_message})

        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._complete, messages), self.timeout_seconds
            )
        except (asyncio.TimeoutError, APITimeoutError) as e:
            logger.warning("Oracle timed out after {}s", self.timeout_seconds)
            raise OracleTimeout(f"no answer within {self.timeout_seconds}s") from e
        except Exception as e:
            logger.error("Oracle request failed: {}", e)
            raise MalformedEnvelope(f"oracle request failed: {e}") from e

        logger.debug("Oracle raw response: {}", raw)
        return parse_envelope(raw)
