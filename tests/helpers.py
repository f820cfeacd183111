import asyncio

from app.llm.parser import parse_envelope

CHAT = "chat-1"


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.t = 0.0

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.t += seconds


class ClockTransport:
    """Records (time, chat_id, text) and can simulate latency and failures."""

    def __init__(self, clock: FakeClock, latency: float = 0.0):
        self.clock = clock
        self.latency = latency
        self.sent: list[tuple[float, str, str]] = []
        self.fail_texts: set[str] = set()
        self.attempts: dict[str, int] = {}
        self.typing = 0

    async def send_fragment(self, chat_id: str, text: str):
        self.attempts[text] = self.attempts.get(text, 0) + 1
        self.clock.t += self.latency
        if text in self.fail_texts:
            raise ConnectionError(f"cannot deliver {text!r}")
        self.sent.append((self.clock.t, chat_id, text))
        # Let other tasks run, as a real network call would.
        await asyncio.sleep(0)
        return {"ok": True}

    async def send_typing(self, chat_id: str) -> None:
        self.typing += 1

    @property
    def texts(self) -> list[str]:
        return [text for _, _, text in self.sent]


class FakeOracle:
    """Returns queued envelopes (dicts) in order, or raises queued errors."""

    def __init__(self):
        self.queue: list = []
        self.calls: list[dict] = []

    def push(self, item) -> None:
        self.queue.append(item)

    async def propose(self, user_message, context=None, history=None):
        self.calls.append({"message": user_message, "context": context, "history": history})
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return parse_envelope(item)


def envelope(*texts, kind="reply", mutations=(), answers=(), continuation="continue", delay=300):
    """Build a wire-shaped envelope dict."""
    return {
        "kind": kind,
        "messages": [{"text": t, "delayMs": delay} for t in texts],
        "mutations": list(mutations),
        "answers": list(answers),
        "continuation": continuation,
    }


def debt(creditor, debtor, amount, currency="VND", note=None):
    return {
        "queryShape": "debt",
        "params": {"creditor": creditor, "debtor": debtor, "amount": amount, "currency": currency, "note": note},
    }
