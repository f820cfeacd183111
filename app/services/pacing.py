import asyncio
import time
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_fixed

from app.errors import TransportFailure
from app.models.schemas import MessageFragment


class Transport(Protocol):
    async def send_fragment(self, chat_id: str, text: str) -> Any: ...

    async def send_typing(self, chat_id: str) -> None: ...


class RecordingTransport:
    """Collects fragments instead of delivering them (admin API, debugging)."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def send_fragment(self, chat_id: str, text: str) -> dict:
        self.sent.append((chat_id, text))
        return {"ok": True, "index": len(self.sent) - 1}

    async def send_typing(self, chat_id: str) -> None:
        return None


class FragmentPacer:
    """Delivers reply fragments in order with a human-paced gap before each.

    The delay for a fragment is measured from the end of the previous
    delivery, so transport latency never shortens a gap.
    """

    def __init__(
        self,
        min_delay_ms: int = 200,
        max_delay_ms: int = 3500,
        max_attempts: int = 3,
        retry_wait_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds
        self.sleep = sleep
        self.clock = clock

    def clamp(self, delay_ms: float) -> float:
        return min(max(delay_ms, self.min_delay_ms), self.max_delay_ms)

    async def _deliver(self, transport: Transport, chat_id: str, text: str) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_fixed(self.retry_wait_seconds),
                sleep=self.sleep,
            ):
                with attempt:
                    return await transport.send_fragment(chat_id, text)
        except RetryError as e:
            raise TransportFailure(str(e.last_attempt.exception())) from e

    async def send(
        self, transport: Transport, chat_id: str, fragments: list[MessageFragment]
    ) -> tuple[int, int]:
        """Send every fragment; returns (delivered, failed)."""
        delivered = failed = 0
        last_end = self.clock()

        for index, fragment in enumerate(fragments, 1):
            text = fragment.text.strip()
            if not text:
                logger.warning("Skipping empty fragment {} in chat {}", index, chat_id)
                continue

            delay = self.clamp(fragment.delay_ms) / 1000
            try:
                await transport.send_typing(chat_id)
            except Exception as e:
                logger.debug("Typing indicator failed in chat {}: {}", chat_id, e)

            remaining = delay - (self.clock() - last_end)
            if remaining > 0:
                await self.sleep(remaining)

            try:
                await self._deliver(transport, chat_id, text)
                delivered += 1
            except TransportFailure as e:
                failed += 1
                logger.error("Dropping fragment {} in chat {}: {}", index, chat_id, e)
            last_end = self.clock()

        return delivered, failed
