"""
Silence/timeout supervisor.

Every question the receptionist asks is armed here. If the caller stays
silent the question is repeated once; if they stay silent after that, the
call is closed politely:

    ask --(reprompt_after)--> "Sorry, I didn't hear that. <question>"
        --(goodbye_after)---> closing line --(hangup_drain)--> hang up

Any recognized utterance disarms both steps synchronously, and arming a new
question always cancels the previous pair first, so at most one pair of
deferred actions exists per call.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.receptionist.session import CallSession, PendingQuestion

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SupervisorTimings:
    reprompt_after: float = 25.0
    goodbye_after: float = 25.0
    hangup_drain: float = 8.0
    dedupe_window: float = 1.2

    @classmethod
    def from_config(cls, config: Any) -> "SupervisorTimings":
        return cls(
            reprompt_after=config.reprompt_after_seconds,
            goodbye_after=config.goodbye_after_seconds,
            hangup_drain=config.hangup_drain_seconds,
            dedupe_window=config.ask_dedupe_seconds,
        )


def fingerprint(question: str) -> str:
    """Case/punctuation-insensitive key for duplicate-ask detection."""
    return re.sub(r"[^a-z0-9]+", " ", (question or "").lower()).strip()


class SilenceSupervisor:
    """
    Races deferred re-prompt/goodbye actions against caller speech.

    Args:
        session: the call's session (holds the pending question)
        speak: coroutine that speaks one line on the call
        hangup: coroutine that terminates the call
        timings: delays; defaults are the production values
        closing_line: spoken before hanging up on a silent caller
        clock: monotonic clock, injectable for tests
    """

    def __init__(
        self,
        session: CallSession,
        speak: Callable[[str], Awaitable[None]],
        hangup: Callable[[], Awaitable[None]],
        timings: Optional[SupervisorTimings] = None,
        closing_line: str = "Thanks for calling, have a great day!",
        retry_prefix: str = "Sorry, I didn't hear that.",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self._speak = speak
        self._hangup = hangup
        self.timings = timings or SupervisorTimings()
        self.closing_line = closing_line
        self.retry_prefix = retry_prefix
        self._clock = clock

    @property
    def pending(self) -> Optional[PendingQuestion]:
        return self.session.pending

    @property
    def is_armed(self) -> bool:
        return self.session.pending is not None

    def is_duplicate(self, question: str) -> bool:
        """True if the same question was asked within the dedupe window."""
        if not self.session.last_ask_fingerprint:
            return False
        elapsed = self._clock() - self.session.last_ask_at
        return (
            fingerprint(question) == self.session.last_ask_fingerprint
            and elapsed <= self.timings.dedupe_window
        )

    def record_ask(self, question: str) -> None:
        self.session.last_ask_fingerprint = fingerprint(question)
        self.session.last_ask_at = self._clock()

    def arm(self, question: str) -> PendingQuestion:
        """Replace any pending question with `question` and start its timers."""
        self.disarm()
        pending = PendingQuestion(text=question)
        self.session.pending = pending
        pending.reprompt_task = asyncio.create_task(
            self._reprompt_after(pending),
            name=f"reprompt-{self.session.call_id}",
        )
        logger.debug("Question armed", call_id=self.session.call_id, question=question)
        return pending

    def disarm(self) -> None:
        """Cancel the pending question's deferred actions. Synchronous."""
        pending = self.session.pending
        if pending is None:
            return
        self.session.pending = None
        pending.cancel()
        logger.debug("Question disarmed", call_id=self.session.call_id)

    async def _reprompt_after(self, pending: PendingQuestion) -> None:
        await asyncio.sleep(self.timings.reprompt_after)
        if pending.retried:
            return
        pending.retried = True

        logger.info("Silence re-prompt", call_id=self.session.call_id, question=pending.text)
        await self._speak(f"{self.retry_prefix} {pending.text}")
        pending.goodbye_task = asyncio.create_task(
            self._goodbye_after(pending),
            name=f"goodbye-{self.session.call_id}",
        )

    async def _goodbye_after(self, pending: PendingQuestion) -> None:
        await asyncio.sleep(self.timings.goodbye_after)

        # Past this point the goodbye can no longer be disarmed.
        if self.session.pending is pending:
            self.session.pending = None

        logger.info("Silence goodbye", call_id=self.session.call_id)
        await self._speak(self.closing_line)
        await asyncio.sleep(self.timings.hangup_drain)
        await self._hangup()
