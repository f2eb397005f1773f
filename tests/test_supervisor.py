"""
Tests for the silence supervisor.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.receptionist.session import CallSession
from src.receptionist.supervisor import SilenceSupervisor, SupervisorTimings, fingerprint

FAST = SupervisorTimings(reprompt_after=0.05, goodbye_after=0.05, hangup_drain=0.01, dedupe_window=1.2)


@pytest.fixture
def speak():
    return AsyncMock()


@pytest.fixture
def hangup():
    return AsyncMock()


@pytest.fixture
def supervisor(speak, hangup):
    return SilenceSupervisor(
        CallSession(),
        speak,
        hangup,
        timings=FAST,
        closing_line="Thanks for calling, have a great day!",
    )


@pytest.mark.asyncio
async def test_silence_reprompts_once_then_says_goodbye(supervisor, speak, hangup):
    supervisor.arm("What time works?")

    await asyncio.sleep(0.08)
    speak.assert_awaited_once_with("Sorry, I didn't hear that. What time works?")
    hangup.assert_not_awaited()

    await asyncio.sleep(0.12)
    assert [c.args[0] for c in speak.await_args_list] == [
        "Sorry, I didn't hear that. What time works?",
        "Thanks for calling, have a great day!",
    ]
    hangup.assert_awaited_once()
    assert supervisor.pending is None


@pytest.mark.asyncio
async def test_disarm_before_reprompt_keeps_quiet(supervisor, speak, hangup):
    supervisor.arm("What time works?")
    supervisor.disarm()

    await asyncio.sleep(0.2)

    speak.assert_not_awaited()
    hangup.assert_not_awaited()
    assert not supervisor.is_armed


@pytest.mark.asyncio
async def test_disarm_after_reprompt_cancels_goodbye(supervisor, speak, hangup):
    supervisor.arm("What time works?")
    await asyncio.sleep(0.08)
    assert speak.await_count == 1

    supervisor.disarm()
    await asyncio.sleep(0.15)

    assert speak.await_count == 1
    hangup.assert_not_awaited()


@pytest.mark.asyncio
async def test_goodbye_cannot_be_undone_during_drain(speak, hangup):
    timings = SupervisorTimings(reprompt_after=0.02, goodbye_after=0.02, hangup_drain=0.2, dedupe_window=1.2)
    supervisor = SilenceSupervisor(CallSession(), speak, hangup, timings=timings)
    supervisor.arm("What time works?")

    await asyncio.sleep(0.07)
    assert speak.await_count == 2
    hangup.assert_not_awaited()

    # A late utterance arrives while the farewell plays out.
    assert not supervisor.is_armed
    supervisor.disarm()

    await asyncio.sleep(0.25)
    hangup.assert_awaited_once()


@pytest.mark.asyncio
async def test_rearm_replaces_previous_question(supervisor, speak):
    first = supervisor.arm("Which service would you like?")
    second = supervisor.arm("Can I get your first name?")

    assert supervisor.pending is second
    await asyncio.sleep(0)
    assert first.reprompt_task.cancelled()

    await asyncio.sleep(0.08)
    speak.assert_awaited_once_with("Sorry, I didn't hear that. Can I get your first name?")
    supervisor.disarm()


@pytest.mark.asyncio
async def test_disarm_when_idle_is_noop(supervisor):
    supervisor.disarm()
    assert supervisor.pending is None


class TestDuplicateAsk:

    def _supervisor(self, now):
        return SilenceSupervisor(
            CallSession(), AsyncMock(), AsyncMock(), timings=FAST, clock=lambda: now[0]
        )

    def test_same_question_within_window_is_duplicate(self):
        now = [100.0]
        sup = self._supervisor(now)

        assert not sup.is_duplicate("What time works?")
        sup.record_ask("What time works?")

        now[0] = 101.0
        assert sup.is_duplicate("what time works")
        assert not sup.is_duplicate("What date works?")

    def test_same_question_after_window_is_not_duplicate(self):
        now = [100.0]
        sup = self._supervisor(now)
        sup.record_ask("What time works?")

        now[0] = 101.5
        assert not sup.is_duplicate("What time works?")


def test_fingerprint_ignores_case_and_punctuation():
    assert fingerprint("Anything else I can help with?") == fingerprint("anything else, I can help with")
    assert fingerprint("") == ""


def test_timings_from_config():
    from src.receptionist.config import get_config

    timings = SupervisorTimings.from_config(get_config())
    assert timings == SupervisorTimings(25.0, 25.0, 8.0, 1.2)
