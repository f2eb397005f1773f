"""
Tests for the slot-filling dialogue engine.
"""

from unittest.mock import AsyncMock

import pytest

from src.receptionist import faq
from src.receptionist.dialogue import (
    BOOKING_INVITE,
    CLOSING_QUESTION,
    DECLINE_LINE,
    OPEN_QUESTION,
    ActionKind,
    DialogueEngine,
    question_for,
    says_done,
)
from src.receptionist.extract import Classification, Intent
from src.receptionist.session import CallSession, Phase, SlotSet


def cls(intent: Intent = Intent.UNKNOWN, **fields) -> Classification:
    return Classification(intent=intent, **fields)


@pytest.fixture
def acknowledger():
    return AsyncMock(return_value="Ha, love that.")


@pytest.fixture
def engine(today, acknowledger):
    return DialogueEngine(acknowledger=acknowledger, today=lambda: today)


@pytest.fixture
def session():
    return CallSession(caller_number="+15551234567", stream_sid="MZ1", call_sid="CA1")


def filled_session(**overrides) -> CallSession:
    s = CallSession(caller_number="+15551234567")
    s.slots = SlotSet(
        service="haircut", date="2026-10-19", time="3:00 PM", name="Sam", phone="5551234567"
    )
    for key, value in overrides.items():
        setattr(s, key, value)
    return s


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_single_utterance_books_and_confirms_once(self, engine, session):
        transcript = "I want a haircut tomorrow at 3pm, I'm Sam, use this number"
        classification = cls(Intent.BOOK, service="haircut", date="tomorrow", time="3pm", name="Sam")

        plan = await engine.respond(session, transcript, classification)

        assert session.slots == SlotSet(
            service="haircut", date="2026-10-19", time="3:00 PM", name="Sam", phone="5551234567"
        )
        assert session.phase == Phase.CONFIRMED

        confirmations = [t for t in plan.spoken if "You're all set" in t]
        assert len(confirmations) == 1
        assert "October 19th at 3:00 PM" in confirmations[0]
        assert "ending in 4567" in confirmations[0]
        assert confirmations[0].startswith("Great")
        assert plan.question == CLOSING_QUESTION
        assert plan.booking == session.slots

        # Repeating the same thing produces no second confirmation.
        again = await engine.respond(session, transcript, classification)
        assert not any("You're all set" in t for t in again.spoken)
        assert session.phase == Phase.CONFIRMED
        assert again.booking is None

    @pytest.mark.asyncio
    async def test_step_by_step_booking(self, engine, session):
        plan = await engine.respond(session, "I'd like to book", cls(Intent.BOOK))
        assert session.phase == Phase.BOOKING
        assert plan.spoken == ["Sure.", question_for("service", session.slots)]

        plan = await engine.respond(session, "a beard trim", cls(Intent.BOOK, service="beard trim"))
        assert plan.spoken[0] == "Got it: beard trim."
        assert plan.question == "What date and time would you like for your beard trim?"

        plan = await engine.respond(session, "friday", cls(Intent.UNKNOWN, date="friday"))
        assert plan.spoken[0] == "Okay: October 23rd."
        assert plan.question == "What time on October 23rd works for your beard trim?"

        plan = await engine.respond(session, "10am", cls(Intent.UNKNOWN, time="10am"))
        assert plan.spoken[0] == "Noted: 10:00 AM."
        assert plan.question == "Can I get your first name?"

        plan = await engine.respond(session, "it's Jo", cls(Intent.UNKNOWN, name="Jo"))
        assert plan.spoken[0] == "Thanks, Jo."
        assert plan.question == "What phone number should I use for confirmations?"

        plan = await engine.respond(session, "410 555 0199", cls(Intent.UNKNOWN, phone="410 555 0199"))
        assert plan.spoken[0] == "Thanks. I've saved your number."
        assert "ending in 0199" in plan.spoken[1]
        assert session.phase == Phase.CONFIRMED


class TestFaq:

    @pytest.mark.asyncio
    async def test_hours_while_idle_invites_booking(self, engine, session):
        plan = await engine.respond(session, "what are your hours", cls(Intent.FAQ, faq_topic="HOURS"))

        assert plan.spoken == [faq.HOURS_ANSWER, BOOKING_INVITE]
        assert plan.actions[-1].kind == ActionKind.ASK
        assert plan.question == BOOKING_INVITE
        assert plan.faq_topic == "HOURS"
        assert session.phase == Phase.IDLE

    @pytest.mark.asyncio
    async def test_faq_while_booking_reasks_missing_slot(self, engine, session):
        session.phase = Phase.BOOKING
        session.slots.service = "combo"

        plan = await engine.respond(session, "where are you located", cls(Intent.FAQ, faq_topic="LOCATION"))

        assert plan.spoken[0] == faq.LOCATION_ANSWER
        assert plan.question == question_for("datetime", session.slots)
        assert session.phase == Phase.BOOKING

    @pytest.mark.asyncio
    async def test_faq_while_confirmed_rearms_closing_question(self, engine):
        session = filled_session(phase=Phase.CONFIRMED)
        session.confirmed_snapshot = session.slots.snapshot()

        plan = await engine.respond(session, "how much is it", cls(Intent.FAQ, faq_topic="PRICES"))

        assert plan.spoken == ["A haircut is thirty dollars.", CLOSING_QUESTION]
        assert session.phase == Phase.CONFIRMED

    @pytest.mark.asyncio
    async def test_price_question_does_not_change_booking(self, engine):
        session = filled_session(phase=Phase.CONFIRMED)
        session.confirmed_snapshot = session.slots.snapshot()

        plan = await engine.respond(
            session, "how much is a combo", cls(Intent.FAQ, faq_topic="PRICES", service="combo")
        )

        assert plan.spoken[0] == "A combo is forty dollars."
        assert session.slots.service == "haircut"
        assert plan.faq_service == "combo"

    @pytest.mark.asyncio
    async def test_faq_after_confirmation_that_changes_a_slot_reconfirms(self, engine):
        session = filled_session(phase=Phase.CONFIRMED)
        session.confirmed_snapshot = session.slots.snapshot()

        plan = await engine.respond(
            session, "are you open at 4pm then", cls(Intent.FAQ, faq_topic="HOURS", time="4pm")
        )

        assert session.slots.time == "4:00 PM"
        assert plan.spoken[0] == faq.HOURS_ANSWER
        assert plan.spoken[1].startswith("Updated")
        assert "4:00 PM" in plan.spoken[1]
        assert plan.question == CLOSING_QUESTION
        assert plan.booking == session.slots
        assert session.phase == Phase.CONFIRMED

    @pytest.mark.asyncio
    async def test_unknown_topic_falls_back(self, engine, session):
        plan = await engine.respond(session, "do you have parking", cls(Intent.FAQ))
        assert plan.spoken[0] == faq.FALLBACK_ANSWER


class TestDecline:

    @pytest.mark.asyncio
    async def test_decline_during_booking_returns_to_idle(self, engine, session):
        session.phase = Phase.BOOKING
        session.slots.service = "haircut"

        plan = await engine.respond(session, "never mind, I don't want to book", cls(Intent.DECLINE_BOOK))

        assert session.phase == Phase.IDLE
        assert plan.spoken == [DECLINE_LINE]
        assert plan.question == DECLINE_LINE
        # Slots are never cleared implicitly.
        assert session.slots.service == "haircut"


class TestTransfer:

    @pytest.mark.asyncio
    async def test_transfer_flags_plan(self, engine, session):
        plan = await engine.respond(session, "let me talk to the owner", cls(Intent.TRANSFER))
        assert plan.transfer is True
        assert plan.question is None
        # The hand-off line depends on whether a redirect is possible.
        assert plan.spoken == []


class TestSmalltalk:

    @pytest.mark.asyncio
    async def test_smalltalk_during_booking_keeps_question(self, engine, session, acknowledger):
        session.phase = Phase.BOOKING
        session.slots.service = "haircut"
        session.slots.date = "2026-10-19"

        plan = await engine.respond(session, "my dog just barked", cls(Intent.SMALLTALK))

        acknowledger.assert_awaited_once_with("my dog just barked")
        assert plan.spoken == ["Ha, love that.", question_for("time", session.slots)]

    @pytest.mark.asyncio
    async def test_unknown_during_booking_without_acknowledger(self, today, session):
        engine = DialogueEngine(today=lambda: today)
        session.phase = Phase.BOOKING

        plan = await engine.respond(session, "uhh", cls(Intent.UNKNOWN))

        assert plan.spoken == ["Okay.", question_for("service", session.slots)]

    @pytest.mark.asyncio
    async def test_smalltalk_while_idle(self, engine, session, acknowledger):
        plan = await engine.respond(session, "nice weather", cls(Intent.SMALLTALK))

        assert plan.spoken == ["All good.", OPEN_QUESTION]
        acknowledger.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_smalltalk_while_confirmed(self, engine):
        session = filled_session(phase=Phase.CONFIRMED)
        session.confirmed_snapshot = session.slots.snapshot()

        plan = await engine.respond(session, "cool cool", cls(Intent.SMALLTALK))

        assert plan.spoken == ["Happy to help.", OPEN_QUESTION]


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_unchanged_value_is_not_acknowledged(self, engine, session):
        session.phase = Phase.BOOKING
        session.slots.service = "haircut"

        plan = await engine.respond(session, "a haircut", cls(Intent.BOOK, service="Haircut"))

        assert not any(t.startswith("Got it") for t in plan.spoken)
        assert plan.spoken[0] == "Sure."

    @pytest.mark.asyncio
    async def test_change_after_confirmation_reconfirms_as_update(self, engine):
        session = filled_session(phase=Phase.CONFIRMED)
        session.confirmed_snapshot = session.slots.snapshot()

        plan = await engine.respond(session, "make it 4pm", cls(Intent.BOOK, time="4pm"))

        assert plan.spoken[0] == "Noted: 4:00 PM."
        assert plan.spoken[1].startswith("Updated")
        assert "4:00 PM" in plan.spoken[1]
        assert session.phase == Phase.CONFIRMED
        assert plan.booking is not None

    @pytest.mark.asyncio
    async def test_book_again_with_nothing_new_only_rearms(self, engine):
        session = filled_session(phase=Phase.CONFIRMED)
        session.confirmed_snapshot = session.slots.snapshot()

        plan = await engine.respond(session, "book it", cls(Intent.BOOK))

        assert plan.spoken == [CLOSING_QUESTION]
        assert session.phase == Phase.CONFIRMED


class TestWrapUp:

    @pytest.mark.asyncio
    async def test_no_thanks_after_confirmation_hangs_up(self, engine):
        session = filled_session(phase=Phase.CONFIRMED, awaiting_anything_else=True)
        session.confirmed_snapshot = session.slots.snapshot()

        plan = await engine.respond(session, "no thanks, that's all", cls(Intent.SMALLTALK))

        assert plan.hangup is True
        assert plan.spoken == [engine.closing_line]
        assert plan.question is None

    @pytest.mark.asyncio
    async def test_no_only_wraps_up_right_after_closing_question(self, engine, session):
        plan = await engine.respond(session, "no", cls(Intent.UNKNOWN))
        assert plan.hangup is False

    def test_says_done(self):
        assert says_done("nope")
        assert says_done("I'm good, thanks")
        assert not says_done("tuesday works")


class TestCallerNumber:

    @pytest.mark.asyncio
    async def test_explicit_phone_wins_over_caller_number(self, engine, session):
        session.phase = Phase.BOOKING
        await engine.respond(session, "use my number 410-555-0199", cls(Intent.BOOK, phone="410-555-0199"))
        assert session.slots.phone == "4105550199"

    @pytest.mark.asyncio
    async def test_this_number_without_caller_id_leaves_phone_blank(self, engine):
        session = CallSession()
        session.phase = Phase.BOOKING
        await engine.respond(session, "use this number", cls(Intent.BOOK))
        assert session.slots.phone == ""


class TestStatusQuestion:

    @pytest.mark.asyncio
    async def test_what_time_recaps_and_reasks(self, engine, session):
        session.phase = Phase.BOOKING
        session.slots.service = "haircut"
        session.slots.time = "3:00 PM"

        plan = await engine.respond(session, "wait, what time was that", cls(Intent.UNKNOWN))

        assert plan.spoken[0] == "We're looking at 3:00 PM."
        assert plan.question == question_for("date", session.slots)


class TestTranscriptServiceFallback:

    @pytest.mark.asyncio
    async def test_service_read_from_transcript_when_classifier_misses_it(self, engine, session):
        plan = await engine.respond(session, "can I book a beard trim", cls(Intent.BOOK))
        assert session.slots.service == "beard trim"
        assert plan.spoken[0] == "Got it: beard trim."
