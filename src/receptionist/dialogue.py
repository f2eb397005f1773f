"""
Slot-filling dialogue engine.

`DialogueEngine.respond` takes one finalized utterance (already classified)
and the call's session, mutates the session, and returns a `TurnPlan`: the
ordered lines to speak plus side effects for the gateway (transfer, hang up,
webhook notifications). The engine itself performs no audio or network I/O
apart from the optional small-talk acknowledger.

Phases: idle -> booking -> confirmed. An explicit decline returns to idle;
changing any slot after confirmation loops back through booking into a fresh
"updated" confirmation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from src.receptionist import faq
from src.receptionist.extract import (
    Classification,
    Intent,
    format_date_spoken,
    human_when,
    mask_phone,
    mentions_caller_number,
    normalize_date,
    normalize_phone,
    normalize_service,
    normalize_time,
)
from src.receptionist.llm import SMALLTALK_FALLBACK
from src.receptionist.session import CallSession, Phase, SlotSet

logger = structlog.get_logger(__name__)

DECLINE_LINE = "No problem. How else can I help?"
BOOKING_INVITE = "Would you like to book an appointment or do you have another question?"
OPEN_QUESTION = "How else can I help you today?"
CLOSING_QUESTION = "Anything else I can help with?"
TRANSFER_LINE = "Sure, let me connect you with the owner. One moment."
RETRY_PREFIX = "Sorry, I didn't hear that."

_DONE_RE = re.compile(
    r"\b(that'?s (?:it|all)|that(?:'| i)ll be it|i'?m (?:good|all set)|no(?: thanks)?|nope|nah"
    r"|we(?:'| a)re good|nothing else|i think i'?m good)\b",
    re.IGNORECASE,
)
_ASKING_TIME_RE = re.compile(r"\b(what time|at what time|what's the time|when is (it|that))\b", re.IGNORECASE)
_ASKING_DATE_RE = re.compile(r"\b(what (?:date|day)|which (?:date|day))\b", re.IGNORECASE)


def says_done(transcript: str) -> bool:
    """True when the caller is wrapping up ("no thanks", "that's all")."""
    return bool(_DONE_RE.search(transcript or ""))


class ActionKind(str, Enum):
    SAY = "say"
    ASK = "ask"


@dataclass
class TurnAction:
    kind: ActionKind
    text: str


@dataclass
class TurnPlan:
    """
    What the gateway should do for one utterance.

    `actions` are spoken in order. An ASK is spoken and then arms the silence
    supervisor with its exact text; at most one ASK is produced per turn and it
    is always last.
    """

    actions: List[TurnAction] = field(default_factory=list)
    transfer: bool = False
    hangup: bool = False
    faq_topic: str = ""
    faq_service: str = ""
    booking: Optional[SlotSet] = None

    def say(self, text: str) -> None:
        if text:
            self.actions.append(TurnAction(ActionKind.SAY, text))

    def ask(self, text: str) -> None:
        self.actions.append(TurnAction(ActionKind.ASK, text))

    @property
    def spoken(self) -> List[str]:
        return [a.text for a in self.actions]

    @property
    def question(self) -> Optional[str]:
        for action in reversed(self.actions):
            if action.kind == ActionKind.ASK:
                return action.text
        return None


def acknowledgement_for(name: str, slots: SlotSet) -> str:
    if name == "service":
        return f"Got it: {slots.service}."
    if name == "date":
        return f"Okay: {format_date_spoken(slots.date)}."
    if name == "time":
        return f"Noted: {slots.time}."
    if name == "name":
        return f"Thanks, {slots.name}."
    if name == "phone":
        return "Thanks. I've saved your number."
    return ""


def question_for(missing: str, slots: SlotSet) -> str:
    """The exact question that asks for the given missing slot."""
    if missing == "service":
        return "Which service would you like: haircut, beard trim, or combo?"
    if missing == "datetime":
        return f"What date and time would you like for your {slots.service or 'appointment'}?"
    if missing == "date":
        at_time = f" at {slots.time}" if slots.time else ""
        return f"What date works for your {slots.service}{at_time}?"
    if missing == "time":
        return f"What time on {format_date_spoken(slots.date)} works for your {slots.service}?"
    if missing == "name":
        return "Can I get your first name?"
    if missing == "phone":
        return "What phone number should I use for confirmations?"
    return ""


def redact_slots(slots: SlotSet) -> Dict[str, str]:
    return {
        "service": slots.service,
        "date": slots.date,
        "time": slots.time,
        "name": slots.name,
        "phone": mask_phone(slots.phone),
    }


class DialogueEngine:
    """
    Decides what to say next for one call.

    Args:
        acknowledger: async callable producing a short non-question reply to
            off-topic speech during booking (normally `LLMClient.smalltalk_reply`)
        today: returns the current calendar date in the business timezone
        shop_name: spoken business name
    """

    def __init__(
        self,
        acknowledger: Optional[Callable[[str], Awaitable[str]]] = None,
        today: Callable[[], date] = date.today,
        shop_name: str = "Old Line Barbershop",
    ):
        self._acknowledger = acknowledger
        self._today = today
        self.shop_name = shop_name

    @property
    def greeting(self) -> str:
        return f"Hi, thanks for calling {self.shop_name}."

    @property
    def opening_question(self) -> str:
        return "How can I help you today?"

    @property
    def closing_line(self) -> str:
        return f"Thanks for calling {self.shop_name}, have a great day!"

    def extract_updates(
        self,
        session: CallSession,
        transcript: str,
        classification: Classification,
    ) -> Dict[str, str]:
        """Normalize the classifier's newly stated values for merging."""
        # A service named in a price question is not a booking choice.
        service = "" if classification.intent == Intent.FAQ else normalize_service(classification.service)
        booking_context = classification.intent == Intent.BOOK or (
            session.phase == Phase.BOOKING and classification.intent != Intent.FAQ
        )
        if not service and not session.slots.service and booking_context:
            service = normalize_service(transcript)

        phone = normalize_phone(classification.phone)
        if not phone and mentions_caller_number(transcript):
            phone = normalize_phone(session.caller_number)

        return {
            "service": service,
            "date": normalize_date(classification.date, self._today()),
            "time": normalize_time(classification.time),
            "name": classification.name.strip(),
            "phone": phone,
        }

    async def respond(
        self,
        session: CallSession,
        transcript: str,
        classification: Classification,
    ) -> TurnPlan:
        plan = TurnPlan()
        intent = classification.intent
        session.turn_count += 1

        before = redact_slots(session.slots)
        changed = session.slots.merge(self.extract_updates(session, transcript, classification))
        if changed:
            logger.info(
                "Slots merged",
                call_id=session.call_id,
                changed=changed,
                before=before,
                after=redact_slots(session.slots),
            )

        awaiting_anything_else = session.awaiting_anything_else
        session.awaiting_anything_else = False
        if (
            awaiting_anything_else
            and not changed
            and intent in (Intent.SMALLTALK, Intent.UNKNOWN, Intent.DECLINE_BOOK)
            and says_done(transcript)
        ):
            plan.say(self.closing_line)
            plan.hangup = True
            self._log_plan(session, intent, plan)
            return plan

        if changed and (session.phase == Phase.BOOKING or intent == Intent.BOOK):
            plan.say(" ".join(acknowledgement_for(name, session.slots) for name in changed))

        if intent == Intent.DECLINE_BOOK:
            session.phase = Phase.IDLE
            plan.ask(DECLINE_LINE)

        elif intent == Intent.FAQ:
            service = normalize_service(classification.service) or session.slots.service
            plan.faq_topic = classification.faq_topic
            plan.faq_service = service
            plan.say(faq.answer(classification.faq_topic, service))
            if session.phase == Phase.BOOKING or (session.phase == Phase.CONFIRMED and changed):
                self._advance_booking(session, plan)
            elif session.phase == Phase.CONFIRMED:
                plan.ask(CLOSING_QUESTION)
            else:
                plan.ask(BOOKING_INVITE)

        elif intent == Intent.TRANSFER:
            # The gateway speaks the hand-off line once it knows a redirect is possible.
            plan.transfer = True

        elif (
            intent == Intent.BOOK
            or session.phase == Phase.BOOKING
            or (session.phase == Phase.CONFIRMED and changed)
        ):
            if session.phase != Phase.CONFIRMED or changed:
                session.phase = Phase.BOOKING
            await self._continue_booking(session, plan, transcript, intent, changed)

        elif session.phase == Phase.CONFIRMED:
            plan.say("Happy to help.")
            plan.ask(OPEN_QUESTION)

        else:
            plan.say("All good.")
            plan.ask(OPEN_QUESTION)

        self._log_plan(session, intent, plan)
        return plan

    async def _continue_booking(
        self,
        session: CallSession,
        plan: TurnPlan,
        transcript: str,
        intent: Intent,
        changed: List[str],
    ) -> None:
        slots = session.slots
        if slots.is_complete:
            self._advance_booking(session, plan)
            return

        missing = slots.next_missing()

        if changed:
            plan.ask(question_for(missing, slots))
            return

        if session.phase == Phase.BOOKING and self._is_status_question(transcript):
            plan.say(self._status_recap(slots, transcript))
            plan.ask(question_for(missing, slots))
            return

        if intent in (Intent.SMALLTALK, Intent.UNKNOWN):
            plan.say(await self._acknowledge(transcript))
        else:
            plan.say("Sure.")
        plan.ask(question_for(missing, slots))

    def _advance_booking(self, session: CallSession, plan: TurnPlan) -> None:
        """Ask for the next missing slot, or confirm when the form is full."""
        if not session.slots.is_complete:
            plan.ask(question_for(session.slots.next_missing(), session.slots))
            return
        if not self.confirm(session, plan):
            plan.ask(CLOSING_QUESTION)

    def confirm(self, session: CallSession, plan: TurnPlan) -> bool:
        """
        Speak the booking confirmation unless it was already spoken for this
        exact slot set. Returns False when nothing new was confirmed.
        """
        slots = session.slots
        snapshot = slots.snapshot()
        if session.phase == Phase.CONFIRMED and snapshot == session.confirmed_snapshot:
            logger.debug("Confirmation unchanged", call_id=session.call_id)
            return False

        updated = bool(session.confirmed_snapshot) and snapshot != session.confirmed_snapshot
        when = human_when(slots.date, slots.time)
        number_line = f" I have your number ending in {slots.phone[-4:]}." if slots.phone else ""
        opener = "Updated, I've" if updated else "Great, I've"
        plan.say(f"{opener} got a {slots.service} for {slots.name} on {when}.{number_line} You're all set.")
        plan.ask(CLOSING_QUESTION)
        plan.booking = slots.copy()

        session.phase = Phase.CONFIRMED
        session.confirmed_snapshot = snapshot
        session.awaiting_anything_else = True
        logger.info(
            "Booking confirmed",
            call_id=session.call_id,
            updated=updated,
            slots=redact_slots(slots),
        )
        return True

    async def _acknowledge(self, transcript: str) -> str:
        if self._acknowledger is None:
            return SMALLTALK_FALLBACK
        reply = await self._acknowledger(transcript)
        return reply or SMALLTALK_FALLBACK

    @staticmethod
    def _is_status_question(transcript: str) -> bool:
        return bool(_ASKING_TIME_RE.search(transcript or "") or _ASKING_DATE_RE.search(transcript or ""))

    @staticmethod
    def _status_recap(slots: SlotSet, transcript: str) -> str:
        bits = []
        if _ASKING_TIME_RE.search(transcript):
            bits.append(f"We're looking at {slots.time}" if slots.time else "We haven't picked a time yet")
        if _ASKING_DATE_RE.search(transcript):
            if slots.date:
                bits.append(f"on {format_date_spoken(slots.date)}")
            else:
                bits.append("and we still need a date")
        line = " ".join(bits)
        return line[0].upper() + line[1:] + "."

    def _log_plan(self, session: CallSession, intent: Intent, plan: TurnPlan) -> None:
        logger.info(
            "Turn planned",
            call_id=session.call_id,
            intent=intent.value,
            phase=session.phase.value,
            missing=session.slots.next_missing(),
            actions=len(plan.actions),
            question=plan.question,
            transfer=plan.transfer,
            hangup=plan.hangup,
        )
