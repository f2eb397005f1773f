"""
Per-call state.

A `CallSession` is created when the media stream starts and is owned by
exactly one gateway. Nothing in it is shared between calls.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import msgspec
from msgspec import structs


class Phase(str, Enum):
    """Coarse booking lifecycle stage."""
    IDLE = "idle"
    BOOKING = "booking"
    CONFIRMED = "confirmed"


SLOT_FIELDS = ("service", "date", "time", "name", "phone")


class SlotSet(msgspec.Struct):
    """
    The booking form.

    A field only changes when a newly stated, different, non-empty value is
    merged in. Nothing clears a field once it is set.
    """

    service: str = ""
    date: str = ""
    time: str = ""
    name: str = ""
    phone: str = ""

    def merge(self, updates: Dict[str, str]) -> List[str]:
        """Apply normalized updates; return the names of fields that changed."""
        changed: List[str] = []
        for name in SLOT_FIELDS:
            value = (updates.get(name) or "").strip()
            if value and value != getattr(self, name):
                setattr(self, name, value)
                changed.append(name)
        return changed

    def next_missing(self) -> str:
        """First gap in priority order, or `done`."""
        if not self.service:
            return "service"
        if not self.date and not self.time:
            return "datetime"
        if not self.date:
            return "date"
        if not self.time:
            return "time"
        if not self.name:
            return "name"
        if not self.phone:
            return "phone"
        return "done"

    @property
    def is_complete(self) -> bool:
        return self.next_missing() == "done"

    def snapshot(self) -> str:
        """Serialized form used to detect changes since the last confirmation."""
        return msgspec.json.encode(self).decode("utf-8")

    def copy(self) -> "SlotSet":
        return structs.replace(self)


@dataclass
class PendingQuestion:
    """The last question asked and its two deferred silence actions."""
    text: str
    retried: bool = False
    reprompt_task: Optional[asyncio.Task] = None
    goodbye_task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        """Cancel both deferred actions, never the task doing the cancelling."""
        tasks = [t for t in (self.reprompt_task, self.goodbye_task) if t and not t.done()]
        if not tasks:
            return
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()


@dataclass
class CallSession:
    """Everything the system knows about one live call."""
    call_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    caller_number: str = ""
    stream_sid: str = ""
    call_sid: str = ""
    phase: Phase = Phase.IDLE
    slots: SlotSet = field(default_factory=SlotSet)
    confirmed_snapshot: str = ""
    pending: Optional[PendingQuestion] = None
    last_ask_fingerprint: str = ""
    last_ask_at: float = 0.0
    awaiting_anything_else: bool = False
    turn_count: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def duration_seconds(self) -> float:
        return time.time() - self.started_at
