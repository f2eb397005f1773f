"""
Fixed answers for the questions callers ask most.

Prices come from a lookup table keyed by the normalized service name so a
price answer can never name a service the shop does not offer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class Service:
    name: str
    price_spoken: str
    duration_minutes: int


SERVICES: Dict[str, Service] = {
    "haircut": Service("haircut", "thirty dollars", 30),
    "beard trim": Service("beard trim", "fifteen dollars", 15),
    "combo": Service("combo", "forty dollars", 45),
}

DEFAULT_DURATION_MINUTES = 30

HOURS_ANSWER = "We're open Monday to Friday, nine A M to five P M. Closed weekends."
ALL_PRICES_ANSWER = "Haircut is thirty dollars, beard trim is fifteen, and the combo is forty."
SERVICES_ANSWER = "We offer haircuts, beard trims, and the combo."
LOCATION_ANSWER = "We're at one two three Blueberry Lane."
FALLBACK_ANSWER = "Happy to help."


def price_answer(service: str = "") -> str:
    info = SERVICES.get(service)
    if info is None:
        return ALL_PRICES_ANSWER
    return f"A {info.name} is {info.price_spoken}."


def answer(topic: str, service: str = "") -> str:
    """Spoken answer for an FAQ topic; unknown topics get a neutral fallback."""
    topic = (topic or "").upper()
    if topic == "HOURS":
        return HOURS_ANSWER
    if topic == "PRICES":
        return price_answer(service)
    if topic == "SERVICES":
        return SERVICES_ANSWER
    if topic == "LOCATION":
        return LOCATION_ANSWER
    return FALLBACK_ANSWER


def duration_minutes(service: str) -> int:
    info = SERVICES.get(service)
    return info.duration_minutes if info else DEFAULT_DURATION_MINUTES
