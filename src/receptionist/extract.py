"""
Intent and slot extraction.

One finalized transcript -> one JSON-mode LLM call -> a validated
`Classification`. The model only reports values *newly stated* in that
utterance; the dialogue engine merges them into the booking.

Normalization of service, date, time and phone text is deterministic and
lives here so it can be tested without any network access.
"""

import re
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel, ValidationError, field_validator

logger = structlog.get_logger(__name__)


class Intent(str, Enum):
    """What the caller wants from this utterance."""
    FAQ = "FAQ"
    BOOK = "BOOK"
    DECLINE_BOOK = "DECLINE_BOOK"
    TRANSFER = "TRANSFER"
    SMALLTALK = "SMALLTALK"
    UNKNOWN = "UNKNOWN"


class Classification(BaseModel):
    """Structured result of classifying one utterance."""

    intent: Intent = Intent.UNKNOWN
    faq_topic: str = ""
    service: str = ""
    date: str = ""
    time: str = ""
    name: str = ""
    phone: str = ""

    @field_validator("faq_topic", "service", "date", "time", "name", "phone", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("faq_topic")
    @classmethod
    def _upper_topic(cls, value: str) -> str:
        return value.upper()

    @field_validator("intent", mode="before")
    @classmethod
    def _coerce_intent(cls, value: Any) -> Any:
        if value is None:
            return Intent.UNKNOWN
        if isinstance(value, str):
            value = value.strip().upper()
            return value or Intent.UNKNOWN
        return value


CLASSIFIER_PROMPT = """Return STRICT JSON:
{
 "intent": "FAQ" | "BOOK" | "DECLINE_BOOK" | "TRANSFER" | "SMALLTALK" | "UNKNOWN",
 "faq_topic": "HOURS" | "PRICES" | "SERVICES" | "LOCATION" | "",
 "service": "",
 "date": "",
 "time": "",
 "name": "",
 "phone": ""
}
Rules:
- Detect booking only if the user asks to schedule, book, reschedule, or gives a date/time.
- DECLINE_BOOK when the user no longer wants to book.
- TRANSFER when the user asks for a person, the owner, or a barber.
- Only fill fields the user states in THIS message; leave the rest blank.
- Keep date words as spoken ("today", "tomorrow", "friday") or as YYYY-MM-DD.
- If the user says "this number" or "my number", leave phone empty (we fill from caller ID).
- Keep values minimal; leave blank if unsure.
- Do not invent names. Do not suggest alternate names."""


def parse_classification(raw: str) -> Classification:
    """
    Validate a raw model reply against the fixed schema.

    Malformed JSON or schema violations degrade to an empty UNKNOWN result.
    """
    if not raw:
        return Classification()

    try:
        return Classification.model_validate_json(raw)
    except ValidationError as e:
        logger.warning("Classifier reply rejected", error_count=e.error_count(), raw=raw[:200])
        return Classification()


class IntentClassifier:
    """Single-shot intent + slot classifier backed by the LLM client."""

    def __init__(self, llm: Any):
        self._llm = llm

    async def classify(self, transcript: str) -> Classification:
        raw = await self._llm.complete(CLASSIFIER_PROMPT, transcript, json_mode=True)
        result = parse_classification(raw)
        logger.info(
            "Intent classified",
            transcript=redact_phone_numbers(transcript),
            intent=result.intent.value,
            faq_topic=result.faq_topic,
            service=result.service,
            date=result.date,
            time=result.time,
            has_name=bool(result.name),
            has_phone=bool(result.phone),
        )
        return result


# --- Normalization -------------------------------------------------------

_COMBO_RE = re.compile(r"\b(combo|both|hair\s*cut\s*(?:\+|and|&)\s*beard|hair\s*and\s*beard)\b")
_BEARD_RE = re.compile(r"\bbeard\b|\bline\s*up\b")
_HAIRCUT_RE = re.compile(r"\bhair\s*cut\b")

_CALLER_NUMBER_RE = re.compile(r"\b(this|my)\s+(number|phone)\b", re.IGNORECASE)

_LOG_PHONE_RE = re.compile(r"(?:\+?1[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}")

WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}
_WEEKDAY_RE = re.compile(r"^(?:on\s+|this\s+|next\s+)?(" + "|".join(WEEKDAYS) + r")$")

MONTHS = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]
_MONTH_LOOKUP = {m[:3].lower(): i + 1 for i, m in enumerate(MONTHS)}
_MONTH_DAY_RE = re.compile(r"^([a-z]{3,9})\.?\s+(\d{1,2})(?:st|nd|rd|th)?$")
_NUMERIC_DATE_RE = re.compile(r"^(\d{1,2})[/\-](\d{1,2})(?:[/\-](\d{2,4}))?$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

_TIME_RE = re.compile(r"^(\d{1,2})(?::?(\d{2}))?\s*(am|pm)?$")

TOMORROW_WORDS = ("tomorrow", "tmr", "tmrw", "tmmrw")


def today_in_timezone(tz_name: str) -> date:
    """Current calendar date in the business timezone."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, using server local date", timezone=tz_name)
        return date.today()
    return datetime.now(tz).date()


def normalize_service(text: str) -> str:
    """Map free text onto `haircut`, `beard trim` or `combo`."""
    if not text:
        return ""
    t = text.lower()
    if _COMBO_RE.search(t):
        return "combo"
    if _BEARD_RE.search(t):
        return "beard trim"
    if _HAIRCUT_RE.search(t):
        return "haircut"
    return ""


def resolve_weekday(weekday: str, today: date) -> Optional[date]:
    """
    Next occurrence of `weekday` strictly after `today`.

    Naming today's own weekday always means the same day next week.
    """
    target = WEEKDAYS.get((weekday or "").strip().lower())
    if target is None:
        return None
    delta = (target - today.weekday()) % 7
    if delta == 0:
        delta = 7
    return today + timedelta(days=delta)


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _month_day_to_date(text: str, today: date) -> Optional[date]:
    m = _MONTH_DAY_RE.match(text)
    if m:
        month = _MONTH_LOOKUP.get(m.group(1)[:3])
        if not month:
            return None
        resolved = _safe_date(today.year, month, int(m.group(2)))
        if resolved and resolved < today:
            resolved = _safe_date(today.year + 1, month, int(m.group(2)))
        return resolved

    m = _NUMERIC_DATE_RE.match(text)
    if m:
        month, day = int(m.group(1)), int(m.group(2))
        if m.group(3):
            year = int(m.group(3))
            if year < 100:
                year += 2000
            return _safe_date(year, month, day)
        resolved = _safe_date(today.year, month, day)
        if resolved and resolved < today:
            resolved = _safe_date(today.year + 1, month, day)
        return resolved

    return None


def normalize_date(text: str, today: date) -> str:
    """
    Resolve spoken date text to ISO `YYYY-MM-DD`.

    Relative words and weekday names are resolved against `today`; text that
    cannot be resolved passes through unchanged (assumed already absolute).
    """
    if not text:
        return ""
    raw = text.strip()
    t = raw.lower().rstrip(".!,")

    if t == "today":
        return today.isoformat()
    if t in TOMORROW_WORDS:
        return (today + timedelta(days=1)).isoformat()

    m = _WEEKDAY_RE.match(t)
    if m:
        return resolve_weekday(m.group(1), today).isoformat()

    resolved = _month_day_to_date(t, today)
    if resolved:
        return resolved.isoformat()

    return raw


def normalize_time(text: str) -> str:
    """
    Canonicalize a clock time to 12-hour `H:MM AM|PM`.

    Hours without a meridiem follow shop hours: 1-7 are afternoon, 8-11 morning.
    """
    if not text:
        return ""
    raw = text.strip()
    t = raw.lower().replace(".", "")
    t = re.sub(r"\s*o'?clock\b", "", t).strip()
    if t == "noon":
        return "12:00 PM"

    m = _TIME_RE.match(t)
    if not m:
        return raw

    hour = int(m.group(1))
    minute = int(m.group(2) or 0)
    meridiem = m.group(3)
    if minute > 59:
        return raw

    if meridiem:
        if not 1 <= hour <= 12:
            return raw
        return f"{hour}:{minute:02d} {meridiem.upper()}"

    if hour == 0:
        return f"12:{minute:02d} AM"
    if hour >= 24:
        return raw
    if hour > 12:
        return f"{hour - 12}:{minute:02d} PM"
    if hour == 12 or hour <= 7:
        return f"{hour}:{minute:02d} PM"
    return f"{hour}:{minute:02d} AM"


def normalize_phone(text: str) -> str:
    """Keep digits; 10 or more digits reduce to the last 10, fewer mean absent."""
    if not text:
        return ""
    digits = re.sub(r"\D", "", text)
    return digits[-10:] if len(digits) >= 10 else ""


def mentions_caller_number(transcript: str) -> bool:
    """True when the caller refers to the number they are calling from."""
    return bool(_CALLER_NUMBER_RE.search(transcript or ""))


def mask_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    return f"***{digits[-4:]}" if digits else ""


def redact_phone_numbers(text: str) -> str:
    """Mask phone-like digit runs in free text before it is logged."""
    if not text:
        return ""
    return _LOG_PHONE_RE.sub(lambda m: f"[PHONE-{mask_phone(m.group(0))}]", text)


# --- Spoken rendering ----------------------------------------------------

def ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def format_date_spoken(iso_date: str) -> str:
    """`2026-10-19` -> `October 19th`; unresolved text is returned as-is."""
    m = _ISO_DATE_RE.match(iso_date or "")
    if not m:
        return iso_date or ""
    month, day = int(m.group(2)), int(m.group(3))
    if not 1 <= month <= 12:
        return iso_date
    return f"{MONTHS[month - 1]} {ordinal(day)}"


def human_when(iso_date: str, time_text: str) -> str:
    spoken_date = format_date_spoken(iso_date)
    return f"{spoken_date} at {time_text}" if time_text else spoken_date
