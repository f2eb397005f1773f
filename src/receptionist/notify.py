"""
Fire-and-forget notification webhooks.

FAQ lookups and spoken booking confirmations are posted to optional webhook
URLs. Posting never blocks the conversation and failures are only logged.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
import structlog

from src.receptionist import faq
from src.receptionist.config import get_config
from src.receptionist.extract import mask_phone
from src.receptionist.session import SlotSet

logger = structlog.get_logger(__name__)


def appointment_window(slots: SlotSet, tz_name: str = "") -> tuple[str, str]:
    """
    ISO start/end for a confirmed booking in the business timezone.

    Returns empty strings if the date or time did not resolve.
    """
    try:
        start = datetime.strptime(f"{slots.date} {slots.time}", "%Y-%m-%d %I:%M %p")
    except ValueError:
        return "", ""

    if tz_name:
        try:
            start = start.replace(tzinfo=ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone for booking window", timezone=tz_name)

    end = start + timedelta(minutes=faq.duration_minutes(slots.service))
    return start.isoformat(), end.isoformat()


class WebhookNotifier:
    """
    Posts JSON notifications in background tasks.

    Tasks are tracked so the gateway can cancel anything still in flight when
    the call ends.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(timeout=10)
        self._owns_client = client is None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def notify_faq(self, call_id: str, topic: str, service: str = "") -> None:
        if not self.config.faq_webhook_url:
            return
        payload = {"call_id": call_id, "topic": topic, "service": service}
        self._spawn(self.config.faq_webhook_url, payload, kind="faq")

    def notify_booking(self, call_id: str, slots: SlotSet) -> None:
        if not self.config.booking_webhook_url:
            return
        start, end = appointment_window(slots, self.config.biz_timezone)
        payload = {
            "call_id": call_id,
            "service": slots.service,
            "date": slots.date,
            "time": slots.time,
            "name": slots.name,
            "phone": slots.phone,
            "start": start,
            "end": end,
        }
        self._spawn(self.config.booking_webhook_url, payload, kind="booking")

    def _spawn(self, url: str, payload: dict[str, Any], *, kind: str) -> None:
        task = asyncio.create_task(self.post(url, payload, kind=kind))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def post(self, url: str, payload: dict[str, Any], *, kind: str = "") -> bool:
        """POST one payload; returns False on any HTTP failure."""
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Webhook failed",
                kind=kind,
                call_id=payload.get("call_id"),
                error=str(e),
            )
            return False

        logger.info(
            "Webhook delivered",
            kind=kind,
            call_id=payload.get("call_id"),
            phone=mask_phone(str(payload.get("phone", ""))),
            status_code=response.status_code,
        )
        return True

    async def close(self, grace_seconds: float = 2.0) -> None:
        """Give in-flight posts a short grace period, then cancel the rest."""
        if self._tasks:
            _, still_running = await asyncio.wait(set(self._tasks), timeout=grace_seconds)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        self._tasks.clear()
        if self._owns_client:
            await self._client.aclose()
