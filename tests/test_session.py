"""
Tests for the booking form and the FAQ table.
"""

import pytest

from src.receptionist import faq
from src.receptionist.session import CallSession, SlotSet


class TestSlotSet:

    def test_merge_reports_only_real_changes(self):
        slots = SlotSet(service="haircut")

        changed = slots.merge({"service": "haircut", "date": "2026-10-19", "name": "  "})

        assert changed == ["date"]
        assert slots.service == "haircut"
        assert slots.name == ""

    def test_merge_never_clears(self):
        slots = SlotSet(service="haircut", name="Sam")
        assert slots.merge({"service": "", "name": None}) == []
        assert slots.service == "haircut"
        assert slots.name == "Sam"

    def test_merge_is_idempotent(self):
        slots = SlotSet()
        updates = {"service": "combo", "time": "3:00 PM"}
        assert slots.merge(updates) == ["service", "time"]
        assert slots.merge(updates) == []

    @pytest.mark.parametrize(
        "fields,expected",
        [
            ({}, "service"),
            ({"service": "haircut"}, "datetime"),
            ({"service": "haircut", "time": "3:00 PM"}, "date"),
            ({"service": "haircut", "date": "2026-10-19"}, "time"),
            ({"service": "haircut", "date": "2026-10-19", "time": "3:00 PM"}, "name"),
            ({"service": "haircut", "date": "2026-10-19", "time": "3:00 PM", "name": "Sam"}, "phone"),
            (
                {"service": "haircut", "date": "2026-10-19", "time": "3:00 PM", "name": "Sam", "phone": "5551234567"},
                "done",
            ),
        ],
    )
    def test_next_missing_order(self, fields, expected):
        assert SlotSet(**fields).next_missing() == expected

    def test_snapshot_tracks_content(self):
        a = SlotSet(service="haircut")
        b = a.copy()
        assert a.snapshot() == b.snapshot()

        b.merge({"name": "Sam"})
        assert a.snapshot() != b.snapshot()
        assert a.name == ""

    def test_sessions_do_not_share_slots(self):
        first, second = CallSession(), CallSession()
        first.slots.merge({"service": "combo"})
        assert second.slots.service == ""
        assert first.call_id != second.call_id


class TestFaq:

    def test_price_for_each_service(self):
        assert faq.price_answer("haircut") == "A haircut is thirty dollars."
        assert faq.price_answer("beard trim") == "A beard trim is fifteen dollars."
        assert faq.price_answer("combo") == "A combo is forty dollars."

    def test_unknown_service_gets_full_price_list(self):
        assert faq.answer("prices", "massage") == faq.ALL_PRICES_ANSWER

    def test_topics(self):
        assert faq.answer("HOURS") == faq.HOURS_ANSWER
        assert faq.answer("SERVICES") == faq.SERVICES_ANSWER
        assert faq.answer("LOCATION") == faq.LOCATION_ANSWER
        assert faq.answer("") == faq.FALLBACK_ANSWER

    def test_durations(self):
        assert faq.duration_minutes("combo") == 45
        assert faq.duration_minutes("beard trim") == 15
        assert faq.duration_minutes("") == faq.DEFAULT_DURATION_MINUTES
