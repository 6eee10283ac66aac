"""
Tests for schedule arithmetic and time parsing.
"""

from datetime import datetime, timedelta, timezone

import pytest

from shared.models import Appointment, AppointmentStatus
from shared.scheduling import (
    collision_context,
    find_collision,
    parse_appointment_datetime,
    sort_newest_first,
)

T0 = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


def appt(id: str, start: datetime, minutes: int = 60, provider: str = "p1", status: str = "PENDING") -> Appointment:
    return Appointment(
        id=id,
        provider_id=provider,
        client_id="c1",
        date_time=start,
        duration_minutes=minutes,
        status=status,
        created_at=T0 - timedelta(days=1),
    )


class TestFindCollision:
    """Tests for the overlap scan."""

    @pytest.fixture
    def schedule(self) -> list[Appointment]:
        return [
            appt("a", T0),                                          # 09:00-10:00
            appt("b", T0 + timedelta(hours=2), 30),                 # 11:00-11:30
            appt("c", T0 + timedelta(hours=4), status="CANCELLED"),  # 13:00-14:00, inactive
            appt("d", T0 + timedelta(hours=5), status="REJECTED"),   # 14:00-15:00, inactive
            appt("e", T0, provider="p2"),                           # other provider
        ]

    def test_overlap_detected(self, schedule):
        conflict = find_collision(schedule, "p1", T0 + timedelta(minutes=30), 30)
        assert conflict is not None
        assert conflict.id == "a"

    def test_back_to_back_allowed(self, schedule):
        assert find_collision(schedule, "p1", T0 + timedelta(hours=1), 60) is None
        assert find_collision(schedule, "p1", T0 - timedelta(hours=1), 60) is None

    def test_other_provider_ignored(self, schedule):
        assert find_collision(schedule, "p3", T0, 60) is None

    @pytest.mark.parametrize("hours", [4, 5])
    def test_inactive_appointments_do_not_block(self, schedule, hours):
        assert find_collision(schedule, "p1", T0 + timedelta(hours=hours), 60) is None

    def test_completed_still_blocks(self):
        schedule = [appt("a", T0, status=AppointmentStatus.COMPLETED)]
        assert find_collision(schedule, "p1", T0, 15) is not None

    def test_exclude_self(self, schedule):
        assert find_collision(schedule, "p1", T0 + timedelta(minutes=15), 30, exclude_id="a") is None

    def test_naive_start_treated_as_utc(self, schedule):
        conflict = find_collision(schedule, "p1", datetime(2024, 3, 15, 9, 30), 15)
        assert conflict is not None


class TestCollisionContext:
    def test_describes_both_intervals(self):
        conflicting = appt("a", T0)
        context = collision_context("p1", T0 + timedelta(minutes=30), 30, conflicting)

        assert context["operation"] == "create_appointment"
        assert context["provider_id"] == "p1"
        assert context["requested_start"] == "2024-03-15T09:30:00+00:00"
        assert context["requested_end"] == "2024-03-15T10:00:00+00:00"
        assert context["conflicting_appointment_id"] == "a"
        assert context["conflicting_end"] == "2024-03-15T10:00:00+00:00"

    def test_without_conflicting(self):
        context = collision_context("p1", T0, 60, operation="reschedule_appointment")
        assert context["operation"] == "reschedule_appointment"
        assert "conflicting_appointment_id" not in context


class TestParseAppointmentDatetime:
    """Best-effort parsing of human-readable times."""

    NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.NOW

    def test_iso_string(self):
        assert parse_appointment_datetime("2024-03-15T09:00:00Z", self.now) == T0

    def test_phrase_with_at(self):
        assert parse_appointment_datetime("March 15, 2024 at 9:00 AM", self.now) == T0

    def test_offset_is_normalised(self):
        assert parse_appointment_datetime("2024-03-15T11:00:00+02:00", self.now) == T0

    @pytest.mark.parametrize("raw", ["", "   ", "next blue moon", None])
    def test_unparseable_falls_back_to_now(self, raw):
        assert parse_appointment_datetime(raw, self.now) == self.NOW


def test_sort_newest_first():
    items = [appt("a", T0), appt("b", T0 + timedelta(days=1)), appt("c", T0 - timedelta(days=1))]
    assert [a.id for a in sort_newest_first(items, key=lambda a: a.date_time)] == ["b", "a", "c"]
