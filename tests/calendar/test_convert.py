"""Tests for schedule <-> Google event conversion."""

from __future__ import annotations

from datetime import date, time, timedelta
from uuid import uuid4

import pytest

from coup.calendar.convert import compute_minutes, from_external_event, to_external_event
from coup.calendar.google import GoogleEvent, parse_google_datetime
from coup.calendar.models import ScheduleDraft

pytestmark = pytest.mark.unit


def _event(**payload) -> GoogleEvent:
    payload.setdefault("id", "evt-1")
    payload.setdefault("start", {"dateTime": "2025-03-10T09:00:00+09:00"})
    payload.setdefault("end", {"dateTime": "2025-03-10T10:00:00+09:00"})
    return GoogleEvent.model_validate(payload)


class TestComputeMinutes:
    def test_clock_difference(self):
        assert compute_minutes(time(9, 0), time(10, 30)) == 90

    @pytest.mark.parametrize(
        ("start", "end"),
        [(time(23, 0), time(1, 0)), (time(10, 0), time(9, 59)), (time(12, 0), time(0, 0))],
    )
    def test_negative_span_is_floored_at_zero(self, start, end):
        assert compute_minutes(start, end) == 0

    def test_missing_bound_is_zero(self):
        assert compute_minutes(None, time(10, 0)) == 0
        assert compute_minutes(time(9, 0), None) == 0


class TestFromExternalEvent:
    def test_new_event_fields(self):
        fields = from_external_event(_event(id="e1", summary="[Acme] kickoff"))

        assert fields.date == date(2025, 3, 10)
        assert fields.start_time == time(9, 0)
        assert fields.end_time == time(10, 0)
        assert fields.description == "kickoff"
        assert fields.project_name == "Acme"
        assert fields.external_event_id == "e1"
        assert fields.all_day is False

    def test_utc_instants_render_in_org_timezone(self):
        fields = from_external_event(
            _event(
                start={"dateTime": "2025-03-09T23:30:00Z"},
                end={"dateTime": "2025-03-10T00:30:00Z"},
            ),
            timezone="Asia/Seoul",
        )

        assert fields.date == date(2025, 3, 10)
        assert fields.start_time == time(8, 30)
        assert fields.end_time == time(9, 30)

    def test_offsetless_datetime_uses_boundary_timezone(self):
        fields = from_external_event(
            _event(
                start={"dateTime": "2025-03-10T09:00:00", "timeZone": "UTC"},
                end={"dateTime": "2025-03-10T10:00:00", "timeZone": "UTC"},
            ),
            timezone="Asia/Seoul",
        )

        assert fields.start_time == time(18, 0)

    def test_private_project_name_overrides_title(self):
        fields = from_external_event(
            _event(
                summary="[Old] review",
                extendedProperties={"private": {"projectName": "New", "projectId": "p-1"}},
            )
        )

        assert fields.project_name == "New"
        assert fields.project_id == "p-1"
        assert fields.description == "review"

    def test_title_without_prefix_has_no_project(self):
        fields = from_external_event(_event(summary="standup"))

        assert fields.project_name is None
        assert fields.description == "standup"

    def test_empty_title_falls_back_to_event_description(self):
        fields = from_external_event(_event(summary="", description="notes"))

        assert fields.description == "notes"

    def test_all_day_event_has_no_times_and_is_read_only(self):
        fields = from_external_event(
            _event(start={"date": "2025-03-10"}, end={"date": "2025-03-11"}, creator={"self": True})
        )

        assert fields.all_day is True
        assert fields.start_time is None
        assert fields.end_time is None
        assert fields.is_read_only is True

    @pytest.mark.parametrize(
        ("extra", "read_only"),
        [
            ({"creator": {"self": True}}, False),
            ({"organizer": {"self": True}}, False),
            ({"guestsCanModify": True}, False),
            ({"creator": {"email": "someone@example.com"}}, True),
            ({}, True),
        ],
    )
    def test_read_only_detection(self, extra, read_only):
        assert from_external_event(_event(**extra)).is_read_only is read_only

    def test_missing_id_is_rejected(self):
        with pytest.raises(ValueError, match="id"):
            from_external_event(_event(id=""))

    def test_missing_start_is_rejected(self):
        event = GoogleEvent.model_validate({"id": "evt-1", "summary": "x"})
        with pytest.raises(ValueError, match="start"):
            from_external_event(event)

    def test_invalid_datetime_is_rejected(self):
        with pytest.raises(ValueError, match="invalid dateTime"):
            from_external_event(_event(start={"dateTime": "not-a-date"}))


class TestToExternalEvent:
    def test_title_and_correlation_properties(self):
        schedule_id, project_id = uuid4(), uuid4()
        draft = ScheduleDraft(
            id=schedule_id,
            date=date(2025, 3, 10),
            start_time=time(14, 0),
            end_time=time(15, 30),
            description="design review",
            project_id=project_id,
        )

        event = to_external_event(draft, project_name="Acme", timezone="Asia/Seoul")

        assert event.summary == "[Acme] design review"
        assert event.start.date_time == "2025-03-10T14:00:00"
        assert event.start.time_zone == "Asia/Seoul"
        assert event.end.date_time == "2025-03-10T15:30:00"
        assert event.private_properties == {
            "projectId": str(project_id),
            "projectName": "Acme",
            "scheduleId": str(schedule_id),
        }

    def test_bare_description_without_project(self):
        draft = ScheduleDraft(id=uuid4(), date=date(2025, 3, 10), description="focus time")

        event = to_external_event(draft)

        assert event.summary == "focus time"
        assert event.private_properties["projectName"] == ""
        assert event.private_properties["projectId"] == ""

    def test_default_start_and_end_from_minutes(self):
        draft = ScheduleDraft(id=uuid4(), date=date(2025, 3, 10), minutes=150)

        event = to_external_event(draft, default_title="Work")

        assert event.summary == "Work"
        assert event.start.date_time == "2025-03-10T09:00:00"
        assert event.end.date_time == "2025-03-10T11:30:00"

    def test_end_past_midnight_lands_on_next_day(self):
        draft = ScheduleDraft(
            id=uuid4(), date=date(2025, 3, 10), start_time=time(23, 0), minutes=120
        )

        event = to_external_event(draft)

        assert event.start.date_time == "2025-03-10T23:00:00"
        assert event.end.date_time == "2025-03-11T01:00:00"

    def test_explicit_end_before_start_rolls_over(self):
        draft = ScheduleDraft(
            id=uuid4(),
            date=date(2025, 3, 10),
            start_time=time(22, 30),
            end_time=time(0, 30),
            minutes=120,
        )

        event = to_external_event(draft)

        start = parse_google_datetime(event.start.date_time)
        end = parse_google_datetime(event.end.date_time)
        assert end - start == timedelta(hours=2)

    def test_payload_uses_wire_names(self):
        draft = ScheduleDraft(id=uuid4(), date=date(2025, 3, 10), description="x")

        payload = to_external_event(draft).to_payload()

        assert "extendedProperties" in payload
        assert payload["start"]["timeZone"] == "Asia/Seoul"
        assert "id" not in payload


class TestTitleRoundTrip:
    @pytest.mark.parametrize("description", ["kickoff", "[draft] notes", "", "  spaced  "])
    def test_project_name_and_description_survive(self, description):
        draft = ScheduleDraft(
            id=uuid4(),
            date=date(2025, 3, 10),
            start_time=time(9, 0),
            end_time=time(10, 0),
            description=description,
        )
        payload = to_external_event(draft, project_name="Acme", default_title="Work").to_payload()
        payload["id"] = "round-trip"

        fields = from_external_event(GoogleEvent.model_validate(payload))

        assert fields.project_name == "Acme"
        assert not fields.description.startswith("[Acme]")
        assert fields.date == draft.date
        assert fields.start_time == draft.start_time
        assert fields.end_time == draft.end_time
