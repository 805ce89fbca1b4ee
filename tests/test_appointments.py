"""
Tests for appointment booking, conflicts, status changes and reminders.
"""
from datetime import timedelta, timezone

import pytest

from clinic import appointment_service, queue_service
from clinic.appointment_service import (
    change_appointment_status,
    check_availability,
    create_appointment,
    delete_appointment,
    find_due_reminders,
    get_appointment,
    list_appointments,
    send_due_reminders,
    update_appointment,
)
from clinic.errors import BusinessRuleError, InvalidStateError, SlotUnavailableError
from clinic.models import AppointmentStatus
from clinic.queue_service import list_queue_entries

from .conftest import BASE_TIME


def book(tenant_id, user_id, patient_id, doctor_id, start=BASE_TIME, **kwargs):
    return create_appointment(tenant_id, user_id, patient_id=patient_id, doctor_id=doctor_id, start_time=start, **kwargs)


class TestBooking:
    """Creazione appuntamenti."""

    def test_defaults(self, tenant_id, user_id, patient_id, doctor_id):
        """End time is start + 30 minutes, reminder 24 hours before, status scheduled."""
        a = book(tenant_id, user_id, patient_id, doctor_id)

        assert a["status"] == "scheduled"
        assert a["duration"] == 30
        assert a["end_time"] == (BASE_TIME + timedelta(minutes=30)).isoformat()
        assert a["reminder_scheduled_at"] == (BASE_TIME - timedelta(hours=24)).isoformat()
        assert a["appointment_date"] == BASE_TIME.date().isoformat()
        assert a["patient_name"] == "Mario Rossi"
        assert a["doctor_name"] == "Gregory House"

    def test_explicit_end_time_sets_duration(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id, end_time=BASE_TIME + timedelta(minutes=45))
        assert a["duration"] == 45

    def test_timezone_aware_start_is_stored_as_utc(self, tenant_id, user_id, patient_id, doctor_id):
        start = BASE_TIME.replace(tzinfo=timezone(timedelta(hours=1)))
        a = book(tenant_id, user_id, patient_id, doctor_id, start=start)
        assert a["start_time"] == (BASE_TIME - timedelta(hours=1)).isoformat()

    def test_end_before_start_is_rejected(self, tenant_id, user_id, patient_id, doctor_id):
        with pytest.raises(BusinessRuleError):
            book(tenant_id, user_id, patient_id, doctor_id, end_time=BASE_TIME - timedelta(minutes=10))

    def test_end_time_sets_too_short_a_duration(self, tenant_id, user_id, patient_id, doctor_id):
        with pytest.raises(BusinessRuleError, match="Duration must be between 5 and 480 minutes"):
            book(tenant_id, user_id, patient_id, doctor_id, end_time=BASE_TIME + timedelta(minutes=1))

    def test_duration_longer_than_a_working_day(self, tenant_id, user_id, patient_id, doctor_id):
        with pytest.raises(BusinessRuleError, match="Duration must be between"):
            book(tenant_id, user_id, patient_id, doctor_id, duration=481)

    def test_unknown_patient(self, tenant_id, user_id, doctor_id):
        with pytest.raises(BusinessRuleError, match="Patient not found"):
            book(tenant_id, user_id, "missing", doctor_id)

    def test_non_doctor_user_is_rejected(self, tenant_id, user_id, patient_id):
        """The clinic admin is not a doctor."""
        with pytest.raises(BusinessRuleError, match="Doctor not found or inactive"):
            book(tenant_id, user_id, patient_id, user_id)


class TestConflicts:
    """Sovrapposizioni nell'agenda del medico."""

    def test_overlap_is_rejected(self, tenant_id, user_id, patient_id, doctor_id, make_patient):
        book(tenant_id, user_id, patient_id, doctor_id)
        with pytest.raises(SlotUnavailableError, match="Time slot is not available"):
            book(tenant_id, user_id, make_patient(), doctor_id, start=BASE_TIME + timedelta(minutes=15))

    def test_enclosing_interval_is_rejected(self, tenant_id, user_id, patient_id, doctor_id, make_patient):
        book(tenant_id, user_id, patient_id, doctor_id, start=BASE_TIME + timedelta(minutes=10), duration=10)
        with pytest.raises(SlotUnavailableError):
            book(tenant_id, user_id, make_patient(), doctor_id, duration=60)

    def test_back_to_back_slots_are_allowed(self, tenant_id, user_id, patient_id, doctor_id, make_patient):
        """Intervals are half-open: 09:00-09:30 and 09:30-10:00 do not overlap."""
        book(tenant_id, user_id, patient_id, doctor_id)
        a = book(tenant_id, user_id, make_patient(), doctor_id, start=BASE_TIME + timedelta(minutes=30))
        assert a["status"] == "scheduled"

    def test_other_doctor_is_free(self, tenant_id, user_id, patient_id, doctor_id, other_doctor_id):
        book(tenant_id, user_id, patient_id, doctor_id)
        a = book(tenant_id, user_id, patient_id, other_doctor_id)
        assert a["doctor_id"] == other_doctor_id

    def test_cancelled_appointment_frees_the_slot(self, tenant_id, user_id, patient_id, doctor_id, make_patient):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.CANCELLED)
        b = book(tenant_id, user_id, make_patient(), doctor_id)
        assert b["id"] != a["id"]

    def test_deleted_appointment_frees_the_slot(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        assert delete_appointment(tenant_id, a["id"], user_id) is True
        assert check_availability(tenant_id, doctor_id, BASE_TIME, duration=30) is True
        assert get_appointment(tenant_id, a["id"], user_id) is None

    def test_check_availability(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        assert check_availability(tenant_id, doctor_id, BASE_TIME + timedelta(minutes=20)) is False
        assert check_availability(tenant_id, doctor_id, BASE_TIME + timedelta(minutes=30)) is True
        # la modifica dello stesso appuntamento non va in conflitto con se stesso
        assert check_availability(tenant_id, doctor_id, BASE_TIME, exclude_appointment_id=a["id"]) is True


class TestUpdate:
    """Modifica di appuntamenti."""

    def test_reschedule_recomputes_end_and_reminder(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        new_start = BASE_TIME + timedelta(hours=2)

        u = update_appointment(tenant_id, a["id"], user_id, {"start_time": new_start})

        assert u["start_time"] == new_start.isoformat()
        assert u["end_time"] == (new_start + timedelta(minutes=30)).isoformat()
        assert u["reminder_scheduled_at"] == (new_start - timedelta(hours=24)).isoformat()

    def test_moving_onto_same_slot_is_allowed(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        u = update_appointment(tenant_id, a["id"], user_id, {"duration": 45})
        assert u["end_time"] == (BASE_TIME + timedelta(minutes=45)).isoformat()

    def test_update_end_time_checks_duration(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        with pytest.raises(BusinessRuleError, match="Duration must be between"):
            update_appointment(tenant_id, a["id"], user_id, {"end_time": BASE_TIME + timedelta(minutes=1)})
        assert get_appointment(tenant_id, a["id"], user_id)["duration"] == 30

    def test_reschedule_into_conflict(self, tenant_id, user_id, patient_id, doctor_id, make_patient):
        book(tenant_id, user_id, patient_id, doctor_id)
        b = book(tenant_id, user_id, make_patient(), doctor_id, start=BASE_TIME + timedelta(hours=1))
        with pytest.raises(SlotUnavailableError):
            update_appointment(tenant_id, b["id"], user_id, {"start_time": BASE_TIME + timedelta(minutes=10)})

    @pytest.mark.parametrize("final", [AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED])
    def test_final_appointments_are_read_only(self, tenant_id, user_id, patient_id, doctor_id, final):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        change_appointment_status(tenant_id, a["id"], user_id, final)

        with pytest.raises(InvalidStateError, match="Cannot update completed or cancelled appointment"):
            update_appointment(tenant_id, a["id"], user_id, {"notes": "late"})
        with pytest.raises(InvalidStateError):
            change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.SCHEDULED)

    def test_missing_returns_none(self, tenant_id, user_id):
        assert update_appointment(tenant_id, "missing", user_id, {"notes": "x"}) is None


class TestStatus:
    """Cambi di stato e coda."""

    def test_timestamps(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)

        arrived = change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.ARRIVED)
        assert arrived["arrived_at"] is not None

        started = change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.IN_PROGRESS)
        assert started["started_at"] is not None

        done = change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.COMPLETED, notes="ok")
        assert done["completed_at"] is not None
        assert done["notes"] == "ok"

    def test_cancel_records_reason_and_user(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        c = appointment_service.cancel_appointment(tenant_id, a["id"], user_id, "Patient called")
        assert c["status"] == "cancelled"
        assert c["cancelled_by"] == user_id
        assert c["cancellation_reason"] == "Patient called"

    def test_in_queue_twice_creates_one_entry(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)

        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.IN_QUEUE)
        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.IN_QUEUE)

        entries = list_queue_entries(tenant_id, user_id, appointment_id=a["id"])
        assert entries["pagination"]["total"] == 1
        e = entries["items"][0]
        assert e["status"] == "waiting"
        assert e["position"] == 1
        assert e["queue_number"] == "Q-0001"
        assert e["display_name"] == "Mario Rossi"

    def test_queue_failure_does_not_block_status(self, tenant_id, user_id, patient_id, doctor_id, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("queue down")

        monkeypatch.setattr(queue_service, "enqueue_appointment", broken)
        a = book(tenant_id, user_id, patient_id, doctor_id)

        result = change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.IN_QUEUE)

        assert result["status"] == "in_queue"
        assert list_queue_entries(tenant_id, user_id, appointment_id=a["id"])["pagination"]["total"] == 0

    def test_completion_closes_queue_entry(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.IN_QUEUE)
        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.IN_PROGRESS)

        e = list_queue_entries(tenant_id, user_id, appointment_id=a["id"])["items"][0]
        assert e["status"] == "in_progress"
        assert e["position"] == 0

        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.COMPLETED)
        e = list_queue_entries(tenant_id, user_id, appointment_id=a["id"])["items"][0]
        assert e["status"] == "completed"

    def test_no_show_frees_the_slot(self, tenant_id, user_id, patient_id, doctor_id, make_patient):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.NO_SHOW)
        assert check_availability(tenant_id, doctor_id, BASE_TIME) is True

    @pytest.mark.parametrize(
        "back_to", [AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED, AppointmentStatus.IN_QUEUE]
    )
    def test_no_show_cannot_return_onto_a_rebooked_slot(
        self, tenant_id, user_id, patient_id, doctor_id, make_patient, back_to
    ):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.NO_SHOW)
        book(tenant_id, user_id, make_patient(), doctor_id)

        with pytest.raises(SlotUnavailableError, match="Time slot is not available"):
            change_appointment_status(tenant_id, a["id"], user_id, back_to)

        assert get_appointment(tenant_id, a["id"], user_id)["status"] == "no_show"
        assert list_queue_entries(tenant_id, user_id, appointment_id=a["id"])["pagination"]["total"] == 0

    def test_no_show_can_return_while_the_slot_is_free(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.NO_SHOW)

        back = change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.ARRIVED)

        assert back["status"] == "arrived"
        assert check_availability(tenant_id, doctor_id, BASE_TIME) is False


class TestListing:
    """Elenco e filtri."""

    def test_filters_and_order(self, tenant_id, user_id, patient_id, doctor_id, other_doctor_id):
        late = book(tenant_id, user_id, patient_id, doctor_id, start=BASE_TIME + timedelta(hours=3))
        early = book(tenant_id, user_id, patient_id, doctor_id)
        book(tenant_id, user_id, patient_id, other_doctor_id)
        book(tenant_id, user_id, patient_id, doctor_id, start=BASE_TIME + timedelta(days=1))

        result = list_appointments(tenant_id, user_id, doctor_id=doctor_id, day=BASE_TIME.date())

        assert [a["id"] for a in result["items"]] == [early["id"], late["id"]]
        assert result["pagination"]["total"] == 2

    def test_status_filter_and_pagination(self, tenant_id, user_id, patient_id, doctor_id):
        ids = [book(tenant_id, user_id, patient_id, doctor_id, start=BASE_TIME + timedelta(hours=i))["id"] for i in range(3)]
        change_appointment_status(tenant_id, ids[0], user_id, AppointmentStatus.CONFIRMED)

        confirmed = list_appointments(tenant_id, user_id, status=AppointmentStatus.CONFIRMED)
        assert [a["id"] for a in confirmed["items"]] == [ids[0]]

        page2 = list_appointments(tenant_id, user_id, page=2, limit=2)
        assert page2["pagination"] == {
            "page": 2, "limit": 2, "total": 3, "total_pages": 2, "has_next": False, "has_prev": True,
        }
        assert len(page2["items"]) == 1

    def test_tenant_isolation(self, tenant_id, user_id, patient_id, doctor_id):
        from clinic.auth_service import register_clinic

        a = book(tenant_id, user_id, patient_id, doctor_id)
        other_tenant, other_user = register_clinic("Other Clinic", "other", "other123")

        assert get_appointment(other_tenant, a["id"], other_user) is None
        assert list_appointments(other_tenant, other_user)["pagination"]["total"] == 0


class TestReminders:
    """Promemoria (simulazione sistema esterno)."""

    def test_due_window(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        reminder_at = BASE_TIME - timedelta(hours=24)

        assert find_due_reminders(now=reminder_at - timedelta(hours=2)) == []
        due = find_due_reminders(now=reminder_at - timedelta(minutes=30))
        assert [r["appointment_id"] for r in due] == [a["id"]]
        assert due[0]["tenant_name"] == "Test Clinic"
        assert due[0]["patient_phone"] == "+39 333 1234567"

    def test_send_marks_sent_once(self, tenant_id, user_id, patient_id, doctor_id):
        book(tenant_id, user_id, patient_id, doctor_id)
        now = BASE_TIME - timedelta(hours=23)

        assert send_due_reminders(now) == 1
        assert send_due_reminders(now) == 0
        assert find_due_reminders(now=now) == []

    def test_cancelled_appointments_get_no_reminder(self, tenant_id, user_id, patient_id, doctor_id):
        a = book(tenant_id, user_id, patient_id, doctor_id)
        change_appointment_status(tenant_id, a["id"], user_id, AppointmentStatus.CANCELLED)
        assert find_due_reminders(now=BASE_TIME) == []
