from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from . import config, queue_service
from .audit import audit_read, audit_write
from .auth_models import User
from .auth_service import get_active_doctor
from .db import db_session
from .errors import BusinessRuleError, InvalidStateError, SlotUnavailableError
from .models import (
    BLOCKING_STATUSES,
    FINAL_STATUSES,
    Appointment,
    AppointmentStatus,
    AppointmentType,
    AuditAction,
    Tenant,
    utcnow,
)
from .pagination import paginate
from .patient_service import find_patient

logger = logging.getLogger(__name__)


def as_utc_naive(value: datetime) -> datetime:
    """Le date arrivano anche con fuso (es. ...Z): nel DB sono UTC senza tzinfo."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def appointment_to_dict(a: Appointment) -> dict[str, Any]:
    def iso(v: datetime | date | None) -> str | None:
        return v.isoformat() if v else None

    return {
        "id": a.id,
        "patient_id": a.patient_id,
        "patient_name": a.patient.full_name if a.patient else None,
        "doctor_id": a.doctor_id,
        "doctor_name": a.doctor.full_name if a.doctor else None,
        "appointment_date": iso(a.appointment_date),
        "start_time": iso(a.start_time),
        "end_time": iso(a.end_time),
        "duration": a.duration,
        "type": a.type.value,
        "status": a.status.value,
        "reason": a.reason,
        "notes": a.notes,
        "reminder_scheduled_at": iso(a.reminder_scheduled_at),
        "reminder_sent": a.reminder_sent,
        "arrived_at": iso(a.arrived_at),
        "started_at": iso(a.started_at),
        "completed_at": iso(a.completed_at),
        "cancelled_at": iso(a.cancelled_at),
        "cancelled_by": a.cancelled_by,
        "cancellation_reason": a.cancellation_reason,
        "is_active": a.is_active,
        "created_at": iso(a.created_at),
    }


# =========================
# Disponibilità
# =========================
def is_time_slot_available(
    s: Session,
    tenant_id: str,
    doctor_id: str,
    start: datetime,
    end: datetime,
    exclude_appointment_id: str | None = None,
) -> bool:
    """
    Nessuna sovrapposizione [start, end) con appuntamenti del medico ancora in agenda
    (programmati, confermati, arrivati, in coda, in corso).
    """
    conds = [
        Appointment.tenant_id == tenant_id,
        Appointment.doctor_id == doctor_id,
        Appointment.status.in_(BLOCKING_STATUSES),
        Appointment.deleted_at.is_(None),
        # sovrapposizione [start,end)
        Appointment.start_time < end,
        Appointment.end_time > start,
    ]
    if exclude_appointment_id:
        conds.append(Appointment.id != exclude_appointment_id)

    overlap = select(Appointment.id).where(and_(*conds)).limit(1)
    return s.execute(overlap).first() is None


def ensure_slot_for_status(s: Session, app: Appointment, status: AppointmentStatus) -> None:
    """
    Un appuntamento che torna in agenda (es. da NO_SHOW) deve ritrovare lo slot libero:
    nel frattempo può essere stato prenotato da un altro paziente.
    """
    if app.status in BLOCKING_STATUSES or status not in BLOCKING_STATUSES:
        return
    if not is_time_slot_available(s, app.tenant_id, app.doctor_id, app.start_time, app.end_time, app.id):
        raise SlotUnavailableError("Time slot is not available")


def _check_duration(duration: int) -> None:
    if not config.MIN_APPOINTMENT_MINUTES <= duration <= config.MAX_APPOINTMENT_MINUTES:
        raise BusinessRuleError(
            f"Duration must be between {config.MIN_APPOINTMENT_MINUTES} "
            f"and {config.MAX_APPOINTMENT_MINUTES} minutes"
        )


def check_availability(
    tenant_id: str,
    doctor_id: str,
    start: datetime,
    end: datetime | None = None,
    duration: int | None = None,
    exclude_appointment_id: str | None = None,
) -> bool:
    start = as_utc_naive(start)
    end = as_utc_naive(end) if end else start + timedelta(minutes=duration or config.DEFAULT_APPOINTMENT_MINUTES)
    with db_session() as s:
        return is_time_slot_available(s, tenant_id, doctor_id, start, end, exclude_appointment_id)


def find_appointment(s: Session, tenant_id: str, appointment_id: str) -> Appointment | None:
    return s.execute(
        select(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.tenant_id == tenant_id,
            Appointment.deleted_at.is_(None),
        )
    ).scalar_one_or_none()


# =========================
# Prenotazione
# =========================
def create_appointment(
    tenant_id: str,
    user_id: str,
    patient_id: str,
    doctor_id: str,
    start_time: datetime,
    appointment_date: date | None = None,
    end_time: datetime | None = None,
    duration: int | None = None,
    appointment_type: AppointmentType | None = None,
    reason: str | None = None,
    notes: str | None = None,
    reminder_scheduled_at: datetime | None = None,
) -> dict[str, Any]:
    """
    Use case: prenotare un appuntamento.
    - paziente e medico devono appartenere al tenant
    - fine = inizio + durata (default 30 minuti) se non indicata
    - verifica sovrapposizioni nell'agenda del medico
    - promemoria di default 24 ore prima
    """
    start = as_utc_naive(start_time)
    if end_time is not None:
        end = as_utc_naive(end_time)
        if duration is None:
            duration = int((end - start).total_seconds() // 60)
    else:
        duration = duration or config.DEFAULT_APPOINTMENT_MINUTES
        end = start + timedelta(minutes=duration)

    if end <= start:
        raise BusinessRuleError("End time must be after start time")
    _check_duration(duration)

    with db_session() as s:
        if not find_patient(s, tenant_id, patient_id):
            raise BusinessRuleError("Patient not found", code="NOT_FOUND")

        if not get_active_doctor(s, tenant_id, doctor_id):
            raise BusinessRuleError("Doctor not found or inactive", code="NOT_FOUND")

        if not is_time_slot_available(s, tenant_id, doctor_id, start, end):
            raise SlotUnavailableError("Time slot is not available")

        if reminder_scheduled_at is not None:
            reminder_at = as_utc_naive(reminder_scheduled_at)
        else:
            reminder_at = start - timedelta(hours=config.REMINDER_LEAD_HOURS)

        app = Appointment(
            tenant_id=tenant_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            appointment_date=appointment_date or start.date(),
            start_time=start,
            end_time=end,
            duration=duration,
            type=appointment_type or AppointmentType.CONSULTATION,
            status=AppointmentStatus.SCHEDULED,
            reason=reason,
            notes=notes,
            reminder_scheduled_at=reminder_at,
            reminder_sent=False,
        )
        s.add(app)
        s.flush()

        audit_write(s, "appointment", app.id, user_id, tenant_id, AuditAction.CREATE)
        logger.info("Appointment %s booked for doctor %s at %s", app.id, doctor_id, start.isoformat())
        return appointment_to_dict(app)


def get_appointment(tenant_id: str, appointment_id: str, user_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        app = find_appointment(s, tenant_id, appointment_id)
        if not app:
            return None
        audit_read(s, "appointment", appointment_id, user_id, tenant_id)
        return appointment_to_dict(app)


def list_appointments(
    tenant_id: str,
    user_id: str,
    patient_id: str | None = None,
    doctor_id: str | None = None,
    status: AppointmentStatus | None = None,
    appointment_type: AppointmentType | None = None,
    is_active: bool | None = None,
    day: date | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        q = (
            select(Appointment)
            .options(selectinload(Appointment.patient), selectinload(Appointment.doctor))
            .where(Appointment.tenant_id == tenant_id, Appointment.deleted_at.is_(None))
        )
        if patient_id:
            q = q.where(Appointment.patient_id == patient_id)
        if doctor_id:
            q = q.where(Appointment.doctor_id == doctor_id)
        if status:
            q = q.where(Appointment.status == status)
        if appointment_type:
            q = q.where(Appointment.type == appointment_type)
        if is_active is not None:
            q = q.where(Appointment.is_active.is_(is_active))

        # giorno singolo oppure intervallo
        if day:
            q = q.where(Appointment.appointment_date == day)
        else:
            if start_date:
                q = q.where(Appointment.appointment_date >= start_date)
            if end_date:
                q = q.where(Appointment.appointment_date <= end_date)

        q = q.order_by(Appointment.appointment_date.asc(), Appointment.start_time.asc())

        rows, meta = paginate(s, q, page, limit)
        audit_read(
            s, "appointment", "list", user_id, tenant_id,
            meta={
                "count": len(rows),
                "doctorId": doctor_id,
                "patientId": patient_id,
                "status": status.value if status else None,
                "date": day.isoformat() if day else None,
            },
        )
        return {"items": [appointment_to_dict(a) for a in rows], "pagination": meta}


def update_appointment(
    tenant_id: str, appointment_id: str, user_id: str, changes: dict[str, Any]
) -> dict[str, Any] | None:
    """
    Modifica di un appuntamento non concluso.
    Il paziente non si cambia; se cambiano orario, durata o medico si ricontrollano i conflitti.
    """
    with db_session() as s:
        app = find_appointment(s, tenant_id, appointment_id)
        if not app:
            return None

        if app.status in FINAL_STATUSES:
            raise InvalidStateError("Cannot update completed or cancelled appointment")

        before = appointment_to_dict(app)

        doctor_id = changes.get("doctor_id") or app.doctor_id
        if doctor_id != app.doctor_id and not get_active_doctor(s, tenant_id, doctor_id):
            raise BusinessRuleError("Doctor not found or inactive", code="NOT_FOUND")

        start = as_utc_naive(changes["start_time"]) if changes.get("start_time") else app.start_time
        duration = changes.get("duration") or app.duration
        if changes.get("start_time") or changes.get("duration"):
            end = start + timedelta(minutes=duration)
        elif changes.get("end_time"):
            end = as_utc_naive(changes["end_time"])
            duration = int((end - start).total_seconds() // 60)
        else:
            end = app.end_time

        if end <= start:
            raise BusinessRuleError("End time must be after start time")
        _check_duration(duration)

        time_changed = any(changes.get(k) for k in ("start_time", "end_time", "duration", "appointment_date", "doctor_id"))
        if time_changed and not is_time_slot_available(s, tenant_id, doctor_id, start, end, app.id):
            raise SlotUnavailableError("Time slot is not available")

        if start != app.start_time and not app.reminder_sent and "reminder_scheduled_at" not in changes:
            app.reminder_scheduled_at = start - timedelta(hours=config.REMINDER_LEAD_HOURS)

        app.doctor_id = doctor_id
        app.start_time = start
        app.end_time = end
        app.duration = duration
        if changes.get("appointment_date"):
            app.appointment_date = changes["appointment_date"]
        elif changes.get("start_time"):
            app.appointment_date = start.date()

        for field in ("type", "reason", "notes"):
            if changes.get(field) is not None:
                setattr(app, field, changes[field])
        if changes.get("reminder_scheduled_at"):
            app.reminder_scheduled_at = as_utc_naive(changes["reminder_scheduled_at"])

        s.flush()
        s.refresh(app)
        after = appointment_to_dict(app)
        audit_write(s, "appointment", app.id, user_id, tenant_id, AuditAction.UPDATE, {"before": before, "after": after})
        return after


# =========================
# Stato
# =========================
def _enqueue_best_effort(s: Session, app: Appointment, user_id: str, now: datetime) -> None:
    # la voce di coda non deve mai bloccare il cambio di stato
    try:
        with s.begin_nested():
            queue_service.enqueue_appointment(s, app, user_id, now)
    except Exception:
        logger.exception("Failed to create queue entry for appointment %s", app.id)


def _sync_queue_best_effort(s: Session, app: Appointment, status: AppointmentStatus, user_id: str, now: datetime) -> None:
    try:
        with s.begin_nested():
            queue_service.sync_entry_with_appointment(s, app, status, user_id, now)
    except Exception:
        logger.exception("Failed to update queue entry for appointment %s", app.id)


def change_appointment_status(
    tenant_id: str,
    appointment_id: str,
    user_id: str,
    status: AppointmentStatus,
    notes: str | None = None,
    cancellation_reason: str | None = None,
) -> dict[str, Any] | None:
    """
    Cambio di stato con i relativi timestamp:
    - ARRIVED: arrived_at
    - IN_QUEUE: crea la voce di coda (idempotente, best effort)
    - IN_PROGRESS / COMPLETED: started_at / completed_at
    - CANCELLED: cancelled_at, cancelled_by, motivo
    COMPLETED e CANCELLED sono definitivi.
    """
    with db_session() as s:
        app = find_appointment(s, tenant_id, appointment_id)
        if not app:
            return None

        if app.status in FINAL_STATUSES:
            raise InvalidStateError("Cannot change status of completed or cancelled appointment")
        ensure_slot_for_status(s, app, status)

        before = appointment_to_dict(app)
        now = utcnow()

        if status == AppointmentStatus.ARRIVED:
            app.arrived_at = now
        elif status == AppointmentStatus.IN_QUEUE:
            _enqueue_best_effort(s, app, user_id, now)
        elif status == AppointmentStatus.IN_PROGRESS:
            app.started_at = now
            _sync_queue_best_effort(s, app, status, user_id, now)
        elif status == AppointmentStatus.COMPLETED:
            app.completed_at = now
            _sync_queue_best_effort(s, app, status, user_id, now)
        elif status == AppointmentStatus.CANCELLED:
            app.cancelled_at = now
            app.cancelled_by = user_id
            if cancellation_reason:
                app.cancellation_reason = cancellation_reason
            _sync_queue_best_effort(s, app, status, user_id, now)

        app.status = status
        if notes:
            app.notes = notes
        s.flush()

        after = appointment_to_dict(app)
        audit_write(
            s, "appointment", app.id, user_id, tenant_id, AuditAction.UPDATE,
            {"before": before, "after": after}, {"statusChange": status.value},
        )
        return after


def cancel_appointment(tenant_id: str, appointment_id: str, user_id: str, reason: str) -> dict[str, Any] | None:
    return change_appointment_status(
        tenant_id, appointment_id, user_id, AppointmentStatus.CANCELLED, cancellation_reason=reason
    )


def delete_appointment(tenant_id: str, appointment_id: str, user_id: str) -> bool:
    with db_session() as s:
        app = find_appointment(s, tenant_id, appointment_id)
        if not app:
            return False
        app.deleted_at = utcnow()
        app.is_active = False
        audit_write(s, "appointment", app.id, user_id, tenant_id, AuditAction.DELETE)
        return True


# =========================
# Promemoria (simulazione sistema esterno)
# =========================
def find_due_reminders(now: datetime | None = None, window_minutes: int | None = None) -> list[dict[str, Any]]:
    """
    Appuntamenti ancora programmati/confermati con promemoria scaduto
    o in scadenza entro la finestra (default 60 minuti), non ancora inviato.
    """
    now = now or utcnow()
    window = window_minutes if window_minutes is not None else config.REMINDER_WINDOW_MINUTES
    limit_at = now + timedelta(minutes=window)

    with db_session() as s:
        q = (
            select(Appointment, Tenant.name.label("tenant_name"))
            .join(Tenant, Tenant.id == Appointment.tenant_id)
            .options(selectinload(Appointment.patient), selectinload(Appointment.doctor))
            .where(
                Appointment.reminder_scheduled_at <= limit_at,
                Appointment.reminder_sent.is_(False),
                Appointment.status.in_((AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)),
                Appointment.deleted_at.is_(None),
            )
            .order_by(Appointment.start_time.asc())
        )
        jobs = []
        for app, tenant_name in s.execute(q).all():
            doctor: User = app.doctor
            jobs.append(
                {
                    "appointment_id": app.id,
                    "tenant_id": app.tenant_id,
                    "tenant_name": tenant_name,
                    "patient_id": app.patient_id,
                    "patient_name": app.patient.full_name,
                    "patient_phone": app.patient.phone,
                    "patient_email": app.patient.email,
                    "doctor_name": doctor.full_name,
                    "start_time": app.start_time.isoformat(),
                }
            )
        return jobs


def mark_reminder_sent(tenant_id: str, appointment_id: str) -> bool:
    with db_session() as s:
        app = find_appointment(s, tenant_id, appointment_id)
        if not app or app.reminder_sent:
            return False
        app.reminder_sent = True
        app.reminder_sent_at = utcnow()
        return True


def send_due_reminders(now: datetime | None = None) -> int:
    """Invio simulato: il promemoria finisce nel log e viene marcato come inviato."""
    sent = 0
    for job in find_due_reminders(now):
        logger.info(
            "[REMINDER] %s: %s with %s at %s",
            job["tenant_name"], job["patient_name"], job["doctor_name"], job["start_time"],
        )
        if mark_reminder_sent(job["tenant_id"], job["appointment_id"]):
            sent += 1
    return sent
