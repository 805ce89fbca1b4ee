"""
Coda d'attesa per medico.

Numero progressivo per tenant (Q-0001, Q-0002...), posizione 1-based tra le voci
in attesa dello stesso medico, attesa stimata = (posizione - 1) x durata media visita.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from . import config
from .audit import audit_read, audit_write
from .auth_service import get_active_doctor
from .db import db_session
from .errors import BusinessRuleError, InvalidStateError
from .models import (
    ACTIVE_QUEUE_STATUSES,
    FINAL_STATUSES,
    Appointment,
    AppointmentStatus,
    AuditAction,
    QueueEntry,
    QueuePriority,
    QueueStatus,
    QueueType,
    utcnow,
)
from .pagination import paginate
from .patient_service import find_patient

logger = logging.getLogger(__name__)

_QUEUE_NUMBER_RE = re.compile(r"Q-(\d+)")

# urgent prima di tutto, low per ultimo
_PRIORITY_RANK = case(
    (QueueEntry.priority == QueuePriority.URGENT, 0),
    (QueueEntry.priority == QueuePriority.HIGH, 1),
    (QueueEntry.priority == QueuePriority.NORMAL, 2),
    else_=3,
)

_CLOSED_QUEUE_STATUSES = (QueueStatus.COMPLETED, QueueStatus.CANCELLED)


def queue_entry_to_dict(e: QueueEntry) -> dict[str, Any]:
    def iso(v: datetime | None) -> str | None:
        return v.isoformat() if v else None

    return {
        "id": e.id,
        "type": e.type.value,
        "appointment_id": e.appointment_id,
        "patient_id": e.patient_id,
        "doctor_id": e.doctor_id,
        "queue_number": e.queue_number,
        "position": e.position,
        "priority": e.priority.value,
        "status": e.status.value,
        "joined_at": iso(e.joined_at),
        "called_at": iso(e.called_at),
        "called_by": e.called_by,
        "started_at": iso(e.started_at),
        "completed_at": iso(e.completed_at),
        "estimated_wait_time": e.estimated_wait_time,
        "actual_wait_time": e.actual_wait_time,
        "display_name": e.display_name,
        "reason": e.reason,
        "notes": e.notes,
        "is_active": e.is_active,
    }


# =========================
# Numero, posizione, attesa
# =========================
def next_queue_number(s: Session, tenant_id: str) -> str:
    """Numero successivo all'ultima voce creata nel tenant; Q-0001 se non c'è nulla di leggibile."""
    latest = s.scalars(
        select(QueueEntry.queue_number)
        .where(QueueEntry.tenant_id == tenant_id)
        # a parità di created_at: Q-10000 viene dopo Q-9999 (prima la lunghezza, poi il testo)
        .order_by(
            QueueEntry.created_at.desc(),
            func.length(QueueEntry.queue_number).desc(),
            QueueEntry.queue_number.desc(),
        )
        .limit(1)
    ).first()
    if not latest:
        return "Q-0001"

    m = _QUEUE_NUMBER_RE.search(latest)
    if not m:
        return "Q-0001"
    return f"Q-{int(m.group(1)) + 1:04d}"


def count_waiting(s: Session, tenant_id: str, doctor_id: str) -> int:
    return s.execute(
        select(func.count(QueueEntry.id)).where(
            QueueEntry.tenant_id == tenant_id,
            QueueEntry.doctor_id == doctor_id,
            QueueEntry.status == QueueStatus.WAITING,
            QueueEntry.deleted_at.is_(None),
        )
    ).scalar_one()


def next_position(s: Session, tenant_id: str, doctor_id: str) -> int:
    return count_waiting(s, tenant_id, doctor_id) + 1


def estimate_wait_minutes(position: int) -> int:
    return max(0, (position - 1) * config.AVG_CONSULTATION_MINUTES)


def _waiting_entries(s: Session, tenant_id: str, doctor_id: str) -> list[QueueEntry]:
    q = (
        select(QueueEntry)
        .where(
            QueueEntry.tenant_id == tenant_id,
            QueueEntry.doctor_id == doctor_id,
            QueueEntry.status == QueueStatus.WAITING,
            QueueEntry.deleted_at.is_(None),
        )
        .order_by(_PRIORITY_RANK, QueueEntry.position.asc(), QueueEntry.joined_at.asc())
    )
    return list(s.scalars(q))


def _renumber(entries: list[QueueEntry]) -> None:
    for i, e in enumerate(entries, start=1):
        e.position = i
        e.estimated_wait_time = estimate_wait_minutes(i)


def recalculate_positions(s: Session, tenant_id: str, doctor_id: str) -> None:
    """
    Rinumera 1..N le voci in attesa del medico:
    priorità (urgent > high > normal > low), poi posizione attuale, poi ingresso.
    """
    s.flush()
    _renumber(_waiting_entries(s, tenant_id, doctor_id))
    s.flush()


def find_active_entry_for_appointment(s: Session, tenant_id: str, appointment_id: str) -> QueueEntry | None:
    return s.scalars(
        select(QueueEntry)
        .where(
            QueueEntry.tenant_id == tenant_id,
            QueueEntry.appointment_id == appointment_id,
            QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
            QueueEntry.deleted_at.is_(None),
        )
        .limit(1)
    ).first()


def _new_entry(
    s: Session,
    tenant_id: str,
    doctor_id: str,
    patient_id: str,
    entry_type: QueueType,
    now: datetime,
    **extra: Any,
) -> QueueEntry:
    # numero e posizione calcolati nella stessa transazione dell'insert:
    # il vincolo unico (tenant_id, queue_number) fa fallire un eventuale doppione concorrente
    queue_number = next_queue_number(s, tenant_id)
    position = next_position(s, tenant_id, doctor_id)

    entry = QueueEntry(
        tenant_id=tenant_id,
        type=entry_type,
        patient_id=patient_id,
        doctor_id=doctor_id,
        queue_number=queue_number,
        position=position,
        status=QueueStatus.WAITING,
        joined_at=now,
        created_at=now,
        estimated_wait_time=estimate_wait_minutes(position),
        **extra,
    )
    s.add(entry)
    s.flush()
    recalculate_positions(s, tenant_id, doctor_id)
    return entry


def enqueue_appointment(s: Session, appointment: Appointment, user_id: str, now: datetime | None = None) -> QueueEntry | None:
    """
    Crea la voce di coda per un appuntamento passato a IN_QUEUE.
    Idempotente: se esiste già una voce attiva per l'appuntamento non fa nulla (ritorna None).
    """
    existing = find_active_entry_for_appointment(s, appointment.tenant_id, appointment.id)
    if existing:
        return None

    now = now or utcnow()
    entry = _new_entry(
        s,
        appointment.tenant_id,
        appointment.doctor_id,
        appointment.patient_id,
        QueueType.APPOINTMENT,
        now,
        appointment_id=appointment.id,
        priority=QueuePriority.NORMAL,
        display_name=appointment.patient.full_name if appointment.patient else None,
        reason=appointment.reason,
    )
    audit_write(s, "queue", entry.id, user_id, appointment.tenant_id, AuditAction.CREATE, meta={"appointmentId": appointment.id})
    logger.info("Appointment %s queued as %s (position %s)", appointment.id, entry.queue_number, entry.position)
    return entry


# =========================
# Use case
# =========================
def create_queue_entry(
    tenant_id: str,
    user_id: str,
    entry_type: QueueType,
    patient_id: str,
    doctor_id: str,
    appointment_id: str | None = None,
    priority: QueuePriority | None = None,
    reason: str | None = None,
    display_name: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        patient = find_patient(s, tenant_id, patient_id)
        if not patient:
            raise BusinessRuleError("Patient not found", code="NOT_FOUND")

        if not get_active_doctor(s, tenant_id, doctor_id):
            raise BusinessRuleError("Doctor not found or inactive", code="NOT_FOUND")

        if entry_type == QueueType.APPOINTMENT:
            if not appointment_id:
                raise BusinessRuleError("Appointment ID is required when type is appointment")

            app = s.execute(
                select(Appointment).where(
                    Appointment.id == appointment_id,
                    Appointment.tenant_id == tenant_id,
                    Appointment.patient_id == patient_id,
                    Appointment.doctor_id == doctor_id,
                    Appointment.deleted_at.is_(None),
                )
            ).scalar_one_or_none()
            if not app:
                raise BusinessRuleError("Appointment not found or does not match patient/doctor")
            if app.status in FINAL_STATUSES:
                raise InvalidStateError("Cannot queue a completed or cancelled appointment")
            if find_active_entry_for_appointment(s, tenant_id, appointment_id):
                raise BusinessRuleError("Appointment is already in queue", code="DUPLICATE_ERROR")

            _ensure_slot(s, app, AppointmentStatus.IN_QUEUE)
            app.status = AppointmentStatus.IN_QUEUE

        entry = _new_entry(
            s,
            tenant_id,
            doctor_id,
            patient_id,
            entry_type,
            utcnow(),
            appointment_id=appointment_id if entry_type == QueueType.APPOINTMENT else None,
            priority=priority or QueuePriority.NORMAL,
            display_name=display_name or patient.full_name,
            reason=reason,
            notes=notes,
        )
        audit_write(s, "queue", entry.id, user_id, tenant_id, AuditAction.CREATE)
        return queue_entry_to_dict(entry)


def _find_entry(s: Session, tenant_id: str, entry_id: str) -> QueueEntry | None:
    return s.execute(
        select(QueueEntry).where(
            QueueEntry.id == entry_id,
            QueueEntry.tenant_id == tenant_id,
            QueueEntry.deleted_at.is_(None),
        )
    ).scalar_one_or_none()


def get_queue_entry(tenant_id: str, entry_id: str, user_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        e = _find_entry(s, tenant_id, entry_id)
        if not e:
            return None
        audit_read(s, "queue", entry_id, user_id, tenant_id)
        return queue_entry_to_dict(e)


def list_queue_entries(
    tenant_id: str,
    user_id: str,
    doctor_id: str | None = None,
    patient_id: str | None = None,
    status: QueueStatus | None = None,
    priority: QueuePriority | None = None,
    entry_type: QueueType | None = None,
    appointment_id: str | None = None,
    is_active: bool | None = None,
    day: date | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        q = select(QueueEntry).where(QueueEntry.tenant_id == tenant_id, QueueEntry.deleted_at.is_(None))
        if doctor_id:
            q = q.where(QueueEntry.doctor_id == doctor_id)
        if patient_id:
            q = q.where(QueueEntry.patient_id == patient_id)
        if status:
            q = q.where(QueueEntry.status == status)
        if priority:
            q = q.where(QueueEntry.priority == priority)
        if entry_type:
            q = q.where(QueueEntry.type == entry_type)
        if appointment_id:
            q = q.where(QueueEntry.appointment_id == appointment_id)
        if is_active is not None:
            q = q.where(QueueEntry.is_active.is_(is_active))
        if day:
            start = datetime.combine(day, datetime.min.time())
            q = q.where(QueueEntry.joined_at >= start, QueueEntry.joined_at < start + timedelta(days=1))

        if status == QueueStatus.WAITING:
            q = q.order_by(_PRIORITY_RANK, QueueEntry.position.asc(), QueueEntry.joined_at.asc())
        else:
            q = q.order_by(QueueEntry.joined_at.desc())

        rows, meta = paginate(s, q, page, limit)
        audit_read(
            s, "queue", "list", user_id, tenant_id,
            meta={"count": len(rows), "doctorId": doctor_id, "status": status.value if status else None},
        )
        return {"items": [queue_entry_to_dict(e) for e in rows], "pagination": meta}


def get_doctor_queue(tenant_id: str, doctor_id: str, user_id: str) -> list[dict[str, Any]]:
    """Coda corrente del medico: solo voci in attesa, in ordine di chiamata."""
    with db_session() as s:
        entries = _waiting_entries(s, tenant_id, doctor_id)
        audit_read(s, "queue", f"doctor-{doctor_id}", user_id, tenant_id)
        return [queue_entry_to_dict(e) for e in entries]


def _move_to_position(s: Session, entry: QueueEntry, position: int) -> None:
    others = [e for e in _waiting_entries(s, entry.tenant_id, entry.doctor_id) if e.id != entry.id]
    idx = max(0, min(position - 1, len(others)))
    others.insert(idx, entry)
    _renumber(others)


def update_queue_entry(tenant_id: str, entry_id: str, user_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
    with db_session() as s:
        e = _find_entry(s, tenant_id, entry_id)
        if not e:
            return None

        if e.status in _CLOSED_QUEUE_STATUSES:
            raise InvalidStateError("Cannot update completed or cancelled queue entry")

        before = queue_entry_to_dict(e)
        for field in ("reason", "display_name", "notes"):
            if field in changes:
                setattr(e, field, changes[field])

        reorder = False
        if changes.get("priority") is not None and changes["priority"] != e.priority:
            e.priority = changes["priority"]
            reorder = True

        if changes.get("position") is not None and e.status == QueueStatus.WAITING:
            s.flush()
            _move_to_position(s, e, int(changes["position"]))
            reorder = True

        if reorder:
            recalculate_positions(s, tenant_id, e.doctor_id)

        s.flush()
        after = queue_entry_to_dict(e)
        audit_write(s, "queue", e.id, user_id, tenant_id, AuditAction.UPDATE, {"before": before, "after": after})
        return after


def _ensure_slot(s: Session, app: Appointment, status: AppointmentStatus) -> None:
    # import locale: appointment_service importa già questo modulo
    from .appointment_service import ensure_slot_for_status

    ensure_slot_for_status(s, app, status)


def _sync_appointment(s: Session, entry: QueueEntry, status: AppointmentStatus, user_id: str, now: datetime) -> None:
    if not entry.appointment_id:
        return
    app = s.get(Appointment, entry.appointment_id)
    if not app or app.status in FINAL_STATUSES:
        return

    _ensure_slot(s, app, status)
    app.status = status
    if status == AppointmentStatus.IN_PROGRESS:
        app.started_at = now
    elif status == AppointmentStatus.COMPLETED:
        app.completed_at = now
    elif status == AppointmentStatus.CANCELLED:
        app.cancelled_at = now
        app.cancelled_by = user_id


def change_queue_status(
    tenant_id: str,
    entry_id: str,
    user_id: str,
    status: QueueStatus,
    notes: str | None = None,
) -> dict[str, Any] | None:
    """
    Cambio stato della voce di coda, con timestamp e allineamento dell'appuntamento collegato.
    Le voci che escono dall'attesa vanno in posizione 0 e la coda del medico viene rinumerata.
    """
    with db_session() as s:
        e = _find_entry(s, tenant_id, entry_id)
        if not e:
            return None

        if e.status in _CLOSED_QUEUE_STATUSES:
            raise InvalidStateError("Cannot change status of completed or cancelled queue entry")

        before = queue_entry_to_dict(e)
        now = utcnow()
        was_waiting = e.status == QueueStatus.WAITING

        if status == QueueStatus.WAITING:
            if not was_waiting:
                e.position = next_position(s, tenant_id, e.doctor_id)
        elif status == QueueStatus.CALLED:
            e.called_at = now
            e.called_by = user_id
        elif status == QueueStatus.IN_PROGRESS:
            e.started_at = now
            if e.joined_at:
                e.actual_wait_time = round((now - e.joined_at).total_seconds() / 60)
            _sync_appointment(s, e, AppointmentStatus.IN_PROGRESS, user_id, now)
        elif status == QueueStatus.COMPLETED:
            e.completed_at = now
            _sync_appointment(s, e, AppointmentStatus.COMPLETED, user_id, now)
        elif status == QueueStatus.CANCELLED:
            _sync_appointment(s, e, AppointmentStatus.CANCELLED, user_id, now)

        e.status = status
        if status != QueueStatus.WAITING:
            e.position = 0
        if notes:
            e.notes = notes

        recalculate_positions(s, tenant_id, e.doctor_id)

        after = queue_entry_to_dict(e)
        audit_write(
            s, "queue", e.id, user_id, tenant_id, AuditAction.UPDATE,
            {"before": before, "after": after}, {"statusChange": status.value},
        )
        return after


def reorder_queue(tenant_id: str, doctor_id: str, user_id: str, entry_ids: list[str]) -> list[dict[str, Any]]:
    """Le voci indicate vanno in testa nell'ordine dato; le altre in attesa le seguono."""
    if not entry_ids:
        raise BusinessRuleError("At least one queue entry ID is required")

    with db_session() as s:
        waiting = _waiting_entries(s, tenant_id, doctor_id)
        by_id = {e.id: e for e in waiting}
        if len(set(entry_ids)) != len(entry_ids) or any(i not in by_id for i in entry_ids):
            raise BusinessRuleError("Some queue entries not found or do not belong to this doctor")

        ordered = [by_id[i] for i in entry_ids] + [e for e in waiting if e.id not in set(entry_ids)]
        _renumber(ordered)
        recalculate_positions(s, tenant_id, doctor_id)

        audit_write(
            s, "queue", f"doctor-{doctor_id}", user_id, tenant_id, AuditAction.UPDATE,
            meta={"action": "reorder", "entryIds": entry_ids},
        )
        return [queue_entry_to_dict(e) for e in _waiting_entries(s, tenant_id, doctor_id)]


def remove_queue_entry(tenant_id: str, entry_id: str, user_id: str) -> bool:
    """Soft delete: la voce esce dalla coda e l'appuntamento collegato, se ancora IN_QUEUE, torna SCHEDULED."""
    with db_session() as s:
        e = _find_entry(s, tenant_id, entry_id)
        if not e:
            return False

        if e.appointment_id:
            app = s.get(Appointment, e.appointment_id)
            if app and app.status == AppointmentStatus.IN_QUEUE:
                app.status = AppointmentStatus.SCHEDULED

        e.deleted_at = utcnow()
        e.is_active = False
        e.status = QueueStatus.CANCELLED
        e.position = 0

        recalculate_positions(s, tenant_id, e.doctor_id)
        audit_write(s, "queue", e.id, user_id, tenant_id, AuditAction.DELETE)
        return True


def get_queue_statistics(tenant_id: str, doctor_id: str, user_id: str) -> dict[str, Any]:
    today = datetime.combine(utcnow().date(), datetime.min.time())

    with db_session() as s:
        counts = dict(
            s.execute(
                select(QueueEntry.status, func.count(QueueEntry.id))
                .where(
                    QueueEntry.tenant_id == tenant_id,
                    QueueEntry.doctor_id == doctor_id,
                    QueueEntry.deleted_at.is_(None),
                )
                .group_by(QueueEntry.status)
            ).all()
        )

        avg_wait = s.execute(
            select(func.avg(QueueEntry.actual_wait_time)).where(
                QueueEntry.tenant_id == tenant_id,
                QueueEntry.doctor_id == doctor_id,
                QueueEntry.status == QueueStatus.COMPLETED,
                QueueEntry.completed_at >= today,
                QueueEntry.actual_wait_time.is_not(None),
                QueueEntry.deleted_at.is_(None),
            )
        ).scalar()

        total_today = s.execute(
            select(func.count(QueueEntry.id)).where(
                QueueEntry.tenant_id == tenant_id,
                QueueEntry.doctor_id == doctor_id,
                QueueEntry.joined_at >= today,
                QueueEntry.deleted_at.is_(None),
            )
        ).scalar_one()

        audit_read(s, "queue", f"stats-{doctor_id}", user_id, tenant_id)
        return {
            "waiting": counts.get(QueueStatus.WAITING, 0),
            "called": counts.get(QueueStatus.CALLED, 0),
            "in_progress": counts.get(QueueStatus.IN_PROGRESS, 0),
            "average_wait_time": round(avg_wait or 0),
            "total_today": total_today,
        }


def sync_entry_with_appointment(
    s: Session, appointment: Appointment, status: AppointmentStatus, user_id: str, now: datetime
) -> QueueEntry | None:
    """Allinea la voce di coda attiva dell'appuntamento al nuovo stato (in corso, completato, annullato)."""
    e = find_active_entry_for_appointment(s, appointment.tenant_id, appointment.id)
    if not e:
        return None

    if status == AppointmentStatus.IN_PROGRESS:
        e.status = QueueStatus.IN_PROGRESS
        e.started_at = now
        if e.joined_at:
            e.actual_wait_time = round((now - e.joined_at).total_seconds() / 60)
    elif status == AppointmentStatus.COMPLETED:
        e.status = QueueStatus.COMPLETED
        e.completed_at = now
    elif status == AppointmentStatus.CANCELLED:
        e.status = QueueStatus.CANCELLED
    else:
        return None

    e.position = 0
    recalculate_positions(s, e.tenant_id, e.doctor_id)
    audit_write(s, "queue", e.id, user_id, e.tenant_id, AuditAction.UPDATE, meta={"statusChange": e.status.value})
    return e
