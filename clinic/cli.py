from __future__ import annotations

import argparse
import logging
import sys
from datetime import date, datetime

from sqlalchemy import select

from . import config
from .appointment_service import (
    cancel_appointment,
    change_appointment_status,
    create_appointment,
    find_due_reminders,
    list_appointments,
    send_due_reminders,
)
from .auth_models import User
from .auth_service import list_doctors_flat
from .db import db_session, init_db
from .errors import ClinicError
from .models import AppointmentStatus
from .patient_service import create_patient, list_patients
from .queue_service import get_doctor_queue, get_queue_statistics
from .seed import seed_base


def _operator(args: argparse.Namespace) -> tuple[str, str]:
    """(tenant_id, user_id) dell'operatore che lancia il comando."""
    with db_session() as s:
        u = s.execute(select(User).where(User.username == args.user.strip().lower())).scalar_one_or_none()
        if not u or not u.is_active:
            raise SystemExit(f"Unknown or inactive user: {args.user}")
        return u.tenant_id, u.id


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    tenant_id = seed_base()
    print(f"DB initialized, demo tenant: {tenant_id}")


def cmd_list(args: argparse.Namespace) -> None:
    tenant_id, user_id = _operator(args)
    if args.entity == "doctors":
        for d in list_doctors_flat(tenant_id):
            print(f"{d['id']} | {d['last_name']} {d['first_name']} | {d['specialization'] or '-'}")
    elif args.entity == "patients":
        for p in list_patients(tenant_id, user_id, limit=config.PAGE_SIZE_MAX)["items"]:
            print(f"{p['id']} | {p['patient_code']} | {p['last_name']} {p['first_name']} | {p['phone'] or '-'}")
    elif args.entity == "appointments":
        day = date.fromisoformat(args.date) if args.date else date.today()
        result = list_appointments(tenant_id, user_id, day=day, limit=config.PAGE_SIZE_MAX)
        for a in result["items"]:
            print(f"{a['id']} | {a['start_time']} | {a['doctor_name']} | {a['patient_name']} | {a['status']}")


def cmd_add_patient(args: argparse.Namespace) -> None:
    tenant_id, user_id = _operator(args)
    p = create_patient(tenant_id, user_id, args.first_name, args.last_name, args.email, args.phone)
    print(f"Patient created: {p['id']} ({p['patient_code']})")


def cmd_book(args: argparse.Namespace) -> None:
    tenant_id, user_id = _operator(args)
    start = datetime.fromisoformat(args.start)  # formato: 2026-01-14T10:30
    a = create_appointment(
        tenant_id,
        user_id,
        patient_id=args.patient_id,
        doctor_id=args.doctor_id,
        start_time=start,
        duration=args.duration,
        reason=args.reason,
    )
    print(f"Appointment booked: {a['id']} ({a['start_time']} - {a['end_time']})")


def cmd_status(args: argparse.Namespace) -> None:
    tenant_id, user_id = _operator(args)
    status = AppointmentStatus(args.status)
    if status == AppointmentStatus.CANCELLED:
        a = cancel_appointment(tenant_id, args.appointment_id, user_id, args.reason or "Cancelled by user")
    else:
        a = change_appointment_status(tenant_id, args.appointment_id, user_id, status, args.notes)
    print(f"Appointment {a['id']}: {a['status']}" if a else "Appointment not found.")


def cmd_queue(args: argparse.Namespace) -> None:
    tenant_id, user_id = _operator(args)
    entries = get_doctor_queue(tenant_id, args.doctor_id, user_id)
    if not entries:
        print("Queue is empty.")
    for e in entries:
        print(
            f"{e['position']:>3} | {e['queue_number']} | {e['display_name'] or '-'} | "
            f"{e['priority']} | ~{e['estimated_wait_time']} min"
        )
    if args.stats:
        st = get_queue_statistics(tenant_id, args.doctor_id, user_id)
        print(
            f"waiting={st['waiting']} called={st['called']} in_progress={st['in_progress']} "
            f"avg_wait={st['average_wait_time']} min total_today={st['total_today']}"
        )


def cmd_reminders(args: argparse.Namespace) -> None:
    """
    Simula il sistema promemoria esterno:
    - legge i promemoria in scadenza
    - li stampa su console
    - con --send li registra come inviati
    """
    if args.send:
        sent = send_due_reminders()
        print(f"Reminders sent: {sent}")
        return

    due = find_due_reminders(window_minutes=args.window)
    if not due:
        print("No pending reminders.")
    for r in due:
        print(f"[{r['appointment_id']}] {r['start_time']} | {r['patient_name']} ({r['patient_phone'] or '-'}) | {r['doctor_name']}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinic", description="Clinic CLI (reception and external systems simulation)")
    p.add_argument("--user", default="admin", help="Operator username (tenant and audit)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create DB and load demo data")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="List entities")
    p_list.add_argument("entity", choices=["doctors", "patients", "appointments"])
    p_list.add_argument("--date", default=None, help="Day for appointments (YYYY-MM-DD), default today")
    p_list.set_defaults(func=cmd_list)

    p_addp = sub.add_parser("add-patient", help="Create patient")
    p_addp.add_argument("--first-name", required=True)
    p_addp.add_argument("--last-name", required=True)
    p_addp.add_argument("--email", default=None)
    p_addp.add_argument("--phone", default=None)
    p_addp.set_defaults(func=cmd_add_patient)

    p_book = sub.add_parser("book", help="Book appointment")
    p_book.add_argument("--patient-id", required=True)
    p_book.add_argument("--doctor-id", required=True)
    p_book.add_argument("--start", required=True, help="ISO datetime (UTC) e.g. 2026-01-14T10:30")
    p_book.add_argument("--duration", type=int, default=None, help="Minutes (default 30)")
    p_book.add_argument("--reason", default=None)
    p_book.set_defaults(func=cmd_book)

    p_status = sub.add_parser("status", help="Change appointment status")
    p_status.add_argument("--appointment-id", required=True)
    p_status.add_argument("--status", required=True, choices=[s.value for s in AppointmentStatus])
    p_status.add_argument("--notes", default=None)
    p_status.add_argument("--reason", default=None, help="Cancellation reason")
    p_status.set_defaults(func=cmd_status)

    p_queue = sub.add_parser("queue", help="Show a doctor's waiting queue")
    p_queue.add_argument("--doctor-id", required=True)
    p_queue.add_argument("--stats", action="store_true")
    p_queue.set_defaults(func=cmd_queue)

    p_rem = sub.add_parser("reminders", help="Read and send due reminders (simulation)")
    p_rem.add_argument("--window", type=int, default=config.REMINDER_WINDOW_MINUTES, help="Look-ahead minutes")
    p_rem.add_argument("--send", action="store_true", help="Mark due reminders as sent")
    p_rem.set_defaults(func=cmd_reminders)

    return p


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    parser = build_parser()
    args = parser.parse_args(argv)
    init_db()  # garantisce tabelle
    try:
        args.func(args)
    except ClinicError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
