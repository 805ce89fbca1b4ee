from __future__ import annotations

import re
from datetime import date
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .audit import audit_read, audit_write
from .db import db_session
from .models import AuditAction, Patient, utcnow
from .pagination import paginate

_EDITABLE_FIELDS = ("first_name", "last_name", "date_of_birth", "gender", "phone", "email", "address", "notes")


def patient_to_dict(p: Patient) -> dict[str, Any]:
    return {
        "id": p.id,
        "patient_code": p.patient_code,
        "first_name": p.first_name,
        "last_name": p.last_name,
        "date_of_birth": p.date_of_birth.isoformat() if p.date_of_birth else None,
        "gender": p.gender,
        "phone": p.phone,
        "email": p.email,
        "address": p.address,
        "notes": p.notes,
        "is_active": p.is_active,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _next_patient_code(s: Session, tenant_id: str) -> str:
    last = s.scalars(
        select(Patient.patient_code)
        .where(Patient.tenant_id == tenant_id)
        .order_by(Patient.created_at.desc(), Patient.patient_code.desc())
        .limit(1)
    ).first()
    m = re.search(r"(\d+)$", last or "")
    n = int(m.group(1)) + 1 if m else 1
    return f"P-{n:04d}"


def find_patient(s: Session, tenant_id: str, patient_id: str) -> Patient | None:
    return s.execute(
        select(Patient).where(
            Patient.id == patient_id,
            Patient.tenant_id == tenant_id,
            Patient.deleted_at.is_(None),
        )
    ).scalar_one_or_none()


def create_patient(
    tenant_id: str,
    user_id: str,
    first_name: str,
    last_name: str,
    email: str | None = None,
    phone: str | None = None,
    date_of_birth: date | None = None,
    gender: str | None = None,
    address: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        p = Patient(
            tenant_id=tenant_id,
            patient_code=_next_patient_code(s, tenant_id),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email,
            phone=phone,
            date_of_birth=date_of_birth,
            gender=gender,
            address=address,
            notes=notes,
        )
        s.add(p)
        s.flush()
        audit_write(s, "patient", p.id, user_id, tenant_id, AuditAction.CREATE)
        return patient_to_dict(p)


def get_patient(tenant_id: str, patient_id: str, user_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        p = find_patient(s, tenant_id, patient_id)
        if not p:
            return None
        audit_read(s, "patient", patient_id, user_id, tenant_id)
        return patient_to_dict(p)


def list_patients(
    tenant_id: str,
    user_id: str,
    search: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        q = select(Patient).where(Patient.tenant_id == tenant_id, Patient.deleted_at.is_(None))
        if search:
            like = f"%{search.strip()}%"
            q = q.where(
                or_(
                    Patient.first_name.ilike(like),
                    Patient.last_name.ilike(like),
                    Patient.phone.ilike(like),
                    Patient.email.ilike(like),
                    Patient.patient_code.ilike(like),
                )
            )
        q = q.order_by(Patient.last_name, Patient.first_name)

        rows, meta = paginate(s, q, page, limit)
        audit_read(s, "patient", "list", user_id, tenant_id, meta={"count": len(rows), "search": search})
        return {"items": [patient_to_dict(p) for p in rows], "pagination": meta}


def update_patient(tenant_id: str, patient_id: str, user_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
    with db_session() as s:
        p = find_patient(s, tenant_id, patient_id)
        if not p:
            return None

        before = patient_to_dict(p)
        for field in _EDITABLE_FIELDS:
            if field in changes:
                setattr(p, field, changes[field])
        s.flush()

        after = patient_to_dict(p)
        audit_write(s, "patient", p.id, user_id, tenant_id, AuditAction.UPDATE, {"before": before, "after": after})
        return after


def delete_patient(tenant_id: str, patient_id: str, user_id: str) -> bool:
    with db_session() as s:
        p = find_patient(s, tenant_id, patient_id)
        if not p:
            return False
        p.deleted_at = utcnow()
        p.is_active = False
        audit_write(s, "patient", p.id, user_id, tenant_id, AuditAction.DELETE)
        return True
