from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from .auth_models import User, UserRole
from .auth_security import hash_password, verify_password
from .db import db_session
from .models import Tenant


def _add_user(
    s: Session,
    tenant_id: str,
    username: str,
    password: str,
    role: UserRole,
    first_name: str = "",
    last_name: str = "",
    email: str | None = None,
    specialization: str | None = None,
) -> User:
    username = username.strip().lower()
    if not username or not password:
        raise ValueError("Username and password are required.")

    exists = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if exists:
        raise ValueError("Username already registered.")

    u = User(
        tenant_id=tenant_id,
        username=username,
        password_hash=hash_password(password),
        role=role,
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        email=email,
        specialization=specialization,
        is_active=True,
    )
    s.add(u)
    s.flush()
    return u


def register_clinic(
    clinic_name: str,
    username: str,
    password: str,
    region: str = "US",
    currency: str = "USD",
    first_name: str = "",
    last_name: str = "",
    email: str | None = None,
) -> tuple[str, str]:
    """Nuova clinica: crea il tenant e il suo utente amministratore. Ritorna (tenant_id, user_id)."""
    if not clinic_name.strip():
        raise ValueError("Clinic name is required.")

    with db_session() as s:
        t = Tenant(name=clinic_name.strip(), region=region, currency=currency)
        s.add(t)
        s.flush()
        u = _add_user(s, t.id, username, password, UserRole.ADMIN, first_name, last_name, email)
        return t.id, u.id


def create_user(
    tenant_id: str,
    username: str,
    password: str,
    role: UserRole = UserRole.RECEPTIONIST,
    first_name: str = "",
    last_name: str = "",
    email: str | None = None,
    specialization: str | None = None,
) -> str:
    with db_session() as s:
        u = _add_user(s, tenant_id, username, password, role, first_name, last_name, email, specialization)
        return u.id


def authenticate(username: str, password: str) -> User | None:
    username = username.strip().lower()
    with db_session() as s:
        u = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            return None
        return u


def get_user_by_id(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


def get_active_doctor(s: Session, tenant_id: str, doctor_id: str) -> User | None:
    return s.execute(
        select(User).where(
            User.id == doctor_id,
            User.tenant_id == tenant_id,
            User.role == UserRole.DOCTOR,
            User.is_active.is_(True),
        )
    ).scalar_one_or_none()


def list_doctors_flat(tenant_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(User.id, User.first_name, User.last_name, User.specialization, User.email)
            .where(User.tenant_id == tenant_id, User.role == UserRole.DOCTOR, User.is_active.is_(True))
            .order_by(User.last_name, User.first_name)
        ).all()
        return [
            {
                "id": r.id,
                "first_name": r.first_name,
                "last_name": r.last_name,
                "specialization": r.specialization,
                "email": r.email,
            }
            for r in rows
        ]
