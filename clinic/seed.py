from __future__ import annotations

import logging

from sqlalchemy import select

from .auth_models import User, UserRole
from .auth_security import hash_password
from .db import db_session
from .models import Tenant

logger = logging.getLogger(__name__)

DEMO_CLINIC = "Demo Clinic"


def seed_base() -> str:
    """
    Popola dati minimi (idempotente):
    - clinica demo
    - amministratore e receptionist
    - medici
    Ritorna l'id del tenant demo.
    """
    with db_session() as s:
        tenant = s.execute(select(Tenant).where(Tenant.name == DEMO_CLINIC)).scalar_one_or_none()
        if tenant is None:
            tenant = Tenant(name=DEMO_CLINIC, region="EU", currency="EUR")
            s.add(tenant)
            s.flush()
            logger.info("Created demo tenant %s", tenant.id)

        # (username, password, ruolo, nome, cognome, specializzazione, email)
        users = [
            ("admin", "admin123", UserRole.ADMIN, "Clinic", "Admin", None, "admin@clinic.local"),
            ("reception", "reception123", UserRole.RECEPTIONIST, "Front", "Desk", None, "desk@clinic.local"),
            ("m.rossi", "doctor123", UserRole.DOCTOR, "Mario", "Rossi", "General Medicine", "m.rossi@clinic.local"),
            ("l.bianchi", "doctor123", UserRole.DOCTOR, "Laura", "Bianchi", "Cardiology", "l.bianchi@clinic.local"),
        ]
        for username, password, role, first, last, specialization, email in users:
            if s.execute(select(User).where(User.username == username)).scalar_one_or_none() is None:
                s.add(
                    User(
                        tenant_id=tenant.id,
                        username=username,
                        password_hash=hash_password(password),
                        role=role,
                        first_name=first,
                        last_name=last,
                        specialization=specialization,
                        email=email,
                    )
                )

        return tenant.id
