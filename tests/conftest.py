"""
Pytest configuration: SQLite in memoria ricreato a ogni test.
"""
import os
from datetime import datetime

import pytest

# Impostazioni di test PRIMA di importare i moduli dell'app
os.environ["CLINIC_DATABASE_URL"] = "sqlite://"
os.environ["SEED_ON_STARTUP"] = "false"
os.environ["JWT_SECRET"] = "test-secret"

from fastapi.testclient import TestClient  # noqa: E402

from clinic.api_main import app  # noqa: E402
from clinic.auth_models import UserRole  # noqa: E402
from clinic.auth_service import create_user, register_clinic  # noqa: E402
from clinic.db import drop_db, init_db  # noqa: E402
from clinic.patient_service import create_patient  # noqa: E402

# lunedì mattina, lontano nel futuro: nessun promemoria già scaduto per caso
BASE_TIME = datetime(2030, 1, 14, 9, 0)


@pytest.fixture(autouse=True)
def database():
    init_db()
    yield
    drop_db()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def clinic():
    """(tenant_id, admin_user_id) di una clinica appena registrata."""
    return register_clinic("Test Clinic", "admin", "admin123", region="EU", currency="EUR")


@pytest.fixture
def tenant_id(clinic):
    return clinic[0]


@pytest.fixture
def user_id(clinic):
    return clinic[1]


@pytest.fixture
def doctor_id(tenant_id):
    return create_user(
        tenant_id, "g.house", "doctor123", UserRole.DOCTOR, "Gregory", "House", specialization="Diagnostics"
    )


@pytest.fixture
def other_doctor_id(tenant_id):
    return create_user(tenant_id, "l.cuddy", "doctor123", UserRole.DOCTOR, "Lisa", "Cuddy")


@pytest.fixture
def patient_id(tenant_id, user_id):
    return create_patient(tenant_id, user_id, "Mario", "Rossi", phone="+39 333 1234567")["id"]


@pytest.fixture
def make_patient(tenant_id, user_id):
    def _make(first_name="Anna", last_name="Verdi"):
        return create_patient(tenant_id, user_id, first_name, last_name)["id"]

    return _make


@pytest.fixture
def auth_headers(client, clinic):
    r = client.post("/api/auth/login", data={"username": "admin", "password": "admin123"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['access_token']}"}
