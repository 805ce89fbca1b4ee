"""
HTTP API tests: authentication, response envelope, error mapping, main flows.
"""
from datetime import timedelta

from .conftest import BASE_TIME


class TestAuth:
    def test_register_and_login(self, client):
        r = client.post(
            "/api/auth/register",
            json={"clinic_name": "Sunrise", "username": "Owner", "password": "secret123", "region": "IN", "currency": "inr"},
        )
        assert r.status_code == 201
        body = r.json()
        assert body["success"] is True
        assert body["data"]["tenant_id"]

        r = client.post("/api/auth/login", data={"username": "owner", "password": "secret123"})
        assert r.status_code == 200
        token = r.json()["access_token"]

        me = client.get("/api/me", headers={"Authorization": f"Bearer {token}"}).json()["data"]
        assert me["username"] == "owner"
        assert me["role"] == "admin"
        assert me["tenant_id"] == body["data"]["tenant_id"]

    def test_duplicate_username(self, client, clinic):
        r = client.post("/api/auth/register", json={"clinic_name": "X", "username": "admin", "password": "secret123"})
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Username already registered."

    def test_wrong_password(self, client, clinic):
        r = client.post("/api/auth/login", data={"username": "admin", "password": "nope"})
        assert r.status_code == 401
        assert r.json() == {"success": False, "error": {"message": "Invalid credentials", "code": "UNAUTHORIZED"}}

    def test_missing_and_bad_token(self, client):
        assert client.get("/api/patients").status_code == 401
        r = client.get("/api/patients", headers={"Authorization": "Bearer garbage"})
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "UNAUTHORIZED"

    def test_token_for_another_clinic_is_refused(self, client, user_id):
        from clinic.auth_security import create_access_token

        forged = create_access_token(user_id, {"tenant_id": "another-clinic", "role": "admin"})
        r = client.get("/api/patients", headers={"Authorization": f"Bearer {forged}"})
        assert r.status_code == 401
        assert r.json()["error"]["message"] == "Invalid user"

    def test_only_admin_creates_doctors(self, client, clinic, doctor_id):
        token = client.post("/api/auth/login", data={"username": "g.house", "password": "doctor123"}).json()["access_token"]
        r = client.post(
            "/api/doctors",
            json={"username": "new.doc", "password": "doctor123", "first_name": "N", "last_name": "D"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "FORBIDDEN"


class TestEnvelope:
    def test_validation_error(self, client, auth_headers):
        r = client.post("/api/patients", json={"first_name": ""}, headers=auth_headers)
        assert r.status_code == 400
        err = r.json()["error"]
        assert err["code"] == "VALIDATION_ERROR"
        assert {d["field"] for d in err["details"]} == {"first_name", "last_name"}

    def test_duration_below_five_minutes_is_rejected(self, client, auth_headers, doctor_id, patient_id):
        payload = {"patient_id": patient_id, "doctor_id": doctor_id, "start_time": BASE_TIME.isoformat(), "duration": 4}
        r = client.post("/api/appointments", json=payload, headers=auth_headers)
        assert r.status_code == 400
        err = r.json()["error"]
        assert err["code"] == "VALIDATION_ERROR"
        assert [d["field"] for d in err["details"]] == ["duration"]

    def test_end_time_one_minute_later_is_rejected(self, client, auth_headers, doctor_id, patient_id):
        payload = {
            "patient_id": patient_id,
            "doctor_id": doctor_id,
            "start_time": BASE_TIME.isoformat(),
            "end_time": (BASE_TIME + timedelta(minutes=1)).isoformat(),
        }
        r = client.post("/api/appointments", json=payload, headers=auth_headers)
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Duration must be between 5 and 480 minutes"

    def test_not_found(self, client, auth_headers):
        r = client.get("/api/appointments/missing", headers=auth_headers)
        assert r.status_code == 404
        assert r.json() == {"success": False, "error": {"message": "Appointment not found", "code": "NOT_FOUND"}}


class TestFlows:
    def test_patients_crud(self, client, auth_headers):
        created = client.post(
            "/api/patients", json={"first_name": "Luca", "last_name": "Bianchi", "phone": "555"}, headers=auth_headers
        )
        assert created.status_code == 201
        pid = created.json()["data"]["id"]
        assert created.json()["data"]["patient_code"] == "P-0001"

        found = client.get("/api/patients", params={"search": "bian"}, headers=auth_headers).json()["data"]
        assert [p["id"] for p in found["items"]] == [pid]

        updated = client.put(f"/api/patients/{pid}", json={"phone": "556"}, headers=auth_headers).json()["data"]
        assert updated["phone"] == "556"
        assert updated["first_name"] == "Luca"

        assert client.delete(f"/api/patients/{pid}", headers=auth_headers).status_code == 200
        assert client.get(f"/api/patients/{pid}", headers=auth_headers).status_code == 404

    def test_booking_conflict_and_queue(self, client, auth_headers, doctor_id, patient_id, make_patient):
        payload = {"patient_id": patient_id, "doctor_id": doctor_id, "start_time": BASE_TIME.isoformat() + "Z"}
        r = client.post("/api/appointments", json=payload, headers=auth_headers)
        assert r.status_code == 201
        appointment = r.json()["data"]

        clash = dict(payload, patient_id=make_patient(), start_time=(BASE_TIME + timedelta(minutes=10)).isoformat())
        r = client.post("/api/appointments", json=clash, headers=auth_headers)
        assert r.status_code == 409
        assert r.json()["error"] == {"message": "Time slot is not available", "code": "SLOT_UNAVAILABLE"}

        avail = client.get(
            "/api/appointments/availability",
            params={"doctor_id": doctor_id, "start_time": (BASE_TIME + timedelta(minutes=30)).isoformat()},
            headers=auth_headers,
        ).json()["data"]
        assert avail == {"available": True}

        r = client.put(f"/api/appointments/{appointment['id']}/status", json={"status": "in_queue"}, headers=auth_headers)
        assert r.json()["data"]["status"] == "in_queue"

        queue = client.get(f"/api/queue/doctor/{doctor_id}", headers=auth_headers).json()["data"]
        assert [(e["appointment_id"], e["position"]) for e in queue] == [(appointment["id"], 1)]

        stats = client.get(f"/api/queue/doctor/{doctor_id}/stats", headers=auth_headers).json()["data"]
        assert stats["waiting"] == 1

    def test_cancel_uses_default_reason_and_blocks_updates(self, client, auth_headers, doctor_id, patient_id):
        payload = {"patient_id": patient_id, "doctor_id": doctor_id, "start_time": BASE_TIME.isoformat()}
        aid = client.post("/api/appointments", json=payload, headers=auth_headers).json()["data"]["id"]

        r = client.put(f"/api/appointments/{aid}/status", json={"status": "cancelled"}, headers=auth_headers)
        assert r.json()["data"]["cancellation_reason"] == "Cancelled by user"

        r = client.put(f"/api/appointments/{aid}", json={"notes": "x"}, headers=auth_headers)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_STATE"

    def test_walk_in_queue(self, client, auth_headers, doctor_id, make_patient):
        ids = []
        for name in ("A", "B"):
            r = client.post(
                "/api/queue",
                json={"type": "walk_in", "patient_id": make_patient(name, "X"), "doctor_id": doctor_id},
                headers=auth_headers,
            )
            assert r.status_code == 201
            ids.append(r.json()["data"]["id"])

        r = client.put(f"/api/queue/doctor/{doctor_id}/reorder", json={"entry_ids": [ids[1]]}, headers=auth_headers)
        assert [e["id"] for e in r.json()["data"]] == [ids[1], ids[0]]

        r = client.put(f"/api/queue/{ids[1]}/status", json={"status": "called"}, headers=auth_headers)
        assert r.json()["data"]["position"] == 0

        listed = client.get("/api/queue", params={"status": "waiting"}, headers=auth_headers).json()["data"]
        assert [(e["id"], e["position"]) for e in listed["items"]] == [(ids[0], 1)]

    def test_invoice_and_payment(self, client, auth_headers, patient_id):
        r = client.post(
            "/api/invoices",
            json={
                "patient_id": patient_id,
                "items": [{"type": "consultation", "description": "Visit", "quantity": 1, "unit_price": 80}],
            },
            headers=auth_headers,
        )
        assert r.status_code == 201
        inv = r.json()["data"]
        assert inv["total_amount"] == 9600  # EU: IVA 20%

        r = client.post(
            "/api/payments",
            json={"invoice_id": inv["id"], "amount": 100, "payment_method": "cash"},
            headers=auth_headers,
        )
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Payment amount exceeds remaining balance"

        r = client.post(
            "/api/payments",
            json={"invoice_id": inv["id"], "amount": 96, "payment_method": "card"},
            headers=auth_headers,
        )
        assert r.status_code == 201
        assert client.get(f"/api/invoices/{inv['id']}", headers=auth_headers).json()["data"]["status"] == "paid"
