from __future__ import annotations

import base64
import json
from datetime import date, datetime, timezone

import requests
import streamlit as st

from clinic.config import API_BASE

st.set_page_config(page_title="Clinic Reception", layout="wide")


class ApiError(Exception):
    pass


# JWT helpers (solo per UI, senza verifica firma)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    try:
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    if exp is None:
        return False
    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (int(exp) - 5)


def jwt_username(token: str) -> str:
    p = jwt_payload(token)
    return str(p.get("username") or p.get("sub") or "user")


# HTTP client (con JWT, risposte {"success", "data" | "error"})

def _unwrap(r: requests.Response):
    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (invalid/expired token or backend restarted).")
    body = r.json()
    if not body.get("success"):
        raise ApiError(body.get("error", {}).get("message") or f"HTTP {r.status_code}")
    return body["data"]


def _headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def api_get(path: str, token: str, params: dict | None = None):
    return _unwrap(requests.get(f"{API_BASE}{path}", headers=_headers(token), params=params, timeout=10))


def api_post(path: str, payload: dict, token: str):
    return _unwrap(requests.post(f"{API_BASE}{path}", headers=_headers(token), json=payload, timeout=10))


def api_put(path: str, payload: dict, token: str):
    return _unwrap(requests.put(f"{API_BASE}{path}", headers=_headers(token), json=payload, timeout=10))


def api_login(username: str, password: str) -> str:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded
    r = requests.post(
        f"{API_BASE}/api/auth/login",
        data={"username": username, "password": password},
        timeout=10,
    )
    r.raise_for_status()
    return r.json()["access_token"]


def do_logout() -> None:
    st.session_state.pop("token", None)
    st.session_state.pop("auth_error", None)
    st.rerun()


def show_error(e: Exception) -> None:
    if isinstance(e, PermissionError):
        st.session_state["auth_error"] = str(e)
        st.error("Invalid session. Press Logout and log in again.")
    else:
        st.error(str(e))


# Sidebar login

with st.sidebar:
    st.header("Login")

    token = st.session_state.get("token")

    if not token:
        u = st.text_input("Username", key="login_user")
        p = st.text_input("Password", type="password", key="login_pass")

        if st.button("Login", key="login_btn"):
            try:
                st.session_state["token"] = api_login(u.strip().lower(), p)
                st.session_state.pop("auth_error", None)
                st.rerun()
            except requests.HTTPError:
                st.error("Invalid credentials.")
            except requests.RequestException as e:
                st.error(str(e))
    else:
        st.write(f"User: **{jwt_username(token)}**")
        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])
        if st.button("Logout", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")


st.title("Clinic reception")

token = st.session_state.get("token")
if not token:
    st.warning("Log in from the sidebar.")
    st.stop()
if jwt_is_expired(token):
    st.error("Session expired. Press Logout and log in again.")
    st.stop()


@st.cache_data(ttl=10)
def load_doctors(token: str) -> list[dict]:
    return api_get("/api/doctors", token)


def load_patients(token: str, search: str | None = None) -> list[dict]:
    return api_get("/api/patients", token, params={"search": search or None, "limit": 100})["items"]


def doctor_label(d: dict) -> str:
    return f"{d['last_name']} {d['first_name']} ({d.get('specialization') or '-'})"


try:
    doctors = load_doctors(token)
except Exception as e:  # API non raggiungibile: niente da mostrare
    show_error(e)
    st.stop()

tab1, tab2, tab3, tab4 = st.tabs(["Booking", "Agenda", "Queue", "Patients"])


# TAB 1 - Prenotazione

with tab1:
    st.subheader("Book appointment")

    c1, c2, c3 = st.columns(3)
    with c1:
        doctor = st.selectbox("Doctor", options=doctors, format_func=doctor_label, key="book_doctor")
        search = st.text_input("Search patient", key="book_search")
    with c2:
        day = st.date_input("Date", value=date.today(), key="book_date")
        at = st.time_input("Time (UTC)", value=datetime.now().time().replace(second=0, microsecond=0), key="book_time")
        duration = st.number_input("Duration (min)", min_value=5, max_value=480, value=30, step=5, key="book_duration")
    with c3:
        reason = st.text_area("Reason (optional)", height=100, key="book_reason")

    try:
        patients = load_patients(token, search)
    except Exception as e:
        show_error(e)
        patients = []

    patient = st.selectbox(
        "Patient",
        options=patients,
        format_func=lambda p: f"{p['last_name']} {p['first_name']} ({p['patient_code']}) | {p.get('phone') or '-'}",
        key="book_patient",
    )

    if st.button("Confirm booking", key="book_submit", disabled=not (patients and doctor)):
        payload = {
            "patient_id": patient["id"],
            "doctor_id": doctor["id"],
            "start_time": datetime.combine(day, at).isoformat(),
            "duration": int(duration),
            "reason": reason or None,
        }
        try:
            a = api_post("/api/appointments", payload, token)
            st.success(f"Booked {a['start_time']} - {a['end_time']} (ID: {a['id']})")
        except Exception as e:
            show_error(e)


# TAB 2 - Agenda del giorno

with tab2:
    st.subheader("Daily agenda")

    doctor_agenda = st.selectbox("Doctor", options=doctors, format_func=doctor_label, key="agenda_doctor")
    day_agenda = st.date_input("Day", value=date.today(), key="agenda_day")

    try:
        items = api_get(
            "/api/appointments",
            token,
            params={"doctor_id": doctor_agenda["id"], "date": day_agenda.isoformat(), "limit": 100},
        )["items"] if doctor_agenda else []
    except Exception as e:
        show_error(e)
        items = []

    if not items:
        st.info("No appointments for this day.")
    for a in items:
        cols = st.columns([4, 1, 1, 1, 1])
        cols[0].write(
            f"**{a['start_time'][11:16]} - {a['end_time'][11:16]}** | {a['patient_name']} | "
            f"{a['type']} | **{a['status']}**"
        )
        for col, (label, target) in zip(
            cols[1:],
            [("Arrived", "arrived"), ("To queue", "in_queue"), ("Done", "completed"), ("Cancel", "cancelled")],
        ):
            if col.button(label, key=f"st_{a['id']}_{target}", disabled=a["status"] in ("completed", "cancelled")):
                try:
                    api_put(f"/api/appointments/{a['id']}/status", {"status": target}, token)
                    st.rerun()
                except Exception as e:
                    show_error(e)


# TAB 3 - Coda

with tab3:
    st.subheader("Waiting queue")

    doctor_queue = st.selectbox("Doctor", options=doctors, format_func=doctor_label, key="queue_doctor")

    if doctor_queue:
        with st.expander("Add walk-in"):
            try:
                walkin_patients = load_patients(token)
            except Exception as e:
                show_error(e)
                walkin_patients = []
            wp = st.selectbox(
                "Patient",
                options=walkin_patients,
                format_func=lambda p: f"{p['last_name']} {p['first_name']} ({p['patient_code']})",
                key="walkin_patient",
            )
            prio = st.selectbox("Priority", options=["normal", "high", "urgent", "low"], key="walkin_priority")
            if st.button("Add to queue", key="walkin_submit", disabled=not walkin_patients):
                try:
                    e = api_post(
                        "/api/queue",
                        {"type": "walk_in", "patient_id": wp["id"], "doctor_id": doctor_queue["id"], "priority": prio},
                        token,
                    )
                    st.success(f"{e['queue_number']} at position {e['position']}")
                except Exception as e:
                    show_error(e)

        try:
            stats = api_get(f"/api/queue/doctor/{doctor_queue['id']}/stats", token)
            m1, m2, m3, m4 = st.columns(4)
            m1.metric("Waiting", stats["waiting"])
            m2.metric("Called", stats["called"])
            m3.metric("In progress", stats["in_progress"])
            m4.metric("Avg wait (min)", stats["average_wait_time"])

            entries = api_get(f"/api/queue/doctor/{doctor_queue['id']}", token)
        except Exception as e:
            show_error(e)
            entries = []

        if not entries:
            st.info("Nobody is waiting.")
        for e in entries:
            cols = st.columns([4, 1, 1, 1])
            cols[0].write(
                f"**#{e['position']}** {e['queue_number']} | {e['display_name'] or '-'} | "
                f"{e['priority']} | ~{e['estimated_wait_time']} min"
            )
            for col, (label, target) in zip(cols[1:], [("Call", "called"), ("Start", "in_progress"), ("Skip", "skipped")]):
                if col.button(label, key=f"q_{e['id']}_{target}"):
                    try:
                        api_put(f"/api/queue/{e['id']}/status", {"status": target}, token)
                        st.rerun()
                    except Exception as err:
                        show_error(err)


# TAB 4 - Pazienti

with tab4:
    st.subheader("Patients")

    with st.expander("New patient"):
        c1, c2 = st.columns(2)
        first_name = c1.text_input("First name", key="pat_first")
        last_name = c2.text_input("Last name", key="pat_last")
        email = st.text_input("Email (optional)", key="pat_email")
        phone = st.text_input("Phone (optional)", key="pat_phone")

        if st.button("Create patient", key="pat_submit"):
            if not first_name.strip() or not last_name.strip():
                st.error("First and last name are required.")
            else:
                try:
                    p = api_post(
                        "/api/patients",
                        {
                            "first_name": first_name.strip(),
                            "last_name": last_name.strip(),
                            "email": email.strip() or None,
                            "phone": phone.strip() or None,
                        },
                        token,
                    )
                    st.success(f"Patient created: {p['patient_code']}")
                except Exception as e:
                    show_error(e)

    st.divider()
    try:
        for p in load_patients(token):
            st.write(f"- {p['patient_code']} | {p['last_name']} {p['first_name']} | {p.get('email') or '-'} | {p.get('phone') or '-'}")
    except Exception as e:
        show_error(e)
