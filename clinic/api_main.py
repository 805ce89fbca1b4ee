from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import appointment_service, billing_service, config, patient_service, queue_service
from .auth_models import User, UserRole
from .auth_security import issue_user_token, read_token
from .auth_service import authenticate, create_user, get_user_by_id, list_doctors_flat, register_clinic
from .db import init_db
from .errors import ClinicError, NotFoundError
from .models import AppointmentStatus, AppointmentType, InvoiceStatus, PaymentStatus, QueuePriority, QueueStatus, QueueType
from .schemas import (
    AppointmentCreateIn,
    AppointmentStatusIn,
    AppointmentUpdateIn,
    InvoiceCreateIn,
    InvoiceUpdateIn,
    PatientCreateIn,
    PatientUpdateIn,
    PaymentCreateIn,
    QueueEntryCreateIn,
    QueueEntryUpdateIn,
    QueueReorderIn,
    QueueStatusIn,
    RegisterIn,
    StaffCreateIn,
    TokenOut,
)
from .seed import seed_base

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

app = FastAPI(title="Clinic API", version="1.0.0")


# Startup

@app.on_event("startup")
def startup() -> None:
    # Crea tabelle e, se richiesto, dati demo (idempotente)
    init_db()
    if config.SEED_ON_STARTUP:
        seed_base()
    logger.info("Clinic API ready")


# Risposte: {"success": true, "data": ...} / {"success": false, "error": {...}}

def ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def error_response(status_code: int, message: str, code: str | None = None, details: Any = None,
                   headers: dict[str, str] | None = None) -> JSONResponse:
    err: dict[str, Any] = {"message": message}
    if code:
        err["code"] = code
    if details is not None:
        err["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": err}, headers=headers)


def found(data: Any, what: str) -> dict[str, Any]:
    if data is None or data is False:
        raise NotFoundError(f"{what} not found")
    return ok(data)


_HTTP_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


@app.exception_handler(ClinicError)
def clinic_error_handler(request: Request, exc: ClinicError) -> JSONResponse:
    return error_response(exc.status_code, exc.message, exc.code, exc.details)


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        exc.status_code, str(exc.detail), _HTTP_CODES.get(exc.status_code, "HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(p) for p in e["loc"] if p not in ("body", "query", "path")), "message": e["msg"]}
        for e in exc.errors()
    ]
    message = "; ".join(f"{d['field']}: {d['message']}" if d["field"] else d["message"] for d in details)
    return error_response(400, message or "Validation error", "VALIDATION_ERROR", details)


@app.exception_handler(IntegrityError)
def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return error_response(400, "Duplicate entry", "DUPLICATE_ERROR")


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(500, "Database error", "DATABASE_ERROR")


# Dipendenze auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    # protezione extra: elimina spazi / virgolette accidentali
    token = token.strip().strip('"').strip("'")

    claims = read_token(token)
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token",
                            headers={"WWW-Authenticate": "Bearer"})

    u = get_user_by_id(claims.user_id)
    # un token emesso per un altro studio non vale anche se l'utente esiste
    if not u or not u.is_active or u.tenant_id != claims.tenant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user",
                            headers={"WWW-Authenticate": "Bearer"})
    return u


def require_roles(*roles: UserRole) -> Callable[[User], User]:
    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles and user.role != UserRole.SUPER_ADMIN:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return checker


def user_to_dict(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "tenant_id": u.tenant_id,
        "username": u.username,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "email": u.email,
        "role": u.role.value,
        "specialization": u.specialization,
        "is_active": u.is_active,
    }


# AUTH endpoints

@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn) -> dict[str, Any]:
    try:
        tenant_id, user_id = register_clinic(
            payload.clinic_name,
            payload.username,
            payload.password,
            region=payload.region,
            currency=payload.currency.upper(),
            first_name=payload.first_name,
            last_name=payload.last_name,
            email=payload.email,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok({"tenant_id": tenant_id, "user_id": user_id})


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = authenticate(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials",
                            headers={"WWW-Authenticate": "Bearer"})

    return TokenOut(access_token=issue_user_token(u))


@app.get("/api/me")
def me(user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(user_to_dict(user))


# Medici

@app.get("/api/doctors")
def api_doctors(user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(list_doctors_flat(user.tenant_id))


@app.post("/api/doctors", status_code=201)
def api_create_doctor(payload: StaffCreateIn, user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    try:
        uid = create_user(
            user.tenant_id,
            payload.username,
            payload.password,
            role=payload.role,
            first_name=payload.first_name,
            last_name=payload.last_name,
            email=payload.email,
            specialization=payload.specialization,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok({"id": uid})


# Pazienti

@app.get("/api/patients")
def api_patients(
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(config.PAGE_SIZE_DEFAULT, ge=1),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(patient_service.list_patients(user.tenant_id, user.id, search, page, limit))


@app.post("/api/patients", status_code=201)
def api_create_patient(payload: PatientCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(patient_service.create_patient(user.tenant_id, user.id, **payload.model_dump()))


@app.get("/api/patients/{patient_id}")
def api_patient(patient_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return found(patient_service.get_patient(user.tenant_id, patient_id, user.id), "Patient")


@app.put("/api/patients/{patient_id}")
def api_update_patient(patient_id: str, payload: PatientUpdateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    return found(patient_service.update_patient(user.tenant_id, patient_id, user.id, changes), "Patient")


@app.delete("/api/patients/{patient_id}")
def api_delete_patient(patient_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    found(patient_service.delete_patient(user.tenant_id, patient_id, user.id), "Patient")
    return ok({"message": "Patient deleted successfully"})


# Appuntamenti

@app.get("/api/appointments/availability")
def api_availability(
    doctor_id: str = Query(...),
    start_time: datetime = Query(...),
    end_time: datetime | None = None,
    duration: int | None = Query(None, gt=0),
    exclude_appointment_id: str | None = None,
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    available = appointment_service.check_availability(
        user.tenant_id, doctor_id, start_time, end_time, duration, exclude_appointment_id
    )
    return ok({"available": available})


@app.get("/api/appointments")
def api_appointments(
    patient_id: str | None = None,
    doctor_id: str | None = None,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    type_filter: AppointmentType | None = Query(None, alias="type"),
    is_active: bool | None = None,
    day: date | None = Query(None, alias="date"),
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(config.PAGE_SIZE_DEFAULT, ge=1),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(
        appointment_service.list_appointments(
            user.tenant_id,
            user.id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            status=status_filter,
            appointment_type=type_filter,
            is_active=is_active,
            day=day,
            start_date=start_date,
            end_date=end_date,
            page=page,
            limit=limit,
        )
    )


@app.post("/api/appointments", status_code=201)
def api_create_appointment(payload: AppointmentCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    data = payload.model_dump()
    data["appointment_type"] = data.pop("type")
    return ok(appointment_service.create_appointment(user.tenant_id, user.id, **data))


@app.get("/api/appointments/{appointment_id}")
def api_appointment(appointment_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return found(appointment_service.get_appointment(user.tenant_id, appointment_id, user.id), "Appointment")


@app.put("/api/appointments/{appointment_id}")
def api_update_appointment(
    appointment_id: str, payload: AppointmentUpdateIn, user: User = Depends(get_current_user)
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    return found(
        appointment_service.update_appointment(user.tenant_id, appointment_id, user.id, changes), "Appointment"
    )


@app.put("/api/appointments/{appointment_id}/status")
def api_appointment_status(
    appointment_id: str, payload: AppointmentStatusIn, user: User = Depends(get_current_user)
) -> dict[str, Any]:
    reason = payload.cancellation_reason
    if payload.status == AppointmentStatus.CANCELLED and not reason:
        reason = "Cancelled by user"
    return found(
        appointment_service.change_appointment_status(
            user.tenant_id, appointment_id, user.id, payload.status, payload.notes, reason
        ),
        "Appointment",
    )


@app.delete("/api/appointments/{appointment_id}")
def api_delete_appointment(appointment_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    found(appointment_service.delete_appointment(user.tenant_id, appointment_id, user.id), "Appointment")
    return ok({"message": "Appointment deleted successfully"})


# Coda

@app.get("/api/queue/doctor/{doctor_id}")
def api_doctor_queue(doctor_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(queue_service.get_doctor_queue(user.tenant_id, doctor_id, user.id))


@app.put("/api/queue/doctor/{doctor_id}/reorder")
def api_reorder_queue(doctor_id: str, payload: QueueReorderIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(queue_service.reorder_queue(user.tenant_id, doctor_id, user.id, payload.entry_ids))


@app.get("/api/queue/doctor/{doctor_id}/stats")
def api_queue_stats(doctor_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(queue_service.get_queue_statistics(user.tenant_id, doctor_id, user.id))


@app.get("/api/queue")
def api_queue(
    doctor_id: str | None = None,
    patient_id: str | None = None,
    status_filter: QueueStatus | None = Query(None, alias="status"),
    priority: QueuePriority | None = None,
    type_filter: QueueType | None = Query(None, alias="type"),
    appointment_id: str | None = None,
    is_active: bool | None = None,
    day: date | None = Query(None, alias="date"),
    page: int = Query(1, ge=1),
    limit: int = Query(config.PAGE_SIZE_DEFAULT, ge=1),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(
        queue_service.list_queue_entries(
            user.tenant_id,
            user.id,
            doctor_id=doctor_id,
            patient_id=patient_id,
            status=status_filter,
            priority=priority,
            entry_type=type_filter,
            appointment_id=appointment_id,
            is_active=is_active,
            day=day,
            page=page,
            limit=limit,
        )
    )


@app.post("/api/queue", status_code=201)
def api_create_queue_entry(payload: QueueEntryCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    data = payload.model_dump()
    data["entry_type"] = data.pop("type")
    return ok(queue_service.create_queue_entry(user.tenant_id, user.id, **data))


@app.get("/api/queue/{entry_id}")
def api_queue_entry(entry_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return found(queue_service.get_queue_entry(user.tenant_id, entry_id, user.id), "Queue entry")


@app.put("/api/queue/{entry_id}")
def api_update_queue_entry(entry_id: str, payload: QueueEntryUpdateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    return found(queue_service.update_queue_entry(user.tenant_id, entry_id, user.id, changes), "Queue entry")


@app.put("/api/queue/{entry_id}/status")
def api_queue_status(entry_id: str, payload: QueueStatusIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return found(
        queue_service.change_queue_status(user.tenant_id, entry_id, user.id, payload.status, payload.notes),
        "Queue entry",
    )


@app.delete("/api/queue/{entry_id}")
def api_remove_queue_entry(entry_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    found(queue_service.remove_queue_entry(user.tenant_id, entry_id, user.id), "Queue entry")
    return ok({"message": "Queue entry removed successfully"})


# Fatture e pagamenti

@app.get("/api/invoices")
def api_invoices(
    patient_id: str | None = None,
    status_filter: InvoiceStatus | None = Query(None, alias="status"),
    is_active: bool | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(config.PAGE_SIZE_DEFAULT, ge=1),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(
        billing_service.list_invoices(
            user.tenant_id, user.id, patient_id, status_filter, is_active, start_date, end_date, page, limit
        )
    )


@app.post("/api/invoices", status_code=201)
def api_create_invoice(payload: InvoiceCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(billing_service.create_invoice(user.tenant_id, user.id, **payload.model_dump()))


@app.get("/api/invoices/{invoice_id}")
def api_invoice(invoice_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return found(billing_service.get_invoice(user.tenant_id, invoice_id, user.id), "Invoice")


@app.put("/api/invoices/{invoice_id}")
def api_update_invoice(invoice_id: str, payload: InvoiceUpdateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    return found(billing_service.update_invoice(user.tenant_id, invoice_id, user.id, changes), "Invoice")


@app.delete("/api/invoices/{invoice_id}")
def api_delete_invoice(invoice_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    found(billing_service.delete_invoice(user.tenant_id, invoice_id, user.id), "Invoice")
    return ok({"message": "Invoice deleted successfully"})


@app.get("/api/payments")
def api_payments(
    invoice_id: str | None = None,
    patient_id: str | None = None,
    status_filter: PaymentStatus | None = Query(None, alias="status"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(config.PAGE_SIZE_DEFAULT, ge=1),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(
        billing_service.list_payments(
            user.tenant_id, user.id, invoice_id, patient_id, status_filter, start_date, end_date, page, limit
        )
    )


@app.post("/api/payments", status_code=201)
def api_create_payment(payload: PaymentCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(billing_service.create_payment(user.tenant_id, user.id, **payload.model_dump()))
