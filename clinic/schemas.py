"""Schemi di input dell'API (pydantic)."""
from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field

from .auth_models import UserRole
from .models import (
    AppointmentStatus,
    AppointmentType,
    InvoiceItemType,
    InvoiceStatus,
    PaymentMethod,
    QueuePriority,
    QueueStatus,
    QueueType,
)


# Auth

class RegisterIn(BaseModel):
    clinic_name: str = Field(..., min_length=1)
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    region: str = "US"
    currency: str = Field("USD", min_length=3, max_length=3)


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class StaffCreateIn(BaseModel):
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str | None = None
    role: UserRole = UserRole.DOCTOR
    specialization: str | None = None


# Pazienti

class PatientCreateIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    address: str | None = None
    notes: str | None = None


class PatientUpdateIn(BaseModel):
    first_name: str | None = Field(None, min_length=1)
    last_name: str | None = Field(None, min_length=1)
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    address: str | None = None
    notes: str | None = None


# Appuntamenti

class AppointmentCreateIn(BaseModel):
    patient_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    start_time: datetime
    appointment_date: date | None = None
    end_time: datetime | None = None
    duration: int | None = Field(None, ge=5, le=480)
    type: AppointmentType = AppointmentType.CONSULTATION
    reason: str | None = None
    notes: str | None = None
    reminder_scheduled_at: datetime | None = None


class AppointmentUpdateIn(BaseModel):
    doctor_id: str | None = None
    appointment_date: date | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration: int | None = Field(None, ge=5, le=480)
    type: AppointmentType | None = None
    reason: str | None = None
    notes: str | None = None
    reminder_scheduled_at: datetime | None = None


class AppointmentStatusIn(BaseModel):
    status: AppointmentStatus
    notes: str | None = None
    cancellation_reason: str | None = None


# Coda

class QueueEntryCreateIn(BaseModel):
    type: QueueType
    patient_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    appointment_id: str | None = None
    priority: QueuePriority = QueuePriority.NORMAL
    reason: str | None = None
    display_name: str | None = None
    notes: str | None = None


class QueueEntryUpdateIn(BaseModel):
    priority: QueuePriority | None = None
    position: int | None = Field(None, ge=1)
    reason: str | None = None
    display_name: str | None = None
    notes: str | None = None


class QueueStatusIn(BaseModel):
    status: QueueStatus
    notes: str | None = None


class QueueReorderIn(BaseModel):
    entry_ids: list[str] = Field(..., min_length=1)


# Fatture e pagamenti

class InvoiceItemIn(BaseModel):
    type: InvoiceItemType
    description: str = Field(..., min_length=1)
    quantity: int = Field(1, gt=0)
    unit_price: float = Field(..., gt=0)
    discount: int | None = Field(None, ge=0, le=100)
    discount_amount: float | None = Field(None, ge=0)
    tax_rate: int | None = Field(None, ge=0, le=100)


class InvoiceCreateIn(BaseModel):
    patient_id: str = Field(..., min_length=1)
    appointment_id: str | None = None
    items: list[InvoiceItemIn] = Field(..., min_length=1)
    discount_type: Literal["percentage", "fixed"] | None = None
    discount_value: float | None = Field(None, ge=0)
    discount_reason: str | None = None
    insurance_id: str | None = None
    insurance_coverage: float | None = Field(None, ge=0)
    due_date: datetime | None = None
    notes: str | None = None


class InvoiceUpdateIn(BaseModel):
    appointment_id: str | None = None
    items: list[InvoiceItemIn] | None = None
    discount_type: Literal["percentage", "fixed"] | None = None
    discount_value: float | None = Field(None, ge=0)
    discount_reason: str | None = None
    insurance_id: str | None = None
    insurance_coverage: float | None = Field(None, ge=0)
    due_date: datetime | None = None
    notes: str | None = None
    status: InvoiceStatus | None = None


class PaymentCreateIn(BaseModel):
    invoice_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    payment_method: PaymentMethod
    transaction_id: str | None = None
    receipt_number: str | None = None
    gateway: str | None = None
    notes: str | None = None
