"""
Fatture e pagamenti.

Gli importi arrivano in unità maggiori (12.50) e sono salvati in unità minori (1250)
nella valuta del tenant. Il totale della fattura è imponibile + imposta; il paziente
paga il totale meno la copertura assicurativa.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .audit import audit_read, audit_write
from .db import db_session
from .errors import BusinessRuleError, InvalidStateError
from .models import (
    AuditAction,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Tenant,
    utcnow,
)
from .pagination import paginate
from .patient_service import find_patient
from .tax_engine import calculate_tax, format_amount, parse_amount, percent_of

logger = logging.getLogger(__name__)

_READ_ONLY_INVOICE_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


def _iso(v: datetime | date | None) -> str | None:
    return v.isoformat() if v else None


def invoice_item_to_dict(i: InvoiceItem) -> dict[str, Any]:
    return {
        "type": i.type.value,
        "description": i.description,
        "quantity": i.quantity,
        "unit_price": i.unit_price,
        "discount": i.discount,
        "discount_amount": i.discount_amount,
        "tax_rate": i.tax_rate,
        "tax_amount": i.tax_amount,
        "total": i.total,
        "total_with_tax": i.total_with_tax,
    }


def invoice_to_dict(inv: Invoice) -> dict[str, Any]:
    return {
        "id": inv.id,
        "invoice_number": inv.invoice_number,
        "patient_id": inv.patient_id,
        "patient_name": inv.patient.full_name if inv.patient else None,
        "appointment_id": inv.appointment_id,
        "invoice_date": _iso(inv.invoice_date),
        "due_date": _iso(inv.due_date),
        "status": inv.status.value,
        "region": inv.region,
        "currency": inv.currency,
        "items": [invoice_item_to_dict(i) for i in inv.items],
        "subtotal": inv.subtotal,
        "total_discount": inv.total_discount,
        "taxable_amount": inv.taxable_amount,
        "total_tax": inv.total_tax,
        "total_amount": inv.total_amount,
        "tax_breakdown": inv.tax_breakdown,
        "discount_type": inv.discount_type,
        "discount_value": inv.discount_value,
        "discount_reason": inv.discount_reason,
        "insurance_id": inv.insurance_id,
        "insurance_coverage": inv.insurance_coverage,
        "patient_payable": inv.patient_payable,
        "paid_amount": inv.paid_amount,
        "balance_amount": inv.balance_amount,
        "balance_display": format_amount(inv.balance_amount, inv.currency),
        "notes": inv.notes,
        "is_active": inv.is_active,
        "created_at": _iso(inv.created_at),
    }


def payment_to_dict(p: Payment) -> dict[str, Any]:
    return {
        "id": p.id,
        "payment_number": p.payment_number,
        "invoice_id": p.invoice_id,
        "invoice_number": p.invoice.invoice_number if p.invoice else None,
        "patient_id": p.patient_id,
        "amount": p.amount,
        "amount_display": format_amount(p.amount, p.currency),
        "currency": p.currency,
        "payment_method": p.payment_method.value,
        "status": p.status.value,
        "transaction_id": p.transaction_id,
        "receipt_number": p.receipt_number,
        "gateway": p.gateway,
        "payment_date": _iso(p.payment_date),
        "notes": p.notes,
        "created_by": p.created_by,
    }


def _next_number(last: str | None, prefix: str) -> str:
    m = re.search(r"(\d+)$", last or "")
    if not m:
        return f"{prefix}-0001"
    return f"{prefix}-{int(m.group(1)) + 1:04d}"


def next_invoice_number(s: Session, tenant_id: str) -> str:
    last = s.scalars(
        select(Invoice.invoice_number)
        .where(Invoice.tenant_id == tenant_id)
        .order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc())
        .limit(1)
    ).first()
    return _next_number(last, "INV")


def next_payment_number(s: Session, tenant_id: str) -> str:
    last = s.scalars(
        select(Payment.payment_number)
        .where(Payment.tenant_id == tenant_id)
        .order_by(Payment.created_at.desc(), Payment.payment_number.desc())
        .limit(1)
    ).first()
    return _next_number(last, "PAY")


# =========================
# Totali
# =========================
def calculate_invoice_totals(
    items: list[dict[str, Any]],
    discount_type: str | None = None,
    discount_value: int | None = None,
    region: str = "US",
    tenant: Tenant | None = None,
) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """
    items: voci con importi già in unità minori (unit_price, discount_amount).
    Ritorna (totali, voci arricchite con total, discount_amount, tax_amount, total_with_tax).

    - subtotale = somma di prezzo x quantità
    - sconto di voce: percentuale (`discount`) oppure fisso (`discount_amount`)
    - sconto di fattura sull'imponibile: percentuale o fisso
    - imposta calcolata per voce, sul totale scontato della voce
    """
    subtotal = 0
    item_discounts = 0
    enriched: list[dict[str, Any]] = []

    for item in items:
        line = item["unit_price"] * item["quantity"]
        subtotal += line

        if item.get("discount") is not None:
            line_discount = percent_of(line, item["discount"])
        else:
            line_discount = item.get("discount_amount") or 0

        item_discounts += line_discount
        line -= line_discount

        line_tax = calculate_tax(
            region, line, [{"type": item["type"], "amount": line, "tax_rate": item.get("tax_rate")}], tenant
        )["total_tax"]

        enriched.append(
            {
                **item,
                "discount_amount": line_discount,
                "total": line,
                "tax_amount": line_tax,
                "total_with_tax": line + line_tax,
            }
        )

    total_discount = item_discounts
    taxable = subtotal - item_discounts

    if discount_type and discount_value is not None:
        if discount_type == "percentage":
            invoice_discount = percent_of(taxable, discount_value)
        else:
            invoice_discount = discount_value
        total_discount += invoice_discount
        taxable -= invoice_discount

    tax = calculate_tax(
        region,
        taxable,
        [{"type": i["type"], "amount": i["total"], "tax_rate": i.get("tax_rate")} for i in enriched],
        tenant,
    )

    totals = {
        "subtotal": subtotal,
        "total_discount": total_discount,
        "taxable_amount": taxable,
        "total_tax": tax["total_tax"],
        "total_amount": tax["final_amount"],
        "tax_breakdown": tax["tax_breakdown"],
    }
    return totals, enriched


def _items_to_minor(items: list[dict[str, Any]], currency: str) -> list[dict[str, Any]]:
    out = []
    for item in items:
        row = dict(item)
        row["unit_price"] = parse_amount(item["unit_price"], currency)
        if item.get("discount_amount") is not None:
            row["discount_amount"] = parse_amount(item["discount_amount"], currency)
        out.append(row)
    return out


def _apply_totals(inv: Invoice, totals: dict[str, Any], items: list[dict[str, Any]]) -> None:
    inv.items = [
        InvoiceItem(
            type=i["type"],
            description=i["description"],
            quantity=i["quantity"],
            unit_price=i["unit_price"],
            discount=i.get("discount"),
            discount_amount=i["discount_amount"],
            tax_rate=i.get("tax_rate"),
            tax_amount=i["tax_amount"],
            total=i["total"],
            total_with_tax=i["total_with_tax"],
        )
        for i in items
    ]
    inv.subtotal = totals["subtotal"]
    inv.total_discount = totals["total_discount"]
    inv.taxable_amount = totals["taxable_amount"]
    inv.total_tax = totals["total_tax"]
    inv.total_amount = totals["total_amount"]
    inv.tax_breakdown = totals["tax_breakdown"]


# =========================
# Fatture
# =========================
def create_invoice(
    tenant_id: str,
    user_id: str,
    patient_id: str,
    items: list[dict[str, Any]],
    appointment_id: str | None = None,
    discount_type: str | None = None,
    discount_value: float | None = None,
    discount_reason: str | None = None,
    insurance_id: str | None = None,
    insurance_coverage: float | None = None,
    due_date: datetime | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    if not items:
        raise BusinessRuleError("At least one item is required")

    with db_session() as s:
        if not find_patient(s, tenant_id, patient_id):
            raise BusinessRuleError("Patient not found", code="NOT_FOUND")

        tenant = s.get(Tenant, tenant_id)
        if not tenant:
            raise BusinessRuleError("Tenant not found", code="NOT_FOUND")

        currency = tenant.currency
        minor_items = _items_to_minor(items, currency)
        discount_minor = parse_amount(discount_value, currency) if discount_value is not None else None
        totals, enriched = calculate_invoice_totals(minor_items, discount_type, discount_minor, tenant.region, tenant)

        coverage = parse_amount(insurance_coverage, currency) if insurance_coverage else 0
        payable = totals["total_amount"] - coverage

        inv = Invoice(
            tenant_id=tenant_id,
            patient_id=patient_id,
            appointment_id=appointment_id,
            invoice_number=next_invoice_number(s, tenant_id),
            invoice_date=utcnow(),
            due_date=due_date,
            status=InvoiceStatus.DRAFT,
            region=tenant.region,
            currency=currency,
            discount_type=discount_type,
            discount_value=discount_minor,
            discount_reason=discount_reason,
            insurance_id=insurance_id,
            insurance_coverage=coverage,
            patient_payable=payable,
            paid_amount=0,
            balance_amount=payable,
            notes=notes,
        )
        _apply_totals(inv, totals, enriched)
        s.add(inv)
        s.flush()
        s.refresh(inv)

        audit_write(s, "invoice", inv.id, user_id, tenant_id, AuditAction.CREATE)
        logger.info("Invoice %s created: total %s %s", inv.invoice_number, format_amount(inv.total_amount, currency), currency)
        return invoice_to_dict(inv)


def _find_invoice(s: Session, tenant_id: str, invoice_id: str) -> Invoice | None:
    return s.execute(
        select(Invoice)
        .options(selectinload(Invoice.items), selectinload(Invoice.patient))
        .where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id, Invoice.deleted_at.is_(None))
    ).scalar_one_or_none()


def get_invoice(tenant_id: str, invoice_id: str, user_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        inv = _find_invoice(s, tenant_id, invoice_id)
        if not inv:
            return None
        audit_read(s, "invoice", invoice_id, user_id, tenant_id)
        return invoice_to_dict(inv)


def list_invoices(
    tenant_id: str,
    user_id: str,
    patient_id: str | None = None,
    status: InvoiceStatus | None = None,
    is_active: bool | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        q = (
            select(Invoice)
            .options(selectinload(Invoice.items), selectinload(Invoice.patient))
            .where(Invoice.tenant_id == tenant_id, Invoice.deleted_at.is_(None))
        )
        if patient_id:
            q = q.where(Invoice.patient_id == patient_id)
        if status:
            q = q.where(Invoice.status == status)
        if is_active is not None:
            q = q.where(Invoice.is_active.is_(is_active))
        if start_date:
            q = q.where(Invoice.invoice_date >= start_date)
        if end_date:
            q = q.where(Invoice.invoice_date <= end_date)
        q = q.order_by(Invoice.invoice_date.desc())

        rows, meta = paginate(s, q, page, limit)
        audit_read(s, "invoice", "list", user_id, tenant_id, meta={"count": len(rows), "patientId": patient_id})
        return {"items": [invoice_to_dict(i) for i in rows], "pagination": meta}


def update_invoice(tenant_id: str, invoice_id: str, user_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
    """Fatture pagate o annullate non si modificano; il paziente resta quello originale."""
    with db_session() as s:
        inv = _find_invoice(s, tenant_id, invoice_id)
        if not inv:
            return None

        if inv.status in _READ_ONLY_INVOICE_STATUSES:
            raise InvalidStateError("Cannot update paid or cancelled invoice")

        before = invoice_to_dict(inv)
        currency = inv.currency

        if changes.get("discount_type") is not None:
            inv.discount_type = changes["discount_type"]
        if changes.get("discount_value") is not None:
            inv.discount_value = parse_amount(changes["discount_value"], currency)

        recompute = bool(changes.get("items")) or "insurance_coverage" in changes
        if changes.get("items"):
            tenant = s.get(Tenant, tenant_id)
            minor_items = _items_to_minor(changes["items"], currency)
            totals, enriched = calculate_invoice_totals(
                minor_items, inv.discount_type, inv.discount_value, inv.region, tenant
            )
            _apply_totals(inv, totals, enriched)

        if "insurance_coverage" in changes:
            inv.insurance_coverage = parse_amount(changes["insurance_coverage"] or 0, currency)

        if recompute:
            inv.patient_payable = inv.total_amount - inv.insurance_coverage
            inv.balance_amount = inv.patient_payable - inv.paid_amount

        for field in ("appointment_id", "discount_reason", "insurance_id", "due_date", "notes", "status"):
            if changes.get(field) is not None:
                setattr(inv, field, changes[field])

        s.flush()
        s.refresh(inv)
        after = invoice_to_dict(inv)
        audit_write(s, "invoice", inv.id, user_id, tenant_id, AuditAction.UPDATE, {"before": before, "after": after})
        return after


def delete_invoice(tenant_id: str, invoice_id: str, user_id: str) -> bool:
    with db_session() as s:
        inv = _find_invoice(s, tenant_id, invoice_id)
        if not inv:
            return False
        inv.deleted_at = utcnow()
        inv.is_active = False
        audit_write(s, "invoice", inv.id, user_id, tenant_id, AuditAction.DELETE)
        return True


# =========================
# Pagamenti
# =========================
def create_payment(
    tenant_id: str,
    user_id: str,
    invoice_id: str,
    amount: float,
    payment_method: PaymentMethod,
    transaction_id: str | None = None,
    receipt_number: str | None = None,
    gateway: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """Registra un pagamento: la fattura passa a PARTIAL o, a saldo zero, a PAID."""
    with db_session() as s:
        inv = _find_invoice(s, tenant_id, invoice_id)
        if not inv:
            raise BusinessRuleError("Invoice not found", code="NOT_FOUND")

        if inv.status == InvoiceStatus.CANCELLED:
            raise InvalidStateError("Cannot pay a cancelled invoice")

        paid = parse_amount(amount, inv.currency)
        if paid <= 0:
            raise BusinessRuleError("Amount must be positive")
        if paid > inv.balance_amount:
            raise BusinessRuleError("Payment amount exceeds remaining balance")

        p = Payment(
            tenant_id=tenant_id,
            invoice_id=inv.id,
            patient_id=inv.patient_id,
            payment_number=next_payment_number(s, tenant_id),
            amount=paid,
            currency=inv.currency,
            payment_method=payment_method,
            status=PaymentStatus.COMPLETED,
            transaction_id=transaction_id,
            receipt_number=receipt_number,
            gateway=gateway,
            payment_date=utcnow(),
            notes=notes,
            created_by=user_id,
        )
        s.add(p)

        inv.paid_amount += paid
        inv.balance_amount -= paid
        if inv.balance_amount <= 0:
            inv.status = InvoiceStatus.PAID
        elif inv.paid_amount > 0:
            inv.status = InvoiceStatus.PARTIAL

        s.flush()
        audit_write(s, "payment", p.id, user_id, tenant_id, AuditAction.CREATE)
        logger.info("Payment %s on %s: %s %s", p.payment_number, inv.invoice_number, format_amount(paid, inv.currency), inv.currency)
        return payment_to_dict(p)


def list_payments(
    tenant_id: str,
    user_id: str,
    invoice_id: str | None = None,
    patient_id: str | None = None,
    status: PaymentStatus | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        q = (
            select(Payment)
            .options(selectinload(Payment.invoice))
            .where(Payment.tenant_id == tenant_id, Payment.deleted_at.is_(None))
        )
        if invoice_id:
            q = q.where(Payment.invoice_id == invoice_id)
        if patient_id:
            q = q.where(Payment.patient_id == patient_id)
        if status:
            q = q.where(Payment.status == status)
        if start_date:
            q = q.where(Payment.payment_date >= start_date)
        if end_date:
            q = q.where(Payment.payment_date <= end_date)
        q = q.order_by(Payment.payment_date.desc())

        rows, meta = paginate(s, q, page, limit)
        audit_read(s, "payment", "list", user_id, tenant_id, meta={"count": len(rows), "invoiceId": invoice_id})
        return {"items": [payment_to_dict(p) for p in rows], "pagination": meta}
