"""
Tests for tax rules, invoice totals and payments.
"""
import pytest

from clinic.billing_service import (
    calculate_invoice_totals,
    create_invoice,
    create_payment,
    delete_invoice,
    get_invoice,
    list_invoices,
    list_payments,
    update_invoice,
)
from clinic.errors import BusinessRuleError, InvalidStateError
from clinic.models import InvoiceItemType, InvoiceStatus, PaymentMethod, Tenant
from clinic.tax_engine import calculate_tax, format_amount, get_tax_config, parse_amount

ITEMS = [
    {"type": InvoiceItemType.CONSULTATION, "description": "Visit", "quantity": 1, "unit_price": 100.0, "discount": 10},
    {"type": InvoiceItemType.MEDICATION, "description": "Drops", "quantity": 2, "unit_price": 25.0, "tax_rate": 5},
]


class TestTaxEngine:
    def test_amount_conversion(self):
        assert parse_amount("12.50") == 1250
        assert parse_amount(19.99, "EUR") == 1999
        assert parse_amount("12.345") == 1235  # half-up
        assert format_amount(1250) == "12.50"
        assert format_amount(5, "INR") == "0.05"

    @pytest.mark.parametrize(
        "region, expected",
        [("US", 0), ("EU", 2000), ("IN", 1800), ("CA", 500), ("AU", 1000), ("ME", 500), ("APAC", 0), ("XX", 0)],
    )
    def test_regional_defaults(self, region, expected):
        assert calculate_tax(region, 10000)["total_tax"] == expected

    def test_no_tax_has_empty_breakdown(self):
        result = calculate_tax("US", 10000)
        assert result == {"total_tax": 0, "tax_breakdown": [], "final_amount": 10000}

    def test_tenant_override(self):
        tenant = Tenant(name="T", region="IN", currency="INR", tax_type="GST", tax_rate=12)
        assert get_tax_config("IN", tenant) == ("GST", 12)
        assert calculate_tax("IN", 10000, tenant=tenant)["total_tax"] == 1200

    def test_per_item_rates(self):
        result = calculate_tax(
            "EU", 15000, [{"type": "a", "amount": 10000}, {"type": "b", "amount": 5000, "tax_rate": 5}]
        )
        assert result["total_tax"] == 2000 + 250
        assert [b["rate"] for b in result["tax_breakdown"]] == [20, 5]
        assert result["final_amount"] == 17250


class TestInvoiceTotals:
    def test_discounts_and_tax(self):
        items = [
            {"type": "consultation", "unit_price": 10000, "quantity": 1, "discount": 10},
            {"type": "medication", "unit_price": 2500, "quantity": 2, "tax_rate": 5},
        ]

        totals, enriched = calculate_invoice_totals(items, "fixed", 500, "EU")

        assert totals["subtotal"] == 15000
        assert totals["total_discount"] == 1500
        assert totals["taxable_amount"] == 13500
        assert totals["total_tax"] == 1800 + 250
        assert totals["total_amount"] == 13500 + 2050
        assert [i["total"] for i in enriched] == [9000, 5000]
        assert [i["total_with_tax"] for i in enriched] == [10800, 5250]

    def test_percentage_invoice_discount(self):
        items = [{"type": "other", "unit_price": 10000, "quantity": 1}]
        totals, _ = calculate_invoice_totals(items, "percentage", 25, "US")
        assert totals["total_discount"] == 2500
        assert totals["total_amount"] == 7500

    def test_fixed_item_discount(self):
        items = [{"type": "other", "unit_price": 1000, "quantity": 3, "discount_amount": 300}]
        totals, enriched = calculate_invoice_totals(items, region="US")
        assert enriched[0]["discount_amount"] == 300
        assert totals["total_amount"] == 2700


class TestInvoices:
    @pytest.fixture
    def invoice(self, tenant_id, user_id, patient_id):
        return create_invoice(
            tenant_id, user_id, patient_id, [dict(i) for i in ITEMS],
            discount_type="fixed", discount_value=5.0, insurance_coverage=50.0,
        )

    def test_create(self, invoice):
        assert invoice["invoice_number"] == "INV-0001"
        assert invoice["status"] == "draft"
        assert invoice["currency"] == "EUR"
        assert invoice["region"] == "EU"
        assert invoice["total_amount"] == 15550
        assert invoice["insurance_coverage"] == 5000
        assert invoice["patient_payable"] == 10550
        assert invoice["balance_amount"] == 10550
        assert invoice["balance_display"] == "105.50"
        assert len(invoice["items"]) == 2
        assert invoice["patient_name"] == "Mario Rossi"

    def test_numbers_increment(self, tenant_id, user_id, patient_id, invoice):
        second = create_invoice(tenant_id, user_id, patient_id, [dict(ITEMS[0])])
        assert second["invoice_number"] == "INV-0002"

    def test_unknown_patient(self, tenant_id, user_id):
        with pytest.raises(BusinessRuleError, match="Patient not found"):
            create_invoice(tenant_id, user_id, "missing", [dict(ITEMS[0])])

    def test_partial_then_full_payment(self, tenant_id, user_id, invoice):
        p1 = create_payment(tenant_id, user_id, invoice["id"], 50.0, PaymentMethod.CARD)
        assert p1["payment_number"] == "PAY-0001"
        assert p1["amount"] == 5000

        inv = get_invoice(tenant_id, invoice["id"], user_id)
        assert inv["status"] == "partial"
        assert inv["paid_amount"] == 5000
        assert inv["balance_amount"] == 5550

        with pytest.raises(BusinessRuleError, match="Payment amount exceeds remaining balance"):
            create_payment(tenant_id, user_id, invoice["id"], 60.0, PaymentMethod.CASH)

        p2 = create_payment(tenant_id, user_id, invoice["id"], 55.5, PaymentMethod.CASH)
        assert p2["payment_number"] == "PAY-0002"

        inv = get_invoice(tenant_id, invoice["id"], user_id)
        assert inv["status"] == "paid"
        assert inv["balance_amount"] == 0
        assert list_payments(tenant_id, user_id, invoice_id=invoice["id"])["pagination"]["total"] == 2

    def test_paid_invoice_is_read_only(self, tenant_id, user_id, invoice):
        create_payment(tenant_id, user_id, invoice["id"], 105.5, PaymentMethod.UPI)
        with pytest.raises(InvalidStateError, match="Cannot update paid or cancelled invoice"):
            update_invoice(tenant_id, invoice["id"], user_id, {"notes": "x"})

    def test_update_items_recomputes_balance(self, tenant_id, user_id, invoice):
        create_payment(tenant_id, user_id, invoice["id"], 10.0, PaymentMethod.CASH)

        new_items = [{"type": InvoiceItemType.PROCEDURE, "description": "X-ray", "quantity": 1, "unit_price": 200.0}]
        updated = update_invoice(tenant_id, invoice["id"], user_id, {"items": new_items})

        # 200 - 5 (sconto fisso) = 195 imponibile, IVA 20% sulla voce = 40
        assert updated["subtotal"] == 20000
        assert updated["total_amount"] == 19500 + 4000
        assert updated["patient_payable"] == 23500 - 5000
        assert updated["balance_amount"] == 18500 - 1000
        assert len(updated["items"]) == 1

    def test_list_and_delete(self, tenant_id, user_id, invoice):
        listed = list_invoices(tenant_id, user_id, status=InvoiceStatus.DRAFT)
        assert [i["id"] for i in listed["items"]] == [invoice["id"]]

        assert delete_invoice(tenant_id, invoice["id"], user_id) is True
        assert get_invoice(tenant_id, invoice["id"], user_id) is None
        assert list_invoices(tenant_id, user_id)["pagination"]["total"] == 0
