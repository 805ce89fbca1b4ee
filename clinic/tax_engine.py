from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from .models import Tenant

# regole fiscali di default per regione: (tipo imposta, aliquota %)
DEFAULT_TAX_RULES: dict[str, tuple[str, int]] = {
    "US": ("SALES_TAX", 0),  # dipende dallo stato
    "EU": ("VAT", 20),
    "IN": ("GST", 18),
    "CA": ("GST", 5),
    "AU": ("GST", 10),
    "ME": ("VAT", 5),
    "APAC": ("VAT", 0),
}

CURRENCY_DECIMALS = {"USD": 2, "EUR": 2, "GBP": 2, "INR": 2, "AED": 2, "SAR": 2, "AUD": 2, "CAD": 2}


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount: int, rate: int | float | Decimal) -> int:
    """Quota percentuale di un importo in unità minori, arrotondata half-up."""
    return _round(Decimal(amount) * Decimal(str(rate)) / 100)


def parse_amount(amount: str | int | float | Decimal, currency: str = "USD") -> int:
    """Importo in unità maggiori (es. 12.50) -> unità minori (1250)."""
    decimals = CURRENCY_DECIMALS.get(currency, 2)
    return _round(Decimal(str(amount)) * (10 ** decimals))


def format_amount(amount: int, currency: str = "USD") -> str:
    decimals = CURRENCY_DECIMALS.get(currency, 2)
    major = Decimal(amount) / (10 ** decimals)
    return f"{major:.{decimals}f}"


def get_tax_config(region: str, tenant: Tenant | None = None) -> tuple[str, int]:
    # le regole del tenant hanno la precedenza su quelle di regione
    if tenant is not None and tenant.tax_type:
        return tenant.tax_type, tenant.tax_rate or 0
    return DEFAULT_TAX_RULES.get(region, ("NONE", 0))


def calculate_tax(
    region: str,
    taxable_amount: int,
    items: list[dict[str, Any]] | None = None,
    tenant: Tenant | None = None,
) -> dict[str, Any]:
    """
    Calcola l'imposta su un importo (unità minori).
    Con `items` ([{type, amount, tax_rate}]) l'imposta è per voce, con l'aliquota della voce
    se indicata, altrimenti quella di regione.
    Ritorna total_tax, tax_breakdown e final_amount (imponibile + imposta).
    """
    tax_type, rate = get_tax_config(region, tenant)

    if tax_type == "NONE" or rate == 0:
        return {"total_tax": 0, "tax_breakdown": [], "final_amount": taxable_amount}

    breakdown: list[dict[str, Any]] = []
    if items:
        total_tax = 0
        for item in items:
            item_rate = item.get("tax_rate")
            if item_rate is None:
                item_rate = rate
            tax = percent_of(item["amount"], item_rate)
            breakdown.append(
                {"tax_type": tax_type, "rate": item_rate, "amount": tax, "taxable_amount": item["amount"]}
            )
            total_tax += tax
    else:
        total_tax = percent_of(taxable_amount, rate)
        breakdown.append({"tax_type": tax_type, "rate": rate, "amount": total_tax, "taxable_amount": taxable_amount})

    return {"total_tax": total_tax, "tax_breakdown": breakdown, "final_amount": taxable_amount + total_tax}
