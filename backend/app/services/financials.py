"""Financial derivation rules: revenue, driver pay, factoring, and invoice terms.

Every function here is pure. Inputs may arrive unparsed from older records, so
amounts are coerced and clamped rather than trusted.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from app.core.logging import logger
from app.models.tms import (
    DELIVERED_STATUSES,
    DeductionLine,
    EarningLine,
    Employee,
    Expense,
    Invoice,
    InvoiceStatus,
    Load,
    PaymentKind,
    PaymentProfile,
    PeriodReport,
    Settlement,
)


def to_money(value: float) -> float:
    return round(float(value), 2)


def clamp_amount(value: Any, field: str = "amount") -> float:
    """Coerce to a finite, non-negative float; anything else becomes 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        if value is not None:
            logger.warning("Non-numeric amount clamped to 0", field=field, value=str(value))
        return 0.0
    if not math.isfinite(number) or number < 0:
        logger.warning("Invalid amount clamped to 0", field=field, value=str(value))
        return 0.0
    return number


def clamp_percent(value: Any, field: str = "percent") -> float:
    number = clamp_amount(value, field)
    if number > 100:
        logger.warning("Percentage above 100 clamped", field=field, value=number)
        return 100.0
    return number


def gross_amount(load: Load) -> float:
    """Billable amount of a load: grand total when present, else rate."""
    if load.grand_total is not None and clamp_amount(load.grand_total, "grand_total") > 0:
        return clamp_amount(load.grand_total, "grand_total")
    return clamp_amount(load.rate, "rate")


def company_revenue(rate: Any, driver: Optional[Employee] = None, grand_total: Any = None) -> float:
    """Share of a load's gross the company keeps.

    Company drivers are paid through settlements, so the company books the
    full gross. Owner-operators keep their split; the company books the rest.
    """
    gross = clamp_amount(grand_total, "grand_total") if grand_total is not None else 0.0
    if gross <= 0:
        gross = clamp_amount(rate, "rate")
    if driver is None or not driver.is_owner_operator:
        return to_money(gross)
    split = clamp_percent(driver.split_percent, "split_percent")
    return to_money(gross * (1 - split / 100))


def payment_profile_for(driver: Employee) -> PaymentProfile:
    """Resolve the single pay profile used for every driver-pay computation."""
    if driver.is_owner_operator:
        if driver.split_percent is None and driver.payment_profile is not None:
            return driver.payment_profile
        return PaymentProfile(
            kind=PaymentKind.PERCENTAGE,
            percentage=clamp_percent(driver.split_percent, "split_percent"),
        )
    if driver.payment_profile is not None:
        return driver.payment_profile
    return PaymentProfile(
        kind=PaymentKind.PER_MILE,
        per_mile_rate=clamp_amount(driver.per_mile_rate, "per_mile_rate"),
    )


def compute_gross_pay(load: Load, profile: PaymentProfile) -> float:
    if profile.kind == PaymentKind.PERCENTAGE:
        pay = clamp_amount(load.rate, "rate") * clamp_percent(profile.percentage) / 100
    elif profile.kind == PaymentKind.PER_MILE:
        pay = clamp_amount(load.miles, "miles") * clamp_amount(profile.per_mile_rate, "per_mile_rate")
    else:
        pay = clamp_amount(profile.flat_rate, "flat_rate")
    return to_money(pay)


def auto_settlement_gross_pay(load: Load, driver: Employee) -> float:
    return compute_gross_pay(load, payment_profile_for(driver))


# Load field -> earning category passed through to the driver at 100%.
ACCESSORIAL_FIELDS = (
    ("driver_detention_pay", "detention"),
    ("driver_layover_pay", "layover"),
    ("tonu_fee", "tonu"),
)


def accessorial_earnings(load: Load) -> List[EarningLine]:
    lines = []
    for field, category in ACCESSORIAL_FIELDS:
        amount = clamp_amount(getattr(load, field), field)
        if amount > 0:
            lines.append(
                EarningLine(category=category, amount=to_money(amount), description=f"Load {load.load_number}")
            )
    return lines


@dataclass(frozen=True)
class FactoringTerms:
    fee_percent: float
    fee: float
    factored_amount: float


def factoring_terms(
    grand_total: Any,
    fee_percent_override: Any = None,
    company_default_percent: Any = None,
) -> FactoringTerms:
    """Fee the factor keeps and the advance the carrier receives."""
    if fee_percent_override is not None:
        percent = clamp_percent(fee_percent_override, "factoring_fee_percent")
    elif company_default_percent is not None:
        percent = clamp_percent(company_default_percent, "fee_percentage")
    else:
        percent = 0.0
    total = clamp_amount(grand_total, "grand_total")
    fee = to_money(total * percent / 100)
    return FactoringTerms(fee_percent=percent, fee=fee, factored_amount=to_money(total - fee))


def combined_factoring_terms(loads: Iterable[Load], company_default_percent: Any = None) -> FactoringTerms:
    """Factoring terms of an invoice: each covered load at its own fee percent, summed."""
    total = fee = 0.0
    for load in loads:
        terms = factoring_terms(gross_amount(load), load.factoring_fee_percent, company_default_percent)
        total += gross_amount(load)
        fee += terms.fee
    percent = to_money(fee / total * 100) if total > 0 else 0.0
    return FactoringTerms(fee_percent=percent, fee=to_money(fee), factored_amount=to_money(total - fee))


@dataclass(frozen=True)
class InvoiceTerms:
    amount: float
    status: InvoiceStatus
    due_date: date
    paid_at: Optional[date]


def initial_invoice_terms(load: Load, today: date, net_days: int = 30) -> InvoiceTerms:
    amount = to_money(gross_amount(load))
    due = today + timedelta(days=net_days)
    if load.is_factored:
        return InvoiceTerms(
            amount=amount,
            status=InvoiceStatus.PAID,
            due_date=due,
            paid_at=load.factored_date or today,
        )
    return InvoiceTerms(amount=amount, status=InvoiceStatus.PENDING, due_date=due, paid_at=None)


def invoice_total(loads: Iterable[Load]) -> float:
    return to_money(sum(gross_amount(load) for load in loads))


@dataclass(frozen=True)
class SettlementTotals:
    gross_pay: float
    total_deductions: float
    total_other_earnings: float
    net_pay: float


def settlement_totals(
    gross_pay: Any,
    deductions: Iterable[DeductionLine] = (),
    other_earnings: Iterable[EarningLine] = (),
) -> SettlementTotals:
    gross = to_money(clamp_amount(gross_pay, "gross_pay"))
    total_deductions = to_money(sum(clamp_amount(line.amount, line.category) for line in deductions))
    total_other = to_money(sum(clamp_amount(line.amount, line.category) for line in other_earnings))
    return SettlementTotals(
        gross_pay=gross,
        total_deductions=total_deductions,
        total_other_earnings=total_other,
        net_pay=to_money(gross + total_other - total_deductions),
    )


def outstanding_balance(invoice: Invoice) -> float:
    return to_money(max(0.0, clamp_amount(invoice.amount) - clamp_amount(invoice.paid_amount)))


def validate_payment(invoice: Invoice, amount: float, tolerance_ratio: float = 0.01) -> Optional[str]:
    """Return an operator-facing error message, or None when the payment fits."""
    if not math.isfinite(amount) or amount <= 0:
        return "Payment amount must be greater than 0"
    outstanding = outstanding_balance(invoice)
    if amount > outstanding * (1 + tolerance_ratio):
        return f"Payment exceeds outstanding balance. Maximum: ${outstanding:.2f}"
    return None


def invoice_status_after_payments(invoice: Invoice, paid_amount: float, today: date) -> InvoiceStatus:
    total = clamp_amount(invoice.amount)
    if total > 0 and paid_amount >= total * 0.99:
        return InvoiceStatus.PAID
    overdue = invoice.due_date < today
    if paid_amount > 0:
        return InvoiceStatus.OVERDUE if overdue else InvoiceStatus.PARTIAL
    return InvoiceStatus.OVERDUE if overdue else InvoiceStatus.PENDING


# Expense types an owner-operator pays out of their own split.
OWNER_OPERATOR_PASS_THROUGH = frozenset({"fuel", "insurance", "toll", "maintenance"})


def delivered_on(load: Load) -> Optional[date]:
    """Delivery date, falling back to pickup date; None when neither parses."""
    for value in (load.delivery_date, load.pickup_date):
        if not value:
            continue
        try:
            return date.fromisoformat(str(value)[:10])
        except ValueError:
            logger.warning("Unparseable load date ignored", load_id=load.id, value=str(value))
    return None


def _settlement_load_ids(settlement: Settlement) -> List[str]:
    ids = list(settlement.load_ids)
    if settlement.load_id and settlement.load_id not in ids:
        ids.insert(0, settlement.load_id)
    return ids


def period_report(
    loads: Iterable[Load],
    employees: Iterable[Employee],
    settlements: Iterable[Settlement],
    expenses: Iterable[Expense],
    start: date,
    end: date,
) -> PeriodReport:
    """Company revenue minus driver pay and company-paid expenses for one period.

    Loads count by delivery date. A settlement counts only when every load it
    pays for was delivered in the period; when none qualifies, driver pay is
    estimated from the delivered loads instead.
    """
    loads_by_id: Dict[str, Load] = {load.id: load for load in loads}
    drivers: Dict[str, Employee] = {employee.id: employee for employee in employees}

    def in_period(load: Optional[Load]) -> bool:
        when = delivered_on(load) if load is not None else None
        return when is not None and start <= when <= end

    delivered = [
        load for load in loads_by_id.values() if load.status in DELIVERED_STATUSES and in_period(load)
    ]
    revenue = sum(
        company_revenue(load.rate, drivers.get(load.driver_id), load.grand_total) for load in delivered
    )

    period_settlements = [
        settlement
        for settlement in settlements
        if _settlement_load_ids(settlement)
        and all(in_period(loads_by_id.get(load_id)) for load_id in _settlement_load_ids(settlement))
    ]
    driver_pay = 0.0
    for settlement in period_settlements:
        driver = drivers.get(settlement.driver_id)
        if driver is None:
            continue
        driver_pay += settlement.gross_pay if driver.is_owner_operator else settlement.net_pay
    estimated = not period_settlements
    if estimated:
        for load in delivered:
            driver = drivers.get(load.driver_id)
            if driver is not None and driver.is_driver:
                driver_pay += auto_settlement_gross_pay(load, driver)

    company_expenses = 0.0
    for expense in expenses:
        if expense.expense_date is None or not start <= expense.expense_date <= end:
            continue
        if expense.paid_by and expense.paid_by not in {"company", "tracked_only"}:
            continue
        driver = drivers.get(expense.driver_id)
        if (
            driver is not None
            and driver.is_owner_operator
            and expense.expense_type.lower() in OWNER_OPERATOR_PASS_THROUGH
        ):
            continue
        company_expenses += clamp_amount(expense.amount, "expense")

    return PeriodReport(
        period_start=start,
        period_end=end,
        delivered_loads=len(delivered),
        revenue=to_money(revenue),
        driver_pay=to_money(driver_pay),
        driver_pay_estimated=estimated,
        expenses=to_money(company_expenses),
        profit=to_money(revenue - driver_pay - company_expenses),
    )
