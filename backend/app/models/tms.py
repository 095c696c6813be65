"""Domain models for loads, billing, settlements, and the records linked to them."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Supported operator roles."""

    OWNER = "owner"
    ADMIN = "admin"
    DISPATCHER = "dispatcher"
    BILLING = "billing"
    DRIVER = "driver"
    VIEWER = "viewer"


@dataclass
class Actor:
    """Resolved caller identity; every mutation is attributed to one."""

    uid: str
    role: str


class LoadStatus(str, Enum):
    """Operational lifecycle status for a load."""

    AVAILABLE = "available"
    DISPATCHED = "dispatched"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TONU = "tonu"


DELIVERED_STATUSES = frozenset({LoadStatus.DELIVERED, LoadStatus.COMPLETED})


class EmployeeType(str, Enum):
    DRIVER = "driver"
    OWNER_OPERATOR = "owner_operator"
    DISPATCHER = "dispatcher"
    MANAGER = "manager"
    OTHER = "other"


DRIVER_TYPES = frozenset({EmployeeType.DRIVER, EmployeeType.OWNER_OPERATOR})


class PaymentKind(str, Enum):
    PERCENTAGE = "percentage"
    PER_MILE = "per_mile"
    FLAT_RATE = "flat_rate"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class SettlementStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"
    ADJUSTMENT = "ADJUSTMENT"


class PaymentProfile(BaseModel):
    """How a driver is paid for a load; one profile kind per driver."""

    kind: PaymentKind
    percentage: float = Field(default=0.0, ge=0, le=100)
    per_mile_rate: float = Field(default=0.0, ge=0)
    flat_rate: float = Field(default=0.0, ge=0)


class AdjustmentEntry(BaseModel):
    """One field edit on a locked load."""

    id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    changed_by: str
    field: str
    old_value: Any = None
    new_value: Any = None
    reason: str


class Load(BaseModel):
    """Persisted load record."""

    id: str
    load_number: str
    status: LoadStatus = LoadStatus.AVAILABLE
    rate: float = 0.0
    grand_total: Optional[float] = None
    miles: float = 0.0
    driver_detention_pay: float = 0.0
    driver_layover_pay: float = 0.0
    tonu_fee: float = 0.0
    customer_name: Optional[str] = None
    broker_id: Optional[str] = None
    broker_name: Optional[str] = None
    driver_id: Optional[str] = None
    dispatcher_id: Optional[str] = None
    truck_id: Optional[str] = None
    trailer_id: Optional[str] = None
    pickup_location: Optional[str] = None
    delivery_location: Optional[str] = None
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    notes: Optional[str] = None
    pod_number: Optional[str] = None
    bol_number: Optional[str] = None
    documents: List[str] = Field(default_factory=list)
    is_factored: bool = False
    factoring_company_id: Optional[str] = None
    factoring_fee_percent: Optional[float] = None
    factoring_fee: Optional[float] = None
    factored_amount: Optional[float] = None
    factored_date: Optional[date] = None
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    settlement_id: Optional[str] = None
    is_locked: bool = False
    adjustment_log: List[AdjustmentEntry] = Field(default_factory=list)
    created_by: str = "system"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class LoadCreateRequest(BaseModel):
    """Request payload to create a new load."""

    status: LoadStatus = LoadStatus.AVAILABLE
    rate: float = Field(default=0.0, ge=0)
    grand_total: Optional[float] = Field(default=None, ge=0)
    miles: float = Field(default=0.0, ge=0)
    driver_detention_pay: float = Field(default=0.0, ge=0)
    driver_layover_pay: float = Field(default=0.0, ge=0)
    tonu_fee: float = Field(default=0.0, ge=0)
    customer_name: Optional[str] = None
    broker_id: Optional[str] = None
    broker_name: Optional[str] = None
    driver_id: Optional[str] = None
    dispatcher_id: Optional[str] = None
    truck_id: Optional[str] = None
    trailer_id: Optional[str] = None
    pickup_location: Optional[str] = None
    delivery_location: Optional[str] = None
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    notes: Optional[str] = None
    pod_number: Optional[str] = None
    bol_number: Optional[str] = None
    documents: List[str] = Field(default_factory=list)
    is_factored: bool = False
    factoring_company_id: Optional[str] = None
    factoring_fee_percent: Optional[float] = Field(default=None, ge=0, le=100)
    factored_date: Optional[date] = None


class LoadUpdateRequest(BaseModel):
    """Patch fields for an existing load. Only explicitly set fields apply."""

    status: Optional[LoadStatus] = None
    rate: Optional[float] = Field(default=None, ge=0)
    grand_total: Optional[float] = Field(default=None, ge=0)
    miles: Optional[float] = Field(default=None, ge=0)
    driver_detention_pay: Optional[float] = Field(default=None, ge=0)
    driver_layover_pay: Optional[float] = Field(default=None, ge=0)
    tonu_fee: Optional[float] = Field(default=None, ge=0)
    customer_name: Optional[str] = None
    broker_id: Optional[str] = None
    broker_name: Optional[str] = None
    driver_id: Optional[str] = None
    dispatcher_id: Optional[str] = None
    truck_id: Optional[str] = None
    trailer_id: Optional[str] = None
    pickup_location: Optional[str] = None
    delivery_location: Optional[str] = None
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    notes: Optional[str] = None
    pod_number: Optional[str] = None
    bol_number: Optional[str] = None
    documents: Optional[List[str]] = None
    is_factored: Optional[bool] = None
    factoring_company_id: Optional[str] = None
    factoring_fee_percent: Optional[float] = Field(default=None, ge=0, le=100)
    factored_date: Optional[date] = None


class Employee(BaseModel):
    """Driver, owner-operator, dispatcher, or other staff member."""

    id: str
    employee_number: str
    first_name: str
    last_name: str = ""
    employee_type: EmployeeType = EmployeeType.DRIVER
    status: str = "active"
    email: Optional[str] = None
    phone: Optional[str] = None
    split_percent: Optional[float] = None
    per_mile_rate: Optional[float] = None
    payment_profile: Optional[PaymentProfile] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    @property
    def is_driver(self) -> bool:
        return self.employee_type in DRIVER_TYPES

    @property
    def is_owner_operator(self) -> bool:
        return self.employee_type == EmployeeType.OWNER_OPERATOR


class EmployeeCreateRequest(BaseModel):
    employee_number: Optional[str] = None
    first_name: str = Field(min_length=1)
    last_name: str = ""
    employee_type: EmployeeType = EmployeeType.DRIVER
    status: str = "active"
    email: Optional[str] = None
    phone: Optional[str] = None
    split_percent: Optional[float] = Field(default=None, ge=0, le=100)
    per_mile_rate: Optional[float] = Field(default=None, ge=0)
    payment_profile: Optional[PaymentProfile] = None


class EmployeeUpdateRequest(BaseModel):
    employee_number: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    employee_type: Optional[EmployeeType] = None
    status: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    split_percent: Optional[float] = Field(default=None, ge=0, le=100)
    per_mile_rate: Optional[float] = Field(default=None, ge=0)
    payment_profile: Optional[PaymentProfile] = None


class Truck(BaseModel):
    id: str
    unit_number: str
    make: Optional[str] = None
    model: Optional[str] = None
    vin: Optional[str] = None
    status: str = "active"
    assigned_driver_id: Optional[str] = None
    assigned_trailer_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TruckCreateRequest(BaseModel):
    unit_number: str = Field(min_length=1)
    make: Optional[str] = None
    model: Optional[str] = None
    vin: Optional[str] = None
    status: str = "active"
    assigned_driver_id: Optional[str] = None
    assigned_trailer_id: Optional[str] = None


class TruckUpdateRequest(BaseModel):
    unit_number: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    vin: Optional[str] = None
    status: Optional[str] = None
    assigned_driver_id: Optional[str] = None
    assigned_trailer_id: Optional[str] = None


class Trailer(BaseModel):
    id: str
    unit_number: str
    trailer_type: str = "dry_van"
    status: str = "active"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TrailerCreateRequest(BaseModel):
    unit_number: str = Field(min_length=1)
    trailer_type: str = "dry_van"
    status: str = "active"


class TrailerUpdateRequest(BaseModel):
    unit_number: Optional[str] = None
    trailer_type: Optional[str] = None
    status: Optional[str] = None


class Broker(BaseModel):
    id: str
    name: str
    mc_number: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BrokerCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    mc_number: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class BrokerUpdateRequest(BaseModel):
    name: Optional[str] = None
    mc_number: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class FactoringCompany(BaseModel):
    id: str
    name: str
    fee_percentage: float = 0.0
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class FactoringCompanyCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    fee_percentage: float = Field(default=0.0, ge=0, le=100)
    email: Optional[str] = None
    phone: Optional[str] = None


class FactoringCompanyUpdateRequest(BaseModel):
    name: Optional[str] = None
    fee_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    email: Optional[str] = None
    phone: Optional[str] = None


class Expense(BaseModel):
    id: str
    expense_type: str
    amount: float = 0.0
    expense_date: Optional[date] = None
    description: Optional[str] = None
    paid_by: str = "company"
    load_id: Optional[str] = None
    driver_id: Optional[str] = None
    truck_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ExpenseCreateRequest(BaseModel):
    expense_type: str = Field(min_length=1)
    amount: float = Field(default=0.0, ge=0)
    expense_date: Optional[date] = None
    description: Optional[str] = None
    paid_by: str = "company"
    load_id: Optional[str] = None
    driver_id: Optional[str] = None
    truck_id: Optional[str] = None


class ExpenseUpdateRequest(BaseModel):
    expense_type: Optional[str] = None
    amount: Optional[float] = Field(default=None, ge=0)
    expense_date: Optional[date] = None
    description: Optional[str] = None
    paid_by: Optional[str] = None
    load_id: Optional[str] = None
    driver_id: Optional[str] = None
    truck_id: Optional[str] = None


class InvoicePayment(BaseModel):
    id: str
    amount: float
    paid_on: date
    method: Optional[str] = None
    reference: Optional[str] = None
    recorded_by: str = "system"
    created_at: datetime = Field(default_factory=_utcnow)


class Invoice(BaseModel):
    """Receivable covering one or more loads."""

    id: str
    invoice_number: str
    load_ids: List[str] = Field(default_factory=list)
    customer_name: Optional[str] = None
    amount: float = 0.0
    status: InvoiceStatus = InvoiceStatus.PENDING
    invoice_date: date
    due_date: date
    paid_at: Optional[date] = None
    paid_amount: float = 0.0
    payments: List[InvoicePayment] = Field(default_factory=list)
    is_factored: bool = False
    factoring_company_id: Optional[str] = None
    factoring_company_name: Optional[str] = None
    factored_date: Optional[date] = None
    factoring_fee: Optional[float] = None
    factored_amount: Optional[float] = None
    notes: Optional[str] = None
    auto_generated: bool = False
    created_by: str = "system"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class InvoiceCreateRequest(BaseModel):
    """Manual invoice for one or more loads; amount defaults to the loads' totals."""

    load_ids: List[str] = Field(min_length=1)
    customer_name: Optional[str] = None
    amount: Optional[float] = Field(default=None, ge=0)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    is_factored: Optional[bool] = None
    factoring_company_id: Optional[str] = None
    notes: Optional[str] = None


class InvoiceUpdateRequest(BaseModel):
    customer_name: Optional[str] = None
    amount: Optional[float] = Field(default=None, ge=0)
    status: Optional[InvoiceStatus] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: float = Field(gt=0)
    paid_on: Optional[date] = None
    method: Optional[str] = None
    reference: Optional[str] = None


class DeductionLine(BaseModel):
    category: str
    amount: float = Field(default=0.0, ge=0)
    description: Optional[str] = None


class EarningLine(BaseModel):
    category: str
    amount: float = Field(default=0.0, ge=0)
    description: Optional[str] = None


class Settlement(BaseModel):
    """Driver pay record across one or more loads."""

    id: str
    settlement_number: str
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    load_id: Optional[str] = None
    load_ids: List[str] = Field(default_factory=list)
    gross_pay: float = 0.0
    deductions: List[DeductionLine] = Field(default_factory=list)
    total_deductions: float = 0.0
    other_earnings: List[EarningLine] = Field(default_factory=list)
    net_pay: float = 0.0
    status: SettlementStatus = SettlementStatus.PENDING
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    settlement_date: date
    notes: Optional[str] = None
    auto_generated: bool = False
    created_by: str = "system"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class SettlementCreateRequest(BaseModel):
    driver_id: str
    load_ids: List[str] = Field(min_length=1)
    deductions: List[DeductionLine] = Field(default_factory=list)
    other_earnings: List[EarningLine] = Field(default_factory=list)
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    status: SettlementStatus = SettlementStatus.DRAFT
    notes: Optional[str] = None


class SettlementUpdateRequest(BaseModel):
    deductions: Optional[List[DeductionLine]] = None
    other_earnings: Optional[List[EarningLine]] = None
    status: Optional[SettlementStatus] = None
    notes: Optional[str] = None


class AuditLogEntry(BaseModel):
    """Immutable audit trail record."""

    id: str
    tenant_id: str
    actor_uid: str
    actor_role: str
    entity_type: str
    entity_id: str
    action: AuditAction
    summary: str = ""
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class Task(BaseModel):
    """Follow-up work item spawned by a workflow rule."""

    id: str
    template_key: str
    entity_type: str
    entity_id: str
    title: str
    description: str = ""
    priority: str = "medium"
    status: str = "pending"
    dedupe_key: str
    rule_id: str
    due_at: Optional[datetime] = None
    assigned_to: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class PeriodReport(BaseModel):
    """Revenue, driver pay, and profit for loads delivered within a date range."""

    period_start: date
    period_end: date
    delivered_loads: int = 0
    revenue: float = 0.0
    driver_pay: float = 0.0
    driver_pay_estimated: bool = False
    expenses: float = 0.0
    profit: float = 0.0


ENTITY_MODELS: Dict[str, type[BaseModel]] = {
    "load": Load,
    "employee": Employee,
    "invoice": Invoice,
    "settlement": Settlement,
    "broker": Broker,
    "factoring_company": FactoringCompany,
    "truck": Truck,
    "trailer": Trailer,
    "expense": Expense,
    "task": Task,
}
