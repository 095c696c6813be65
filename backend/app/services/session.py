"""Per-tenant session: local collections, managers, and the caller-facing API."""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from app.core.config import Settings, get_settings
from app.core.errors import IOFailure, NotFound, PermissionDenied, ValidationFailed
from app.core.logging import logger
from app.models.tms import (
    ENTITY_MODELS,
    Actor,
    AuditLogEntry,
    Broker,
    BrokerCreateRequest,
    BrokerUpdateRequest,
    Employee,
    EmployeeCreateRequest,
    EmployeeUpdateRequest,
    Expense,
    ExpenseCreateRequest,
    ExpenseUpdateRequest,
    FactoringCompany,
    FactoringCompanyCreateRequest,
    FactoringCompanyUpdateRequest,
    Invoice,
    InvoiceCreateRequest,
    InvoiceUpdateRequest,
    Load,
    LoadCreateRequest,
    LoadUpdateRequest,
    PaymentRequest,
    PeriodReport,
    Settlement,
    SettlementCreateRequest,
    SettlementUpdateRequest,
    Task,
    Trailer,
    TrailerCreateRequest,
    TrailerUpdateRequest,
    Truck,
    TruckCreateRequest,
    TruckUpdateRequest,
    UserRole,
)
from app.services.audit_log import AuditLogger
from app.services.entity_store import EntityStore, StoreIOError
from app.services import financials
from app.services.integrity import ReferenceIndex, ReferentialIntegrityCoordinator
from app.services.invoicing import InvoiceSettlementGenerator
from app.services.lifecycle import LoadLifecycleManager
from app.services.optimistic import EntityCollection, OptimisticUpdateCoordinator, PendingWrite
from app.services.workflow import WorkflowTrigger


_ALL = frozenset(ENTITY_MODELS) - {"task"}
_CRUD = frozenset({"create", "update", "delete"})

# role -> entity type -> permitted actions
ROLE_PERMISSIONS: Dict[str, Dict[str, frozenset]] = {
    UserRole.OWNER.value: {entity_type: _CRUD for entity_type in _ALL},
    UserRole.ADMIN.value: {entity_type: _CRUD for entity_type in _ALL},
    UserRole.DISPATCHER.value: {
        entity_type: _CRUD for entity_type in ("load", "employee", "truck", "trailer", "broker", "expense")
    },
    UserRole.BILLING.value: {
        **{entity_type: _CRUD for entity_type in ("invoice", "settlement", "factoring_company", "broker", "expense")},
        "load": frozenset({"update"}),
    },
    UserRole.DRIVER.value: {"load": frozenset({"update"})},
    UserRole.VIEWER.value: {},
}


class TenantSession:
    """Everything one tenant's callers touch, bound to a single store."""

    def __init__(
        self,
        store: EntityStore,
        tenant_id: str,
        settings: Optional[Settings] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.tenant_id = tenant_id
        self.settings = settings or get_settings()
        self._store = store
        self._today = today
        self._unsubscribers: List[Callable[[], None]] = []

        self.index = ReferenceIndex()
        self.collections: Dict[str, EntityCollection] = {
            entity_type: EntityCollection(entity_type, [self.index.on_record_change])
            for entity_type in ENTITY_MODELS
        }
        self.coordinator = OptimisticUpdateCoordinator(store, tenant_id, self.collections)
        self.audit = AuditLogger(store, tenant_id)
        self.workflow = WorkflowTrigger(store, tenant_id)
        self.integrity = ReferentialIntegrityCoordinator(self.index, self.collections)
        self.invoicing = InvoiceSettlementGenerator(
            tenant_id,
            self.collections,
            self.coordinator,
            self.index,
            self.audit,
            self.workflow,
            self.settings,
            today=today,
        )
        self.lifecycle = LoadLifecycleManager(
            tenant_id,
            self.collections,
            self.coordinator,
            self.integrity,
            self.invoicing,
            self.audit,
            self.workflow,
            self.settings,
            today=today,
        )

    # ------------------------------------------------------------------
    # session lifetime
    # ------------------------------------------------------------------

    async def open(self) -> "TenantSession":
        """Load every collection and subscribe to store pushes."""
        for entity_type, collection in self.collections.items():
            try:
                rows = await self._store.list(self.tenant_id, entity_type)
            except StoreIOError as exc:
                self.close()
                raise IOFailure(f"Could not load {entity_type} records; please retry.") from exc
            collection.replace_all(rows)
            self._unsubscribers.append(
                self._store.subscribe(
                    self.tenant_id,
                    entity_type,
                    collection.replace_all,
                    self._subscription_error(entity_type),
                )
            )
        logger.info(
            "Tenant session opened",
            tenant_id=self.tenant_id,
            counts={entity_type: len(collection) for entity_type, collection in self.collections.items()},
        )
        return self

    def _subscription_error(self, entity_type: str) -> Callable[[Exception], None]:
        def _on_error(exc: Exception) -> None:
            logger.warning(
                "Store push failed; keeping current local state",
                tenant_id=self.tenant_id,
                entity_type=entity_type,
                error=str(exc),
            )

        return _on_error

    def close(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()

    # ------------------------------------------------------------------
    # shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _authorize(actor: Optional[Actor], entity_type: str, action: str) -> Actor:
        if actor is None or not actor.uid:
            raise PermissionDenied("A signed-in user is required")
        permitted = ROLE_PERMISSIONS.get(actor.role, {}).get(entity_type, frozenset())
        if action not in permitted:
            raise PermissionDenied(
                f"Role '{actor.role}' cannot {action} {entity_type.replace('_', ' ')} records"
            )
        return actor

    def _get(self, entity_type: str, entity_id: str) -> BaseModel:
        record = self.collections[entity_type].get(entity_id)
        if record is None:
            raise NotFound(entity_type, entity_id)
        return record

    def _list(self, entity_type: str) -> List[Any]:
        return sorted(
            self.collections[entity_type].all(),
            key=lambda record: getattr(record, "created_at", None) or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )

    async def _create(self, entity_type: str, fields: Dict[str, Any], actor: Actor, label: str) -> BaseModel:
        now = datetime.now(timezone.utc)
        record = ENTITY_MODELS[entity_type].model_validate(
            {"id": uuid.uuid4().hex, "created_at": now, "updated_at": now, **fields}
        )
        await self.coordinator.commit([PendingWrite.save(entity_type, record)], f"create {entity_type}")
        await self.audit.record_create(actor, entity_type, record.id, record, summary=f"Created {label}")
        return record

    async def _update(self, entity_type: str, entity_id: str, request: BaseModel, actor: Actor) -> BaseModel:
        existing = self._get(entity_type, entity_id)
        patch = request.model_dump(exclude_unset=True)
        if not patch:
            raise ValidationFailed("No fields to update")
        updated = ENTITY_MODELS[entity_type].model_validate(
            {**existing.model_dump(), **patch, "updated_at": datetime.now(timezone.utc)}
        )
        await self.coordinator.commit([PendingWrite.save(entity_type, updated)], f"update {entity_type}")
        await self.audit.record_update(
            actor, entity_type, entity_id, existing, updated, metadata={"fields": sorted(patch)}
        )
        return updated

    async def _delete(self, entity_type: str, entity_id: str, actor: Actor, force: bool, display_name: str) -> None:
        existing = self._get(entity_type, entity_id)
        blockers = self.integrity.check_delete(entity_type, entity_id, force=force, display_name=display_name)
        writes = self.integrity.unlink_writes(entity_type, entity_id)
        writes.append(PendingWrite.delete(entity_type, entity_id))
        await self.coordinator.commit(writes, f"delete {entity_type}")
        await self.audit.record_delete(
            actor,
            entity_type,
            entity_id,
            existing,
            summary=f"Deleted {display_name}",
            metadata={"forced": force, "blockers": len(blockers), "unlinked_records": len(writes) - 1},
        )

    # ------------------------------------------------------------------
    # loads
    # ------------------------------------------------------------------

    def list_loads(self) -> List[Load]:
        return self._list("load")

    def get_load(self, load_id: str) -> Load:
        return self.lifecycle.get(load_id)

    async def add_load(self, request: LoadCreateRequest, actor: Optional[Actor]) -> Load:
        return await self.lifecycle.create(request, self._authorize(actor, "load", "create"))

    async def update_load(
        self,
        load_id: str,
        updates: LoadUpdateRequest,
        actor: Optional[Actor],
        reason: Optional[str] = None,
    ) -> Load:
        return await self.lifecycle.update(load_id, updates, self._authorize(actor, "load", "update"), reason)

    async def delete_load(self, load_id: str, actor: Optional[Actor], force: bool = False) -> None:
        await self.lifecycle.delete(load_id, self._authorize(actor, "load", "delete"), force=force)

    # ------------------------------------------------------------------
    # employees
    # ------------------------------------------------------------------

    def list_employees(self) -> List[Employee]:
        return self._list("employee")

    def get_employee(self, employee_id: str) -> Employee:
        return self._get("employee", employee_id)

    async def add_employee(self, request: EmployeeCreateRequest, actor: Optional[Actor]) -> Employee:
        actor = self._authorize(actor, "employee", "create")
        fields = request.model_dump()
        if not fields.get("employee_number"):
            fields["employee_number"] = await self.coordinator.allocate_number("EMP", self._today().year, 1)
        name = " ".join(part for part in (request.first_name, request.last_name) if part)
        return await self._create("employee", fields, actor, f"employee {name}")

    async def update_employee(
        self, employee_id: str, request: EmployeeUpdateRequest, actor: Optional[Actor]
    ) -> Employee:
        return await self._update("employee", employee_id, request, self._authorize(actor, "employee", "update"))

    async def delete_employee(self, employee_id: str, actor: Optional[Actor], force: bool = False) -> None:
        actor = self._authorize(actor, "employee", "delete")
        employee = self.get_employee(employee_id)
        await self._delete("employee", employee_id, actor, force, f"Employee {employee.full_name}")

    # ------------------------------------------------------------------
    # trucks / trailers
    # ------------------------------------------------------------------

    def list_trucks(self) -> List[Truck]:
        return self._list("truck")

    async def add_truck(self, request: TruckCreateRequest, actor: Optional[Actor]) -> Truck:
        actor = self._authorize(actor, "truck", "create")
        return await self._create("truck", request.model_dump(), actor, f"truck {request.unit_number}")

    async def update_truck(self, truck_id: str, request: TruckUpdateRequest, actor: Optional[Actor]) -> Truck:
        return await self._update("truck", truck_id, request, self._authorize(actor, "truck", "update"))

    async def delete_truck(self, truck_id: str, actor: Optional[Actor], force: bool = False) -> None:
        actor = self._authorize(actor, "truck", "delete")
        truck = self._get("truck", truck_id)
        await self._delete("truck", truck_id, actor, force, f"Truck {truck.unit_number}")

    def list_trailers(self) -> List[Trailer]:
        return self._list("trailer")

    async def add_trailer(self, request: TrailerCreateRequest, actor: Optional[Actor]) -> Trailer:
        actor = self._authorize(actor, "trailer", "create")
        return await self._create("trailer", request.model_dump(), actor, f"trailer {request.unit_number}")

    async def update_trailer(
        self, trailer_id: str, request: TrailerUpdateRequest, actor: Optional[Actor]
    ) -> Trailer:
        return await self._update("trailer", trailer_id, request, self._authorize(actor, "trailer", "update"))

    async def delete_trailer(self, trailer_id: str, actor: Optional[Actor], force: bool = False) -> None:
        actor = self._authorize(actor, "trailer", "delete")
        trailer = self._get("trailer", trailer_id)
        await self._delete("trailer", trailer_id, actor, force, f"Trailer {trailer.unit_number}")

    # ------------------------------------------------------------------
    # brokers / factoring companies / expenses
    # ------------------------------------------------------------------

    def list_brokers(self) -> List[Broker]:
        return self._list("broker")

    async def add_broker(self, request: BrokerCreateRequest, actor: Optional[Actor]) -> Broker:
        actor = self._authorize(actor, "broker", "create")
        return await self._create("broker", request.model_dump(), actor, f"broker {request.name}")

    async def update_broker(self, broker_id: str, request: BrokerUpdateRequest, actor: Optional[Actor]) -> Broker:
        return await self._update("broker", broker_id, request, self._authorize(actor, "broker", "update"))

    async def delete_broker(self, broker_id: str, actor: Optional[Actor], force: bool = False) -> None:
        actor = self._authorize(actor, "broker", "delete")
        broker = self._get("broker", broker_id)
        await self._delete("broker", broker_id, actor, force, f"Broker {broker.name}")

    def list_factoring_companies(self) -> List[FactoringCompany]:
        return self._list("factoring_company")

    async def add_factoring_company(
        self, request: FactoringCompanyCreateRequest, actor: Optional[Actor]
    ) -> FactoringCompany:
        actor = self._authorize(actor, "factoring_company", "create")
        return await self._create(
            "factoring_company", request.model_dump(), actor, f"factoring company {request.name}"
        )

    async def update_factoring_company(
        self, company_id: str, request: FactoringCompanyUpdateRequest, actor: Optional[Actor]
    ) -> FactoringCompany:
        actor = self._authorize(actor, "factoring_company", "update")
        return await self._update("factoring_company", company_id, request, actor)

    async def delete_factoring_company(self, company_id: str, actor: Optional[Actor], force: bool = False) -> None:
        actor = self._authorize(actor, "factoring_company", "delete")
        company = self._get("factoring_company", company_id)
        await self._delete("factoring_company", company_id, actor, force, f"Factoring company {company.name}")

    def list_expenses(self) -> List[Expense]:
        return self._list("expense")

    async def add_expense(self, request: ExpenseCreateRequest, actor: Optional[Actor]) -> Expense:
        actor = self._authorize(actor, "expense", "create")
        fields = request.model_dump()
        fields["expense_date"] = fields.get("expense_date") or self._today()
        return await self._create("expense", fields, actor, f"{request.expense_type} expense")

    async def update_expense(self, expense_id: str, request: ExpenseUpdateRequest, actor: Optional[Actor]) -> Expense:
        return await self._update("expense", expense_id, request, self._authorize(actor, "expense", "update"))

    async def delete_expense(self, expense_id: str, actor: Optional[Actor], force: bool = False) -> None:
        actor = self._authorize(actor, "expense", "delete")
        expense = self._get("expense", expense_id)
        await self._delete("expense", expense_id, actor, force, f"Expense {expense.expense_type}")

    # ------------------------------------------------------------------
    # invoices
    # ------------------------------------------------------------------

    def list_invoices(self) -> List[Invoice]:
        return self._list("invoice")

    def get_invoice(self, invoice_id: str) -> Invoice:
        return self._get("invoice", invoice_id)

    async def create_invoice_for_loads(self, request: InvoiceCreateRequest, actor: Optional[Actor]) -> Invoice:
        return await self.invoicing.create_invoice_for_loads(request, self._authorize(actor, "invoice", "create"))

    add_invoice = create_invoice_for_loads

    async def update_invoice(self, invoice_id: str, request: InvoiceUpdateRequest, actor: Optional[Actor]) -> Invoice:
        return await self._update("invoice", invoice_id, request, self._authorize(actor, "invoice", "update"))

    async def record_invoice_payment(
        self, invoice_id: str, request: PaymentRequest, actor: Optional[Actor]
    ) -> Invoice:
        return await self.invoicing.record_payment(invoice_id, request, self._authorize(actor, "invoice", "update"))

    async def delete_invoice(self, invoice_id: str, actor: Optional[Actor], force: bool = False) -> None:
        actor = self._authorize(actor, "invoice", "delete")
        invoice = self.get_invoice(invoice_id)
        await self._delete("invoice", invoice_id, actor, force, f"Invoice {invoice.invoice_number}")

    # ------------------------------------------------------------------
    # settlements
    # ------------------------------------------------------------------

    def list_settlements(self) -> List[Settlement]:
        return self._list("settlement")

    def get_settlement(self, settlement_id: str) -> Settlement:
        return self._get("settlement", settlement_id)

    async def create_settlement(self, request: SettlementCreateRequest, actor: Optional[Actor]) -> Settlement:
        return await self.invoicing.create_settlement(request, self._authorize(actor, "settlement", "create"))

    add_settlement = create_settlement

    async def update_settlement(
        self, settlement_id: str, request: SettlementUpdateRequest, actor: Optional[Actor]
    ) -> Settlement:
        actor = self._authorize(actor, "settlement", "update")
        existing = self.get_settlement(settlement_id)
        patch = request.model_dump(exclude_unset=True)
        if not patch:
            raise ValidationFailed("No fields to update")
        merged = Settlement.model_validate({**existing.model_dump(), **patch})
        totals = financials.settlement_totals(merged.gross_pay, merged.deductions, merged.other_earnings)
        updated = merged.model_copy(
            update={
                "total_deductions": totals.total_deductions,
                "net_pay": totals.net_pay,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        await self.coordinator.commit([PendingWrite.save("settlement", updated)], "update settlement")
        await self.audit.record_update(
            actor, "settlement", settlement_id, existing, updated, metadata={"fields": sorted(patch)}
        )
        return updated

    async def delete_settlement(self, settlement_id: str, actor: Optional[Actor], force: bool = False) -> None:
        actor = self._authorize(actor, "settlement", "delete")
        settlement = self.get_settlement(settlement_id)
        await self._delete("settlement", settlement_id, actor, force, f"Settlement {settlement.settlement_number}")

    # ------------------------------------------------------------------
    # audit / tasks / reports
    # ------------------------------------------------------------------

    async def audit_trail(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 300,
    ) -> List[AuditLogEntry]:
        try:
            return await self.audit.trail(entity_type, entity_id, limit)
        except StoreIOError as exc:
            raise IOFailure("Could not read the audit trail; please retry.") from exc

    def tasks(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None) -> List[Task]:
        return [
            task
            for task in self._list("task")
            if (entity_type is None or task.entity_type == entity_type)
            and (entity_id is None or task.entity_id == entity_id)
        ]

    def period_report(self, start: date, end: date) -> PeriodReport:
        if end < start:
            raise ValidationFailed("Report period must end on or after its start")
        return financials.period_report(
            self.collections["load"].all(),
            self.collections["employee"].all(),
            self.collections["settlement"].all(),
            self.collections["expense"].all(),
            start,
            end,
        )


class SessionRegistry:
    """Tenant id -> open session; owns the store for the app's lifetime."""

    def __init__(self, store: Optional[EntityStore] = None, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.store = store or EntityStore()
        self._sessions: Dict[str, TenantSession] = {}

    async def get(self, tenant_id: str) -> TenantSession:
        session = self._sessions.get(tenant_id)
        if session is not None:
            return session
        opened = await TenantSession(self.store, tenant_id, self.settings).open()
        session = self._sessions.setdefault(tenant_id, opened)
        if session is not opened:
            opened.close()
        return session

    def close(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()
        self.store.close()
        logger.info("Session registry closed")
