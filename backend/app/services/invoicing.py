"""Invoice and settlement generation, resynchronization, and payment recording."""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from app.core.config import Settings
from app.core.errors import NotFound, PreconditionFailed, ValidationFailed
from app.core.logging import logger
from app.models.tms import (
    Actor,
    Employee,
    Invoice,
    InvoiceCreateRequest,
    InvoicePayment,
    InvoiceStatus,
    Load,
    PaymentRequest,
    Settlement,
    SettlementCreateRequest,
    SettlementStatus,
)
from app.services.audit_log import AuditLogger
from app.services.financials import (
    accessorial_earnings,
    auto_settlement_gross_pay,
    combined_factoring_terms,
    compute_gross_pay,
    initial_invoice_terms,
    invoice_status_after_payments,
    invoice_total,
    payment_profile_for,
    settlement_totals,
    to_money,
    validate_payment,
)
from app.services.integrity import ReferenceIndex
from app.services.optimistic import EntityCollection, OptimisticUpdateCoordinator, PendingWrite
from app.services.workflow import WorkflowTrigger


# Load fields whose edits change what an existing invoice says.
INVOICE_SYNC_FIELDS = frozenset(
    {
        "rate",
        "grand_total",
        "customer_name",
        "broker_name",
        "factoring_fee_percent",
    }
)


@dataclass
class DeliveryResult:
    invoice: Optional[Invoice] = None
    settlements: List[Settlement] = field(default_factory=list)
    load: Optional[Load] = None


def _bill_to(load: Load) -> Optional[str]:
    return load.customer_name or load.broker_name


class InvoiceSettlementGenerator:
    """Creates receivables and driver pay records from delivered loads."""

    def __init__(
        self,
        tenant_id: str,
        collections: Dict[str, EntityCollection],
        coordinator: OptimisticUpdateCoordinator,
        index: ReferenceIndex,
        audit: AuditLogger,
        workflow: WorkflowTrigger,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._tenant_id = tenant_id
        self._collections = collections
        self._coordinator = coordinator
        self._index = index
        self._audit = audit
        self._workflow = workflow
        self._settings = settings
        self._today = today
        # Serializes invoice and settlement creation so duplicate guards see committed links.
        self._lock = asyncio.Lock()

    @property
    def _loads(self) -> EntityCollection:
        return self._collections["load"]

    @property
    def _invoices(self) -> EntityCollection:
        return self._collections["invoice"]

    def invoice_for_load(self, load: Load) -> Optional[Invoice]:
        """Invoice linked by id, else the first invoice whose load set covers the load."""
        invoice = self._invoices.get(load.invoice_id)
        if invoice is not None:
            return invoice
        for _, invoice_id, _ in self._index.referrers("load", load.id, "invoice"):
            invoice = self._invoices.get(invoice_id)
            if invoice is not None:
                return invoice
        return None

    def already_invoiced(self, loads: List[Load]) -> List[Load]:
        return [
            load
            for load in loads
            if load.invoice_id or self._index.referrers("load", load.id, "invoice")
        ]

    def _resolve_driver(self, load: Load) -> Optional[Employee]:
        driver = self._collections["employee"].get(load.driver_id)
        if driver is None or not driver.is_driver:
            return None
        return driver

    def _factoring_company_name(self, factoring_company_id: Optional[str]) -> Optional[str]:
        company = self._collections["factoring_company"].get(factoring_company_id)
        return company.name if company is not None else None

    def _factoring_fields(
        self, is_factored: bool, factoring_company_id: Optional[str], loads: List[Load]
    ) -> Dict[str, object]:
        if not is_factored:
            return {"factoring_fee": None, "factored_amount": None}
        company = self._collections["factoring_company"].get(factoring_company_id)
        terms = combined_factoring_terms(loads, company.fee_percentage if company is not None else None)
        return {"factoring_fee": terms.fee, "factored_amount": terms.factored_amount}

    async def _new_invoice(self, loads: List[Load], actor: Actor, auto_generated: bool) -> Invoice:
        today = self._today()
        number = await self._coordinator.allocate_number(
            "INV", today.year, self._settings.invoice_number_start
        )
        lead = loads[0]
        terms = initial_invoice_terms(lead, today, self._settings.invoice_net_days)
        return Invoice(
            id=uuid.uuid4().hex,
            invoice_number=number,
            load_ids=[load.id for load in loads],
            customer_name=_bill_to(lead),
            amount=invoice_total(loads),
            status=terms.status,
            invoice_date=today,
            due_date=terms.due_date,
            paid_at=terms.paid_at,
            is_factored=lead.is_factored,
            factoring_company_id=lead.factoring_company_id,
            factoring_company_name=self._factoring_company_name(lead.factoring_company_id),
            factored_date=lead.factored_date,
            **self._factoring_fields(lead.is_factored, lead.factoring_company_id, loads),
            auto_generated=auto_generated,
            created_by=actor.uid,
        )

    async def _new_settlement(
        self,
        driver: Employee,
        loads: List[Load],
        gross_pay: float,
        actor: Actor,
        *,
        status: SettlementStatus = SettlementStatus.PENDING,
        deductions=(),
        other_earnings=(),
        auto_generated: bool = True,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> Settlement:
        today = self._today()
        number = await self._coordinator.allocate_number(
            "ST", today.year, self._settings.settlement_number_start
        )
        totals = settlement_totals(gross_pay, deductions, other_earnings)
        return Settlement(
            id=uuid.uuid4().hex,
            settlement_number=number,
            driver_id=driver.id,
            driver_name=driver.full_name,
            load_id=loads[0].id,
            load_ids=[load.id for load in loads],
            gross_pay=totals.gross_pay,
            deductions=list(deductions),
            total_deductions=totals.total_deductions,
            other_earnings=list(other_earnings),
            net_pay=totals.net_pay,
            status=status,
            period_start=period_start,
            period_end=period_end,
            settlement_date=today,
            notes=notes,
            auto_generated=auto_generated,
            created_by=actor.uid,
        )

    async def run_delivery_automation(self, load_id: str, actor: Actor) -> DeliveryResult:
        """Invoice and settle a load that just entered delivered/completed.

        Safe to call repeatedly: an invoiced load gets no second invoice and a
        settled load gets no second settlement.
        """
        async with self._lock:
            return await self._deliver(load_id, actor)

    async def _deliver(self, load_id: str, actor: Actor) -> DeliveryResult:
        result = DeliveryResult()
        load = self._loads.get(load_id)
        if load is None:
            return result

        writes: List[PendingWrite] = []
        patch: Dict[str, object] = {}

        if self.already_invoiced([load]):
            logger.info("Delivery automation skipped invoice; load already invoiced", load_id=load.id)
        else:
            result.invoice = await self._new_invoice([load], actor, auto_generated=True)
            writes.append(PendingWrite.save("invoice", result.invoice))
            patch.update(invoice_id=result.invoice.id, invoice_number=result.invoice.invoice_number)

        driver = self._resolve_driver(load)
        if load.settlement_id:
            logger.info("Delivery automation skipped settlement; load already settled", load_id=load.id)
        elif driver is None:
            logger.info("Delivery automation skipped settlement; no driver resolvable", load_id=load.id)
        else:
            settlement = await self._new_settlement(
                driver,
                [load],
                auto_settlement_gross_pay(load, driver),
                actor,
                other_earnings=accessorial_earnings(load),
            )
            result.settlements.append(settlement)
            writes.append(PendingWrite.save("settlement", settlement))
            patch["settlement_id"] = settlement.id

        if not writes:
            return result

        patch["updated_at"] = datetime.now(timezone.utc)
        result.load = load.model_copy(update=patch)
        writes.append(PendingWrite.save("load", result.load))
        await self._coordinator.commit(writes, "delivery automation")

        logger.info(
            "Delivery automation completed",
            tenant_id=self._tenant_id,
            load_id=load.id,
            invoice_number=result.invoice.invoice_number if result.invoice else None,
            settlements=[item.settlement_number for item in result.settlements],
        )
        if result.invoice is not None:
            await self._audit.record_create(
                actor, "invoice", result.invoice.id, result.invoice,
                summary=f"Auto-generated invoice {result.invoice.invoice_number} for load {load.load_number}",
            )
            await self._workflow.on_invoice_created(result.invoice)
        for settlement in result.settlements:
            await self._audit.record_create(
                actor, "settlement", settlement.id, settlement,
                summary=f"Auto-generated settlement {settlement.settlement_number} for load {load.load_number}",
            )
        return result

    async def resync_invoice(self, load: Load, actor: Actor) -> Optional[Invoice]:
        """Recompute the linked invoice over every load it covers after a billing-field edit."""
        invoice = self.invoice_for_load(load)
        if invoice is None:
            return None
        covered = [self._loads.get(load_id) for load_id in invoice.load_ids]
        loads = [item for item in covered if item is not None]
        if load.id not in invoice.load_ids:
            loads.append(load)
        update: Dict[str, object] = {
            "amount": invoice_total(loads),
            "customer_name": _bill_to(load) or invoice.customer_name,
            **self._factoring_fields(invoice.is_factored, invoice.factoring_company_id, loads),
        }
        if all(getattr(invoice, key) == value for key, value in update.items()):
            return invoice

        amount = update["amount"]
        update["updated_at"] = datetime.now(timezone.utc)
        updated = invoice.model_copy(update=update)
        await self._coordinator.commit([PendingWrite.save("invoice", updated)], "invoice resync")
        logger.info(
            "Invoice resynchronized",
            tenant_id=self._tenant_id,
            invoice_number=invoice.invoice_number,
            old_amount=invoice.amount,
            new_amount=amount,
        )
        await self._audit.record_update(
            actor, "invoice", invoice.id, invoice, updated,
            summary=f"Resynchronized invoice {invoice.invoice_number} after load {load.load_number} changed",
            metadata={"trigger_load_id": load.id},
        )
        return updated

    async def create_invoice_for_loads(self, request: InvoiceCreateRequest, actor: Actor) -> Invoice:
        async with self._lock:
            return await self._invoice_loads(request, actor)

    async def _invoice_loads(self, request: InvoiceCreateRequest, actor: Actor) -> Invoice:
        loads: List[Load] = []
        for load_id in dict.fromkeys(request.load_ids):
            load = self._loads.get(load_id)
            if load is None:
                raise NotFound("load", load_id)
            loads.append(load)

        duplicates = self.already_invoiced(loads)
        if duplicates:
            raise PreconditionFailed(
                "Already invoiced: " + ", ".join(load.load_number for load in duplicates),
                blockers=[
                    {"entity_type": "load", "id": load.id, "label": load.load_number} for load in duplicates
                ],
            )

        invoice = await self._new_invoice(loads, actor, auto_generated=False)
        today = self._today()
        is_factored = request.is_factored if request.is_factored is not None else invoice.is_factored
        update: Dict[str, object] = {"amount": invoice_total(loads), "is_factored": is_factored}
        if request.amount is not None:
            update["amount"] = to_money(request.amount)
        if request.customer_name:
            update["customer_name"] = request.customer_name
        if request.invoice_date is not None:
            update["invoice_date"] = request.invoice_date
            update["due_date"] = request.invoice_date + timedelta(days=self._settings.invoice_net_days)
        if request.due_date is not None:
            update["due_date"] = request.due_date
        if request.factoring_company_id:
            update["factoring_company_id"] = request.factoring_company_id
            update["factoring_company_name"] = self._factoring_company_name(request.factoring_company_id)
        if request.notes is not None:
            update["notes"] = request.notes
        company_id = update.get("factoring_company_id", invoice.factoring_company_id)
        update.update(self._factoring_fields(is_factored, company_id, loads))
        if is_factored:
            update.update(status=InvoiceStatus.PAID, paid_at=invoice.factored_date or today)
        else:
            update.update(status=InvoiceStatus.PENDING, paid_at=None)
        invoice = invoice.model_copy(update=update)

        now = datetime.now(timezone.utc)
        writes = [PendingWrite.save("invoice", invoice)]
        for load in loads:
            writes.append(
                PendingWrite.save(
                    "load",
                    load.model_copy(
                        update={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "updated_at": now}
                    ),
                )
            )
        await self._coordinator.commit(writes, "create invoice")
        await self._audit.record_create(
            actor, "invoice", invoice.id, invoice,
            summary=f"Created invoice {invoice.invoice_number} for {len(loads)} load(s)",
        )
        await self._workflow.on_invoice_created(invoice)
        return invoice

    async def create_settlement(self, request: SettlementCreateRequest, actor: Actor) -> Settlement:
        async with self._lock:
            return await self._settle_loads(request, actor)

    async def _settle_loads(self, request: SettlementCreateRequest, actor: Actor) -> Settlement:
        driver = self._collections["employee"].get(request.driver_id)
        if driver is None:
            raise NotFound("employee", request.driver_id)
        if not driver.is_driver:
            raise ValidationFailed(f"{driver.full_name} is not a driver")

        loads: List[Load] = []
        for load_id in dict.fromkeys(request.load_ids):
            load = self._loads.get(load_id)
            if load is None:
                raise NotFound("load", load_id)
            if load.driver_id != driver.id:
                raise ValidationFailed(f"Load {load.load_number} is not assigned to {driver.full_name}")
            loads.append(load)
        if not loads:
            raise ValidationFailed("A settlement needs at least one load")

        settled = [load for load in loads if load.settlement_id]
        if settled:
            raise PreconditionFailed(
                "Already settled: " + ", ".join(load.load_number for load in settled),
                blockers=[{"entity_type": "load", "id": load.id, "label": load.load_number} for load in settled],
            )

        passed_through = [line for load in loads for line in accessorial_earnings(load)]
        profile = payment_profile_for(driver)
        gross = to_money(sum(compute_gross_pay(load, profile) for load in loads))
        settlement = await self._new_settlement(
            driver,
            loads,
            gross,
            actor,
            status=request.status,
            deductions=request.deductions,
            other_earnings=[*request.other_earnings, *passed_through],
            auto_generated=False,
            period_start=request.period_start,
            period_end=request.period_end,
            notes=request.notes,
        )

        now = datetime.now(timezone.utc)
        writes = [PendingWrite.save("settlement", settlement)]
        writes.extend(
            PendingWrite.save("load", load.model_copy(update={"settlement_id": settlement.id, "updated_at": now}))
            for load in loads
        )
        await self._coordinator.commit(writes, "create settlement")
        await self._audit.record_create(
            actor, "settlement", settlement.id, settlement,
            summary=f"Created settlement {settlement.settlement_number} for {driver.full_name}",
        )
        return settlement

    async def record_payment(self, invoice_id: str, request: PaymentRequest, actor: Actor) -> Invoice:
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise NotFound("invoice", invoice_id)
        error = validate_payment(invoice, request.amount, self._settings.payment_tolerance_ratio)
        if error:
            raise ValidationFailed(error)

        today = self._today()
        payment = InvoicePayment(
            id=uuid.uuid4().hex,
            amount=to_money(request.amount),
            paid_on=request.paid_on or today,
            method=request.method,
            reference=request.reference,
            recorded_by=actor.uid,
        )
        paid_amount = to_money(invoice.paid_amount + payment.amount)
        status = invoice_status_after_payments(invoice, paid_amount, today)
        updated = invoice.model_copy(
            update={
                "payments": [*invoice.payments, payment],
                "paid_amount": paid_amount,
                "status": status,
                "paid_at": payment.paid_on if status == InvoiceStatus.PAID else invoice.paid_at,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        await self._coordinator.commit([PendingWrite.save("invoice", updated)], "record payment")
        await self._audit.record_update(
            actor, "invoice", invoice.id, invoice, updated,
            summary=f"Recorded payment of ${payment.amount:.2f} on {invoice.invoice_number}",
            metadata={"payment_id": payment.id, "status": status.value},
        )
        return updated
