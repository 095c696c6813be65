"""Engine-level tests for load lifecycle, billing automation, and integrity gating."""
from __future__ import annotations

import asyncio
import os
import sys
import uuid
from datetime import date
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_session"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["TMS_DB_PATH"] = str(TMP / "tms_state.db")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.core.errors import (  # noqa: E402
    IOFailure,
    NotFound,
    PermissionDenied,
    PreconditionFailed,
    ValidationFailed,
)
from app.models.tms import (  # noqa: E402
    Actor,
    AuditAction,
    DeductionLine,
    BrokerCreateRequest,
    EarningLine,
    EmployeeCreateRequest,
    ExpenseCreateRequest,
    FactoringCompanyCreateRequest,
    InvoiceCreateRequest,
    InvoiceStatus,
    LoadCreateRequest,
    LoadStatus,
    LoadUpdateRequest,
    PaymentRequest,
    SettlementCreateRequest,
    TrailerCreateRequest,
    TruckCreateRequest,
)
from app.services.entity_store import EntityStore, StoreIOError  # noqa: E402
from app.services.optimistic import PendingWrite  # noqa: E402
from app.services.session import TenantSession  # noqa: E402


ADMIN = Actor(uid="u-admin", role="admin")
YEAR = date.today().year


class RejectingStore(EntityStore):
    """Store whose writes for selected entity types fail like a dropped connection."""

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path)
        self.reject_saves: set[str] = set()
        self.reject_audit = False

    async def save(self, tenant_id, entity_type, record):
        if entity_type in self.reject_saves:
            raise StoreIOError(f"simulated outage saving {entity_type}")
        return await super().save(tenant_id, entity_type, record)

    async def append_audit(self, tenant_id, entry):
        if self.reject_audit:
            raise StoreIOError("simulated audit outage")
        return await super().append_audit(tenant_id, entry)


def _store(name: str) -> RejectingStore:
    return RejectingStore(str(TMP / f"{name}-{uuid.uuid4().hex}.db"))


async def _open(name: str, tenant_id: str = "tenant-a") -> TenantSession:
    return await TenantSession(_store(name), tenant_id).open()


async def _owner_operator(session: TenantSession, split: float = 88):
    return await session.add_employee(
        EmployeeCreateRequest(first_name="Ana", last_name="Reyes", employee_type="owner_operator", split_percent=split),
        ADMIN,
    )


async def _company_driver(session: TenantSession, per_mile: float = 0.60):
    return await session.add_employee(
        EmployeeCreateRequest(first_name="Ben", last_name="Ochoa", employee_type="driver", per_mile_rate=per_mile),
        ADMIN,
    )


def test_delivered_owner_operator_load_creates_invoice_and_settlement():
    async def scenario():
        session = await _open("oo")
        driver = await _owner_operator(session)
        load = await session.add_load(
            LoadCreateRequest(rate=1000, status="delivered", driver_id=driver.id, customer_name="Gulf Aggregates"),
            ADMIN,
        )
        return session, load

    session, load = asyncio.run(scenario())

    assert load.load_number == f"LD-{YEAR}-301"
    assert load.is_locked is True
    invoices = session.list_invoices()
    settlements = session.list_settlements()
    assert len(invoices) == 1
    assert len(settlements) == 1

    invoice = invoices[0]
    assert invoice.invoice_number == f"INV-{YEAR}-1001"
    assert invoice.amount == 1000.0
    assert invoice.load_ids == [load.id]
    assert invoice.status == InvoiceStatus.PENDING
    assert invoice.customer_name == "Gulf Aggregates"
    assert (invoice.due_date - invoice.invoice_date).days == 30

    settlement = settlements[0]
    assert settlement.settlement_number == f"ST-{YEAR}-1001"
    assert settlement.gross_pay == 880.0
    assert settlement.net_pay == 880.0
    assert settlement.total_deductions == 0.0
    assert settlement.deductions == []
    assert settlement.load_id == load.id

    assert load.invoice_id == invoice.id
    assert load.invoice_number == invoice.invoice_number
    assert load.settlement_id == settlement.id


def test_company_driver_settlement_uses_per_mile_rate():
    async def scenario():
        session = await _open("company")
        driver = await _company_driver(session)
        load = await session.add_load(
            LoadCreateRequest(rate=1000, miles=500, driver_id=driver.id, status="dispatched"), ADMIN
        )
        await session.update_load(load.id, LoadUpdateRequest(status="delivered"), ADMIN)
        return session

    session = asyncio.run(scenario())
    settlements = session.list_settlements()
    assert len(settlements) == 1
    assert settlements[0].gross_pay == 300.0
    assert settlements[0].net_pay == 300.0


def test_delivery_automation_is_idempotent():
    async def scenario():
        session = await _open("idempotent")
        driver = await _owner_operator(session)
        load = await session.add_load(LoadCreateRequest(rate=1000, status="delivered", driver_id=driver.id), ADMIN)
        again = await session.invoicing.run_delivery_automation(load.id, ADMIN)
        await session.update_load(load.id, LoadUpdateRequest(status="completed"), ADMIN)
        return session, load, again

    session, load, again = asyncio.run(scenario())
    assert again.invoice is None
    assert again.settlements == []
    assert len([inv for inv in session.list_invoices() if load.id in inv.load_ids]) == 1
    assert len(session.list_settlements()) == 1
    assert session.get_load(load.id).status == LoadStatus.COMPLETED


def test_delivery_without_driver_creates_invoice_only():
    async def scenario():
        session = await _open("nodriver")
        await session.add_load(LoadCreateRequest(rate=750, grand_total=820, status="completed"), ADMIN)
        return session

    session = asyncio.run(scenario())
    assert [invoice.amount for invoice in session.list_invoices()] == [820.0]
    assert session.list_settlements() == []


def test_locked_load_requires_reason_and_records_adjustments():
    async def scenario():
        session = await _open("locked")
        load = await session.add_load(LoadCreateRequest(rate=1000, status="delivered"), ADMIN)

        with pytest.raises(PreconditionFailed) as blocked:
            await session.update_load(load.id, LoadUpdateRequest(rate=1100), ADMIN)
        stored = await session._store.get(session.tenant_id, "load", load.id)

        adjusted = await session.update_load(
            load.id, LoadUpdateRequest(rate=1100, miles=420), ADMIN, reason="Detention added by broker"
        )
        noted = await session.update_load(load.id, LoadUpdateRequest(notes="POD uploaded"), ADMIN)
        trail = await session.audit_trail("load", load.id)
        return session, load, blocked.value, stored, adjusted, noted, trail

    session, load, blocked, stored, adjusted, noted, trail = asyncio.run(scenario())

    assert "reason is required" in blocked.message
    assert "rate" in blocked.message
    assert stored["rate"] == 1000.0
    assert stored["adjustment_log"] == []

    assert adjusted.rate == 1100.0
    assert [(entry.field, entry.old_value, entry.new_value) for entry in adjusted.adjustment_log] == [
        ("miles", 0.0, 420.0),
        ("rate", 1000.0, 1100.0),
    ]
    assert all(entry.reason == "Detention added by broker" for entry in adjusted.adjustment_log)
    assert all(entry.changed_by == ADMIN.uid for entry in adjusted.adjustment_log)

    assert noted.notes == "POD uploaded"
    assert len(noted.adjustment_log) == 3
    assert noted.is_locked is True

    # billing field edits on a locked load still flow into its invoice
    assert session.list_invoices()[0].amount == 1100.0
    assert AuditAction.ADJUSTMENT in {entry.action for entry in trail}


def test_locking_is_one_way():
    async def scenario():
        session = await _open("oneway")
        load = await session.add_load(LoadCreateRequest(rate=500, status="delivered"), ADMIN)
        return await session.update_load(load.id, LoadUpdateRequest(status="in_transit"), ADMIN)

    reopened = asyncio.run(scenario())
    assert reopened.status == LoadStatus.IN_TRANSIT
    assert reopened.is_locked is True


def test_rate_edit_on_invoiced_load_resyncs_invoice_total():
    async def scenario():
        session = await _open("resync")
        first = await session.add_load(LoadCreateRequest(rate=1000, customer_name="Acme"), ADMIN)
        second = await session.add_load(LoadCreateRequest(rate=500, customer_name="Acme"), ADMIN)
        invoice = await session.create_invoice_for_loads(InvoiceCreateRequest(load_ids=[first.id, second.id]), ADMIN)
        await session.update_load(first.id, LoadUpdateRequest(rate=1200), ADMIN)
        await session.update_load(second.id, LoadUpdateRequest(customer_name="Acme Materials"), ADMIN)
        return session, invoice

    session, created = asyncio.run(scenario())
    invoices = session.list_invoices()
    assert created.amount == 1500.0
    assert len(invoices) == 1
    assert invoices[0].amount == 1700.0
    assert invoices[0].customer_name == "Acme Materials"


def test_manual_invoice_rejects_already_invoiced_loads():
    async def scenario():
        session = await _open("dupe")
        load = await session.add_load(LoadCreateRequest(rate=900), ADMIN)
        await session.create_invoice_for_loads(InvoiceCreateRequest(load_ids=[load.id]), ADMIN)
        with pytest.raises(PreconditionFailed) as exc_info:
            await session.create_invoice_for_loads(InvoiceCreateRequest(load_ids=[load.id]), ADMIN)
        return session, exc_info.value

    session, error = asyncio.run(scenario())
    assert "Already invoiced" in error.message
    assert len(error.blockers) == 1
    assert len(session.list_invoices()) == 1


def test_driver_delete_requires_override_and_unlinks_loads():
    async def scenario():
        session = await _open("driverdelete")
        driver = await _company_driver(session)
        truck = await session.add_truck(TruckCreateRequest(unit_number="T-14", assigned_driver_id=driver.id), ADMIN)
        loads = [
            await session.add_load(LoadCreateRequest(rate=400 + index, driver_id=driver.id), ADMIN)
            for index in range(3)
        ]
        with pytest.raises(PreconditionFailed) as exc_info:
            await session.delete_employee(driver.id, ADMIN)
        still_there = session.get_employee(driver.id)

        await session.delete_employee(driver.id, ADMIN, force=True)
        stored_loads = [await session._store.get(session.tenant_id, "load", load.id) for load in loads]
        return session, driver, truck, loads, exc_info.value, still_there, stored_loads

    session, driver, truck, loads, error, still_there, stored_loads = asyncio.run(scenario())

    assert "3 load(s) and 1 truck(s)" in error.message
    assert sorted(blocker["id"] for blocker in error.blockers if blocker["entity_type"] == "load") == sorted(
        load.id for load in loads
    )
    assert [blocker["label"] for blocker in error.blockers if blocker["entity_type"] == "truck"] == ["T-14"]
    assert still_there.id == driver.id

    with pytest.raises(NotFound):
        session.get_employee(driver.id)
    assert all(session.get_load(load.id).driver_id is None for load in loads)
    assert all(row["driver_id"] is None for row in stored_loads)
    assert session.list_trucks()[0].assigned_driver_id is None
    assert session.index.referrers("employee", driver.id) == []


def test_forced_load_delete_unlinks_invoice_and_settlement():
    async def scenario():
        session = await _open("loaddelete")
        driver = await _owner_operator(session, split=80)
        first = await session.add_load(LoadCreateRequest(rate=1000, driver_id=driver.id), ADMIN)
        second = await session.add_load(LoadCreateRequest(rate=600, driver_id=driver.id), ADMIN)
        await session.create_invoice_for_loads(InvoiceCreateRequest(load_ids=[first.id, second.id]), ADMIN)
        await session.create_settlement(SettlementCreateRequest(driver_id=driver.id, load_ids=[first.id]), ADMIN)

        with pytest.raises(PreconditionFailed) as exc_info:
            await session.delete_load(first.id, ADMIN)
        await session.delete_load(first.id, ADMIN, force=True)
        trail = await session.audit_trail("load", first.id)
        return session, first, second, exc_info.value, trail

    session, first, second, error, trail = asyncio.run(scenario())

    assert {blocker["entity_type"] for blocker in error.blockers} == {"invoice", "settlement"}
    with pytest.raises(NotFound):
        session.get_load(first.id)

    invoice = session.list_invoices()[0]
    assert invoice.load_ids == [second.id]
    assert invoice.amount == 600.0
    settlement = session.list_settlements()[0]
    assert settlement.load_id is None
    assert settlement.load_ids == []

    deletes = [entry for entry in trail if entry.action == AuditAction.DELETE]
    assert deletes[0].metadata == {"forced": True, "blocking_invoices": 1, "blocking_settlements": 1}


def test_invoice_delete_is_gated_by_covered_loads():
    async def scenario():
        session = await _open("invoicedelete")
        load = await session.add_load(LoadCreateRequest(rate=300), ADMIN)
        invoice = await session.create_invoice_for_loads(InvoiceCreateRequest(load_ids=[load.id]), ADMIN)
        with pytest.raises(PreconditionFailed):
            await session.delete_invoice(invoice.id, ADMIN)
        await session.delete_invoice(invoice.id, ADMIN, force=True)
        return session, load

    session, load = asyncio.run(scenario())
    unlinked = session.get_load(load.id)
    assert session.list_invoices() == []
    assert unlinked.invoice_id is None
    assert unlinked.invoice_number is None


def test_add_load_rolls_back_when_store_rejects():
    async def scenario():
        session = await _open("rollback")
        kept = await session.add_load(LoadCreateRequest(rate=100), ADMIN)
        before = [load.id for load in session.list_loads()]
        session._store.reject_saves.add("load")
        with pytest.raises(IOFailure) as exc_info:
            await session.add_load(LoadCreateRequest(rate=200), ADMIN)
        after = [load.id for load in session.list_loads()]
        stored = await session._store.list(session.tenant_id, "load")
        return kept, before, after, stored, exc_info.value

    kept, before, after, stored, error = asyncio.run(scenario())
    assert before == [kept.id]
    assert after == before
    assert [row["id"] for row in stored] == [kept.id]
    assert "reverted" in error.message


def test_update_rollback_restores_previous_record():
    async def scenario():
        session = await _open("rollback-update")
        load = await session.add_load(LoadCreateRequest(rate=100), ADMIN)
        session._store.reject_saves.add("load")
        with pytest.raises(IOFailure):
            await session.update_load(load.id, LoadUpdateRequest(rate=999), ADMIN)
        return session.get_load(load.id)

    assert asyncio.run(scenario()).rate == 100.0


def test_audit_failure_never_blocks_the_mutation():
    async def scenario():
        session = await _open("auditdown")
        session._store.reject_audit = True
        load = await session.add_load(LoadCreateRequest(rate=640), ADMIN)
        return session, load

    session, load = asyncio.run(scenario())
    assert session.get_load(load.id).rate == 640.0


def test_role_allow_lists_and_actor_requirement():
    async def scenario():
        session = await _open("roles")
        load = await session.add_load(LoadCreateRequest(rate=1000), ADMIN)
        driver_actor = Actor(uid="u-driver", role="driver")
        viewer = Actor(uid="u-viewer", role="viewer")

        with pytest.raises(ValidationFailed):
            await session.update_load(load.id, LoadUpdateRequest(rate=5), driver_actor)
        with pytest.raises(PermissionDenied):
            await session.add_load(LoadCreateRequest(rate=1), viewer)
        with pytest.raises(PermissionDenied):
            await session.add_load(LoadCreateRequest(rate=1), None)
        with pytest.raises(NotFound):
            await session.update_load("missing", LoadUpdateRequest(notes="x"), ADMIN)

        # disallowed fields are dropped, permitted ones still apply
        return await session.update_load(
            load.id, LoadUpdateRequest(rate=5, pod_number="POD-77", status="in_transit"), driver_actor
        )

    updated = asyncio.run(scenario())
    assert updated.rate == 1000.0
    assert updated.pod_number == "POD-77"
    assert updated.status == LoadStatus.IN_TRANSIT


def test_factored_load_invoice_is_paid_immediately():
    async def scenario():
        session = await _open("factored")
        company = await session.add_factoring_company(
            FactoringCompanyCreateRequest(name="Triumph", fee_percentage=3), ADMIN
        )
        load = await session.add_load(
            LoadCreateRequest(
                rate=1900,
                grand_total=2000,
                is_factored=True,
                factoring_company_id=company.id,
                factored_date=date(2026, 2, 3),
                status="delivered",
            ),
            ADMIN,
        )
        changed = await session.update_load(
            load.id, LoadUpdateRequest(factoring_fee_percent=2.5), ADMIN, reason="Renegotiated factoring fee"
        )
        return session, load, changed

    session, load, changed = asyncio.run(scenario())
    assert load.factoring_fee == 60.0
    assert load.factored_amount == 1940.0
    assert changed.factoring_fee == 50.0
    assert changed.factored_amount == 1950.0

    invoice = session.list_invoices()[0]
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at == date(2026, 2, 3)
    assert invoice.factoring_company_name == "Triumph"
    assert invoice.factoring_fee == 50.0
    assert invoice.factored_amount == 1950.0


def test_manual_settlement_with_deductions():
    async def scenario():
        session = await _open("manual-settlement")
        driver = await _company_driver(session, per_mile=0.5)
        other = await _company_driver(session, per_mile=0.7)
        first = await session.add_load(LoadCreateRequest(rate=900, miles=400, driver_id=driver.id), ADMIN)
        second = await session.add_load(LoadCreateRequest(rate=700, miles=200, driver_id=driver.id), ADMIN)
        foreign = await session.add_load(LoadCreateRequest(rate=700, miles=200, driver_id=other.id), ADMIN)

        with pytest.raises(ValidationFailed):
            await session.create_settlement(
                SettlementCreateRequest(driver_id=driver.id, load_ids=[first.id, foreign.id]), ADMIN
            )
        settlement = await session.create_settlement(
            SettlementCreateRequest(
                driver_id=driver.id,
                load_ids=[first.id, second.id],
                deductions=[DeductionLine(category="fuel", amount=45.25)],
            ),
            ADMIN,
        )
        return session, settlement, first

    session, settlement, first = asyncio.run(scenario())
    assert settlement.gross_pay == 300.0
    assert settlement.total_deductions == 45.25
    assert settlement.net_pay == 254.75
    assert settlement.auto_generated is False
    assert session.get_load(first.id).settlement_id == settlement.id


def test_record_payment_progresses_invoice_status():
    async def scenario():
        session = await _open("payments")
        load = await session.add_load(LoadCreateRequest(rate=1000), ADMIN)
        invoice = await session.create_invoice_for_loads(InvoiceCreateRequest(load_ids=[load.id]), ADMIN)
        partial = await session.record_invoice_payment(invoice.id, PaymentRequest(amount=400), ADMIN)
        with pytest.raises(ValidationFailed) as exc_info:
            await session.record_invoice_payment(invoice.id, PaymentRequest(amount=700), ADMIN)
        paid = await session.record_invoice_payment(invoice.id, PaymentRequest(amount=600, method="ach"), ADMIN)
        return partial, paid, exc_info.value

    partial, paid, error = asyncio.run(scenario())
    assert partial.status == InvoiceStatus.PARTIAL
    assert partial.paid_amount == 400.0
    assert "Maximum: $600.00" in error.message
    assert paid.status == InvoiceStatus.PAID
    assert paid.paid_amount == 1000.0
    assert len(paid.payments) == 2
    assert paid.paid_at is not None


def test_workflow_tasks_are_created_once_per_template():
    async def scenario():
        session = await _open("tasks")
        load = await session.add_load(LoadCreateRequest(rate=1000), ADMIN)
        repeat = await session.workflow.on_load_created(load)
        await session.update_load(load.id, LoadUpdateRequest(status="dispatched"), ADMIN)
        await session.update_load(load.id, LoadUpdateRequest(status="delivered"), ADMIN)
        return session, load, repeat

    session, load, repeat = asyncio.run(scenario())
    load_tasks = {task.template_key: task for task in session.tasks("load", load.id)}
    assert repeat == []
    assert {
        "LOAD_ASSIGN_DRIVER",
        "LOAD_SEND_RATE_CONFIRMATION",
        "LOAD_CONFIRM_PICKUP_APPT",
        "LOAD_CONFIRM_PICKUP",
        "LOAD_TRACK_IN_TRANSIT",
        "LOAD_COLLECT_POD",
    } == set(load_tasks)
    assert load_tasks["LOAD_COLLECT_POD"].status == "blocked"
    assert load_tasks["LOAD_ASSIGN_DRIVER"].assigned_to == "role:dispatcher"
    assert load_tasks["LOAD_COLLECT_POD"].assigned_to == "role:dispatcher"

    invoice_id = session.list_invoices()[0].id
    invoice_tasks = {task.template_key: task for task in session.tasks("invoice", invoice_id)}
    assert set(invoice_tasks) == {"INVOICE_SEND_TO_CUSTOMER", "INVOICE_START_AR_FOLLOWUP"}
    assert {task.assigned_to for task in invoice_tasks.values()} == {"role:billing"}


def test_sessions_are_isolated_per_tenant():
    async def scenario():
        store = _store("tenants")
        tenant_a = await TenantSession(store, "tenant-a").open()
        tenant_b = await TenantSession(store, "tenant-b").open()
        load = await tenant_a.add_load(LoadCreateRequest(rate=1000), ADMIN)
        return tenant_a, tenant_b, load

    tenant_a, tenant_b, load = asyncio.run(scenario())
    assert [item.id for item in tenant_a.list_loads()] == [load.id]
    assert tenant_b.list_loads() == []
    with pytest.raises(NotFound):
        tenant_b.get_load(load.id)


def _stored_invoices_covering(rows, load_id):
    return sorted(row["invoice_number"] for row in rows if load_id in row["load_ids"])


def test_failed_delivery_commit_is_undone_in_store_and_retry_invoices_once():
    async def scenario():
        session = await _open("partial-failure")
        driver = await _owner_operator(session)
        load = await session.add_load(LoadCreateRequest(rate=1000, driver_id=driver.id), ADMIN)

        # invoice and settlement saves succeed, the load link save fails
        session._store.reject_saves.add("load")
        with pytest.raises(IOFailure):
            await session.invoicing.run_delivery_automation(load.id, ADMIN)
        after_failure = (
            await session._store.list(session.tenant_id, "invoice"),
            await session._store.list(session.tenant_id, "settlement"),
            session.list_invoices(),
            session.get_load(load.id),
        )

        session._store.reject_saves.clear()
        retried = await session.invoicing.run_delivery_automation(load.id, ADMIN)
        stored_invoices = await session._store.list(session.tenant_id, "invoice")
        stored_settlements = await session._store.list(session.tenant_id, "settlement")
        return load, after_failure, retried, stored_invoices, stored_settlements

    load, after_failure, retried, stored_invoices, stored_settlements = asyncio.run(scenario())

    invoices_after_failure, settlements_after_failure, local_invoices, local_load = after_failure
    assert invoices_after_failure == []
    assert settlements_after_failure == []
    assert local_invoices == []
    assert local_load.invoice_id is None
    assert local_load.settlement_id is None

    assert retried.invoice is not None
    assert _stored_invoices_covering(stored_invoices, load.id) == [retried.invoice.invoice_number]
    assert len(stored_settlements) == 1


def test_commit_failure_restores_earlier_writes_in_store():
    async def scenario():
        session = await _open("partial-update")
        load = await session.add_load(LoadCreateRequest(rate=300), ADMIN)
        invoice = await session.create_invoice_for_loads(InvoiceCreateRequest(load_ids=[load.id]), ADMIN)
        session._store.reject_saves.add("load")
        with pytest.raises(IOFailure):
            # the invoice save lands before the load save fails
            await session.coordinator.commit(
                [
                    PendingWrite.save("invoice", invoice.model_copy(update={"load_ids": []})),
                    PendingWrite.save("load", load.model_copy(update={"invoice_id": None})),
                ],
                "test unlink",
            )
        stored = await session._store.get(session.tenant_id, "invoice", invoice.id)
        return invoice, stored, session.get_invoice(invoice.id)

    invoice, stored, local = asyncio.run(scenario())
    assert stored["load_ids"] == invoice.load_ids
    assert local.load_ids == invoice.load_ids


def test_concurrent_delivery_automation_creates_one_invoice():
    async def scenario():
        session = await _open("concurrent-delivery")
        driver = await _owner_operator(session)
        load = await session.add_load(LoadCreateRequest(rate=1000, driver_id=driver.id), ADMIN)
        results = await asyncio.gather(
            session.invoicing.run_delivery_automation(load.id, ADMIN),
            session.invoicing.run_delivery_automation(load.id, ADMIN),
        )
        stored = await session._store.list(session.tenant_id, "invoice")
        settlements = await session._store.list(session.tenant_id, "settlement")
        return load, results, stored, settlements

    load, results, stored, settlements = asyncio.run(scenario())
    assert len(_stored_invoices_covering(stored, load.id)) == 1
    assert len(settlements) == 1
    assert sorted(result.invoice is None for result in results) == [False, True]


def test_concurrent_manual_invoices_reject_the_second():
    async def scenario():
        session = await _open("concurrent-invoice")
        load = await session.add_load(LoadCreateRequest(rate=450), ADMIN)
        request = InvoiceCreateRequest(load_ids=[load.id])
        results = await asyncio.gather(
            session.create_invoice_for_loads(request, ADMIN),
            session.create_invoice_for_loads(request, ADMIN),
            return_exceptions=True,
        )
        return load, results, await session._store.list(session.tenant_id, "invoice")

    load, results, stored = asyncio.run(scenario())
    assert sum(isinstance(result, PreconditionFailed) for result in results) == 1
    assert len(_stored_invoices_covering(stored, load.id)) == 1


def test_every_live_reference_blocks_delete_until_forced():
    async def scenario():
        session = await _open("gating")
        driver = await _company_driver(session, per_mile=0.5)
        broker = await session.add_broker(BrokerCreateRequest(name="Echo Global"), ADMIN)
        trailer = await session.add_trailer(TrailerCreateRequest(unit_number="TR-9"), ADMIN)
        truck = await session.add_truck(TruckCreateRequest(unit_number="T-3", assigned_trailer_id=trailer.id), ADMIN)
        company = await session.add_factoring_company(
            FactoringCompanyCreateRequest(name="Apex Capital", fee_percentage=2), ADMIN
        )
        load = await session.add_load(
            LoadCreateRequest(
                rate=800,
                miles=100,
                driver_id=driver.id,
                broker_id=broker.id,
                is_factored=True,
                factoring_company_id=company.id,
            ),
            ADMIN,
        )
        await session.create_invoice_for_loads(InvoiceCreateRequest(load_ids=[load.id]), ADMIN)
        settlement = await session.create_settlement(
            SettlementCreateRequest(driver_id=driver.id, load_ids=[load.id]), ADMIN
        )
        expense = await session.add_expense(
            ExpenseCreateRequest(expense_type="repair", amount=120, truck_id=truck.id), ADMIN
        )
        # the settlement is now the driver's only remaining reference
        await session.update_load(load.id, LoadUpdateRequest(driver_id=None), ADMIN)

        attempts = {
            "broker": lambda: session.delete_broker(broker.id, ADMIN),
            "factoring_company": lambda: session.delete_factoring_company(company.id, ADMIN),
            "trailer": lambda: session.delete_trailer(trailer.id, ADMIN),
            "truck": lambda: session.delete_truck(truck.id, ADMIN),
            "settlement": lambda: session.delete_settlement(settlement.id, ADMIN),
            "employee": lambda: session.delete_employee(driver.id, ADMIN),
        }
        blocked = {}
        for name, attempt in attempts.items():
            with pytest.raises(PreconditionFailed) as exc_info:
                await attempt()
            blocked[name] = exc_info.value

        await session.delete_employee(driver.id, ADMIN, force=True)
        await session.delete_expense(expense.id, ADMIN)
        return session, settlement, blocked

    session, settlement, blocked = asyncio.run(scenario())

    assert {name: {item["entity_type"] for item in error.blockers} for name, error in blocked.items()} == {
        "broker": {"load"},
        "factoring_company": {"invoice", "load"},
        "trailer": {"truck"},
        "truck": {"expense"},
        "settlement": {"load"},
        "employee": {"settlement"},
    }
    assert "1 settlement(s)" in blocked["employee"].message
    assert settlement.settlement_number in blocked["employee"].message
    assert "T-3" in blocked["trailer"].message

    assert session.get_settlement(settlement.id).driver_id is None
    assert session.list_expenses() == []


def test_invoice_factoring_fields_follow_load_edits():
    async def scenario():
        session = await _open("factoring-resync")
        company = await session.add_factoring_company(
            FactoringCompanyCreateRequest(name="OTR Capital", fee_percentage=3), ADMIN
        )
        load = await session.add_load(
            LoadCreateRequest(
                rate=1900, grand_total=2000, is_factored=True, factoring_company_id=company.id, status="delivered"
            ),
            ADMIN,
        )
        created = session.list_invoices()[0]
        changed = await session.update_load(
            load.id, LoadUpdateRequest(grand_total=3000), ADMIN, reason="Added lumper and detention"
        )
        return session, created, changed

    session, created, changed = asyncio.run(scenario())
    assert (created.factoring_fee, created.factored_amount) == (60.0, 1940.0)
    assert (changed.factoring_fee, changed.factored_amount) == (90.0, 2910.0)

    invoice = session.get_invoice(created.id)
    assert invoice.amount == 3000.0
    assert (invoice.factoring_fee, invoice.factored_amount) == (90.0, 2910.0)


def test_settlements_pass_through_load_accessorials():
    async def scenario():
        session = await _open("accessorials")
        driver = await _company_driver(session, per_mile=0.5)
        manual_load = await session.add_load(
            LoadCreateRequest(rate=900, miles=400, driver_id=driver.id, driver_detention_pay=75, tonu_fee=150), ADMIN
        )
        settlement = await session.create_settlement(
            SettlementCreateRequest(
                driver_id=driver.id,
                load_ids=[manual_load.id],
                other_earnings=[EarningLine(category="bonus", amount=25)],
            ),
            ADMIN,
        )
        await session.add_load(
            LoadCreateRequest(rate=600, miles=200, driver_id=driver.id, driver_layover_pay=40, status="delivered"),
            ADMIN,
        )
        automatic = [item for item in session.list_settlements() if item.auto_generated][0]
        return settlement, automatic

    settlement, automatic = asyncio.run(scenario())
    assert settlement.gross_pay == 200.0
    assert [(line.category, line.amount) for line in settlement.other_earnings] == [
        ("bonus", 25.0),
        ("detention", 75.0),
        ("tonu", 150.0),
    ]
    assert settlement.net_pay == 450.0

    assert [(line.category, line.amount) for line in automatic.other_earnings] == [("layover", 40.0)]
    assert automatic.net_pay == 140.0


def test_period_report_uses_session_records():
    async def scenario():
        session = await _open("report")
        driver = await _owner_operator(session, split=80)
        await session.add_load(
            LoadCreateRequest(rate=1000, driver_id=driver.id, status="delivered", delivery_date="2026-03-10"), ADMIN
        )
        await session.add_load(LoadCreateRequest(rate=700, status="delivered", delivery_date="2026-04-10"), ADMIN)
        await session.add_expense(
            ExpenseCreateRequest(expense_type="permits", amount=50, expense_date=date(2026, 3, 20)), ADMIN
        )
        report = session.period_report(date(2026, 3, 1), date(2026, 3, 31))
        with pytest.raises(ValidationFailed):
            session.period_report(date(2026, 3, 31), date(2026, 3, 1))
        return report

    report = asyncio.run(scenario())
    assert report.delivered_loads == 1
    assert report.revenue == 200.0
    assert report.driver_pay == 800.0
    assert report.driver_pay_estimated is False
    assert report.expenses == 50.0
    assert report.profit == -650.0


def test_driver_tasks_are_assigned_to_the_load_driver():
    async def scenario():
        session = await _open("task-assignee")
        driver = await _company_driver(session)
        load = await session.add_load(LoadCreateRequest(rate=500, driver_id=driver.id, status="delivered"), ADMIN)
        return driver, {task.template_key: task for task in session.tasks("load", load.id)}

    driver, tasks = asyncio.run(scenario())
    assert tasks["LOAD_COLLECT_POD"].assigned_to == driver.id
    assert tasks["LOAD_SEND_RATE_CONFIRMATION"].assigned_to == "role:dispatcher"
