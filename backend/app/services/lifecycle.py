"""Load lifecycle: creation, status progression, post-delivery locking, and deletion."""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic_core import to_jsonable_python

from app.core.config import Settings
from app.core.errors import NotFound, PreconditionFailed, ValidationFailed
from app.core.logging import logger
from app.models.tms import (
    DELIVERED_STATUSES,
    Actor,
    AdjustmentEntry,
    Load,
    LoadCreateRequest,
    LoadUpdateRequest,
    UserRole,
)
from app.services.audit_log import AuditLogger
from app.services.financials import factoring_terms, gross_amount, invoice_total
from app.services.integrity import ReferentialIntegrityCoordinator
from app.services.invoicing import INVOICE_SYNC_FIELDS, InvoiceSettlementGenerator
from app.services.optimistic import EntityCollection, OptimisticUpdateCoordinator, PendingWrite
from app.services.workflow import WorkflowTrigger


# Edits to these stay reasonless even on a locked load.
REASON_EXEMPT_FIELDS = frozenset(
    {"documents", "notes", "pod_number", "bol_number", "status", "invoice_id", "settlement_id"}
)
FACTORING_FIELDS = frozenset({"is_factored", "factoring_company_id", "factoring_fee_percent", "factored_date"})
FACTORING_INPUT_FIELDS = frozenset({"rate", "grand_total"}) | FACTORING_FIELDS
LOAD_UPDATE_FIELDS = frozenset(LoadUpdateRequest.model_fields)

ROLE_LOAD_FIELDS: Dict[str, frozenset] = {
    UserRole.OWNER.value: LOAD_UPDATE_FIELDS,
    UserRole.ADMIN.value: LOAD_UPDATE_FIELDS,
    UserRole.DISPATCHER.value: LOAD_UPDATE_FIELDS - FACTORING_FIELDS,
    UserRole.BILLING.value: frozenset(
        {"rate", "grand_total", "customer_name", "broker_id", "broker_name", "notes", "documents"}
    )
    | FACTORING_FIELDS,
    UserRole.DRIVER.value: frozenset({"status", "notes", "pod_number", "bol_number", "documents"}),
    UserRole.VIEWER.value: frozenset(),
}

DEFAULT_ADJUSTMENT_REASON = "Adjustment to delivered load"


class LoadLifecycleManager:
    """Owns the load state machine and the one-way delivery lock."""

    def __init__(
        self,
        tenant_id: str,
        collections: Dict[str, EntityCollection],
        coordinator: OptimisticUpdateCoordinator,
        integrity: ReferentialIntegrityCoordinator,
        invoicing: InvoiceSettlementGenerator,
        audit: AuditLogger,
        workflow: WorkflowTrigger,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._tenant_id = tenant_id
        self._collections = collections
        self._coordinator = coordinator
        self._integrity = integrity
        self._invoicing = invoicing
        self._audit = audit
        self._workflow = workflow
        self._settings = settings
        self._today = today

    @property
    def _loads(self) -> EntityCollection:
        return self._collections["load"]

    def get(self, load_id: str) -> Load:
        load = self._loads.get(load_id)
        if load is None:
            raise NotFound("load", load_id)
        return load

    def _with_factoring(self, load: Load) -> Load:
        if not load.is_factored:
            return load.model_copy(update={"factoring_fee": None, "factored_amount": None})
        company = self._collections["factoring_company"].get(load.factoring_company_id)
        terms = factoring_terms(
            gross_amount(load),
            load.factoring_fee_percent,
            company.fee_percentage if company is not None else None,
        )
        return load.model_copy(update={"factoring_fee": terms.fee, "factored_amount": terms.factored_amount})

    async def create(self, request: LoadCreateRequest, actor: Actor) -> Load:
        now = datetime.now(timezone.utc)
        load_number = await self._coordinator.allocate_number(
            "LD", self._today().year, self._settings.load_number_start
        )
        load = Load(
            id=uuid.uuid4().hex,
            load_number=load_number,
            created_by=actor.uid,
            created_at=now,
            updated_at=now,
            **request.model_dump(),
        )
        delivered = load.status in DELIVERED_STATUSES
        load = self._with_factoring(load.model_copy(update={"is_locked": delivered}))

        await self._coordinator.commit([PendingWrite.save("load", load)], "create load")
        logger.info(
            "Load created",
            tenant_id=self._tenant_id,
            load_id=load.id,
            load_number=load.load_number,
            status=load.status.value,
            actor=actor.uid,
        )
        await self._audit.record_create(actor, "load", load.id, load, summary=f"Created load {load.load_number}")
        await self._workflow.on_load_created(load)
        if delivered:
            await self._workflow.on_load_delivered(load)
            await self._invoicing.run_delivery_automation(load.id, actor)
        return self._loads.get(load.id) or load

    def _permitted_patch(self, request: LoadUpdateRequest, actor: Actor) -> Dict[str, Any]:
        requested = request.model_dump(exclude_unset=True)
        allowed = ROLE_LOAD_FIELDS.get(actor.role, frozenset())
        patch = {key: value for key, value in requested.items() if key in allowed}
        dropped = sorted(set(requested) - set(patch))
        if dropped:
            logger.info("Load update fields dropped by role", role=actor.role, fields=dropped)
        if not patch:
            raise ValidationFailed(
                f"No updatable fields for role '{actor.role}'"
                + (f" (not permitted: {', '.join(dropped)})" if dropped else "")
            )
        return patch

    async def update(
        self,
        load_id: str,
        request: LoadUpdateRequest,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Load:
        existing = self.get(load_id)
        patch = self._permitted_patch(request, actor)
        changed = {key: value for key, value in patch.items() if getattr(existing, key) != value}
        if not changed:
            return existing

        reason = (reason or "").strip()
        adjustments: List[AdjustmentEntry] = []
        if existing.is_locked:
            needs_reason = sorted(set(changed) - REASON_EXEMPT_FIELDS)
            if needs_reason and not reason:
                raise PreconditionFailed(
                    f"Load {existing.load_number} is locked after delivery. "
                    f"A reason is required to change: {', '.join(needs_reason)}"
                )
            now = datetime.now(timezone.utc)
            for field in sorted(changed):
                adjustments.append(
                    AdjustmentEntry(
                        id=uuid.uuid4().hex,
                        timestamp=now,
                        changed_by=actor.uid,
                        field=field,
                        old_value=to_jsonable_python(getattr(existing, field)),
                        new_value=to_jsonable_python(changed[field]),
                        reason=reason or DEFAULT_ADJUSTMENT_REASON,
                    )
                )

        status_changed = "status" in changed
        entering_delivery = status_changed and changed["status"] in DELIVERED_STATUSES
        update: Dict[str, Any] = dict(changed)
        update["updated_at"] = datetime.now(timezone.utc)
        if entering_delivery:
            update["is_locked"] = True
        if adjustments:
            update["adjustment_log"] = [*existing.adjustment_log, *adjustments]
        updated = existing.model_copy(update=update)
        if FACTORING_INPUT_FIELDS & set(changed):
            updated = self._with_factoring(updated)

        await self._coordinator.commit([PendingWrite.save("load", updated)], "update load")
        logger.info(
            "Load updated",
            tenant_id=self._tenant_id,
            load_id=load_id,
            fields=sorted(changed),
            adjustments=len(adjustments),
            actor=actor.uid,
        )

        if status_changed:
            await self._audit.record_status_change(
                actor, "load", load_id, existing, updated,
                old_status=existing.status.value,
                new_status=updated.status.value,
                reason=reason or None,
            )
            await self._workflow.on_load_status_changed(updated, existing.status.value, updated.status.value)
        elif adjustments:
            await self._audit.record_adjustment(
                actor, "load", load_id, existing, updated,
                reason=reason or DEFAULT_ADJUSTMENT_REASON,
                fields=sorted(changed),
            )
        else:
            await self._audit.record_update(
                actor, "load", load_id, existing, updated, metadata={"fields": sorted(changed)}
            )

        if entering_delivery:
            await self._workflow.on_load_delivered(updated)
            await self._invoicing.run_delivery_automation(load_id, actor)
        if INVOICE_SYNC_FIELDS & set(changed):
            await self._invoicing.resync_invoice(self._loads.get(load_id) or updated, actor)
        return self._loads.get(load_id) or updated

    async def delete(self, load_id: str, actor: Actor, force: bool = False) -> None:
        existing = self.get(load_id)
        blockers = self._integrity.check_delete(
            "load", load_id, force=force, display_name=f"Load {existing.load_number}"
        )

        writes = self._integrity.unlink_writes("load", load_id)
        for write in writes:
            if write.entity_type == "invoice":
                remaining = [self._loads.get(item) for item in write.record.load_ids]
                write.record = write.record.model_copy(
                    update={"amount": invoice_total(load for load in remaining if load is not None)}
                )
        writes.append(PendingWrite.delete("load", load_id))
        await self._coordinator.commit(writes, "delete load")

        metadata = {
            "forced": force,
            "blocking_invoices": sum(1 for item in blockers if item["entity_type"] == "invoice"),
            "blocking_settlements": sum(1 for item in blockers if item["entity_type"] == "settlement"),
        }
        logger.info("Load deleted", tenant_id=self._tenant_id, load_id=load_id, actor=actor.uid, **metadata)
        await self._audit.record_delete(
            actor, "load", load_id, existing,
            summary=f"Deleted load {existing.load_number}",
            metadata=metadata,
        )
