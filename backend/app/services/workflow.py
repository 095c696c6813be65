"""Event-driven follow-up tasks for loads and invoices."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from app.core.logging import logger
from app.models.tms import Invoice, Load, Task
from app.services.entity_store import EntityStore


@dataclass(frozen=True)
class TaskTemplate:
    template_key: str
    title: str
    description: str
    priority: str = "medium"
    due_offset_minutes: Optional[int] = None
    assign_to: Optional[str] = None
    tags: Tuple[str, ...] = ()
    blockers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkflowRule:
    rule_id: str
    event_type: str
    actions: Tuple[TaskTemplate, ...]
    load_status_in: Optional[Tuple[str, ...]] = None
    enabled: bool = True
    name: str = ""


@dataclass
class WorkflowEvent:
    event_type: str
    entity_type: str
    entity_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


DEFAULT_RULES: Tuple[WorkflowRule, ...] = (
    WorkflowRule(
        rule_id="rule_load_created",
        name="Load created",
        event_type="LOAD_CREATED",
        actions=(
            TaskTemplate(
                "LOAD_ASSIGN_DRIVER",
                "Assign driver to load",
                "A new load has been created and needs a driver assignment.",
                priority="high",
                due_offset_minutes=60,
                assign_to="DISPATCH",
                tags=("load", "dispatch"),
            ),
            TaskTemplate(
                "LOAD_SEND_RATE_CONFIRMATION",
                "Send rate confirmation",
                "Rate confirmation document needs to be sent to customer.",
                due_offset_minutes=120,
                assign_to="DISPATCH",
                tags=("load", "document"),
            ),
            TaskTemplate(
                "LOAD_CONFIRM_PICKUP_APPT",
                "Confirm pickup appointment",
                "Confirm pickup appointment time with shipper.",
                due_offset_minutes=240,
                assign_to="DISPATCH",
                tags=("load", "pickup"),
            ),
        ),
    ),
    WorkflowRule(
        rule_id="rule_load_dispatched",
        name="Load dispatched",
        event_type="LOAD_STATUS_CHANGED",
        load_status_in=("dispatched",),
        actions=(
            TaskTemplate(
                "LOAD_CONFIRM_PICKUP",
                "Confirm pickup (same day)",
                "Follow up to confirm pickup has occurred.",
                priority="high",
                due_offset_minutes=30,
                assign_to="DISPATCH",
                tags=("load", "pickup"),
            ),
            TaskTemplate(
                "LOAD_TRACK_IN_TRANSIT",
                "Track in-transit update",
                "Monitor load progress while in transit.",
                due_offset_minutes=1440,
                assign_to="DISPATCH",
                tags=("load", "tracking"),
            ),
        ),
    ),
    WorkflowRule(
        rule_id="rule_load_delivered",
        name="Load delivered",
        event_type="LOAD_DELIVERED",
        actions=(
            TaskTemplate(
                "LOAD_COLLECT_POD",
                "Collect POD",
                "Proof of Delivery document is required for invoicing.",
                priority="high",
                due_offset_minutes=60,
                assign_to="LOAD_DRIVER",
                tags=("load", "pod", "document"),
                blockers=("POD_REQUIRED",),
            ),
        ),
    ),
    WorkflowRule(
        rule_id="rule_invoice_created",
        name="Invoice created",
        event_type="INVOICE_CREATED",
        actions=(
            TaskTemplate(
                "INVOICE_SEND_TO_CUSTOMER",
                "Send invoice to customer",
                "Invoice has been created and should be sent to customer.",
                due_offset_minutes=30,
                assign_to="ACCOUNTING",
                tags=("invoice", "ar"),
            ),
            TaskTemplate(
                "INVOICE_START_AR_FOLLOWUP",
                "Start AR follow-up cycle",
                "Begin accounts receivable follow-up process.",
                priority="low",
                due_offset_minutes=43200,
                assign_to="ACCOUNTING",
                tags=("invoice", "ar", "followup"),
            ),
        ),
    ),
)


# assign_to value -> operator role whose queue receives the task; drivers fall back to dispatch.
ROLE_QUEUES: Dict[str, str] = {
    "DISPATCH": "dispatcher",
    "LOAD_DRIVER": "dispatcher",
    "ACCOUNTING": "billing",
    "OWNER": "owner",
}


def dedupe_key(tenant_id: str, entity_type: str, entity_id: str, template_key: str) -> str:
    return f"{tenant_id or 'default'}:{entity_type}:{entity_id}:{template_key}"


def _task_id(key: str) -> str:
    return uuid.uuid5(uuid.NAMESPACE_URL, f"tms-task:{key}").hex


class WorkflowTrigger:
    """Matches events against rules and creates each templated task at most once."""

    def __init__(self, store: EntityStore, tenant_id: str, rules: Tuple[WorkflowRule, ...] = DEFAULT_RULES) -> None:
        self._store = store
        self._tenant_id = tenant_id
        self._rules = rules

    @staticmethod
    def _matches(rule: WorkflowRule, event: WorkflowEvent) -> bool:
        if not rule.enabled or rule.event_type != event.event_type:
            return False
        new_status = event.payload.get("new_status")
        if rule.load_status_in is not None and new_status and new_status not in rule.load_status_in:
            return False
        return True

    @staticmethod
    def _assignee(assign_to: Optional[str], payload: Dict[str, Any]) -> Optional[str]:
        """Driver id for driver tasks, else the role queue the task waits in."""
        if assign_to == "LOAD_DRIVER" and payload.get("driver_id"):
            return payload["driver_id"]
        queue = ROLE_QUEUES.get(assign_to or "")
        return f"role:{queue}" if queue else None

    async def trigger(self, event: WorkflowEvent) -> List[Task]:
        created: List[Task] = []
        now = datetime.now(timezone.utc)
        for rule in self._rules:
            if not self._matches(rule, event):
                continue
            for template in rule.actions:
                key = dedupe_key(self._tenant_id, event.entity_type, event.entity_id, template.template_key)
                task_id = _task_id(key)
                if await self._store.get(self._tenant_id, "task", task_id) is not None:
                    continue
                task = Task(
                    id=task_id,
                    template_key=template.template_key,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    title=template.title,
                    description=template.description,
                    priority=template.priority,
                    status="blocked" if template.blockers else "pending",
                    dedupe_key=key,
                    rule_id=rule.rule_id,
                    due_at=now + timedelta(minutes=template.due_offset_minutes)
                    if template.due_offset_minutes
                    else None,
                    assigned_to=self._assignee(template.assign_to, event.payload),
                    tags=list(template.tags),
                    blockers=list(template.blockers),
                    metadata={"event_id": event.id, "event_type": event.event_type},
                )
                await self._store.save(self._tenant_id, "task", task.model_dump(mode="json"))
                created.append(task)
        return created

    async def _safe_trigger(self, event: WorkflowEvent) -> List[Task]:
        try:
            tasks = await self.trigger(event)
        except Exception as exc:  # workflow tasks are advisory
            logger.warning(
                "Workflow trigger failed",
                tenant_id=self._tenant_id,
                event_type=event.event_type,
                entity_id=event.entity_id,
                error=str(exc),
            )
            return []
        if tasks:
            logger.info(
                "Workflow tasks created",
                tenant_id=self._tenant_id,
                event_type=event.event_type,
                entity_id=event.entity_id,
                templates=[task.template_key for task in tasks],
            )
        return tasks

    async def on_load_created(self, load: Load) -> List[Task]:
        return await self._safe_trigger(
            WorkflowEvent(
                "LOAD_CREATED",
                "load",
                load.id,
                {"driver_id": load.driver_id, "created_by": load.created_by, "is_factored": load.is_factored},
            )
        )

    async def on_load_status_changed(self, load: Load, old_status: str, new_status: str) -> List[Task]:
        return await self._safe_trigger(
            WorkflowEvent(
                "LOAD_STATUS_CHANGED",
                "load",
                load.id,
                {
                    "old_status": old_status,
                    "new_status": new_status,
                    "driver_id": load.driver_id,
                    "created_by": load.created_by,
                },
            )
        )

    async def on_load_delivered(self, load: Load) -> List[Task]:
        return await self._safe_trigger(
            WorkflowEvent(
                "LOAD_DELIVERED",
                "load",
                load.id,
                {"driver_id": load.driver_id, "created_by": load.created_by, "is_factored": load.is_factored},
            )
        )

    async def on_invoice_created(self, invoice: Invoice) -> List[Task]:
        return await self._safe_trigger(
            WorkflowEvent(
                "INVOICE_CREATED",
                "invoice",
                invoice.id,
                {"load_ids": list(invoice.load_ids), "amount": invoice.amount, "created_by": invoice.created_by},
            )
        )
