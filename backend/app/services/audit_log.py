"""Append-only audit trail for every entity mutation."""
from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel

from app.core.logging import logger
from app.models.tms import Actor, AuditAction, AuditLogEntry
from app.services.entity_store import EntityStore


def _as_dict(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return dict(value)


class AuditLogger:
    """Writes immutable audit entries; a failed write is logged, never raised."""

    def __init__(self, store: EntityStore, tenant_id: str) -> None:
        self._store = store
        self._tenant_id = tenant_id

    async def _record(
        self,
        actor: Actor,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        *,
        summary: str = "",
        before: Any = None,
        after: Any = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        try:
            entry = AuditLogEntry(
                id=uuid.uuid4().hex,
                tenant_id=self._tenant_id,
                actor_uid=actor.uid,
                actor_role=actor.role,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                summary=summary,
                before=_as_dict(before),
                after=_as_dict(after),
                reason=reason,
                metadata=metadata or {},
            )
            await self._store.append_audit(self._tenant_id, entry.model_dump(mode="json"))
            return entry
        except Exception as exc:  # audit must never block the mutation it describes
            logger.error(
                "Audit write failed",
                tenant_id=self._tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action.value,
                error=str(exc),
            )
            return None

    async def record_create(self, actor: Actor, entity_type: str, entity_id: str, after: Any, summary: str = ""):
        return await self._record(
            actor,
            AuditAction.CREATE,
            entity_type,
            entity_id,
            after=after,
            summary=summary or f"Created {entity_type} {entity_id}",
        )

    async def record_update(
        self,
        actor: Actor,
        entity_type: str,
        entity_id: str,
        before: Any,
        after: Any,
        summary: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ):
        return await self._record(
            actor,
            AuditAction.UPDATE,
            entity_type,
            entity_id,
            before=before,
            after=after,
            summary=summary or f"Updated {entity_type} {entity_id}",
            metadata=metadata,
        )

    async def record_delete(
        self,
        actor: Actor,
        entity_type: str,
        entity_id: str,
        before: Any,
        summary: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ):
        return await self._record(
            actor,
            AuditAction.DELETE,
            entity_type,
            entity_id,
            before=before,
            summary=summary or f"Deleted {entity_type} {entity_id}",
            metadata=metadata,
        )

    async def record_status_change(
        self,
        actor: Actor,
        entity_type: str,
        entity_id: str,
        before: Any,
        after: Any,
        old_status: str,
        new_status: str,
        reason: Optional[str] = None,
    ):
        return await self._record(
            actor,
            AuditAction.STATUS_CHANGE,
            entity_type,
            entity_id,
            before=before,
            after=after,
            reason=reason,
            summary=f"Status changed from {old_status} to {new_status}",
            metadata={"old_status": old_status, "new_status": new_status},
        )

    async def record_adjustment(
        self,
        actor: Actor,
        entity_type: str,
        entity_id: str,
        before: Any,
        after: Any,
        reason: str,
        fields: Optional[list] = None,
    ):
        return await self._record(
            actor,
            AuditAction.ADJUSTMENT,
            entity_type,
            entity_id,
            before=before,
            after=after,
            reason=reason,
            summary=f"Adjusted {', '.join(fields or [])} on locked {entity_type}",
            metadata={"fields": fields or []},
        )

    async def trail(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 300,
    ) -> list[AuditLogEntry]:
        rows = await self._store.list_audit(self._tenant_id, entity_type, entity_id, limit)
        return [AuditLogEntry.model_validate(row) for row in rows]
