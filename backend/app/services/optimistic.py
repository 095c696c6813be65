"""In-memory tenant collections with optimistic apply and rollback on store failure."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from app.core.errors import IOFailure
from app.core.logging import logger
from app.models.tms import ENTITY_MODELS
from app.services.entity_store import EntityStore, StoreIOError


RecordListener = Callable[[str, Optional[BaseModel], Optional[BaseModel]], None]


class EntityCollection:
    """Ordered local view of one entity type for one tenant session."""

    def __init__(self, entity_type: str, listeners: Iterable[RecordListener] = ()) -> None:
        self.entity_type = entity_type
        self.model = ENTITY_MODELS[entity_type]
        self._records: Dict[str, BaseModel] = {}
        self._listeners: List[RecordListener] = list(listeners)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._records

    def get(self, entity_id: Optional[str]) -> Optional[BaseModel]:
        if not entity_id:
            return None
        return self._records.get(entity_id)

    def all(self) -> List[BaseModel]:
        return list(self._records.values())

    def ids(self) -> List[str]:
        return list(self._records.keys())

    def put(self, record: BaseModel) -> None:
        entity_id = getattr(record, "id")
        old = self._records.get(entity_id)
        self._records[entity_id] = record
        self._emit(old, record)

    def remove(self, entity_id: str) -> Optional[BaseModel]:
        old = self._records.pop(entity_id, None)
        if old is not None:
            self._emit(old, None)
        return old

    def snapshot(self) -> Dict[str, BaseModel]:
        return dict(self._records)

    def restore(self, snapshot: Dict[str, BaseModel]) -> None:
        self._replace(snapshot)

    def replace_all(self, rows: Iterable[dict]) -> None:
        """Adopt an authoritative store push; it supersedes any optimistic state."""
        records: Dict[str, BaseModel] = {}
        for row in rows:
            record = self.model.model_validate(row)
            records[record.id] = record
        self._replace(records)

    def _replace(self, records: Dict[str, BaseModel]) -> None:
        previous = self._records
        self._records = dict(records)
        for entity_id, old in previous.items():
            new = self._records.get(entity_id)
            if new is None:
                self._emit(old, None)
            elif new is not old:
                self._emit(old, new)
        for entity_id, new in self._records.items():
            if entity_id not in previous:
                self._emit(None, new)

    def _emit(self, old: Optional[BaseModel], new: Optional[BaseModel]) -> None:
        for listener in self._listeners:
            listener(self.entity_type, old, new)


@dataclass
class PendingWrite:
    """One record-level change: ``record`` is saved, or ``delete_id`` is removed."""

    entity_type: str
    record: Optional[BaseModel] = None
    delete_id: Optional[str] = None

    @classmethod
    def save(cls, entity_type: str, record: BaseModel) -> "PendingWrite":
        return cls(entity_type=entity_type, record=record)

    @classmethod
    def delete(cls, entity_type: str, entity_id: str) -> "PendingWrite":
        return cls(entity_type=entity_type, delete_id=entity_id)


class OptimisticUpdateCoordinator:
    """Apply locally first, persist second, and roll back when the store refuses.

    ``commit`` mutates the collections before its first suspension point, so a
    concurrently running reader observes the optimistic state immediately.
    When a later write fails, the earlier ones are undone in the store as well,
    so a retry starts from the same state the caller saw.
    """

    def __init__(self, store: EntityStore, tenant_id: str, collections: Dict[str, EntityCollection]) -> None:
        self._store = store
        self._tenant_id = tenant_id
        self._collections = collections

    async def commit(self, writes: List[PendingWrite], operation: str) -> None:
        if not writes:
            return
        touched = {write.entity_type for write in writes}
        snapshots = {entity_type: self._collections[entity_type].snapshot() for entity_type in touched}

        for write in writes:
            collection = self._collections[write.entity_type]
            if write.record is not None:
                collection.put(write.record)
            elif write.delete_id:
                collection.remove(write.delete_id)

        persisted: List[PendingWrite] = []
        try:
            for write in writes:
                await self._persist(write)
                persisted.append(write)
        except StoreIOError as exc:
            await self._compensate(persisted, snapshots, operation)
            for entity_type, snapshot in snapshots.items():
                self._collections[entity_type].restore(snapshot)
            logger.error(
                "Persist failed; local state rolled back",
                tenant_id=self._tenant_id,
                operation=operation,
                entity_types=sorted(touched),
                persisted_before_failure=len(persisted),
                error=str(exc),
            )
            raise IOFailure(f"Could not save changes ({operation}). Local changes were reverted; please retry.") from exc

    async def _persist(self, write: PendingWrite) -> None:
        if write.record is not None:
            await self._store.save(self._tenant_id, write.entity_type, write.record.model_dump(mode="json"))
        elif write.delete_id:
            await self._store.delete(self._tenant_id, write.entity_type, write.delete_id)

    async def _compensate(
        self,
        persisted: List[PendingWrite],
        snapshots: Dict[str, Dict[str, BaseModel]],
        operation: str,
    ) -> None:
        """Undo writes that reached the store before a later write in the same commit failed."""
        for write in reversed(persisted):
            entity_id = write.record.id if write.record is not None else write.delete_id
            previous = snapshots[write.entity_type].get(entity_id)
            try:
                if previous is not None:
                    await self._store.save(self._tenant_id, write.entity_type, previous.model_dump(mode="json"))
                else:
                    await self._store.delete(self._tenant_id, write.entity_type, entity_id)
            except StoreIOError as exc:
                logger.error(
                    "Could not undo persisted write",
                    tenant_id=self._tenant_id,
                    operation=operation,
                    entity_type=write.entity_type,
                    entity_id=entity_id,
                    error=str(exc),
                )

    async def allocate_number(self, prefix: str, year: int, start: int) -> str:
        """Next human-readable number such as ``INV-2026-1001`` from the tenant/year counter."""
        try:
            seq = await self._store.next_sequence(self._tenant_id, f"{prefix.lower()}:{year}", start)
        except StoreIOError as exc:
            raise IOFailure(f"Could not allocate a {prefix} number; please retry.") from exc
        return f"{prefix}-{year}-{seq}"
