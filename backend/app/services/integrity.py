"""Reverse reference index and delete gating across linked entities."""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from app.core.errors import PreconditionFailed
from app.services.optimistic import EntityCollection, PendingWrite


# source entity type -> [(field, target entity type)]; list-valued fields hold many ids.
REFERENCE_FIELDS: Dict[str, List[Tuple[str, str]]] = {
    "load": [
        ("driver_id", "employee"),
        ("dispatcher_id", "employee"),
        ("truck_id", "truck"),
        ("trailer_id", "trailer"),
        ("broker_id", "broker"),
        ("factoring_company_id", "factoring_company"),
        ("invoice_id", "invoice"),
        ("settlement_id", "settlement"),
    ],
    "invoice": [
        ("load_ids", "load"),
        ("factoring_company_id", "factoring_company"),
    ],
    "settlement": [
        ("driver_id", "employee"),
        ("load_id", "load"),
        ("load_ids", "load"),
    ],
    "expense": [
        ("load_id", "load"),
        ("driver_id", "employee"),
        ("truck_id", "truck"),
    ],
    "truck": [
        ("assigned_driver_id", "employee"),
        ("assigned_trailer_id", "trailer"),
    ],
}

# Denormalized values cleared together with the reference they describe.
COMPANION_FIELDS: Dict[Tuple[str, str], Tuple[str, ...]] = {
    ("load", "invoice_id"): ("invoice_number",),
}

Reference = Tuple[str, str, str]  # (source type, source id, field)

_LABEL_FIELDS = ("load_number", "invoice_number", "settlement_number", "unit_number", "expense_type")


def _target_ids(record: BaseModel, field: str) -> List[str]:
    value = getattr(record, field, None)
    if not value:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if item]
    return [str(value)]


class ReferenceIndex:
    """Target id -> referencing records, kept current on every collection change."""

    def __init__(self) -> None:
        self._refs: Dict[Tuple[str, str], Set[Reference]] = defaultdict(set)

    def on_record_change(self, entity_type: str, old: Optional[BaseModel], new: Optional[BaseModel]) -> None:
        fields = REFERENCE_FIELDS.get(entity_type)
        if not fields:
            return
        if old is not None:
            for field, target_type in fields:
                for target_id in _target_ids(old, field):
                    refs = self._refs.get((target_type, target_id))
                    if refs is not None:
                        refs.discard((entity_type, old.id, field))
                        if not refs:
                            del self._refs[(target_type, target_id)]
        if new is not None:
            for field, target_type in fields:
                for target_id in _target_ids(new, field):
                    self._refs[(target_type, target_id)].add((entity_type, new.id, field))

    def referrers(self, target_type: str, target_id: str, source_type: Optional[str] = None) -> List[Reference]:
        refs = self._refs.get((target_type, target_id)) or set()
        return sorted(ref for ref in refs if source_type is None or ref[0] == source_type)


class ReferentialIntegrityCoordinator:
    """Two-step delete: report blockers first, unlink and delete on override."""

    def __init__(self, index: ReferenceIndex, collections: Dict[str, EntityCollection]) -> None:
        self._index = index
        self._collections = collections

    def blocking_records(self, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        """Records whose forward references would dangle if the entity went away."""
        ids = {
            (source_type, source_id) for source_type, source_id, _ in self._index.referrers(entity_type, entity_id)
        }
        if entity_type in {"invoice", "settlement"}:
            # a billing record is also held by the loads it still covers
            owner = self._collections[entity_type].get(entity_id)
            if owner is not None:
                for field in ("load_ids", "load_id"):
                    ids.update(
                        ("load", load_id)
                        for load_id in _target_ids(owner, field)
                        if load_id in self._collections["load"]
                    )
        return [self._describe(source_type, source_id) for source_type, source_id in sorted(ids)]

    def _describe(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        record = self._collections[entity_type].get(entity_id)
        label = entity_id
        if record is not None:
            label = next(
                (getattr(record, field) for field in _LABEL_FIELDS if getattr(record, field, None)),
                entity_id,
            )
        return {"entity_type": entity_type, "id": entity_id, "label": label}

    def check_delete(self, entity_type: str, entity_id: str, *, force: bool, display_name: str) -> List[Dict[str, Any]]:
        blockers = self.blocking_records(entity_type, entity_id)
        if blockers and not force:
            raise PreconditionFailed(self.summarize(display_name, blockers), blockers=blockers)
        return blockers

    @staticmethod
    def summarize(display_name: str, blockers: List[Dict[str, Any]]) -> str:
        counts: Dict[str, int] = defaultdict(int)
        for blocker in blockers:
            counts[blocker["entity_type"]] += 1
        parts = [f"{count} {entity_type.replace('_', ' ')}(s)" for entity_type, count in sorted(counts.items())]
        labels = ", ".join(str(blocker["label"]) for blocker in blockers[:10])
        more = f" and {len(blockers) - 10} more" if len(blockers) > 10 else ""
        return (
            f"{display_name} is linked to {' and '.join(parts)}: {labels}{more}. "
            "Retry with force to unlink them and delete."
        )

    def unlink_writes(self, entity_type: str, entity_id: str) -> List[PendingWrite]:
        """Rewrite every reference to the entity to empty, one write per referencing record."""
        patches: Dict[Tuple[str, str], Dict[str, Any]] = defaultdict(dict)
        for source_type, source_id, field in self._index.referrers(entity_type, entity_id):
            record = self._collections[source_type].get(source_id)
            if record is None:
                continue
            current = getattr(record, field)
            patch = patches[(source_type, source_id)]
            if isinstance(current, list):
                patch[field] = [item for item in patch.get(field, current) if item != entity_id]
            else:
                patch[field] = None
                for companion in COMPANION_FIELDS.get((source_type, field), ()):
                    patch[companion] = None

        now = datetime.now(timezone.utc)
        writes: List[PendingWrite] = []
        for (source_type, source_id), patch in sorted(patches.items()):
            record = self._collections[source_type].get(source_id)
            if hasattr(record, "updated_at"):
                patch["updated_at"] = now
            writes.append(PendingWrite.save(source_type, record.model_copy(update=patch)))
        return writes
