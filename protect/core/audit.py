"""
Audit trail writer.

Entries are created, never updated or deleted.
"""

from typing import Any, Optional

from ..db.store import Eq, RecordStore
from ..schemas import AuditAction, AuditLogEntry, EntityType


class AuditTrail:
    def __init__(self, store: RecordStore):
        self._store = store

    def record(
        self,
        action: AuditAction,
        resource_type: EntityType,
        resource_id: Any,
        details: Optional[dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> AuditLogEntry:
        row = self._store.create(EntityType.AUDIT_LOG, {
            "action": action,
            "resource_type": resource_type.value,
            "resource_id": str(resource_id),
            "actor_id": actor_id,
            "details": details or {},
        })
        return AuditLogEntry.model_validate(row)

    def entries_for(
        self,
        resource_id: Any,
        action: Optional[AuditAction] = None,
    ) -> list[AuditLogEntry]:
        """Entries about one resource, newest first."""
        where = [Eq("resource_id", str(resource_id))]
        if action is not None:
            where.append(Eq("action", action))
        return [
            AuditLogEntry.model_validate(row)
            for row in self._store.find(EntityType.AUDIT_LOG, where)
        ]
