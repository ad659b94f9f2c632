"""
Field Change Module

Before/after diffs of ledger records. The ledger writes no audit log of its
own; operation results carry these diffs so a change-log collaborator can
persist them with its own actor and timestamp.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .storage import StorageRecord

_IGNORED_FIELDS = ('created_at', 'updated_at')


@dataclass(frozen=True)
class FieldChange:
    """One changed field of one record"""
    record_type: str
    record_id: str
    field: str
    old_value: Any
    new_value: Any
    changed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_type": self.record_type,
            "record_id": self.record_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }


def diff_records(before: Optional[StorageRecord], after: StorageRecord) -> List[FieldChange]:
    """
    Field-level differences between two versions of a record.

    Values are compared in their stored form (Decimal and dates as strings).
    A missing ``before`` reports every field as new.
    """
    old = before.to_dict() if before is not None else {}
    new = after.to_dict()
    record_type = type(after).__name__

    changes = []
    for name, value in new.items():
        if name in _IGNORED_FIELDS:
            continue
        previous = old.get(name)
        if before is None or previous != value:
            changes.append(FieldChange(
                record_type=record_type,
                record_id=after.id,
                field=name,
                old_value=previous,
                new_value=value,
                changed_at=after.updated_at
            ))
    return changes
