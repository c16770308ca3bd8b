"""
Result models for safe delete operations.

These models describe what the service returns to callers: deletion plans,
restore results, bulk outcomes, recycle bin pages and reaper reports.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .graph import RecordRef
from .scheduler import DetachedReference
from .snapshots.models import DeletionManifest
from .validator import Blocker


@dataclass
class DeletionPlan:
    """Dry-run view of what deleting a root would do."""

    root: RecordRef
    root_display_name: str
    members: List[RecordRef]
    deletion_order: List[RecordRef]
    blockers: List[Blocker] = field(default_factory=list)
    detached: List[DetachedReference] = field(default_factory=list)

    @property
    def can_delete(self) -> bool:
        return not self.blockers

    @property
    def restoration_order(self) -> List[RecordRef]:
        return list(reversed(self.deletion_order))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root.to_dict(),
            "root_display_name": self.root_display_name,
            "can_delete": self.can_delete,
            "member_count": len(self.members),
            "deletion_order": [ref.to_dict() for ref in self.deletion_order],
            "blockers": [blocker.to_dict() for blocker in self.blockers],
            "detached_references": [ref.to_dict() for ref in self.detached],
        }


@dataclass
class RestoreResult:
    """Outcome of a successful restore."""

    deletion_key: str
    root_type: str
    root_identity: Any
    restored: List[RecordRef]
    identity_map: Dict[RecordRef, Any] = field(default_factory=dict)

    @property
    def remapped(self) -> bool:
        return bool(self.identity_map)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deletion_key": self.deletion_key,
            "root_type": self.root_type,
            "root_identity": self.root_identity,
            "restored_count": len(self.restored),
            "identity_map": [
                {
                    "entity_type": ref.entity_type,
                    "original_identity": ref.identity,
                    "new_identity": new_identity,
                }
                for ref, new_identity in self.identity_map.items()
            ],
        }


class BulkItem(BaseModel):
    """Result for one element of a bulk operation."""

    target: Any = Field(..., description="Root identity or deletion key")
    deletion_key: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BulkResult(BaseModel):
    """Outcome of a bulk delete or restore. Elements succeed or fail individually."""

    succeeded: List[BulkItem] = Field(default_factory=list)
    failed: List[BulkItem] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class ManifestPage(BaseModel):
    """One page of the recycle bin listing."""

    items: List[DeletionManifest]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


class RecycleBinStats(BaseModel):
    """Aggregate figures for the recycle bin."""

    total_active: int = 0
    total_snapshots: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    expiring_within_day: int = 0


class ReapReport(BaseModel):
    """Outcome of one reaper sweep."""

    model_config = ConfigDict(frozen=False)

    started_at: datetime
    finished_at: Optional[datetime] = None
    purged: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.purged) + len(self.skipped) + len(self.failed)
