"""
Persistence and read models for snapshots and deletion manifests.

The SQLAlchemy rows live next to the host's tables so that snapshots,
manifests and the hard deletes they describe commit in one transaction.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every engine table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_tables(bind: Any) -> None:
    """Create the snapshot and manifest tables if they do not exist."""
    Base.metadata.create_all(bind)


class ManifestState(str, Enum):
    """Lifecycle states of a deletion manifest."""

    ACTIVE = "active"
    RESTORED = "restored"
    PURGED = "purged"


class SnapshotDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for captured record snapshots."""

    __tablename__ = "safe_delete_snapshots"

    snapshot_key = Column(String(64), primary_key=True)
    deletion_key = Column(String(64), nullable=True, index=True)

    entity_type = Column(String(100), nullable=False)
    identity = Column(JSON, nullable=False)
    attributes = Column(JSON, nullable=False)

    checksum = Column(String(128), nullable=False)
    checksum_algorithm = Column(String(20), nullable=False)
    captured_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_snapshot_entity", entity_type),)


class ManifestDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for deletion manifests."""

    __tablename__ = "safe_delete_manifests"

    deletion_key = Column(String(64), primary_key=True)

    root_type = Column(String(100), nullable=False)
    root_identity = Column(JSON, nullable=False)
    root_display_name = Column(String(255), nullable=True)

    # Deletion order: dependents first, root last
    snapshot_keys = Column(JSON, nullable=False)
    member_count = Column(Integer, nullable=False, default=0)
    detached_references = Column(JSON, nullable=True)

    reason = Column(Text, nullable=True)
    actor = Column(String(100), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    state = Column(String(20), nullable=False, default=ManifestState.ACTIVE.value)
    closed_at = Column(DateTime, nullable=True)
    closed_by = Column(String(100), nullable=True)

    __table_args__ = (
        Index("idx_manifest_state_expires", state, expires_at),
        Index("idx_manifest_root", root_type, state),
    )


class Snapshot(BaseModel):
    """Immutable, decoded view of one captured record."""

    model_config = ConfigDict(frozen=True)

    snapshot_key: str
    entity_type: str
    identity: Any
    attributes: Dict[str, Any]
    captured_at: datetime
    checksum: str
    deletion_key: Optional[str] = None


class DeletionManifest(BaseModel):
    """Read model of a deletion manifest."""

    model_config = ConfigDict(use_enum_values=False)

    deletion_key: str
    root_type: str
    root_identity: Any
    root_display_name: Optional[str] = None
    snapshot_keys: List[str] = Field(default_factory=list)
    member_count: int = 0
    detached_references: List[Dict[str, Any]] = Field(default_factory=list)
    reason: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    state: ManifestState = ManifestState.ACTIVE
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None

    @property
    def snapshot_count(self) -> int:
        return len(self.snapshot_keys)

    @property
    def restoration_order(self) -> List[str]:
        """Snapshot keys in re-creation order: root first, deepest last."""
        return list(reversed(self.snapshot_keys))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the retention window has elapsed."""
        return (now or utcnow()) >= self.expires_at

    def to_summary(self) -> Dict[str, Any]:
        """Compact representation for recycle bin listings."""
        return {
            "deletion_key": self.deletion_key,
            "root_type": self.root_type,
            "root_identity": self.root_identity,
            "root_display_name": self.root_display_name,
            "snapshot_count": self.snapshot_count,
            "reason": self.reason,
            "actor": self.actor,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }
