"""
Persistence of deletion manifests.

Manifest rows are always read fresh from the database inside the calling
transaction; nothing about manifest state is cached in the process.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from .snapshots.codec import decode_value, encode_value
from .snapshots.models import DeletionManifest, ManifestDB, ManifestState, utcnow


class ManifestStore:
    """SQL-backed store of deletion manifests."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        deletion_key: str,
        root_type: str,
        root_identity: Any,
        snapshot_keys: List[str],
        expires_at: datetime,
        root_display_name: Optional[str] = None,
        detached_references: Optional[List[Dict[str, Any]]] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> DeletionManifest:
        """Persist a new ACTIVE manifest."""
        row = ManifestDB(
            deletion_key=deletion_key,
            root_type=root_type,
            root_identity=encode_value(root_identity),
            root_display_name=(root_display_name or "")[:255] or None,
            snapshot_keys=list(snapshot_keys),
            member_count=len(snapshot_keys),
            detached_references=detached_references or [],
            reason=reason,
            actor=actor,
            created_at=created_at or utcnow(),
            expires_at=expires_at,
            state=ManifestState.ACTIVE.value,
        )
        self.session.add(row)
        self.session.flush()
        return self._to_model(row)

    def get(self, deletion_key: str, for_update: bool = False) -> Optional[DeletionManifest]:
        """
        Load a manifest by key.

        Args:
            deletion_key: Manifest key
            for_update: Lock the row (SELECT ... FOR UPDATE where supported)
        """
        row = self._get_row(deletion_key, for_update=for_update)
        return self._to_model(row) if row is not None else None

    def mark(
        self,
        deletion_key: str,
        state: ManifestState,
        actor: Optional[str] = None,
        keep_tombstone: bool = True,
    ) -> None:
        """
        Move a manifest out of ACTIVE.

        Args:
            deletion_key: Manifest key
            state: RESTORED or PURGED
            actor: Who closed the manifest
            keep_tombstone: Keep the row in its final state instead of deleting it
        """
        row = self._get_row(deletion_key)
        if row is None:
            return
        row.state = state.value
        row.closed_at = utcnow()
        row.closed_by = actor
        self.session.flush()
        if not keep_tombstone:
            self.session.delete(row)
            self.session.flush()

    def list(
        self,
        entity_type: Optional[str] = None,
        state: Optional[ManifestState] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[DeletionManifest], int]:
        """
        List manifests, newest first.

        Returns:
            Tuple of (page of manifests, total matching count)
        """
        conditions = []
        if entity_type:
            conditions.append(ManifestDB.root_type == entity_type)
        if state:
            conditions.append(ManifestDB.state == ManifestState(state).value)
        where = and_(*conditions) if conditions else None

        count_query = select(func.count()).select_from(ManifestDB)
        query = select(ManifestDB)
        if where is not None:
            count_query = count_query.where(where)
            query = query.where(where)

        total = self.session.execute(count_query).scalar_one()
        rows = self.session.execute(
            query.order_by(ManifestDB.created_at.desc(), ManifestDB.deletion_key)
            .limit(limit)
            .offset(offset)
        ).scalars()
        return [self._to_model(row) for row in rows], total

    def expired_keys(self, now: datetime, limit: Optional[int] = None) -> List[str]:
        """Keys of ACTIVE manifests whose retention window has elapsed."""
        query = (
            select(ManifestDB.deletion_key)
            .where(
                and_(
                    ManifestDB.state == ManifestState.ACTIVE.value,
                    ManifestDB.expires_at < now,
                )
            )
            .order_by(ManifestDB.expires_at)
        )
        if limit:
            query = query.limit(limit)
        return list(self.session.execute(query).scalars())

    def count_by_type(self, state: ManifestState = ManifestState.ACTIVE) -> Dict[str, int]:
        rows = self.session.execute(
            select(ManifestDB.root_type, func.count())
            .where(ManifestDB.state == state.value)
            .group_by(ManifestDB.root_type)
        )
        return {root_type: count for root_type, count in rows}

    def count_expiring(self, before: datetime) -> int:
        return self.session.execute(
            select(func.count())
            .select_from(ManifestDB)
            .where(
                and_(
                    ManifestDB.state == ManifestState.ACTIVE.value,
                    ManifestDB.expires_at < before,
                )
            )
        ).scalar_one()

    def _get_row(self, deletion_key: str, for_update: bool = False) -> Optional[ManifestDB]:
        query = select(ManifestDB).where(ManifestDB.deletion_key == deletion_key)
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query).scalars().first()

    @staticmethod
    def _to_model(row: ManifestDB) -> DeletionManifest:
        return DeletionManifest(
            deletion_key=row.deletion_key,
            root_type=row.root_type,
            root_identity=decode_value(row.root_identity),
            root_display_name=row.root_display_name,
            snapshot_keys=list(row.snapshot_keys or []),
            member_count=row.member_count or 0,
            detached_references=list(row.detached_references or []),
            reason=row.reason,
            actor=row.actor,
            created_at=row.created_at,
            expires_at=row.expires_at,
            state=ManifestState(row.state),
            closed_at=row.closed_at,
            closed_by=row.closed_by,
        )
