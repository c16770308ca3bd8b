"""
Snapshot store: write-once capture of record attribute maps.

There is deliberately no update operation. Snapshots are written inside the
deletion transaction and removed only after their manifest leaves ACTIVE.
"""

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..config import ChecksumAlgorithm
from ..exceptions import SnapshotIntegrityError, SnapshotNotFound
from .codec import (
    calculate_checksum,
    decode_attributes,
    decode_value,
    encode_attributes,
    encode_value,
)
from .models import Snapshot, SnapshotDB, utcnow

logger = logging.getLogger(__name__)


def new_key() -> str:
    """Generate a system-wide unique key."""
    return uuid.uuid4().hex


class SnapshotStore:
    """SQL-backed snapshot store sharing the engine's session."""

    def __init__(
        self,
        session: Session,
        algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256,
    ):
        """
        Initialize the snapshot store.

        Args:
            session: SQLAlchemy session (same one as the primary storage)
            algorithm: Checksum algorithm for new snapshots
        """
        self.session = session
        self.algorithm = algorithm

    def put(
        self,
        entity_type: str,
        identity: Any,
        attributes: Dict[str, Any],
        deletion_key: Optional[str] = None,
    ) -> str:
        """
        Capture a record's full attribute state.

        Args:
            entity_type: Entity type of the record
            identity: Original identity of the record
            attributes: Complete attribute map
            deletion_key: Manifest that owns this snapshot

        Returns:
            New snapshot key
        """
        snapshot_key = new_key()
        encoded_identity = encode_value(identity)
        encoded = encode_attributes(attributes)

        self.session.add(
            SnapshotDB(
                snapshot_key=snapshot_key,
                deletion_key=deletion_key,
                entity_type=entity_type,
                identity=encoded_identity,
                attributes=encoded,
                checksum=calculate_checksum(
                    self._checksum_payload(entity_type, encoded_identity, encoded),
                    self.algorithm,
                ),
                checksum_algorithm=self.algorithm.value,
                captured_at=utcnow(),
            )
        )
        self.session.flush()
        return snapshot_key

    def get(self, snapshot_key: str) -> Snapshot:
        """
        Retrieve and verify a snapshot.

        Raises:
            SnapshotNotFound: If the key is absent or already purged
            SnapshotIntegrityError: If the stored data fails its checksum
        """
        row = self.session.get(SnapshotDB, snapshot_key)
        if row is None:
            raise SnapshotNotFound(snapshot_key)
        return self._to_snapshot(row)

    def get_many(self, snapshot_keys: Iterable[str]) -> List[Snapshot]:
        """
        Retrieve several snapshots, preserving the requested order.

        Raises:
            SnapshotNotFound: For the first missing key
        """
        keys = list(snapshot_keys)
        rows = self.session.execute(
            select(SnapshotDB).where(SnapshotDB.snapshot_key.in_(keys))
        ).scalars()
        by_key = {row.snapshot_key: row for row in rows}
        result = []
        for key in keys:
            if key not in by_key:
                raise SnapshotNotFound(key)
            result.append(self._to_snapshot(by_key[key]))
        return result

    def refs(self, snapshot_keys: Iterable[str]) -> List[Tuple[str, Any]]:
        """
        Entity type and identity of each snapshot, without verifying checksums.

        Missing keys are skipped.
        """
        keys = list(snapshot_keys)
        rows = self.session.execute(
            select(
                SnapshotDB.snapshot_key, SnapshotDB.entity_type, SnapshotDB.identity
            ).where(SnapshotDB.snapshot_key.in_(keys))
        )
        by_key = {
            key: (entity_type, decode_value(identity))
            for key, entity_type, identity in rows
        }
        return [by_key[key] for key in keys if key in by_key]

    def delete(self, snapshot_key: str) -> None:
        """Remove a snapshot; missing keys are ignored."""
        self.session.execute(
            delete(SnapshotDB).where(SnapshotDB.snapshot_key == snapshot_key)
        )

    def delete_many(self, snapshot_keys: Iterable[str]) -> int:
        """Remove several snapshots; returns how many existed."""
        keys = list(snapshot_keys)
        if not keys:
            return 0
        result = self.session.execute(
            delete(SnapshotDB).where(SnapshotDB.snapshot_key.in_(keys))
        )
        return int(result.rowcount or 0)

    def count(self) -> int:
        return self.session.execute(
            select(func.count()).select_from(SnapshotDB)
        ).scalar_one()

    def _to_snapshot(self, row: SnapshotDB) -> Snapshot:
        expected = calculate_checksum(
            self._checksum_payload(row.entity_type, row.identity, row.attributes),
            ChecksumAlgorithm(row.checksum_algorithm),
        )
        if expected != row.checksum:
            logger.error(
                "Snapshot checksum mismatch",
                extra={"snapshot_key": row.snapshot_key},
            )
            raise SnapshotIntegrityError(row.snapshot_key)

        return Snapshot(
            snapshot_key=row.snapshot_key,
            deletion_key=row.deletion_key,
            entity_type=row.entity_type,
            identity=decode_value(row.identity),
            attributes=decode_attributes(row.attributes),
            captured_at=row.captured_at,
            checksum=row.checksum,
        )

    @staticmethod
    def _checksum_payload(
        entity_type: str, identity: Any, attributes: Dict[str, Any]
    ) -> Tuple[str, Any, Dict[str, Any]]:
        return (entity_type, identity, attributes)
