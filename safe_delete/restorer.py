"""
Identity-preserving restoration of snapshotted records.

Records are re-inserted under their original primary key. When that is not
possible (the storage cannot override identities, or the identity has been
reused and the remap policy is active) the record gets a fresh identity and
the translation is applied to foreign keys of records restored after it.
"""

import logging
from typing import Any, Dict, Optional

from .config import CollisionPolicy
from .exceptions import IdentityCollision
from .graph import GraphRegistry, RecordRef
from .storage import PrimaryStorage

logger = logging.getLogger(__name__)

IdentityMap = Dict[RecordRef, Any]


class IdentityPreservingRestorer:
    """Re-creates records from snapshots with their original identity."""

    def __init__(
        self,
        registry: GraphRegistry,
        collision_policy: CollisionPolicy = CollisionPolicy.REJECT,
    ):
        self.registry = registry
        self.collision_policy = CollisionPolicy(collision_policy)

    def recreate(
        self,
        storage: PrimaryStorage,
        entity_type: str,
        original_identity: Any,
        attributes: Dict[str, Any],
        identity_map: Optional[IdentityMap] = None,
    ) -> Any:
        """
        Re-insert one record.

        Args:
            storage: Primary storage inside the restore transaction
            entity_type: Entity type of the record
            original_identity: Identity the record had when deleted
            attributes: Snapshotted attribute map
            identity_map: Translation table of identities remapped earlier in
                the same restore; updated in place when this record is remapped

        Returns:
            The identity the record now has

        Raises:
            IdentityCollision: If the identity is taken and the policy is reject
        """
        identity_map = identity_map if identity_map is not None else {}
        values = self._prepare(storage, entity_type, attributes, identity_map)

        if storage.supports_identity_override:
            try:
                with storage.identity_override(entity_type):
                    storage.insert_with_identity(entity_type, original_identity, values)
                return original_identity
            except IdentityCollision:
                if self.collision_policy != CollisionPolicy.REMAP:
                    logger.warning(
                        "Identity collision restoring %s#%s",
                        entity_type,
                        original_identity,
                    )
                    raise

        new_identity = storage.insert(entity_type, values)
        identity_map[RecordRef(entity_type, original_identity)] = new_identity
        logger.warning(
            "Restored %s#%s under new identity %s",
            entity_type,
            original_identity,
            new_identity,
        )
        return new_identity

    def _prepare(
        self,
        storage: PrimaryStorage,
        entity_type: str,
        attributes: Dict[str, Any],
        identity_map: IdentityMap,
    ) -> Dict[str, Any]:
        values = dict(attributes)

        # Drop attributes the storage cannot persist (computed or removed columns)
        columns = storage.columns(entity_type)
        if columns is not None:
            dropped = sorted(set(values) - columns)
            if dropped:
                logger.warning(
                    "Dropping non-column attributes while restoring %s: %s",
                    entity_type,
                    ", ".join(dropped),
                )
                for name in dropped:
                    del values[name]

        if identity_map:
            for edge in self.registry.all_edges():
                if edge.referencing_type != entity_type or edge.field not in values:
                    continue
                old = RecordRef(edge.referenced_type, values[edge.field])
                if old in identity_map:
                    values[edge.field] = identity_map[old]

        return values
