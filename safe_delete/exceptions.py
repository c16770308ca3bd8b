"""Exceptions for safe delete operations."""

from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

if TYPE_CHECKING:
    from .graph.models import RecordRef
    from .validator import Blocker


class SafeDeleteError(Exception):
    """Base exception for safe delete operations."""

    http_status = 500

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for an outer API layer."""
        return {
            "error": self.__class__.__name__,
            "message": str(self),
            "entity_id": self.entity_id,
        }


class RegistryError(SafeDeleteError):
    """Raised when the entity graph configuration is invalid."""


class UnknownEntityType(RegistryError):
    """Raised when an entity type is not registered."""

    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(f"Entity type {entity_type!r} is not registered")


class RecordNotFound(SafeDeleteError):
    """Raised when the root record of a deletion does not exist."""

    http_status = 404

    def __init__(self, entity_type: str, identity: Any):
        self.entity_type = entity_type
        self.identity = identity
        super().__init__(
            f"{entity_type} with identity {identity!r} not found",
            entity_id=str(identity),
        )


class DeletionBlocked(SafeDeleteError):
    """Raised when records outside the subtree hold restricting references."""

    http_status = 409

    def __init__(self, blockers: List["Blocker"]):
        self.blockers = blockers
        count = len(blockers)
        super().__init__(
            f"Deletion blocked by {count} external reference(s): "
            + "; ".join(blocker.describe() for blocker in blockers[:5])
            + (" ..." if count > 5 else "")
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["blockers"] = [blocker.to_dict() for blocker in self.blockers]
        return result


class CycleDetectedAtUnexpectedDepth(SafeDeleteError):
    """Raised when the instance graph holds a cycle that cannot be ordered."""

    def __init__(self, refs: Iterable["RecordRef"], depth: int, detail: str = ""):
        self.refs = list(refs)
        self.depth = depth
        members = ", ".join(str(ref) for ref in self.refs[:10])
        message = f"Unresolvable dependency cycle at depth {depth} among: {members}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class SnapshotNotFound(SafeDeleteError):
    """Raised when a snapshot key is absent or already purged."""

    http_status = 404

    def __init__(self, snapshot_key: str):
        self.snapshot_key = snapshot_key
        super().__init__(f"Snapshot {snapshot_key} not found")


class SnapshotIntegrityError(SafeDeleteError):
    """Raised when a stored snapshot no longer matches its checksum."""

    def __init__(self, snapshot_key: str):
        self.snapshot_key = snapshot_key
        super().__init__(f"Snapshot {snapshot_key} failed checksum verification")


class ManifestNotRestorable(SafeDeleteError):
    """Raised when a manifest is not in a state that allows the operation."""

    http_status = 409

    def __init__(
        self, deletion_key: str, state: Optional[str] = None, message: str = ""
    ):
        self.deletion_key = deletion_key
        self.state = state
        super().__init__(
            message or f"Manifest {deletion_key} is {state} and cannot be restored"
        )


class ManifestNotFound(ManifestNotRestorable):
    """Raised when no usable manifest exists for a deletion key."""

    http_status = 404

    def __init__(self, deletion_key: str, state: Optional[str] = None):
        super().__init__(
            deletion_key,
            state=state,
            message=f"Deletion manifest {deletion_key} not found",
        )


class ManifestExpired(ManifestNotFound):
    """Raised when a manifest has been purged or its retention window elapsed."""

    http_status = 410

    def __init__(self, deletion_key: str, state: Optional[str] = None):
        ManifestNotRestorable.__init__(
            self,
            deletion_key,
            state=state,
            message=f"Deletion manifest {deletion_key} has expired or was purged",
        )


class IdentityCollision(SafeDeleteError):
    """Raised when a restored identity is already taken by another record."""

    http_status = 409

    def __init__(self, entity_type: str, identity: Any):
        self.entity_type = entity_type
        self.identity = identity
        super().__init__(
            f"Cannot restore {entity_type} {identity!r}: identity already in use",
            entity_id=str(identity),
        )


class LockTimeout(SafeDeleteError):
    """Raised when an advisory lock could not be acquired in time."""

    http_status = 423

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock on {key}")


class OperationCancelled(SafeDeleteError):
    """Raised when the caller cancelled an operation before commit."""

    http_status = 499

    def __init__(self, operation: str, reason: str = "cancelled by caller"):
        self.operation = operation
        super().__init__(f"{operation} aborted: {reason}")
