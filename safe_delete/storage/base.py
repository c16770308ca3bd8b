"""
Primary storage contract required from the host application.

The engine is storage-agnostic beyond this interface. Implementations wrap
whatever holds the application's records and must take part in the
transaction that the engine opens through ``transaction()``, together with
the snapshot and manifest stores.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, ContextManager, Dict, Iterable, Iterator, List, Optional, Set

from ..graph import GraphRegistry


class PrimaryStorage(ABC):
    """Abstract base class for the host's record storage."""

    #: Whether records can be inserted with a caller-chosen identity.
    supports_identity_override: bool = True

    def __init__(self, registry: GraphRegistry):
        self.registry = registry

    @abstractmethod
    def transaction(self) -> ContextManager[Any]:
        """
        Open the atomic unit of work.

        Commits when the block exits normally and rolls back every write,
        including snapshots and manifests, when it raises.
        """

    @abstractmethod
    def get(self, entity_type: str, identity: Any) -> Optional[Dict[str, Any]]:
        """
        Fetch a record's full attribute map.

        Args:
            entity_type: Registered entity type name
            identity: Record identity

        Returns:
            Attribute map or None if the record does not exist
        """

    @abstractmethod
    def delete(self, entity_type: str, identity: Any) -> bool:
        """
        Hard-delete a record.

        Returns:
            True if a record was removed
        """

    @abstractmethod
    def insert_with_identity(
        self, entity_type: str, identity: Any, attributes: Dict[str, Any]
    ) -> None:
        """
        Insert a record verbatim, including its identity field.

        Raises:
            IdentityCollision: If a record with that identity exists
        """

    @abstractmethod
    def insert(self, entity_type: str, attributes: Dict[str, Any]) -> Any:
        """
        Insert a record and let the storage assign its identity.

        Returns:
            The newly assigned identity
        """

    @abstractmethod
    def find_referencing(
        self, entity_type: str, field: str, identity: Any
    ) -> List[Dict[str, Any]]:
        """
        Find records of ``entity_type`` whose ``field`` equals ``identity``.

        Returns:
            Attribute maps of matching records
        """

    def find_referencing_many(
        self, entity_type: str, field: str, identities: Iterable[Any]
    ) -> List[Dict[str, Any]]:
        """Batch form of ``find_referencing``."""
        results: List[Dict[str, Any]] = []
        for identity in identities:
            results.extend(self.find_referencing(entity_type, field, identity))
        return results

    def exists(self, entity_type: str, identity: Any) -> bool:
        return self.get(entity_type, identity) is not None

    def columns(self, entity_type: str) -> Optional[Set[str]]:
        """
        Attribute names the storage can persist for a type.

        Returns:
            Set of column names, or None when the storage accepts anything
        """
        return None

    @contextmanager
    def identity_override(self, entity_type: str) -> Iterator[None]:
        """Temporarily disable automatic identity generation for a type."""
        yield
