"""
Safe Delete Engine - cascading deletes you can take back.

Deletes a root record together with every record that transitively depends
on it, keeps a byte-for-byte snapshot of the whole subtree, and restores it
later under the original identities, or purges it for good once the
retention window has elapsed.

Key Features
------------
* **Graph Registry**: Entity types and relation edges with per-edge cascade
  behavior (CASCADE, RESTRICT, SET_NULL, NO_ACTION)
* **Constraint Validation**: Deletions blocked by external references are
  refused before anything is written
* **Deterministic Ordering**: Dependents are always deleted before what they
  depend on, and restored after it
* **Snapshots**: Type-preserving, checksummed capture of every deleted record
* **Identity-Preserving Restore**: Original primary keys are re-inserted,
  with an optional remap policy for reused identities
* **Retention**: A background reaper purges expired deletions

Quick Start
-----------
>>> from sqlalchemy import create_engine
>>> from sqlalchemy.orm import sessionmaker
>>> from safe_delete import GraphRegistry, SafeDeleteService, create_tables
>>>
>>> engine = create_engine("sqlite:///app.db")
>>> create_tables(engine)
>>> registry = GraphRegistry.from_yaml("registry.yaml")
>>> service = SafeDeleteService(sessionmaker(bind=engine), registry)
>>>
>>> manifest = await service.delete("employee", 42, reason="Left the company")
>>> await service.restore(manifest.deletion_key)

License
-------
MIT License
"""

__version__ = "1.0.0"

from .config import (
    ChecksumAlgorithm,
    CollisionPolicy,
    SafeDeleteConfig,
    configure,
    get_config,
    set_config,
)
from .exceptions import (
    CycleDetectedAtUnexpectedDepth,
    DeletionBlocked,
    IdentityCollision,
    LockTimeout,
    ManifestExpired,
    ManifestNotFound,
    ManifestNotRestorable,
    OperationCancelled,
    RecordNotFound,
    RegistryError,
    SafeDeleteError,
    SnapshotIntegrityError,
    SnapshotNotFound,
    UnknownEntityType,
)
from .graph import (
    Cardinality,
    CascadeBehavior,
    EntityType,
    GraphRegistry,
    RecordRef,
    RelationEdge,
)
from .locks import AdvisoryLockManager
from .models import (
    BulkResult,
    DeletionPlan,
    ManifestPage,
    ReapReport,
    RecycleBinStats,
    RestoreResult,
)
from .reaper import ManifestReaper
from .restorer import IdentityPreservingRestorer
from .scheduler import TopologicalScheduler
from .services import SafeDeleteService
from .snapshots import DeletionManifest, ManifestState, SnapshotStore, create_tables
from .storage import PrimaryStorage, SQLPrimaryStorage
from .validator import Blocker, ConstraintValidator

__all__ = [
    # Graph
    "GraphRegistry",
    "EntityType",
    "RelationEdge",
    "CascadeBehavior",
    "Cardinality",
    "RecordRef",
    # Storage
    "PrimaryStorage",
    "SQLPrimaryStorage",
    "create_tables",
    # Engine components
    "SnapshotStore",
    "ConstraintValidator",
    "Blocker",
    "TopologicalScheduler",
    "IdentityPreservingRestorer",
    "AdvisoryLockManager",
    # Service
    "SafeDeleteService",
    "ManifestReaper",
    "DeletionManifest",
    "ManifestState",
    "DeletionPlan",
    "RestoreResult",
    "BulkResult",
    "ManifestPage",
    "RecycleBinStats",
    "ReapReport",
    # Configuration
    "SafeDeleteConfig",
    "ChecksumAlgorithm",
    "CollisionPolicy",
    "get_config",
    "set_config",
    "configure",
    # Exceptions
    "SafeDeleteError",
    "RegistryError",
    "UnknownEntityType",
    "RecordNotFound",
    "DeletionBlocked",
    "CycleDetectedAtUnexpectedDepth",
    "SnapshotNotFound",
    "SnapshotIntegrityError",
    "ManifestNotRestorable",
    "ManifestNotFound",
    "ManifestExpired",
    "IdentityCollision",
    "LockTimeout",
    "OperationCancelled",
]
