"""
Service layer for safe delete operations.

Orchestrates expansion, validation, snapshotting and hard deletes as one
atomic unit of work, and owns the manifest lifecycle: restoration, purge and
retention.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from sqlalchemy import MetaData
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import SafeDeleteConfig, get_config
from .exceptions import (
    DeletionBlocked,
    ManifestExpired,
    ManifestNotFound,
    ManifestNotRestorable,
    OperationCancelled,
    SafeDeleteError,
)
from .graph import GraphRegistry, RecordRef
from .locks import AdvisoryLockManager, LockScope
from .manifests import ManifestStore
from .models import (
    BulkItem,
    BulkResult,
    DeletionPlan,
    ManifestPage,
    ReapReport,
    RecycleBinStats,
    RestoreResult,
)
from .restorer import IdentityPreservingRestorer
from .scheduler import ExpansionResult, TopologicalScheduler
from .snapshots import DeletionManifest, ManifestState, SnapshotStore
from .snapshots.codec import encode_value
from .snapshots.models import utcnow
from .snapshots.store import new_key
from .storage import PrimaryStorage, SQLPrimaryStorage
from .validator import Blocker, ConstraintValidator

logger = logging.getLogger(__name__)

StorageFactory = Callable[[Session], PrimaryStorage]

# Rounds of "re-expand, lock newly found members" before giving up
MAX_LOCK_ROUNDS = 5


class _Deadline:
    """Caller-supplied cancellation event and/or timeout for one operation."""

    def __init__(
        self,
        operation: str,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ):
        self.operation = operation
        self.cancel_event = cancel_event
        self.timeout = timeout
        self._loop = asyncio.get_running_loop()
        self._expires = self._loop.time() + timeout if timeout is not None else None

    def remaining(self, default: float) -> float:
        """Lock wait bounded by what is left of the deadline."""
        if self._expires is None:
            return default
        return max(min(default, self._expires - self._loop.time()), 0.0)

    def check(self) -> None:
        """
        Raise if the caller cancelled or the deadline passed.

        Raises:
            OperationCancelled: Inside a transaction this rolls it back
        """
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelled(self.operation)
        if self._expires is not None and self._loop.time() >= self._expires:
            raise OperationCancelled(
                self.operation, f"deadline of {self.timeout:.1f}s exceeded"
            )


class _MembersChanged(Exception):
    """Re-expansion inside the transaction found members that are not locked."""

    def __init__(self, refs: List[RecordRef]):
        self.refs = refs
        super().__init__(f"{len(refs)} unlocked member(s)")


class SafeDeleteService:
    """
    Cascading safe delete with snapshot-based restore.

    Every mutating operation runs in a single transaction opened through the
    primary storage, shared with the snapshot and manifest stores, so a
    failure at any step leaves no partial state behind.

    Example:
        >>> service = SafeDeleteService(sessionmaker(bind=engine), registry)
        >>> manifest = await service.delete("employee", 42, reason="Left company")
        >>> result = await service.restore(manifest.deletion_key)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: GraphRegistry,
        config: Optional[SafeDeleteConfig] = None,
        audit_logger: Optional[Any] = None,
        lock_manager: Optional[AdvisoryLockManager] = None,
        storage_factory: Optional[StorageFactory] = None,
        metadata: Optional[MetaData] = None,
    ):
        """
        Initialize the safe delete service.

        Args:
            session_factory: Callable returning a new SQLAlchemy session
            registry: Graph registry (frozen on first use)
            config: Engine configuration, defaults to the global one
            audit_logger: Optional audit logging service with an async
                ``log_activity`` method
            lock_manager: Advisory lock manager shared by every service
                instance that touches the same data
            storage_factory: Builds the primary storage for a session,
                defaults to ``SQLPrimaryStorage``
            metadata: Metadata holding the host's tables
        """
        self.session_factory = session_factory
        self.registry = registry.freeze()
        self.config = config or get_config()
        self.audit_logger = audit_logger
        self.locks = lock_manager or AdvisoryLockManager(
            timeout=self.config.lock_timeout_seconds
        )
        self.metadata = metadata if metadata is not None else MetaData()
        self.storage_factory = storage_factory or self._sql_storage

        self.scheduler = TopologicalScheduler(
            self.registry, max_depth=self.config.max_expansion_depth
        )
        self.validator = ConstraintValidator(self.registry)
        self.restorer = IdentityPreservingRestorer(
            self.registry, self.config.collision_policy
        )

    def _sql_storage(self, session: Session) -> PrimaryStorage:
        return SQLPrimaryStorage(session, self.registry, self.metadata)

    def _snapshots(self, session: Session) -> SnapshotStore:
        return SnapshotStore(session, self.config.checksum_algorithm)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def preview(self, root_type: str, root_identity: Any) -> DeletionPlan:
        """
        Compute what deleting a root would do, without writing anything.

        Args:
            root_type: Entity type of the root
            root_identity: Identity of the root

        Returns:
            Deletion plan with members, order, blockers and detached references

        Raises:
            RecordNotFound: If the root does not exist
            CycleDetectedAtUnexpectedDepth: On unresolvable instance cycles
        """
        with self.session_factory() as session:
            storage = self.storage_factory(session)
            expansion = self.scheduler.expand_subtree(
                storage, root_type, root_identity
            )
            blockers = self.validator.find_blockers(storage, expansion.members)
        return self._plan(expansion, blockers)

    async def delete(
        self,
        root_type: str,
        root_identity: Any,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> DeletionManifest:
        """
        Delete a root record and its whole CASCADE subtree.

        Args:
            root_type: Entity type of the root
            root_identity: Identity of the root
            reason: Why the subtree is deleted
            actor: Who requested the deletion
            cancel_event: Set it to abort the operation before commit
            timeout: Seconds after which the operation aborts before commit

        Returns:
            The ACTIVE deletion manifest

        Raises:
            DeletionBlocked: External records hold restricting references
            RecordNotFound: If the root does not exist
            LockTimeout: If an overlapping operation holds a lock too long
            OperationCancelled: If cancelled or timed out before commit
        """
        reason = self._validate_reason(reason)
        self.registry.get_type(root_type)
        deadline = _Deadline("delete", cancel_event, timeout)

        deadline.check()
        plan = await self.preview(root_type, root_identity)
        if plan.blockers:
            raise DeletionBlocked(plan.blockers)
        root = plan.root

        # Root and members are locked as one sorted set; the transaction
        # re-expands and re-validates once they are held
        async with self.locks.scope() as held:
            pending = plan.members
            for _ in range(MAX_LOCK_ROUNDS):
                deadline.check()
                await held.acquire(
                    pending, timeout=deadline.remaining(self.locks.timeout)
                )
                deadline.check()
                try:
                    manifest = self._delete_locked(
                        root, reason, actor, held, deadline
                    )
                    break
                except _MembersChanged as changed:
                    logger.debug(
                        "Subtree of %s grew while locking, %s",
                        root,
                        changed,
                    )
                    pending = changed.refs
            else:
                raise SafeDeleteError(
                    f"Subtree of {root} kept changing while acquiring locks",
                    entity_id=str(root.identity),
                )

        logger.info(
            "Deleted %s with %d member(s)",
            root,
            manifest.member_count,
            extra={"deletion_key": manifest.deletion_key, "actor": actor},
        )
        await self._audit(
            "SAFE_DELETE",
            root_type,
            root.identity,
            reason,
            actor,
            {
                "deletion_key": manifest.deletion_key,
                "member_count": manifest.member_count,
                "root_display_name": manifest.root_display_name,
                "expires_at": manifest.expires_at.isoformat(),
            },
        )
        return manifest

    def _delete_locked(
        self,
        root: RecordRef,
        reason: Optional[str],
        actor: Optional[str],
        held: LockScope,
        deadline: _Deadline,
    ) -> DeletionManifest:
        with self.session_factory() as session:
            storage = self.storage_factory(session)
            with storage.transaction():
                # Re-check under the transaction: the first pass ran without it
                expansion = self.scheduler.expand_subtree(
                    storage, root.entity_type, root.identity
                )
                unlocked = [ref for ref in expansion.members if not held.holds(ref)]
                if unlocked:
                    raise _MembersChanged(unlocked)

                blockers = self.validator.find_blockers(storage, expansion.members)
                if blockers:
                    raise DeletionBlocked(blockers)

                deletion_key = new_key()
                snapshots = self._snapshots(session)
                snapshot_keys: List[str] = []
                for ref in expansion.deletion_order:
                    deadline.check()
                    snapshot_keys.append(
                        snapshots.put(
                            ref.entity_type,
                            ref.identity,
                            expansion.records[ref],
                            deletion_key=deletion_key,
                        )
                    )
                    if not storage.delete(ref.entity_type, ref.identity):
                        raise SafeDeleteError(
                            f"{ref} disappeared during deletion",
                            entity_id=str(ref.identity),
                        )

                now = utcnow()
                manifest = ManifestStore(session).create(
                    deletion_key=deletion_key,
                    root_type=root.entity_type,
                    root_identity=root.identity,
                    snapshot_keys=snapshot_keys,
                    expires_at=now + self.config.retention_window,
                    root_display_name=self._display_name(expansion),
                    detached_references=[
                        encode_value(ref.to_dict()) for ref in expansion.detached
                    ],
                    reason=reason,
                    actor=actor,
                    created_at=now,
                )
                deadline.check()
        return manifest

    async def bulk_delete(
        self,
        root_type: str,
        identities: Iterable[Any],
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> BulkResult:
        """
        Delete several roots of one type, each in its own transaction.

        Returns:
            Per-root outcome; a failing root does not affect the others
        """
        reason = self._validate_reason(reason)
        result = BulkResult()
        for identity in identities:
            try:
                manifest = await self.delete(root_type, identity, reason, actor)
            except SafeDeleteError as e:
                result.failed.append(BulkItem(target=identity, error=e.to_dict()))
            else:
                result.succeeded.append(
                    BulkItem(target=identity, deletion_key=manifest.deletion_key)
                )
        return result

    # ------------------------------------------------------------------
    # Restore and purge
    # ------------------------------------------------------------------

    async def restore(
        self,
        deletion_key: str,
        actor: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> RestoreResult:
        """
        Re-create every record of a deleted subtree, root first.

        Args:
            deletion_key: Manifest key returned by ``delete``
            actor: Who requested the restore
            cancel_event: Set it to abort the operation before commit
            timeout: Seconds after which the operation aborts before commit

        Returns:
            Restore result with the root identity and any remapped identities

        Raises:
            ManifestNotFound: Unknown key (404)
            ManifestExpired: Purged or past retention (410)
            ManifestNotRestorable: Already restored (409)
            IdentityCollision: An original identity is taken and the policy
                is reject
        """
        deadline = _Deadline("restore", cancel_event, timeout)
        root, members = self._lock_targets(deletion_key, "restore")

        deadline.check()
        async with self.locks.scope(
            [root] + members, timeout=deadline.remaining(self.locks.timeout)
        ):
            deadline.check()
            result, reason = self._restore_locked(deletion_key, actor, deadline)

        logger.info(
            "Restored %s#%s with %d member(s)",
            result.root_type,
            result.root_identity,
            len(result.restored),
            extra={"deletion_key": deletion_key, "remapped": len(result.identity_map)},
        )
        await self._audit(
            "RESTORE",
            result.root_type,
            result.root_identity,
            reason,
            actor,
            result.to_dict(),
        )
        return result

    def _restore_locked(
        self, deletion_key: str, actor: Optional[str], deadline: _Deadline
    ) -> Tuple[RestoreResult, Optional[str]]:
        with self.session_factory() as session:
            storage = self.storage_factory(session)
            with storage.transaction():
                manifests = ManifestStore(session)
                manifest = manifests.get(deletion_key, for_update=True)
                self._check_state(manifest, deletion_key, "restore")
                assert manifest is not None

                snapshots = self._snapshots(session)
                identity_map: Dict[RecordRef, Any] = {}
                restored: List[RecordRef] = []
                for snapshot in snapshots.get_many(manifest.restoration_order):
                    deadline.check()
                    identity = self.restorer.recreate(
                        storage,
                        snapshot.entity_type,
                        snapshot.identity,
                        snapshot.attributes,
                        identity_map,
                    )
                    restored.append(RecordRef(snapshot.entity_type, identity))

                snapshots.delete_many(manifest.snapshot_keys)
                manifests.mark(
                    deletion_key,
                    ManifestState.RESTORED,
                    actor=actor,
                    keep_tombstone=self.config.retain_manifest_tombstones,
                )
                deadline.check()

        root = RecordRef(manifest.root_type, manifest.root_identity)
        result = RestoreResult(
            deletion_key=deletion_key,
            root_type=manifest.root_type,
            root_identity=identity_map.get(root, manifest.root_identity),
            restored=restored,
            identity_map=identity_map,
        )
        return result, manifest.reason

    async def bulk_restore(
        self, deletion_keys: Iterable[str], actor: Optional[str] = None
    ) -> BulkResult:
        """Restore several manifests, each in its own transaction."""
        result = BulkResult()
        for deletion_key in deletion_keys:
            try:
                await self.restore(deletion_key, actor=actor)
            except SafeDeleteError as e:
                result.failed.append(BulkItem(target=deletion_key, error=e.to_dict()))
            else:
                result.succeeded.append(
                    BulkItem(target=deletion_key, deletion_key=deletion_key)
                )
        return result

    async def purge(
        self,
        deletion_key: str,
        actor: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Permanently discard a deletion. Irreversible.

        Returns:
            Number of snapshots removed

        Raises:
            ManifestNotFound: Unknown or already purged key
            ManifestNotRestorable: Manifest was restored
        """
        deadline = _Deadline("purge", cancel_event, timeout)
        root, members = self._lock_targets(deletion_key, "purge")

        deadline.check()
        async with self.locks.scope(
            [root] + members, timeout=deadline.remaining(self.locks.timeout)
        ):
            deadline.check()
            with self.session_factory() as session:
                storage = self.storage_factory(session)
                with storage.transaction():
                    manifests = ManifestStore(session)
                    manifest = manifests.get(deletion_key, for_update=True)
                    self._check_state(manifest, deletion_key, "purge")
                    assert manifest is not None
                    removed = self._snapshots(session).delete_many(
                        manifest.snapshot_keys
                    )
                    manifests.mark(
                        deletion_key,
                        ManifestState.PURGED,
                        actor=actor,
                        keep_tombstone=self.config.retain_manifest_tombstones,
                    )
                    deadline.check()

        logger.info(
            "Purged %s#%s",
            manifest.root_type,
            manifest.root_identity,
            extra={"deletion_key": deletion_key, "snapshots": removed},
        )
        await self._audit(
            "PURGE",
            manifest.root_type,
            manifest.root_identity,
            manifest.reason,
            actor,
            {"deletion_key": deletion_key, "snapshots_removed": removed},
        )
        return removed

    async def purge_expired(
        self,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
        in_flight: Optional[Set[str]] = None,
    ) -> ReapReport:
        """
        Purge ACTIVE manifests whose retention window has elapsed.

        Each manifest is purged in its own transaction under its own locks.
        A manifest that left ACTIVE in the meantime is skipped.

        Args:
            now: Reference time, defaults to the current UTC time
            limit: Maximum manifests to process, defaults to the reaper batch size
            in_flight: Keys currently being purged elsewhere; shared with the
                caller so the same key is never purged twice at once

        Returns:
            Reaper report
        """
        now = now or utcnow()
        in_flight = in_flight if in_flight is not None else set()
        report = ReapReport(started_at=utcnow())

        with self.session_factory() as session:
            keys = ManifestStore(session).expired_keys(
                now, limit or self.config.reaper_batch_size
            )

        for deletion_key in keys:
            if deletion_key in in_flight:
                report.skipped.append(deletion_key)
                continue
            in_flight.add(deletion_key)
            try:
                await self.purge(deletion_key, actor="reaper")
            except ManifestNotRestorable:
                report.skipped.append(deletion_key)
            except (SafeDeleteError, SQLAlchemyError) as e:
                logger.error("Failed to purge expired manifest %s: %s", deletion_key, e)
                report.failed[deletion_key] = str(e)
            else:
                report.purged.append(deletion_key)
            finally:
                in_flight.discard(deletion_key)

        report.finished_at = utcnow()
        if keys:
            logger.info(
                "Purged %d expired manifest(s)",
                len(report.purged),
                extra={"skipped": len(report.skipped), "failed": len(report.failed)},
            )
        return report

    # ------------------------------------------------------------------
    # Recycle bin queries
    # ------------------------------------------------------------------

    async def get_manifest(self, deletion_key: str) -> DeletionManifest:
        """
        Load a manifest by key.

        Raises:
            ManifestNotFound: If no manifest row exists
        """
        with self.session_factory() as session:
            manifest = ManifestStore(session).get(deletion_key)
        if manifest is None:
            raise ManifestNotFound(deletion_key)
        return manifest

    async def list_manifests(
        self,
        entity_type: Optional[str] = None,
        state: Optional[Union[str, ManifestState]] = ManifestState.ACTIVE,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> ManifestPage:
        """
        List manifests for a recycle bin view, newest first.

        Args:
            entity_type: Only manifests rooted at this type
            state: Only manifests in this state; None for every state
            limit: Page size, defaults to the configured page size
            offset: Number of manifests to skip

        Raises:
            ValueError: If the page size or offset is out of range
        """
        limit = limit if limit is not None else self.config.default_page_size
        if limit < 1 or limit > self.config.max_page_size:
            raise ValueError(
                f"Page size must be between 1 and {self.config.max_page_size}"
            )
        if offset < 0:
            raise ValueError("Offset cannot be negative")

        with self.session_factory() as session:
            items, total = ManifestStore(session).list(
                entity_type=entity_type,
                state=ManifestState(state) if state else None,
                limit=limit,
                offset=offset,
            )
        return ManifestPage(items=items, total=total, limit=limit, offset=offset)

    async def stats(self, now: Optional[datetime] = None) -> RecycleBinStats:
        """Aggregate figures for the recycle bin."""
        now = now or utcnow()
        with self.session_factory() as session:
            manifests = ManifestStore(session)
            by_type = manifests.count_by_type(ManifestState.ACTIVE)
            return RecycleBinStats(
                total_active=sum(by_type.values()),
                total_snapshots=self._snapshots(session).count(),
                by_type=by_type,
                expiring_within_day=manifests.count_expiring(now + timedelta(days=1)),
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_targets(
        self, deletion_key: str, operation: str
    ) -> Tuple[RecordRef, List[RecordRef]]:
        """Read the root and members of a manifest so they can be locked."""
        with self.session_factory() as session:
            manifest = ManifestStore(session).get(deletion_key)
            self._check_state(manifest, deletion_key, operation)
            assert manifest is not None
            members = [
                RecordRef(entity_type, identity)
                for entity_type, identity in self._snapshots(session).refs(
                    manifest.snapshot_keys
                )
            ]
        return RecordRef(manifest.root_type, manifest.root_identity), members

    @staticmethod
    def _check_state(
        manifest: Optional[DeletionManifest], deletion_key: str, operation: str
    ) -> None:
        if manifest is None:
            raise ManifestNotFound(deletion_key)

        state = manifest.state
        if operation == "restore":
            if state == ManifestState.PURGED:
                raise ManifestExpired(deletion_key, state.value)
            if state == ManifestState.RESTORED:
                raise ManifestNotRestorable(deletion_key, state.value)
            if manifest.is_expired():
                raise ManifestExpired(deletion_key, state.value)
        else:
            if state == ManifestState.PURGED:
                raise ManifestNotFound(deletion_key, state.value)
            if state == ManifestState.RESTORED:
                raise ManifestNotRestorable(
                    deletion_key,
                    state.value,
                    message=f"Manifest {deletion_key} was restored and cannot be purged",
                )

    def _plan(self, expansion: ExpansionResult, blockers: List[Blocker]) -> DeletionPlan:
        return DeletionPlan(
            root=expansion.root,
            root_display_name=self._display_name(expansion),
            members=expansion.members,
            deletion_order=expansion.deletion_order,
            blockers=blockers,
            detached=expansion.detached,
        )

    def _display_name(self, expansion: ExpansionResult) -> str:
        root = expansion.root
        return self.registry.get_type(root.entity_type).display_name(
            expansion.records[root], root.identity
        )

    def _validate_reason(self, reason: Optional[str]) -> Optional[str]:
        if reason is None or not reason.strip():
            if self.config.require_reason:
                raise ValueError("A reason is required for deletion")
            return None

        reason = reason.strip()
        if self.config.require_reason and len(reason) < self.config.reason_min_length:
            raise ValueError(
                f"Deletion reason must be at least {self.config.reason_min_length} "
                "characters"
            )
        return reason

    async def _audit(
        self,
        action: str,
        entity_type: str,
        entity_id: Any,
        reason: Optional[str],
        actor: Optional[str],
        details: Dict[str, Any],
    ) -> None:
        if not self.audit_logger:
            return
        try:
            await self.audit_logger.log_activity(
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id),
                reason=reason,
                details=details,
                user_override={"id": actor, "username": actor} if actor else None,
            )
        except Exception:
            # The operation is already committed
            logger.exception(
                "Audit logging failed for %s %s#%s", action, entity_type, entity_id
            )
