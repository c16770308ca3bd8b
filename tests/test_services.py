"""
Tests for the safe delete service: delete, restore, purge and the recycle bin.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from safe_delete import (
    CollisionPolicy,
    DeletionBlocked,
    DeletionManifest,
    GraphRegistry,
    IdentityCollision,
    LockTimeout,
    ManifestExpired,
    ManifestNotFound,
    ManifestNotRestorable,
    ManifestState,
    OperationCancelled,
    RecordNotFound,
    RecordRef,
    SafeDeleteConfig,
    SafeDeleteService,
    SnapshotStore,
    UnknownEntityType,
)
from safe_delete.manifests import ManifestStore
from safe_delete.snapshots.models import ManifestDB, utcnow
from safe_delete.storage import SQLPrimaryStorage


def make_service(db, registry, **overrides):
    """Service with a custom configuration."""
    config = SafeDeleteConfig(
        environment="testing", lock_timeout_seconds=0.5, **overrides
    )
    return SafeDeleteService(
        db.session_factory, registry, config=config, metadata=db.metadata
    )


def snapshot_refs(db, manifest):
    with db.session_factory() as session:
        return SnapshotStore(session).refs(manifest.snapshot_keys)


async def while_locked(service, ref, *operations):
    """Start operations while ref is locked so they queue on it, then release."""
    async with service.locks.scope([ref]):
        tasks = [asyncio.create_task(operation) for operation in operations]
        await asyncio.sleep(0.05)
        assert not any(task.done() for task in tasks)
    return await asyncio.gather(*tasks, return_exceptions=True)


class TestDelete:
    """Test cascading deletion."""

    @pytest.mark.asyncio
    async def test_three_level_subtree(self, service, db):
        """Test the root and every dependent are removed and snapshotted."""
        manifest = await service.delete(
            "department", 1, reason="Research closed down", actor="hr-admin"
        )

        assert manifest.state == ManifestState.ACTIVE
        assert manifest.member_count == 4
        assert manifest.root_display_name == "Research"
        assert manifest.actor == "hr-admin"
        assert [t for t, _ in snapshot_refs(db, manifest)] == [
            "leave_request",
            "employee",
            "employee",
            "department",
        ]
        assert db.ids("department") == [2]
        assert db.ids("employee") == [3]
        assert db.ids("leave_request") == []
        assert db.snapshot_count() == 4

    @pytest.mark.asyncio
    async def test_retention_window_captured(self, db, registry):
        """Test expires_at is creation time plus the retention window."""
        service = make_service(db, registry, retention_days=7)
        manifest = await service.delete("department", 1)

        assert manifest.expires_at - manifest.created_at == timedelta(days=7)

    @pytest.mark.asyncio
    async def test_restrict_reference_blocks(self, service, db):
        """Test an external RESTRICT reference leaves everything untouched."""
        db.insert("payroll", {"id": 7, "employee_id": 2, "amount_cents": 450000})
        before = db.dump()

        with pytest.raises(DeletionBlocked) as exc:
            await service.delete("department", 1)

        assert exc.value.http_status == 409
        assert len(exc.value.blockers) == 1
        assert exc.value.to_dict()["blockers"][0]["referencing_identity"] == 7
        assert db.dump() == before
        assert db.snapshot_count() == 0
        assert db.manifest_count() == 0

    @pytest.mark.asyncio
    async def test_missing_root(self, service):
        """Test deleting an unknown record raises RecordNotFound."""
        with pytest.raises(RecordNotFound):
            await service.delete("department", 99)

    @pytest.mark.asyncio
    async def test_root_identity_taken_from_record(self, service, db):
        """Test a root given as a string still takes its dependents along."""
        manifest = await service.delete("employee", "2")

        assert manifest.member_count == 2
        assert manifest.root_identity == 2
        assert ("leave_request", 1) in snapshot_refs(db, manifest)
        assert db.ids("leave_request") == []

        await service.restore(manifest.deletion_key)
        assert db.ids("employee") == [1, 2, 3]
        assert db.ids("leave_request") == [1]

    @pytest.mark.asyncio
    async def test_unknown_type(self, service):
        """Test deleting an unregistered type raises UnknownEntityType."""
        with pytest.raises(UnknownEntityType):
            await service.delete("ghost", 1)

    @pytest.mark.asyncio
    async def test_detached_references_recorded(self, service, db):
        """Test SET NULL referencers outside the subtree are listed."""
        db.insert("research_grant", {"id": 1, "title": "Fusion", "owner_id": 1})

        manifest = await service.delete("department", 1)

        assert len(manifest.detached_references) == 1
        detached = manifest.detached_references[0]
        assert detached["referencing_type"] == "research_grant"
        assert detached["referencing_identity"] == 1
        assert detached["referenced_identity"] == 1
        assert db.ids("research_grant") == [1]

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, service, db):
        """Test preview reports the plan without deleting."""
        before = db.dump()

        plan = await service.preview("department", 1)

        assert plan.can_delete
        assert plan.root_display_name == "Research"
        assert len(plan.members) == 4
        assert plan.restoration_order[0] == RecordRef("department", 1)
        assert plan.to_dict()["member_count"] == 4
        assert db.dump() == before

    @pytest.mark.asyncio
    async def test_preview_reports_blockers(self, service, db):
        """Test preview lists blockers instead of raising."""
        db.insert("payroll", {"id": 7, "employee_id": 1, "amount_cents": 1})

        plan = await service.preview("department", 1)

        assert not plan.can_delete
        assert plan.blockers[0].referencing_type == "payroll"

    @pytest.mark.asyncio
    async def test_require_reason(self, db, registry):
        """Test missing or short reasons are refused when required."""
        service = make_service(db, registry, require_reason=True)

        with pytest.raises(ValueError):
            await service.delete("department", 1)
        with pytest.raises(ValueError):
            await service.delete("department", 1, reason="tidy")
        assert db.ids("department") == [1, 2]

        manifest = await service.delete(
            "department", 1, reason="  Department merged into Finance  "
        )
        assert manifest.reason == "Department merged into Finance"

    @pytest.mark.asyncio
    async def test_bulk_delete(self, service, db):
        """Test each root succeeds or fails on its own."""
        db.insert("payroll", {"id": 7, "employee_id": 2, "amount_cents": 1})

        result = await service.bulk_delete("employee", [3, 2, 99])

        assert result.total == 3
        assert [item.target for item in result.succeeded] == [3]
        assert result.succeeded[0].ok
        assert {item.target: item.error["error"] for item in result.failed} == {
            2: "DeletionBlocked",
            99: "RecordNotFound",
        }
        assert db.ids("employee") == [1, 2]


class TestRestore:
    """Test identity-preserving restoration."""

    @pytest.mark.asyncio
    async def test_restore_is_exact(self, service, db):
        """Test restore re-creates every row byte for byte."""
        before = db.dump()
        manifest = await service.delete("department", 1)

        result = await service.restore(manifest.deletion_key, actor="hr-admin")

        assert result.restored == [
            RecordRef("department", 1),
            RecordRef("employee", 2),
            RecordRef("employee", 1),
            RecordRef("leave_request", 1),
        ]
        assert result.root_identity == 1
        assert not result.remapped
        assert db.dump() == before
        assert db.snapshot_count() == 0

        closed = await service.get_manifest(manifest.deletion_key)
        assert closed.state == ManifestState.RESTORED
        assert closed.closed_by == "hr-admin"

    @pytest.mark.asyncio
    async def test_restore_twice(self, service):
        """Test a restored manifest cannot be restored again."""
        manifest = await service.delete("department", 1)
        await service.restore(manifest.deletion_key)

        with pytest.raises(ManifestNotRestorable) as exc:
            await service.restore(manifest.deletion_key)

        assert type(exc.value) is ManifestNotRestorable
        assert exc.value.http_status == 409

    @pytest.mark.asyncio
    async def test_restore_unknown_key(self, service):
        """Test unknown keys raise ManifestNotFound."""
        with pytest.raises(ManifestNotFound) as exc:
            await service.restore("no-such-key")
        assert exc.value.http_status == 404

    @pytest.mark.asyncio
    async def test_restore_after_retention(self, service, db):
        """Test an ACTIVE manifest past its window is expired."""
        manifest = await service.delete("department", 1)
        with db.engine.begin() as conn:
            conn.execute(
                update(ManifestDB)
                .where(ManifestDB.deletion_key == manifest.deletion_key)
                .values(expires_at=utcnow() - timedelta(minutes=1))
            )

        with pytest.raises(ManifestExpired) as exc:
            await service.restore(manifest.deletion_key)

        assert exc.value.http_status == 410
        assert db.ids("department") == [2]

    @pytest.mark.asyncio
    async def test_identity_collision_rejected(self, service, db):
        """Test a reused identity aborts the whole restore."""
        manifest = await service.delete("department", 1)
        db.insert("employee", {"id": 2, "name": "Zed", "department_id": 2})

        with pytest.raises(IdentityCollision) as exc:
            await service.restore(manifest.deletion_key)

        assert exc.value.entity_type == "employee"
        assert exc.value.identity == 2
        assert db.ids("department") == [2]
        assert db.snapshot_count() == 4
        assert (await service.get_manifest(manifest.deletion_key)).state == (
            ManifestState.ACTIVE
        )

    @pytest.mark.asyncio
    async def test_identity_collision_remapped(self, db, registry):
        """Test the remap policy assigns a new identity and rewrites children."""
        service = make_service(db, registry, collision_policy=CollisionPolicy.REMAP)
        manifest = await service.delete("department", 1)
        db.insert("employee", {"id": 2, "name": "Zed", "department_id": 2})

        result = await service.restore(manifest.deletion_key)

        assert result.remapped
        new_id = result.identity_map[RecordRef("employee", 2)]
        assert new_id not in (1, 2, 3)
        bob = next(row for row in db.rows("employee") if row["id"] == new_id)
        assert bob["name"] == "Bob"
        assert db.rows("leave_request")[0]["employee_id"] == new_id
        assert result.to_dict()["identity_map"][0]["original_identity"] == 2

    @pytest.mark.asyncio
    async def test_tombstones_disabled(self, db, registry):
        """Test closed manifests disappear when tombstones are off."""
        service = make_service(db, registry, retain_manifest_tombstones=False)
        manifest = await service.delete("department", 1)
        await service.restore(manifest.deletion_key)

        assert db.manifest_count() == 0
        with pytest.raises(ManifestNotFound):
            await service.restore(manifest.deletion_key)

    @pytest.mark.asyncio
    async def test_bulk_restore(self, service):
        """Test bulk restore reports failures per key."""
        manifest = await service.delete("department", 1)

        result = await service.bulk_restore([manifest.deletion_key, "missing"])

        assert [item.target for item in result.succeeded] == [manifest.deletion_key]
        assert result.failed[0].error["error"] == "ManifestNotFound"


class TestPurge:
    """Test permanent removal."""

    @pytest.mark.asyncio
    async def test_purge(self, service, db):
        """Test purge drops snapshots and leaves a tombstone."""
        manifest = await service.delete("department", 1)

        assert await service.purge(manifest.deletion_key, actor="dpo") == 4

        assert db.snapshot_count() == 0
        purged = await service.get_manifest(manifest.deletion_key)
        assert purged.state == ManifestState.PURGED
        assert purged.closed_by == "dpo"

    @pytest.mark.asyncio
    async def test_purge_twice(self, service):
        """Test a purged manifest is gone for purge and expired for restore."""
        manifest = await service.delete("department", 1)
        await service.purge(manifest.deletion_key)

        with pytest.raises(ManifestNotFound) as exc:
            await service.purge(manifest.deletion_key)
        assert type(exc.value) is ManifestNotFound

        with pytest.raises(ManifestExpired):
            await service.restore(manifest.deletion_key)

    @pytest.mark.asyncio
    async def test_purge_restored(self, service):
        """Test a restored manifest cannot be purged."""
        manifest = await service.delete("department", 1)
        await service.restore(manifest.deletion_key)

        with pytest.raises(ManifestNotRestorable, match="cannot be purged"):
            await service.purge(manifest.deletion_key)

    @pytest.mark.asyncio
    async def test_purge_expired(self, service, db):
        """Test only manifests past their window are purged."""
        old = await service.delete("department", 1)
        await service.delete("employee", 3)
        with db.engine.begin() as conn:
            conn.execute(
                update(ManifestDB)
                .where(ManifestDB.deletion_key == old.deletion_key)
                .values(expires_at=utcnow() - timedelta(days=1))
            )

        report = await service.purge_expired()

        assert report.purged == [old.deletion_key]
        assert report.failed == {}
        assert db.snapshot_count() == 1

    @pytest.mark.asyncio
    async def test_purge_expired_skips_already_purged(self, service, monkeypatch):
        """Test a manifest purged by another worker after the scan is skipped."""
        manifest = await service.delete("department", 1)
        await service.purge(manifest.deletion_key)
        monkeypatch.setattr(
            ManifestStore,
            "expired_keys",
            lambda self, now, limit: [manifest.deletion_key],
        )

        report = await service.purge_expired()

        assert report.skipped == [manifest.deletion_key]
        assert report.purged == []
        assert report.failed == {}


class TestCancellation:
    """Test cancellation and deadlines."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, service, db):
        """Test a pre-set event aborts before anything is written."""
        event = asyncio.Event()
        event.set()

        with pytest.raises(OperationCancelled):
            await service.delete("department", 1, cancel_event=event)

        assert db.ids("department") == [1, 2]

    @pytest.mark.asyncio
    async def test_cancelled_mid_transaction(self, db, registry, config):
        """Test cancelling between two deletes rolls back the first."""
        event = asyncio.Event()

        class CancellingStorage(SQLPrimaryStorage):
            def delete(self, entity_type, identity):
                deleted = super().delete(entity_type, identity)
                event.set()
                return deleted

        service = SafeDeleteService(
            db.session_factory,
            registry,
            config=config,
            storage_factory=lambda session: CancellingStorage(
                session, registry, db.metadata
            ),
        )
        before = db.dump()

        with pytest.raises(OperationCancelled) as exc:
            await service.delete("department", 1, cancel_event=event)

        assert exc.value.http_status == 499
        assert db.dump() == before
        assert db.snapshot_count() == 0
        assert db.manifest_count() == 0

    @pytest.mark.asyncio
    async def test_zero_timeout(self, service, db):
        """Test an elapsed deadline aborts the operation."""
        with pytest.raises(OperationCancelled, match="deadline"):
            await service.delete("department", 1, timeout=0)
        assert db.ids("department") == [1, 2]

    @pytest.mark.asyncio
    async def test_cancelled_restore(self, service, db):
        """Test a cancelled restore keeps the manifest ACTIVE."""
        manifest = await service.delete("department", 1)
        event = asyncio.Event()
        event.set()

        with pytest.raises(OperationCancelled):
            await service.restore(manifest.deletion_key, cancel_event=event)

        assert db.snapshot_count() == 4
        assert (await service.get_manifest(manifest.deletion_key)).state == (
            ManifestState.ACTIVE
        )


@pytest.mark.integration
class TestConcurrency:
    """Test advisory locking between overlapping operations."""

    @pytest.mark.asyncio
    async def test_lock_timeout(self, service, db):
        """Test a held root lock makes a delete time out."""
        async with service.locks.scope([RecordRef("department", 1)]):
            with pytest.raises(LockTimeout) as exc:
                await service.delete("department", 1)

        assert exc.value.http_status == 423
        assert db.ids("department") == [1, 2]

    @pytest.mark.asyncio
    async def test_member_lock_waits(self, service, db):
        """Test a delete waits for a lock held on one of its members."""
        async with service.locks.scope([RecordRef("employee", 2)]):
            task = asyncio.create_task(service.delete("department", 1))
            await asyncio.sleep(0.05)
            assert not task.done()
            assert db.ids("department") == [1, 2]

        manifest = await task
        assert manifest.member_count == 4
        assert not service.locks.is_locked(RecordRef("employee", 2))

    @pytest.mark.asyncio
    async def test_shared_dependent(self, service, db):
        """Test two subtrees queued on a shared record delete it exactly once."""
        db.insert("project", {"id": 1, "name": "Atlas"})
        db.insert(
            "assignment", {"id": 1, "employee_id": 1, "project_id": 1, "role": "lead"}
        )

        first, second = await while_locked(
            service,
            RecordRef("assignment", 1),
            service.delete("department", 1),
            service.delete("project", 1),
        )

        assert isinstance(first, DeletionManifest)
        assert isinstance(second, DeletionManifest)
        refs = snapshot_refs(db, first) + snapshot_refs(db, second)
        assert refs.count(("assignment", 1)) == 1
        assert first.member_count + second.member_count == 6
        assert db.ids("assignment") == []
        assert db.ids("project") == []

    @pytest.mark.asyncio
    async def test_nested_roots(self, db, config):
        """Test deleting a root and a record inside its subtree at the same time."""
        registry = GraphRegistry.from_dict(
            {
                "types": [
                    {
                        "name": "employee",
                        "relations": [
                            {"target_type": "employee", "field": "manager_id"}
                        ],
                    }
                ]
            }
        )
        service = SafeDeleteService(
            db.session_factory, registry, config=config, metadata=db.metadata
        )
        db.insert(
            "employee",
            {"id": 60, "name": "Director", "manager_id": None},
            {"id": 55, "name": "Lead", "manager_id": 60},
            {"id": 52, "name": "Engineer", "manager_id": 55},
        )

        # employee:52 sorts before both roots
        results = await while_locked(
            service,
            RecordRef("employee", 52),
            service.delete("employee", 60),
            service.delete("employee", 55),
        )

        assert not any(isinstance(result, LockTimeout) for result in results)
        assert all(
            isinstance(result, (DeletionManifest, RecordNotFound))
            for result in results
        )
        assert isinstance(results[0], DeletionManifest)
        assert db.ids("employee") == [1, 2, 3]
        assert db.snapshot_count() == 3
        assert not service.locks._entries


class TestAudit:
    """Test audit logger integration."""

    @pytest.mark.asyncio
    async def test_delete_and_restore_logged(self, db, registry, config):
        """Test audit entries carry the action, target and actor."""
        audit = AsyncMock()
        service = SafeDeleteService(
            db.session_factory,
            registry,
            config=config,
            audit_logger=audit,
            metadata=db.metadata,
        )

        manifest = await service.delete(
            "department", 1, reason="Research closed down", actor="hr-admin"
        )
        await service.restore(manifest.deletion_key, actor="hr-admin")

        assert audit.log_activity.await_count == 2
        delete_call = audit.log_activity.await_args_list[0].kwargs
        assert delete_call["action"] == "SAFE_DELETE"
        assert delete_call["entity_type"] == "department"
        assert delete_call["entity_id"] == "1"
        assert delete_call["reason"] == "Research closed down"
        assert delete_call["details"]["deletion_key"] == manifest.deletion_key
        assert delete_call["user_override"] == {
            "id": "hr-admin",
            "username": "hr-admin",
        }
        assert audit.log_activity.await_args_list[1].kwargs["action"] == "RESTORE"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_undo(self, db, registry, config):
        """Test a failing audit logger leaves the committed delete in place."""
        audit = AsyncMock()
        audit.log_activity.side_effect = RuntimeError("audit store down")
        service = SafeDeleteService(
            db.session_factory,
            registry,
            config=config,
            audit_logger=audit,
            metadata=db.metadata,
        )

        manifest = await service.delete("department", 1)

        assert manifest.member_count == 4
        assert db.ids("department") == [2]


class TestRecycleBin:
    """Test listing, lookup and statistics."""

    @pytest.mark.asyncio
    async def test_list_manifests(self, service):
        """Test filtering by type and state, and paging."""
        first = await service.delete("department", 1)
        await service.delete("department", 2)
        await service.restore(first.deletion_key)

        active = await service.list_manifests()
        assert active.total == 1
        assert active.items[0].root_identity == 2

        everything = await service.list_manifests(state=None, limit=1)
        assert everything.total == 2
        assert len(everything.items) == 1
        assert everything.has_more

        restored = await service.list_manifests(state="restored")
        assert [m.deletion_key for m in restored.items] == [first.deletion_key]

        assert (await service.list_manifests(entity_type="employee")).total == 0

    @pytest.mark.asyncio
    async def test_list_manifests_bad_page(self, service):
        """Test out-of-range page parameters are refused."""
        with pytest.raises(ValueError):
            await service.list_manifests(limit=0)
        with pytest.raises(ValueError):
            await service.list_manifests(limit=service.config.max_page_size + 1)
        with pytest.raises(ValueError):
            await service.list_manifests(offset=-1)

    @pytest.mark.asyncio
    async def test_get_manifest_unknown(self, service):
        """Test unknown keys raise ManifestNotFound."""
        with pytest.raises(ManifestNotFound):
            await service.get_manifest("missing")

    @pytest.mark.asyncio
    async def test_stats(self, service):
        """Test aggregate counts and the expiring-soon window."""
        await service.delete("department", 1)
        await service.delete("employee", 3)

        stats = await service.stats()
        assert stats.total_active == 2
        assert stats.total_snapshots == 5
        assert stats.by_type == {"department": 1, "employee": 1}
        assert stats.expiring_within_day == 0

        later = await service.stats(now=utcnow() + timedelta(days=30))
        assert later.expiring_within_day == 2
