"""
Tests for advisory locks.
"""

import asyncio

import pytest

from safe_delete import AdvisoryLockManager, LockTimeout, RecordRef


class TestAdvisoryLockManager:
    """Test scoped, ordered and bounded lock acquisition."""

    @pytest.mark.asyncio
    async def test_scope_holds_and_releases(self):
        """Test locks are held inside the block and released after."""
        locks = AdvisoryLockManager(timeout=0.1)
        ref = RecordRef("employee", 1)

        async with locks.scope([ref]) as held:
            assert locks.is_locked(ref)
            assert held.holds(ref)
            assert held.held == ["employee:1"]

        assert not locks.is_locked(ref)
        assert locks._entries == {}

    @pytest.mark.asyncio
    async def test_sorted_acquisition(self):
        """Test keys are taken in global sort order regardless of input order."""
        locks = AdvisoryLockManager(timeout=0.1)
        refs = [
            RecordRef("employee", 10),
            RecordRef("department", 1),
            RecordRef("employee", 9),
        ]

        async with locks.scope(refs) as held:
            assert held.held == ["department:1", "employee:9", "employee:10"]

    @pytest.mark.asyncio
    async def test_reacquire_is_noop(self):
        """Test acquiring a held key again does not deadlock."""
        locks = AdvisoryLockManager(timeout=0.1)
        ref = RecordRef("employee", 1)

        async with locks.scope([ref]) as held:
            await held.acquire([ref, RecordRef("employee", 2)])
            assert held.held == ["employee:1", "employee:2"]

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a contended lock raises LockTimeout after the bounded wait."""
        locks = AdvisoryLockManager(timeout=0.05)
        ref = RecordRef("department", 1)

        async with locks.scope([ref]):
            with pytest.raises(LockTimeout) as exc:
                async with locks.scope([ref]):
                    pass

        assert exc.value.key == "department:1"
        assert not locks.is_locked(ref)
        assert locks._entries == {}

    @pytest.mark.asyncio
    async def test_partial_acquisition_released(self):
        """Test keys taken before a timeout are released by the scope."""
        locks = AdvisoryLockManager(timeout=0.05)
        free = RecordRef("department", 1)
        busy = RecordRef("employee", 1)

        async with locks.scope([busy]):
            with pytest.raises(LockTimeout):
                async with locks.scope([free, busy]):
                    pass
            assert not locks.is_locked(free)

    @pytest.mark.asyncio
    async def test_waiter_proceeds_after_release(self):
        """Test a second scope waits and then obtains the lock."""
        locks = AdvisoryLockManager(timeout=1.0)
        ref = RecordRef("project", 3)
        order = []

        async def second():
            async with locks.scope([ref]):
                order.append("second")

        async with locks.scope([ref]):
            task = asyncio.create_task(second())
            await asyncio.sleep(0.01)
            order.append("first")

        await task
        assert order == ["first", "second"]
        assert locks._entries == {}

    @pytest.mark.asyncio
    async def test_lower_key_reacquires_in_order(self):
        """Test asking for a key below a held one re-takes the set in order."""
        locks = AdvisoryLockManager(timeout=0.1)

        async with locks.scope([RecordRef("employee", 60)]) as held:
            await held.acquire([RecordRef("employee", 52), RecordRef("employee", 55)])
            assert held.held == ["employee:52", "employee:55", "employee:60"]

        assert locks._entries == {}

    @pytest.mark.asyncio
    async def test_nested_scopes_do_not_deadlock(self):
        """Test two scopes each holding a root and extending below it both finish."""
        locks = AdvisoryLockManager(timeout=0.5)
        leaf = RecordRef("employee", 52)
        finished = []

        async def extend(root, *members):
            async with locks.scope([root]) as held:
                await held.acquire(members)
                finished.append(root.identity)

        async with locks.scope([leaf]):
            tasks = [
                asyncio.create_task(
                    extend(RecordRef("employee", 60), RecordRef("employee", 55), leaf)
                ),
                asyncio.create_task(extend(RecordRef("employee", 55), leaf)),
            ]
            await asyncio.sleep(0.01)
            assert not any(task.done() for task in tasks)

        await asyncio.gather(*tasks)
        assert sorted(finished) == [55, 60]
        assert locks._entries == {}
