"""
Advisory locks keyed by record reference.

Locks are cooperative and process-local: every operation that touches a
subtree takes the keys of its root and members first. Multiple keys are
always acquired in sorted order, so two operations over overlapping subtrees
queue up instead of deadlocking, and every wait is bounded.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from .exceptions import LockTimeout
from .graph import RecordRef

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class LockScope:
    """Set of advisory locks held by one operation."""

    def __init__(self, manager: "AdvisoryLockManager", timeout: float):
        self._manager = manager
        self._timeout = timeout
        # Always ascending by sort key
        self._held: List[RecordRef] = []

    @property
    def held(self) -> List[str]:
        return [ref.lock_key for ref in self._held]

    def holds(self, ref: RecordRef) -> bool:
        return ref.lock_key in self.held

    async def acquire(
        self, refs: Iterable[RecordRef], timeout: Optional[float] = None
    ) -> None:
        """
        Acquire locks on references not yet held, in global sort order.

        A scope never waits for a key while holding a key that sorts after
        it. If some of the new keys sort before the last held one, every
        held lock is released and the combined set is taken again from the
        start, so callers must re-validate whatever they read before.

        Args:
            refs: References to lock
            timeout: Per-lock wait overriding the scope default

        Raises:
            LockTimeout: If any lock is not obtained within the timeout
        """
        held_keys = set(self.held)
        wanted: Dict[str, RecordRef] = {}
        for ref in refs:
            if ref.lock_key not in held_keys:
                wanted.setdefault(ref.lock_key, ref)
        if not wanted:
            return

        ordered = sorted(wanted.values(), key=lambda ref: ref.sort_key)
        if self._held and ordered[0].sort_key < self._held[-1].sort_key:
            logger.debug(
                "Re-acquiring %d held lock(s) to take %s in order",
                len(self._held),
                ordered[0].lock_key,
            )
            ordered = sorted(self._held + ordered, key=lambda ref: ref.sort_key)
            self.release_all()

        for ref in ordered:
            await self._manager._acquire(
                ref.lock_key, timeout if timeout is not None else self._timeout
            )
            self._held.append(ref)

    def release_all(self) -> None:
        while self._held:
            self._manager._release(self._held.pop().lock_key)


class AdvisoryLockManager:
    """Registry of per-record asyncio locks."""

    def __init__(self, timeout: float = 10.0):
        """
        Initialize the lock manager.

        Args:
            timeout: Default bounded wait per lock, in seconds
        """
        self.timeout = timeout
        self._entries: Dict[str, _Entry] = {}

    @asynccontextmanager
    async def scope(
        self,
        refs: Iterable[RecordRef] = (),
        timeout: Optional[float] = None,
    ) -> AsyncIterator[LockScope]:
        """
        Hold locks for the duration of a block.

        Example:
            >>> async with locks.scope([root]) as held:
            ...     await held.acquire(members)
        """
        scope = LockScope(self, timeout if timeout is not None else self.timeout)
        try:
            await scope.acquire(refs)
            yield scope
        finally:
            scope.release_all()

    def is_locked(self, ref: RecordRef) -> bool:
        entry = self._entries.get(ref.lock_key)
        return entry is not None and entry.lock.locked()

    async def _acquire(self, key: str, timeout: float) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            await asyncio.wait_for(entry.lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            self._forget(key, entry)
            logger.warning("Advisory lock timeout on %s after %.1fs", key, timeout)
            raise LockTimeout(key, timeout) from None
        except BaseException:
            self._forget(key, entry)
            raise

    def _release(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.lock.release()
        self._forget(key, entry)

    def _forget(self, key: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users <= 0 and not entry.lock.locked():
            self._entries.pop(key, None)
