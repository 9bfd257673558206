"""
Named operation lock for structural knowledge-base mutations.

One holder per lock id, with a FIFO queue of waiters. Release hands ownership
straight to the next waiter, so the lock is never observably free while
someone is queued. Not re-entrant.
"""
import asyncio
import contextlib
import itertools
import time
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel

from kbengine.exceptions import LockReleasedError, LockTimeoutError
from kbengine.logging_config import get_logger

log = get_logger(__name__)

GLOBAL_LOCK = "global"


@dataclass
class _Holder:
    token: int
    operation: str
    acquired_at: float


@dataclass
class _Waiter:
    token: int
    operation: str
    future: asyncio.Future


class LockStatus(BaseModel):
    lock_id: str
    locked: bool
    operation: Optional[str] = None
    held_for_seconds: Optional[float] = None
    queue_length: int = 0
    queued_operations: List[str] = []


class LockHandle:
    """Proof of ownership. Release exactly once; extra calls are ignored."""

    def __init__(self, lock: "OperationLock", lock_id: str, token: int, operation: str):
        self._lock = lock
        self.lock_id = lock_id
        self.token = token
        self.operation = operation
        self.released = False

    def release(self) -> None:
        if not self.released:
            self.released = True
            self._lock._release(self.lock_id, self.token)

    async def __aenter__(self) -> "LockHandle":
        return self

    async def __aexit__(self, *exc) -> None:
        self.release()


class OperationLock:
    def __init__(
        self,
        default_max_wait: float = 60.0,
        stale_after: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_max_wait = default_max_wait
        # Holders older than this are presumed crashed and lose the lock on the next acquire
        self.stale_after = stale_after
        self._clock = clock
        self._holders: Dict[str, _Holder] = {}
        self._waiters: Dict[str, Deque[_Waiter]] = {}
        self._tokens = itertools.count(1)

    async def acquire(self, operation: str, lock_id: str = GLOBAL_LOCK, max_wait: Optional[float] = None) -> LockHandle:
        """
        Acquire ``lock_id`` for ``operation``.

        Raises:
            LockTimeoutError: still queued after ``max_wait`` seconds
            LockReleasedError: the lock was force-released while queued
        """
        if self.stale_after is not None:
            self.cleanup_expired()
        token = next(self._tokens)
        if lock_id not in self._holders:
            self._holders[lock_id] = _Holder(token, operation, self._clock())
            log.debug("lock_acquired", lock_id=lock_id, operation=operation)
            return LockHandle(self, lock_id, token, operation)

        max_wait = self.default_max_wait if max_wait is None else max_wait
        future = asyncio.get_running_loop().create_future()
        waiter = _Waiter(token, operation, future)
        queue = self._waiters.setdefault(lock_id, deque())
        queue.append(waiter)
        holder = self._holders[lock_id]
        log.info("lock_waiting", lock_id=lock_id, operation=operation, held_by=holder.operation,
                 queue_length=len(queue))

        try:
            await asyncio.wait_for(asyncio.shield(future), timeout=max_wait)
        except asyncio.TimeoutError:
            if self._owns(lock_id, token):
                # Handed over at the deadline; keep it
                return LockHandle(self, lock_id, token, operation)
            self._discard(lock_id, waiter)
            held_by = self._holders.get(lock_id)
            log.warning("lock_timeout", lock_id=lock_id, operation=operation, max_wait=max_wait,
                        held_by=held_by.operation if held_by else None)
            raise LockTimeoutError(
                f"Could not start '{operation}': '{held_by.operation if held_by else 'another operation'}' "
                f"still holds the '{lock_id}' lock after {max_wait:.0f}s. Retry later."
            )
        except asyncio.CancelledError:
            if self._owns(lock_id, token):
                self._release(lock_id, token)
            else:
                self._discard(lock_id, waiter)
            raise

        log.debug("lock_acquired", lock_id=lock_id, operation=operation, waited=True)
        return LockHandle(self, lock_id, token, operation)

    def _owns(self, lock_id: str, token: int) -> bool:
        holder = self._holders.get(lock_id)
        return holder is not None and holder.token == token

    def _discard(self, lock_id: str, waiter: _Waiter) -> None:
        queue = self._waiters.get(lock_id)
        if queue and waiter in queue:
            queue.remove(waiter)
        if not waiter.future.done():
            waiter.future.cancel()

    def _release(self, lock_id: str, token: int) -> None:
        if not self._owns(lock_id, token):
            log.warning("lock_release_ignored", lock_id=lock_id, reason="not_owner")
            return
        queue = self._waiters.get(lock_id)
        while queue:
            waiter = queue.popleft()
            if waiter.future.done():
                continue
            self._holders[lock_id] = _Holder(waiter.token, waiter.operation, self._clock())
            waiter.future.set_result(None)
            log.debug("lock_handed_over", lock_id=lock_id, operation=waiter.operation)
            return
        del self._holders[lock_id]
        self._waiters.pop(lock_id, None)
        log.debug("lock_released", lock_id=lock_id)

    def force_release(self, lock_id: str = GLOBAL_LOCK) -> int:
        """Drop the holder and reject every queued waiter. Returns the number rejected."""
        holder = self._holders.pop(lock_id, None)
        queue = self._waiters.pop(lock_id, deque())
        rejected = 0
        for waiter in queue:
            if not waiter.future.done():
                waiter.future.set_exception(LockReleasedError(f"Lock '{lock_id}' was force-released"))
                rejected += 1
        log.warning("lock_force_released", lock_id=lock_id,
                    operation=holder.operation if holder else None, waiters_rejected=rejected)
        return rejected

    def is_locked(self, lock_id: str = GLOBAL_LOCK) -> bool:
        return lock_id in self._holders

    def status(self, lock_id: str = GLOBAL_LOCK) -> LockStatus:
        holder = self._holders.get(lock_id)
        queue = [w for w in self._waiters.get(lock_id, ()) if not w.future.done()]
        return LockStatus(
            lock_id=lock_id,
            locked=holder is not None,
            operation=holder.operation if holder else None,
            held_for_seconds=round(self._clock() - holder.acquired_at, 3) if holder else None,
            queue_length=len(queue),
            queued_operations=[w.operation for w in queue],
        )

    def cleanup_expired(self, max_age: Optional[float] = None) -> List[str]:
        """
        Take locks away from holders older than ``max_age`` seconds (defaults to
        ``stale_after``) and hand them to the next waiter. Returns the expired lock ids.
        """
        max_age = self.stale_after if max_age is None else max_age
        if max_age is None:
            return []
        now = self._clock()
        expired = [(lock_id, h) for lock_id, h in self._holders.items() if now - h.acquired_at > max_age]
        for lock_id, holder in expired:
            log.warning("lock_expired", lock_id=lock_id, operation=holder.operation,
                        held_for_seconds=round(now - holder.acquired_at, 3))
            self._release(lock_id, holder.token)
        return [lock_id for lock_id, _ in expired]

    async def wait_for_release(self, lock_id: str = GLOBAL_LOCK, timeout: float = 60.0, poll_interval: float = 0.05) -> bool:
        """Wait until nobody holds ``lock_id``. Returns False on timeout."""
        deadline = self._clock() + timeout
        while self.is_locked(lock_id):
            if self._clock() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True

    @contextlib.asynccontextmanager
    async def hold(self, operation: str, lock_id: str = GLOBAL_LOCK, max_wait: Optional[float] = None) -> AsyncIterator[LockHandle]:
        handle = await self.acquire(operation, lock_id, max_wait)
        try:
            yield handle
        finally:
            handle.release()
