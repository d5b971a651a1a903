import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from errors import OperationCancelled


@dataclass
class CancelScope:
    """Deadline and explicit cancellation for a single engine call."""

    deadline: Optional[float] = None  # time.monotonic() value
    _event: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelScope":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, operation: str) -> None:
        if self.cancelled:
            raise OperationCancelled(f"{operation} cancelled")


def check_scope(scope: Optional[CancelScope], operation: str) -> None:
    if scope is not None:
        scope.check(operation)


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class BudgetLocks:
    """Per-budget mutexes serializing writes to ``spent`` within a process.

    An entry lives only while some thread holds or waits for it, so the
    registry stays as small as the set of budgets being recalculated.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[uuid.UUID, _LockEntry] = {}

    def tracked(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, budget_id: uuid.UUID) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(budget_id)
            if entry is None:
                entry = _LockEntry()
                self._entries[budget_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, budget_id: uuid.UUID, entry: _LockEntry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[budget_id]

    @contextmanager
    def hold(
        self,
        budget_id: uuid.UUID,
        *,
        timeout: Optional[float] = None,
        scope: Optional[CancelScope] = None,
    ) -> Iterator[None]:
        wait = timeout
        if scope is not None and scope.remaining() is not None:
            left = scope.remaining()
            wait = left if wait is None else min(wait, left)
        entry = self._checkout(budget_id)
        try:
            acquired = entry.lock.acquire(timeout=-1 if wait is None else wait)
            if not acquired:
                raise OperationCancelled(f"timed out waiting for budget {budget_id}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(budget_id, entry)


budget_locks = BudgetLocks()
