"""
Unit of Work Module

Transaction context passed explicitly to every ledger operation. A unit of
work wraps one storage transaction and the per-loan locks taken inside it;
all writes land together on exit or none do. Nested use joins the outer
unit, so several ledger operations compose inside one caller boundary.
"""

import threading
from typing import Dict, List, Optional

from .exceptions import ConsistencyError, LockTimeout
from .logging_config import get_logger, log_action
from .repositories import Repositories
from .storage import StorageInterface


class LoanLockManager:
    """
    Single-writer-per-loan locks.

    Locks are re-entrant so an operation may call another operation on the
    same loan inside one unit of work. Waits are bounded by the timeout.
    A loan's lock is dropped once no thread holds or waits for it.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._guard = threading.Lock()
        self.logger = get_logger("loan_ledger.locks")

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, loan_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            self._users[loan_id] = self._users.get(loan_id, 0) + 1
            return lock

    def _checkin(self, loan_id: str) -> None:
        with self._guard:
            users = self._users[loan_id] - 1
            if users == 0:
                del self._users[loan_id]
                del self._locks[loan_id]
            else:
                self._users[loan_id] = users

    def acquire(self, loan_id: str, timeout: Optional[float] = None) -> None:
        wait = self.timeout if timeout is None else timeout
        if not self._checkout(loan_id).acquire(timeout=wait):
            self._checkin(loan_id)
            log_action(
                self.logger, "warning", f"Lock wait exceeded for loan {loan_id}",
                action="acquire_lock", resource=f"loan:{loan_id}",
                extra={"timeout_seconds": wait}
            )
            raise LockTimeout(
                f"Loan {loan_id} is busy; lock not acquired within {wait}s",
                loan_id=loan_id, limit=wait
            )

    def release(self, loan_id: str) -> None:
        with self._guard:
            lock = self._locks.get(loan_id)
        if lock is None:
            raise ConsistencyError(f"Loan {loan_id} lock released without being held")
        lock.release()
        self._checkin(loan_id)


class UnitOfWork:
    """
    One atomic ledger transaction.

    Use as a context manager. Not shared between threads: each thread opens
    its own unit.
    """

    def __init__(self, storage: StorageInterface, locks: LoanLockManager,
                 repositories: Optional[Repositories] = None):
        self.storage = storage
        self.locks = locks
        self.repos = repositories or Repositories(storage)
        self._depth = 0
        self._held: List[str] = []
        self._rollback_only = False

    @property
    def active(self) -> bool:
        return self._depth > 0

    def __enter__(self) -> 'UnitOfWork':
        if self._depth == 0:
            self._rollback_only = False
            self.storage.begin_transaction()
        self._depth += 1
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._depth -= 1
        if exc_type is not None:
            self._rollback_only = True
        if self._depth > 0:
            return False

        try:
            if self._rollback_only:
                self.storage.rollback()
                if exc_type is None:
                    raise ConsistencyError(
                        "Unit of work was marked rollback-only by a failed nested operation"
                    )
            else:
                self.storage.commit()
        finally:
            self._release_locks()
        return False

    def lock_loan(self, loan_id: str) -> None:
        """Take the loan's writer lock until the outermost unit exits"""
        if not self.active:
            raise ConsistencyError("lock_loan called outside an active unit of work")
        if loan_id in self._held:
            return
        self.locks.acquire(loan_id)
        self._held.append(loan_id)

    def _release_locks(self) -> None:
        while self._held:
            self.locks.release(self._held.pop())
