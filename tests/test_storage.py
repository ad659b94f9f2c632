"""
Tests for storage backends, repositories and the unit of work
"""

import pytest
import threading
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_ledger.exceptions import ConsistencyError, LockTimeout
from loan_ledger.models import (
    Installment, InstallmentStatus, Loan, LoanStatus, LoanType, new_id, utc_now
)
from loan_ledger.repositories import EntityKind, Repositories
from loan_ledger.storage import InMemoryStorage, SQLiteStorage, create_storage
from loan_ledger.unit_of_work import LoanLockManager, UnitOfWork


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


def make_loan_record(**overrides):
    now = utc_now()
    fields = dict(
        id=new_id(), created_at=now, updated_at=now, customer_id="customer-1",
        loan_amount=Decimal('1000.00'), remaining_balance=Decimal('1000.00'),
        interest_rate_id="rate-1", payment_frequency_id="monthly",
        start_date=date(2025, 1, 1)
    )
    fields.update(overrides)
    return Loan(**fields)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestStorageBackends:
    """Test CRUD operations on both backends"""

    def test_basic_operations(self, storage):
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data

        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")

        storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
        assert len(storage.load_all("test_table")) == 2

        results = storage.find("test_table", {"id": "test_001"})
        assert len(results) == 1
        assert results[0]["amount"] == "100.50"

        assert storage.count("test_table") == 2
        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_find_matches_stored_form(self, storage):
        storage.save("loans", "a", {"id": "a", "status": LoanStatus.OVERDUE, "is_active": True})
        storage.save("loans", "b", {"id": "b", "status": LoanStatus.PAID, "is_active": True})

        found = storage.find("loans", {"status": LoanStatus.OVERDUE})
        assert [r["id"] for r in found] == ["a"]
        assert len(storage.find("loans", {"is_active": True})) == 2
        assert storage.find("loans", {"missing_key": 1}) == []

    def test_rollback_discards_writes(self, storage):
        storage.save("t", "kept", {"id": "kept", "value": "1"})

        storage.begin_transaction()
        storage.save("t", "kept", {"id": "kept", "value": "2"})
        storage.save("t", "new", {"id": "new"})
        storage.rollback()

        assert storage.load("t", "kept")["value"] == "1"
        assert not storage.exists("t", "new")

    def test_nested_transactions_join_outer(self, storage):
        storage.begin_transaction()
        storage.begin_transaction()
        storage.save("t", "r", {"id": "r"})
        storage.commit()
        assert storage.in_transaction
        storage.rollback()

        assert not storage.in_transaction
        assert not storage.exists("t", "r")

    def test_atomic_context(self, storage):
        with storage.atomic():
            storage.save("t", "r1", {"id": "r1"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "r2", {"id": "r2"})
                raise RuntimeError("boom")

        assert storage.exists("t", "r1")
        assert not storage.exists("t", "r2")


class TestInMemoryStorage:
    """Test in-memory specifics"""

    def test_loaded_records_are_copies(self):
        storage = InMemoryStorage()
        storage.save("t", "r", {"id": "r", "items": [1, 2]})

        loaded = storage.load("t", "r")
        loaded["items"].append(3)

        assert storage.load("t", "r")["items"] == [1, 2]

    def test_delete_rolled_back(self):
        storage = InMemoryStorage()
        storage.save("t", "r", {"id": "r"})

        storage.begin_transaction()
        storage.delete("t", "r")
        storage.clear_table("t")
        storage.rollback()

        assert storage.exists("t", "r")

    def test_other_threads_wait_for_the_open_transaction(self):
        storage = InMemoryStorage()
        storage.begin_transaction()
        storage.save("t", "pending", {"id": "pending"})
        seen = []

        def reader():
            seen.append(storage.exists("t", "pending"))
            storage.save("t", "committed", {"id": "committed"})

        worker = threading.Thread(target=reader)
        worker.start()
        worker.join(0.2)
        assert worker.is_alive()
        assert seen == []

        storage.rollback()
        worker.join(2)

        assert seen == [False]
        assert storage.exists("t", "committed")
        assert not storage.exists("t", "pending")

    def test_uncommitted_payment_invisible_to_other_threads(self, ledger, make_loan):
        created = make_loan()
        seen = {}

        def reader():
            seen["payments"] = len(ledger.get_payments(created.loan.id))
            seen["balance"] = ledger.get_loan(created.loan.id).remaining_balance

        with pytest.raises(RuntimeError):
            with ledger.unit_of_work() as uow:
                ledger.register_payment({"loan_id": created.loan.id, "amount": "100000",
                                         "payment_date": date(2025, 1, 10)}, uow=uow)
                worker = threading.Thread(target=reader)
                worker.start()
                worker.join(0.2)
                assert worker.is_alive()
                raise RuntimeError("caller aborted")

        worker.join(2)
        assert seen == {"payments": 0, "balance": Decimal('300000')}

    def test_transaction_wait_is_bounded(self):
        storage = InMemoryStorage(lock_timeout=0.05)
        started = threading.Event()
        release = threading.Event()

        def holder():
            storage.begin_transaction()
            started.set()
            release.wait(2)
            storage.commit()

        worker = threading.Thread(target=holder)
        worker.start()
        started.wait(2)
        try:
            with pytest.raises(LockTimeout) as exc_info:
                storage.begin_transaction()
            assert exc_info.value.details["resource"] == "memory"
            assert not storage.in_transaction
        finally:
            release.set()
            worker.join()

    def test_nested_commit_keeps_lock_until_outermost(self):
        storage = InMemoryStorage(lock_timeout=0.05)
        storage.begin_transaction()
        storage.begin_transaction()
        storage.commit()
        outcome = []

        def contender():
            try:
                storage.begin_transaction()
                outcome.append("entered")
                storage.commit()
            except LockTimeout:
                outcome.append("timed out")

        worker = threading.Thread(target=contender)
        worker.start()
        worker.join()
        storage.commit()

        worker = threading.Thread(target=contender)
        worker.start()
        worker.join()
        assert outcome == ["timed out", "entered"]


class TestSQLiteStorage:
    """Test SQLite specifics"""

    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "ledger.db"
        storage = SQLiteStorage(path)
        storage.save("t", "r", {"id": "r", "amount": Decimal('12.30')})
        storage.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("t", "r")["amount"] == "12.30"
        reopened.close()

    def test_transaction_wait_is_bounded(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "ledger.db", lock_timeout=0.05)
        started = threading.Event()
        release = threading.Event()

        def holder():
            storage.begin_transaction()
            started.set()
            release.wait(2)
            storage.commit()

        worker = threading.Thread(target=holder)
        worker.start()
        started.wait(2)
        try:
            with pytest.raises(LockTimeout):
                storage.begin_transaction()
        finally:
            release.set()
            worker.join()
            storage.close()


class TestCreateStorage:
    """Test database URL parsing"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_file_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path}/ledger.db")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path.endswith("ledger.db")
        storage.close()

    def test_sqlite_memory_url(self):
        storage = create_storage("sqlite://")
        assert storage.db_path == ":memory:"
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/ledger")


class TestRepositories:
    """Test typed round-tripping through repositories"""

    def test_loan_round_trip(self, storage):
        repos = Repositories(storage)
        loan = make_loan_record(loan_type=LoanType.ONLY_INTERESTS, next_due_date=date(2025, 2, 1))

        repos.loans.save(loan)
        loaded = repos.loans.get(loan.id)

        assert loaded == loan
        assert isinstance(loaded.loan_amount, Decimal)
        assert loaded.loan_type is LoanType.ONLY_INTERESTS
        assert loaded.next_due_date == date(2025, 2, 1)
        assert loaded.closed_on is None

    def test_installments_in_due_date_order(self, storage):
        repos = Repositories(storage)
        now = utc_now()
        for sequence, due in [(2, date(2025, 3, 1)), (1, date(2025, 2, 1)), (3, date(2025, 4, 1))]:
            repos.installments.save(Installment(
                id=new_id(), created_at=now, updated_at=now, loan_id="loan-1",
                sequence=sequence, due_date=due, status=InstallmentStatus.CREATED,
                is_active=sequence != 3
            ))

        active = repos.loan_installments("loan-1")
        assert [i.sequence for i in active] == [1, 2]
        assert len(repos.loan_installments("loan-1", active_only=False)) == 3

    def test_kind_lookup(self, storage):
        repos = Repositories(storage)
        assert repos[EntityKind.LOAN] is repos.loans
        assert repos[EntityKind.PAYMENT_ALLOCATION].table == "payment_allocations"

    def test_missing_record(self, storage):
        assert Repositories(storage).loans.get("nope") is None


class TestUnitOfWork:
    """Test commit, rollback, nesting and lock release"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.locks = LoanLockManager(timeout=0.05)

    def test_commit(self):
        loan = make_loan_record()
        with UnitOfWork(self.storage, self.locks) as uow:
            uow.repos.loans.save(loan)
        assert Repositories(self.storage).loans.get(loan.id) == loan

    def test_exception_rolls_back(self):
        loan = make_loan_record()
        with pytest.raises(ValueError):
            with UnitOfWork(self.storage, self.locks) as uow:
                uow.repos.loans.save(loan)
                raise ValueError("abort")
        assert Repositories(self.storage).loans.get(loan.id) is None

    def test_nested_failure_marks_rollback_only(self):
        loan = make_loan_record()
        uow = UnitOfWork(self.storage, self.locks)

        with pytest.raises(ConsistencyError):
            with uow:
                uow.repos.loans.save(loan)
                try:
                    with uow:
                        raise ValueError("inner failure")
                except ValueError:
                    pass

        assert Repositories(self.storage).loans.get(loan.id) is None
        assert not uow.active

    def test_locks_held_until_outermost_exit(self):
        uow = UnitOfWork(self.storage, self.locks)
        acquired = []

        def contender():
            try:
                self.locks.acquire("loan-1")
                acquired.append(True)
                self.locks.release("loan-1")
            except LockTimeout:
                acquired.append(False)

        with uow:
            with uow:
                uow.lock_loan("loan-1")
                uow.lock_loan("loan-1")
            worker = threading.Thread(target=contender)
            worker.start()
            worker.join()

        assert acquired == [False]
        worker = threading.Thread(target=contender)
        worker.start()
        worker.join()
        assert acquired == [False, True]

    def test_loan_locks_dropped_after_exit(self):
        for n in range(50):
            with UnitOfWork(self.storage, self.locks) as uow:
                uow.lock_loan(f"loan-{n}")
                assert len(self.locks) == 1
        assert len(self.locks) == 0

    def test_timed_out_wait_leaves_no_lock_behind(self):
        started = threading.Event()
        release = threading.Event()

        def holder():
            self.locks.acquire("loan-1")
            started.set()
            release.wait(2)
            self.locks.release("loan-1")

        worker = threading.Thread(target=holder)
        worker.start()
        started.wait(2)
        try:
            with pytest.raises(LockTimeout):
                self.locks.acquire("loan-1")
            assert len(self.locks) == 1
        finally:
            release.set()
            worker.join()
        assert len(self.locks) == 0

    def test_reentrant_lock_kept_until_last_release(self):
        self.locks.acquire("loan-1")
        self.locks.acquire("loan-1")
        self.locks.release("loan-1")
        assert len(self.locks) == 1
        self.locks.release("loan-1")
        assert len(self.locks) == 0

    def test_release_without_acquire_rejected(self):
        with pytest.raises(ConsistencyError):
            self.locks.release("loan-1")

    def test_lock_outside_unit_rejected(self):
        with pytest.raises(ConsistencyError):
            UnitOfWork(self.storage, self.locks).lock_loan("loan-1")
