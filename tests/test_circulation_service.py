"""Tests for the circulation service.

Covers every failure kind of issue and return, the end-to-end lending
scenarios, read-time refresh, reconciliation, and the copy counter invariant
under concurrent load from several threads.
"""

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from library_circulation_mcp.circulation import BookLockRegistry
from library_circulation_mcp.database.loan_repository import LoanRepository
from library_circulation_mcp.database.repository import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)
from library_circulation_mcp.database.schema import Book as BookDB
from library_circulation_mcp.models.loan import LoanStatus


class TestIssueLoan:
    """Issuing a copy."""

    def test_issue_takes_a_copy(self, service, clock, book, user, assert_counters_consistent):
        loan = service.issue_loan(book.id, user.id)

        assert loan.status == LoanStatus.ISSUED
        assert loan.issue_date == clock.now()
        assert loan.due_date == clock.now() + timedelta(days=14)
        assert loan.fine == 0
        assert service.get_book(book.id).available == 0
        assert_counters_consistent(book.id)

    def test_custom_due_date(self, service, clock, book, user):
        due = clock.now() + timedelta(days=21)
        loan = service.issue_loan(book.id, user.id, due_date=due)
        assert loan.due_date == due
        assert loan.loan_period_days == 21

    def test_aware_due_date_stored_as_local_time(self, service, clock, book, user):
        due = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)
        loan = service.issue_loan(book.id, user.id, due_date=due)

        assert loan.due_date.tzinfo is None
        assert loan.due_date == due.astimezone().replace(tzinfo=None)

    def test_unknown_book(self, service, user):
        with pytest.raises(NotFoundError, match="Book"):
            service.issue_loan("book_missing0001", user.id)

    def test_unknown_user(self, service, book):
        with pytest.raises(NotFoundError, match="User"):
            service.issue_loan(book.id, "user_missing0001")

    def test_unknown_book_reported_before_unknown_user(self, service):
        with pytest.raises(NotFoundError, match="Book"):
            service.issue_loan("book_missing0001", "user_missing0001")

    def test_no_copies_available(self, service, book, make_user):
        service.issue_loan(book.id, make_user().id)
        with pytest.raises(ConflictError, match="No copies"):
            service.issue_loan(book.id, make_user().id)

    def test_duplicate_open_loan(self, service, make_book, user, assert_counters_consistent):
        book = make_book(quantity=3)
        service.issue_loan(book.id, user.id)

        with pytest.raises(ConflictError, match="already has"):
            service.issue_loan(book.id, user.id)

        # The failed attempt did not take a copy
        assert service.get_book(book.id).available == 2
        assert_counters_consistent(book.id)

    @pytest.mark.parametrize(
        ("book_id", "user_id"),
        [("", "user_abcdef"), ("9780134685479", "user_abcdef"), ("book_abcdef", "patron_1")],
    )
    def test_malformed_ids(self, service, book_id, user_id):
        with pytest.raises(InvalidRequestError):
            service.issue_loan(book_id, user_id)

    def test_due_date_must_be_datetime(self, service, book, user):
        with pytest.raises(InvalidRequestError):
            service.issue_loan(book.id, user.id, due_date="tomorrow")

    def test_lock_timeout_is_a_conflict(self, service, book, user):
        service.lock_timeout = 0.05
        errors = []

        def attempt():
            try:
                service.issue_loan(book.id, user.id)
            except ConflictError as e:
                errors.append(e)

        # Another operation holds the book for longer than the timeout
        with service.locks.hold(book.id):
            worker = threading.Thread(target=attempt)
            worker.start()
            worker.join()

        assert len(errors) == 1
        assert "busy" in str(errors[0])
        assert service.get_book(book.id).available == 1


class TestReturnLoan:
    """Returning a copy."""

    def test_on_time_return(self, service, clock, book, user, assert_counters_consistent):
        loan = service.issue_loan(book.id, user.id)
        clock.advance(timedelta(days=14))

        returned = service.return_loan(loan.id)

        assert returned.status == LoanStatus.RETURNED
        assert returned.return_date == clock.now()
        assert returned.fine == 0
        assert service.get_book(book.id).available == 1
        assert_counters_consistent(book.id)

    def test_late_return_charges_started_days(self, service, clock, book, user):
        loan = service.issue_loan(book.id, user.id)
        clock.advance(timedelta(days=14, hours=25))

        returned = service.return_loan(loan.id)
        assert returned.fine == 10

    def test_fine_frozen_after_return(self, service, clock, book, user):
        loan = service.issue_loan(book.id, user.id)
        clock.advance(timedelta(days=16))
        service.return_loan(loan.id)

        clock.advance(timedelta(days=30))
        history = service.get_user_history(user.id)

        assert history[0].fine == 10
        assert history[0].status == LoanStatus.RETURNED

    def test_explicit_return_time(self, service, clock, book, user):
        loan = service.issue_loan(book.id, user.id)
        returned = service.return_loan(loan.id, now=clock.now() + timedelta(days=15))
        assert returned.fine == 5

    def test_unknown_loan(self, service):
        with pytest.raises(NotFoundError):
            service.return_loan("loan_missing0001")

    def test_malformed_loan_id(self, service):
        with pytest.raises(InvalidRequestError):
            service.return_loan("checkout_123")

    def test_second_return_conflicts(self, service, book, user, assert_counters_consistent):
        loan = service.issue_loan(book.id, user.id)
        service.return_loan(loan.id)

        with pytest.raises(ConflictError, match="already been returned"):
            service.return_loan(loan.id)

        assert service.get_book(book.id).available == 1
        assert_counters_consistent(book.id)

    def test_return_with_counter_already_full_is_capped(self, service, db_manager, book, user, caplog):
        loan = service.issue_loan(book.id, user.id)
        with db_manager.session_scope() as session:
            session.get(BookDB, book.id).available = 1

        returned = service.return_loan(loan.id)

        assert returned.status == LoanStatus.RETURNED
        assert service.get_book(book.id).available == 1
        assert "already had every copy available" in caplog.text


class TestScenarios:
    """End-to-end lending stories."""

    def test_single_copy_passes_between_users(
        self, service, clock, book, make_user, assert_counters_consistent
    ):
        alice, bob = make_user("Alice"), make_user("Bob")

        loan_a = service.issue_loan(book.id, alice.id)
        assert service.get_book(book.id).available == 0
        assert_counters_consistent(book.id)

        with pytest.raises(ConflictError):
            service.issue_loan(book.id, bob.id)
        assert_counters_consistent(book.id)

        clock.advance(timedelta(days=17))
        returned = service.return_loan(loan_a.id)
        assert returned.fine == 15
        assert service.get_book(book.id).available == 1
        assert_counters_consistent(book.id)

        loan_b = service.issue_loan(book.id, bob.id)
        assert loan_b.status == LoanStatus.ISSUED
        assert service.get_book(book.id).available == 0
        assert_counters_consistent(book.id)

    def test_predated_due_date_is_immediately_overdue(self, service, clock, book, user):
        loan = service.issue_loan(book.id, user.id, due_date=clock.now() - timedelta(days=3))
        assert loan.status == LoanStatus.ISSUED

        [refreshed] = service.list_open_loans_for_user(user.id)

        assert refreshed.id == loan.id
        assert refreshed.status == LoanStatus.OVERDUE
        assert refreshed.fine == 15


class TestReadTimeRefresh:
    """Listings bring overdue status and fines up to date and persist them."""

    def test_open_loans_refreshed_and_persisted(self, service, clock, db_manager, book, user):
        loan = service.issue_loan(book.id, user.id)
        clock.advance(timedelta(days=15))

        [listed] = service.list_open_loans_for_user(user.id)
        assert listed.status == LoanStatus.OVERDUE
        assert listed.fine == 5

        with db_manager.session_scope() as session:
            stored = LoanRepository(session).to_model(LoanRepository(session).get_row(loan.id))
        assert stored.status == LoanStatus.OVERDUE
        assert stored.fine == 5

    def test_fine_grows_with_time(self, service, clock, book, user):
        service.issue_loan(book.id, user.id)

        clock.advance(timedelta(days=15))
        assert service.list_overdue_loans()[0].fine == 5

        clock.advance(timedelta(days=2))
        assert service.list_overdue_loans()[0].fine == 15

    def test_overdue_listing_ordered_by_due_date(self, service, clock, make_book, user):
        first, second = make_book(), make_book()
        later = service.issue_loan(second.id, user.id, due_date=clock.now() + timedelta(days=2))
        sooner = service.issue_loan(first.id, user.id, due_date=clock.now() + timedelta(days=1))
        clock.advance(timedelta(days=5))

        assert [loan.id for loan in service.list_overdue_loans()] == [sooner.id, later.id]

    def test_not_yet_due_loans_not_listed_as_overdue(self, service, book, user):
        service.issue_loan(book.id, user.id)
        assert service.list_overdue_loans() == []

    def test_refresh_overdue_view_on_models(self, service, clock, book, user):
        loan = service.issue_loan(book.id, user.id)
        clock.advance(timedelta(days=16))

        [refreshed] = service.refresh_overdue_view([loan])

        assert refreshed.status == LoanStatus.OVERDUE
        assert refreshed.fine == 10
        assert service.get_loan(loan.id).fine == 10

    def test_refresh_overdue_view_keeps_returned_loans(self, service, clock, book, user):
        loan = service.issue_loan(book.id, user.id)
        clock.advance(timedelta(days=15))
        returned = service.return_loan(loan.id)

        clock.advance(timedelta(days=10))
        [same] = service.refresh_overdue_view([returned])
        assert same.fine == 5
        assert same.status == LoanStatus.RETURNED

    def test_stale_model_cannot_undo_a_return(self, service, clock, book, user):
        stale = service.issue_loan(book.id, user.id)
        clock.advance(timedelta(days=15))
        service.return_loan(stale.id)

        clock.advance(timedelta(days=5))
        [result] = service.refresh_overdue_view([stale])

        assert result.status == LoanStatus.RETURNED
        assert result.fine == 5

    def test_aware_now_is_read_as_local_time(self, service, clock, book, user):
        """Every read accepts a timezone-aware reference time."""
        loan = service.issue_loan(book.id, user.id)
        later = (clock.now() + timedelta(days=20)).astimezone(timezone.utc)

        [overdue] = service.list_overdue_loans(now=later)
        assert overdue.id == loan.id
        assert overdue.status == LoanStatus.OVERDUE
        assert overdue.fine == 30

        assert service.list_open_loans_for_user(user.id, now=later)[0].fine == 30
        assert service.get_user_history(user.id, now=later)[0].fine == 30
        assert service.list_all_loans(now=later)[0].fine == 30
        assert service.get_loan(loan.id, now=later).fine == 30
        assert service.refresh_overdue_view([loan], now=later)[0].fine == 30
        assert service.sweep_overdue(now=later) == 0

        stats = service.get_stats(now=later)
        assert stats.overdue_loans == 1
        assert stats.timestamp == clock.now() + timedelta(days=20)

    def test_history_includes_returned_loans(self, service, make_book, user):
        first, second = make_book(), make_book()
        old = service.issue_loan(first.id, user.id)
        service.return_loan(old.id)
        current = service.issue_loan(second.id, user.id)

        history = service.get_user_history(user.id)
        assert {loan.id for loan in history} == {old.id, current.id}
        assert [loan.id for loan in service.list_open_loans_for_user(user.id)] == [current.id]

    def test_history_of_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            service.get_user_history("user_missing0001")

    def test_sweep_counts_changes_once(self, service, clock, make_book, user):
        for _ in range(3):
            service.issue_loan(make_book().id, user.id)
        clock.advance(timedelta(days=15))

        assert service.sweep_overdue() == 3
        assert service.sweep_overdue() == 0

        clock.advance(timedelta(days=1))
        assert service.sweep_overdue() == 3


class TestStats:
    def test_counts(self, service, clock, make_book, make_user):
        fiction = make_book(quantity=2, category="Fiction")
        history = make_book(quantity=1, category="History")
        alice, bob = make_user(), make_user()

        service.issue_loan(fiction.id, alice.id)
        service.issue_loan(history.id, bob.id, due_date=clock.now() + timedelta(days=1))
        done = service.issue_loan(fiction.id, bob.id)
        service.return_loan(done.id)
        clock.advance(timedelta(days=2))

        stats = service.get_stats()

        assert stats.timestamp == clock.now()
        assert stats.total_books == 2
        assert stats.total_copies == 3
        assert stats.available_copies == 1
        assert stats.total_categories == 2
        assert stats.total_users == 2
        assert stats.open_loans == 2
        assert stats.overdue_loans == 1
        assert stats.returned_loans == 1


class TestReconcile:
    def test_consistent_book_unchanged(self, service, make_book, user):
        book = make_book(quantity=2)
        service.issue_loan(book.id, user.id)

        assert service.reconcile_book(book.id).available == 1

    def test_drifted_counter_repaired(self, service, db_manager, make_book, user, caplog):
        book = make_book(quantity=3)
        service.issue_loan(book.id, user.id)
        with db_manager.session_scope() as session:
            session.get(BookDB, book.id).available = 0

        repaired = service.reconcile_book(book.id)

        assert repaired.available == 2
        assert "drifted" in caplog.text

    def test_unknown_book(self, service):
        with pytest.raises(NotFoundError):
            service.reconcile_book("book_missing0001")


class TestBookLockRegistry:
    def test_entry_lives_only_while_held(self):
        locks = BookLockRegistry()
        with locks.hold("book_aaaaaa"):
            assert len(locks) == 1
            assert locks.is_locked("book_aaaaaa")
            assert not locks.is_locked("book_bbbbbb")
        assert len(locks) == 0
        assert not locks.is_locked("book_aaaaaa")

    def test_other_books_do_not_wait(self):
        locks = BookLockRegistry()
        with locks.hold("book_aaaaaa"), locks.hold("book_bbbbbb", timeout=0.05):
            assert len(locks) == 2

    def test_unknown_books_leave_no_entries(self, service, user):
        for n in range(500):
            with pytest.raises(NotFoundError):
                service.issue_loan(f"book_missing{n:06d}", user.id)
        with pytest.raises(NotFoundError):
            service.reconcile_book("book_missing999999")

        assert len(service.locks) == 0

    def test_hold_times_out(self):
        locks = BookLockRegistry()
        with locks.hold("book_aaaaaa"):
            outcome = []

            def contend():
                try:
                    with locks.hold("book_aaaaaa", timeout=0.05):
                        outcome.append("acquired")
                except ConflictError:
                    outcome.append("conflict")

            worker = threading.Thread(target=contend)
            worker.start()
            worker.join()
            # The holder keeps the entry after the waiter gave up
            assert len(locks) == 1

        assert outcome == ["conflict"]
        assert len(locks) == 0

    def test_released_after_error(self):
        locks = BookLockRegistry()
        with pytest.raises(RuntimeError), locks.hold("book_aaaaaa"):
            raise RuntimeError("boom")
        assert not locks.is_locked("book_aaaaaa")
        assert len(locks) == 0


@pytest.mark.concurrency
class TestConcurrency:
    """The counter invariant under load from several threads."""

    def test_two_callers_race_for_last_copy(self, service, book, make_user, assert_counters_consistent):
        users = [make_user(), make_user()]
        barrier = threading.Barrier(len(users))

        def attempt(user_id):
            barrier.wait()
            try:
                return service.issue_loan(book.id, user_id)
            except ConflictError as e:
                return e

        with ThreadPoolExecutor(max_workers=len(users)) as pool:
            results = list(pool.map(attempt, [u.id for u in users]))

        successes = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert service.get_book(book.id).available == 0
        assert_counters_consistent(book.id)

    def test_many_callers_single_copy(self, service, book, make_user, assert_counters_consistent):
        users = [make_user() for _ in range(8)]

        def attempt(user_id):
            try:
                service.issue_loan(book.id, user_id)
                return True
            except ConflictError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, [u.id for u in users]))

        assert outcomes.count(True) == 1
        assert service.get_book(book.id).available == 0
        assert_counters_consistent(book.id)

    def test_two_callers_return_same_loan(self, service, make_book, user, assert_counters_consistent):
        book = make_book(quantity=2)
        loan = service.issue_loan(book.id, user.id)
        barrier = threading.Barrier(2)

        def attempt(_):
            barrier.wait()
            try:
                return service.return_loan(loan.id)
            except ConflictError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(attempt, range(2)))

        successes = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert "already been returned" in str(conflicts[0])
        assert service.get_book(book.id).available == 2
        assert_counters_consistent(book.id)
        assert len(service.locks) == 0

    def test_mixed_issue_and_return_load(self, service, make_book, make_user, assert_counters_consistent):
        books = [make_book(quantity=q) for q in (1, 2, 3)]
        users = [make_user() for _ in range(5)]
        rng = random.Random(7)
        plan = [(rng.choice(books).id, rng.choice(users).id) for _ in range(40)]

        def borrow_and_maybe_return(step):
            book_id, user_id = step
            try:
                loan = service.issue_loan(book_id, user_id)
            except ConflictError:
                return
            if int(loan.id[-1], 16) % 2:
                service.return_loan(loan.id)

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(borrow_and_maybe_return, plan))

        for book in books:
            assert_counters_consistent(book.id)

        # At most one open loan per (book, user) pair
        open_pairs = [
            (loan.book_id, loan.user_id) for loan in service.list_all_loans() if loan.is_open
        ]
        assert len(open_pairs) == len(set(open_pairs))
