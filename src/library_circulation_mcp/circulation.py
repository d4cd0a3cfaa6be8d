"""
Circulation service for the Library Circulation MCP Server.

This is the transactional boundary of the lending engine:

1. **Issue**: Check the book, the user and the pair's open loans, take a copy,
   record the loan
2. **Return**: Close the loan, freeze its fine, give the copy back
3. **Read-time refresh**: Bring cached overdue status and fines up to date
   whenever loans are listed
4. **Reporting**: Counts for the stats resource
5. **Reconciliation**: Recompute a book's counter from the ledger

Each issue or return runs as one database transaction while holding the
book's lock, so the check-then-write sequence for a book is never interleaved
with another one. The database adds its own guards underneath (conditional
counter updates, CHECK constraints, a partial unique index on open loans).
"""

import logging
import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.orm import Session

from .clock import Clock, SystemClock
from .config import ServerConfig, get_config
from .database.book_repository import BookCreateSchema, BookRepository
from .database.loan_repository import LoanRepository
from .database.repository import ConflictError, InvalidRequestError, NotFoundError
from .database.schema import Loan as LoanDB
from .database.session import DatabaseManager, get_db_manager
from .database.user_repository import UserCreateSchema, UserRepository
from .lifecycle import close_loan, compute_due_date, refresh_status
from .models.book import Book
from .models.loan import Loan
from .models.stats import LibraryStats
from .models.user import User

logger = logging.getLogger(__name__)


class BookLockRegistry:
    """
    One lock per book id.

    Operations on the same book wait for each other; operations on different
    books never do. An entry lives only while some thread holds or waits for
    it, so ids that were asked about once (including unknown ones) are not
    kept around.
    """

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def is_locked(self, book_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(book_id)
            return lock is not None and lock.locked()

    def _check_out(self, book_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(book_id)
            if lock is None:
                lock = self._locks[book_id] = threading.Lock()
            self._users[book_id] = self._users.get(book_id, 0) + 1
            return lock

    def _check_in(self, book_id: str) -> None:
        with self._guard:
            self._users[book_id] -= 1
            if self._users[book_id] == 0:
                del self._users[book_id]
                del self._locks[book_id]

    @contextmanager
    def hold(self, book_id: str, timeout: float | None = None) -> Generator[None, None, None]:
        """
        Hold the book's lock for the duration of the block.

        Raises:
            ConflictError: If the lock could not be taken within ``timeout`` seconds
        """
        lock = self._check_out(book_id)
        try:
            if not lock.acquire(timeout=-1 if timeout is None else timeout):
                raise ConflictError(f"Book {book_id} is busy with another operation, try again")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._check_in(book_id)


class CirculationService:
    """
    Coordinates loans with the catalog's copy counters.

    The service owns its transactions: every public method opens one
    ``session_scope`` and commits or rolls back as a unit.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        clock: Clock | None = None,
        config: ServerConfig | None = None,
        locks: BookLockRegistry | None = None,
    ):
        config = config or get_config()
        self.db = db_manager
        self.clock = clock or SystemClock()
        self.locks = locks or BookLockRegistry()
        self.loan_period_days = config.loan_period_days
        self.daily_fine_rate = config.daily_fine_rate
        self.lock_timeout = config.lock_timeout_seconds

    def _now(self, now: datetime | None) -> datetime:
        return _naive_local(now) if now else self.clock.now()

    # =========================================================================
    # ISSUE / RETURN
    # =========================================================================

    def issue_loan(self, book_id: str, user_id: str, due_date: datetime | None = None) -> Loan:
        """
        Lend a copy of a book to a user.

        Args:
            book_id: Book to lend
            user_id: Borrower
            due_date: Custom due date; defaults to now plus the loan period

        Returns:
            The new loan, status issued

        Raises:
            NotFoundError: If the book or the user does not exist
            ConflictError: If no copies are available or the user already has this book
            InvalidRequestError: If the ids or due date are malformed
        """
        _require_id(book_id, "book")
        _require_id(user_id, "user")
        if due_date is not None and not isinstance(due_date, datetime):
            raise InvalidRequestError(f"Due date must be a datetime, got {type(due_date).__name__}")
        if due_date is not None:
            due_date = _naive_local(due_date)

        with self.locks.hold(book_id, self.lock_timeout), self.db.session_scope() as session:
            now = self.clock.now()
            books = BookRepository(session)
            users = UserRepository(session)
            loans = LoanRepository(session)

            book = books.get_row(book_id)
            if book is None:
                raise NotFoundError(f"Book {book_id} not found")

            if not users.exists(user_id):
                raise NotFoundError(f"User {user_id} not found")

            if loans.find_open(book_id, user_id) is not None:
                raise ConflictError(f"User {user_id} already has book {book_id} issued")

            if not books.take_copy(book_id):
                raise ConflictError(f"No copies of '{book.title}' are available")

            due = due_date or compute_due_date(now, self.loan_period_days)
            row = loans.create(book_id, user_id, issue_date=now, due_date=due)
            loan = loans.to_model(row)

        logger.info(
            "Issued loan %s: book %s to user %s, due %s", loan.id, book_id, user_id, due.isoformat()
        )
        return loan

    def return_loan(self, loan_id: str, now: datetime | None = None) -> Loan:
        """
        Close a loan and put its copy back on the shelf.

        Args:
            loan_id: Loan to close
            now: Return time; defaults to the clock

        Returns:
            The loan, status returned with its fine frozen

        Raises:
            NotFoundError: If the loan does not exist
            ConflictError: If the loan was already returned
        """
        _require_id(loan_id, "loan")
        book_id = self._book_id_for_loan(loan_id)

        with self.locks.hold(book_id, self.lock_timeout), self.db.session_scope() as session:
            returned_at = self._now(now)
            loans = LoanRepository(session)
            books = BookRepository(session)

            row = loans.get_row(loan_id)
            if row is None:
                raise NotFoundError(f"Loan {loan_id} not found")

            loan = close_loan(loans.to_model(row), returned_at, self.daily_fine_rate)
            loans.apply(row, loan)

            if not books.release_copy(row.book_id):
                logger.warning(
                    "Book %s already had every copy available when loan %s was returned",
                    row.book_id,
                    loan_id,
                )

            session.flush()
            loan = loans.to_model(row)

        logger.info("Returned loan %s (book %s), fine %d", loan.id, loan.book_id, loan.fine)
        return loan

    def _book_id_for_loan(self, loan_id: str) -> str:
        with self.db.session_scope() as session:
            row = LoanRepository(session).get_row(loan_id)
            if row is None:
                raise NotFoundError(f"Loan {loan_id} not found")
            return row.book_id

    # =========================================================================
    # READ-TIME REFRESH
    # =========================================================================

    def refresh_overdue_view(self, loans: Iterable[Loan], now: datetime | None = None) -> list[Loan]:
        """
        Recompute status and fine for a batch of loans and persist the changes.

        Returned loans pass through untouched. Never touches book counters.
        """
        now = self._now(now)
        batch = list(loans)
        with self.db.session_scope() as session:
            repo = LoanRepository(session)
            refreshed = []
            for loan in batch:
                if refresh_status(loan, now, self.daily_fine_rate):
                    if not repo.save_refresh(loan.id, loan.status, loan.fine):
                        # Returned since it was read; the stored row wins
                        row = repo.get_row(loan.id)
                        if row is not None:
                            loan = repo.to_model(row)
                refreshed.append(loan)
        return refreshed

    def _refresh_rows(self, session: Session, rows: Iterable[LoanDB], now: datetime) -> list[Loan]:
        repo = LoanRepository(session)
        result = []
        changed = 0
        for row in rows:
            loan = repo.to_model(row)
            if refresh_status(loan, now, self.daily_fine_rate):
                if repo.save_refresh(loan.id, loan.status, loan.fine):
                    changed += 1
                else:
                    session.refresh(row)
                    loan = repo.to_model(row)
            result.append(loan)
        if changed:
            logger.debug("Refreshed %d loan(s) at %s", changed, now.isoformat())
        return result

    # =========================================================================
    # LISTINGS
    # =========================================================================

    def list_open_loans_for_user(self, user_id: str, now: datetime | None = None) -> list[Loan]:
        """Open loans held by a user, newest first, with refreshed status."""
        now = self._now(now)
        with self.db.session_scope() as session:
            rows = LoanRepository(session).list_open_for_user(user_id)
            return self._refresh_rows(session, rows, now)

    def list_overdue_loans(self, now: datetime | None = None) -> list[Loan]:
        """Open loans past due, oldest due first, with fines as of ``now``."""
        now = self._now(now)
        with self.db.session_scope() as session:
            rows = LoanRepository(session).list_open_past_due(now)
            return self._refresh_rows(session, rows, now)

    def list_all_loans(self, now: datetime | None = None) -> list[Loan]:
        """Every loan, newest first; open ones are refreshed."""
        now = self._now(now)
        with self.db.session_scope() as session:
            rows = LoanRepository(session).list_all()
            return self._refresh_rows(session, rows, now)

    def get_user_history(self, user_id: str, now: datetime | None = None) -> list[Loan]:
        """
        Full loan history for a user, newest first.

        Raises:
            NotFoundError: If the user does not exist
        """
        now = self._now(now)
        with self.db.session_scope() as session:
            if not UserRepository(session).exists(user_id):
                raise NotFoundError(f"User {user_id} not found")
            rows = LoanRepository(session).list_for_user(user_id)
            return self._refresh_rows(session, rows, now)

    def sweep_overdue(self, now: datetime | None = None) -> int:
        """
        Refresh every open loan that is past due.

        Returns:
            Number of loans whose status or fine changed
        """
        now = self._now(now)
        with self.db.session_scope() as session:
            repo = LoanRepository(session)
            changed = 0
            for row in repo.list_open_past_due(now):
                loan = repo.to_model(row)
                if refresh_status(loan, now, self.daily_fine_rate) and repo.save_refresh(
                    loan.id, loan.status, loan.fine
                ):
                    changed += 1
        logger.info("Overdue sweep at %s updated %d loan(s)", now.isoformat(), changed)
        return changed

    # =========================================================================
    # REPORTING
    # =========================================================================

    def get_stats(self, now: datetime | None = None) -> LibraryStats:
        """Circulation counts; overdue is judged from dates, not the cached status."""
        now = self._now(now)
        with self.db.session_scope() as session:
            books = BookRepository(session)
            loans = LoanRepository(session)
            total_copies, available_copies = books.copy_totals()
            return LibraryStats(
                timestamp=now,
                total_books=books.count(),
                total_copies=total_copies,
                available_copies=available_copies,
                total_categories=books.count_categories(),
                total_users=UserRepository(session).count(),
                open_loans=loans.count_open(),
                overdue_loans=loans.count_overdue(now),
                returned_loans=loans.count_returned(),
            )

    # =========================================================================
    # CATALOG AND DIRECTORY
    # =========================================================================

    def add_book(self, data: BookCreateSchema) -> Book:
        """Catalog a book with all copies available."""
        with self.db.session_scope() as session:
            return BookRepository(session).create(data)

    def register_user(self, data: UserCreateSchema) -> User:
        with self.db.session_scope() as session:
            return UserRepository(session).create(data)

    def get_book(self, book_id: str) -> Book:
        with self.db.session_scope() as session:
            book = BookRepository(session).get_by_id(book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def get_loan(self, loan_id: str, now: datetime | None = None) -> Loan:
        """Fetch one loan with its status refreshed."""
        now = self._now(now)
        with self.db.session_scope() as session:
            row = LoanRepository(session).get_row(loan_id)
            if row is None:
                raise NotFoundError(f"Loan {loan_id} not found")
            return self._refresh_rows(session, [row], now)[0]

    def reconcile_book(self, book_id: str) -> Book:
        """
        Recompute a book's ``available`` counter from its open loans.

        The counter is a cache of ``quantity - open loans``; this repairs it if
        it ever drifted (for example after manual edits to the database).

        Raises:
            NotFoundError: If the book does not exist
            ConflictError: If the book has more open loans than copies
        """
        with self.locks.hold(book_id, self.lock_timeout), self.db.session_scope() as session:
            books = BookRepository(session)
            row = books.get_row(book_id)
            if row is None:
                raise NotFoundError(f"Book {book_id} not found")

            open_loans = LoanRepository(session).count_open_for_book(book_id)
            expected = row.quantity - open_loans
            if expected < 0:
                raise ConflictError(
                    f"Book {book_id} has {open_loans} open loans but only {row.quantity} copies"
                )
            if row.available != expected:
                logger.warning(
                    "Book %s counter drifted: available=%d, expected %d; repairing",
                    book_id,
                    row.available,
                    expected,
                )
                books.set_available(book_id, expected)
                session.flush()
            return books.get_by_id(book_id)


def _require_id(value: str, prefix: str) -> None:
    if not isinstance(value, str) or not value.startswith(f"{prefix}_"):
        raise InvalidRequestError(f"Malformed {prefix} id: {value!r}")
    if len(value) <= len(prefix) + 1:
        raise InvalidRequestError(f"Malformed {prefix} id: {value!r}")


def _naive_local(value: datetime) -> datetime:
    # Stored timestamps are naive local time
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


# Global service instance shared by tools, resources and the sweeper
_service: CirculationService | None = None


def get_circulation_service() -> CirculationService:
    """Get the global circulation service, building it on first use."""
    global _service  # noqa: PLW0603 - Singleton pattern for the service

    if _service is None:
        _service = CirculationService(get_db_manager(), config=get_config())
    return _service


def set_circulation_service(service: CirculationService | None) -> None:
    """Replace the global circulation service (tests and scripts)."""
    global _service  # noqa: PLW0603

    _service = service
