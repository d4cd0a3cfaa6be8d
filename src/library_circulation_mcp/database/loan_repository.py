"""
Loan repository implementation for the Library Circulation MCP Server.

This repository is the data access side of the loan ledger:

1. **Issue**: Inserting a new open loan
2. **Return**: Writing the closed state back to a loan row
3. **Refresh**: Persisting recomputed overdue status and fine
4. **Queries**: Open, overdue, per-user and full listings plus counts

Overdue queries are phrased on ``due_date`` and ``return_date`` rather than on
the stored ``status`` column, because the stored status is only a cache.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from ..models.loan import Loan as LoanModel
from ..models.loan import LoanStatus
from .repository import ConflictError, generate_id, safe_query
from .schema import Loan as LoanDB
from .schema import LoanStatusEnum

logger = logging.getLogger(__name__)


class LoanRepository:
    """
    Repository for loan rows.

    Unlike the catalog repositories this one hands back SQLAlchemy rows as
    well as Pydantic models, because the circulation service mutates rows
    inside its own transaction.
    """

    def __init__(self, session):
        """Initialize with database session."""
        self.session = session

    # === Writes ===

    def create(
        self, book_id: str, user_id: str, issue_date: datetime, due_date: datetime
    ) -> LoanDB:
        """
        Insert an open loan.

        Raises:
            ConflictError: If the pair already has an open loan
        """
        loan = LoanDB(
            id=generate_id("loan"),
            book_id=book_id,
            user_id=user_id,
            issue_date=issue_date,
            due_date=due_date,
            status=LoanStatusEnum.ISSUED,
            fine=0,
        )
        try:
            with self.session.begin_nested():
                self.session.add(loan)
                self.session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"User {user_id} already has an open loan for book {book_id}"
            ) from e
        return loan

    def apply(self, row: LoanDB, model: LoanModel) -> LoanDB:
        """Copy lifecycle fields from a model onto its row."""
        row.return_date = model.return_date
        row.status = LoanStatusEnum(LoanStatus(model.status).value)
        row.fine = model.fine
        return row

    def save_refresh(self, loan_id: str, status: LoanStatus, fine: int) -> bool:
        """
        Persist a recomputed status and fine for a loan that is still open.

        The ``return_date IS NULL`` guard keeps a refresh from overwriting a
        return that committed after the loan was read.

        Returns:
            True if the row was updated
        """
        result = safe_query(
            self.session,
            lambda s: s.execute(
                update(LoanDB)
                .where(LoanDB.id == loan_id, LoanDB.return_date.is_(None))
                .values(status=LoanStatusEnum(LoanStatus(status).value), fine=fine)
                .execution_options(synchronize_session="fetch")
            ),
            "Failed to save loan refresh",
        )
        return result.rowcount == 1

    # === Reads ===

    def get_row(self, loan_id: str) -> LoanDB | None:
        return safe_query(
            self.session, lambda s: s.get(LoanDB, loan_id), "Failed to get loan"
        )

    def find_open(self, book_id: str, user_id: str) -> LoanDB | None:
        """Find the open loan for a (book, user) pair, if any."""
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB).where(
                    and_(
                        LoanDB.book_id == book_id,
                        LoanDB.user_id == user_id,
                        LoanDB.return_date.is_(None),
                    )
                )
            ).scalar_one_or_none(),
            "Failed to check for an open loan",
        )

    def list_open_for_user(self, user_id: str) -> list[LoanDB]:
        return self._all(
            select(LoanDB)
            .where(LoanDB.user_id == user_id, LoanDB.return_date.is_(None))
            .order_by(desc(LoanDB.issue_date)),
            "Failed to list open loans for user",
        )

    def list_open_past_due(self, now: datetime) -> list[LoanDB]:
        """Open loans whose due date has passed, oldest due first."""
        return self._all(
            select(LoanDB)
            .where(LoanDB.return_date.is_(None), LoanDB.due_date < now)
            .order_by(LoanDB.due_date),
            "Failed to list overdue loans",
        )

    def list_for_user(self, user_id: str) -> list[LoanDB]:
        return self._all(
            select(LoanDB).where(LoanDB.user_id == user_id).order_by(desc(LoanDB.issue_date)),
            "Failed to list loan history",
        )

    def list_all(self) -> list[LoanDB]:
        return self._all(
            select(LoanDB).order_by(desc(LoanDB.issue_date)), "Failed to list loans"
        )

    # === Counts ===

    def count_open(self) -> int:
        return self._count(LoanDB.return_date.is_(None))

    def count_open_for_book(self, book_id: str) -> int:
        return self._count(LoanDB.book_id == book_id, LoanDB.return_date.is_(None))

    def count_overdue(self, now: datetime) -> int:
        return self._count(LoanDB.return_date.is_(None), LoanDB.due_date < now)

    def count_returned(self) -> int:
        return self._count(LoanDB.return_date.is_not(None))

    # === Conversion ===

    def to_model(self, row: LoanDB) -> LoanModel:
        """Convert loan DB object to Pydantic model."""
        return LoanModel(
            id=row.id,
            book_id=row.book_id,
            user_id=row.user_id,
            issue_date=row.issue_date,
            due_date=row.due_date,
            return_date=row.return_date,
            status=LoanStatus(row.status.value),
            fine=row.fine,
            book_title=row.book.title if row.book else None,
            user_name=row.user.name if row.user else None,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _all(self, query, error_msg: str) -> list[LoanDB]:
        # Listings show titles and borrower names; load them with the rows
        query = query.options(selectinload(LoanDB.book), selectinload(LoanDB.user))
        return list(safe_query(self.session, lambda s: s.execute(query).scalars().all(), error_msg))

    def _count(self, *criteria) -> int:
        query = select(func.count()).select_from(LoanDB).where(*criteria)
        return (
            safe_query(self.session, lambda s: s.execute(query).scalar(), "Failed to count loans")
            or 0
        )
