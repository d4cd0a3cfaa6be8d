"""
Loan lifecycle rules.

Everything in this module is a pure function of a loan's dates and a
reference time. Nothing here touches the database or the catalog; the
circulation service decides when to persist what these functions compute.

State machine::

    issued  --(now > due_date)-->  overdue
    issued  --(return)---------->  returned
    overdue --(return)---------->  returned
    returned is terminal

Fine policy: every started day past the due date is charged in full, so a
loan returned one hour late pays for one day and one returned 25 hours late
pays for two. A loan returned exactly at its due date is not late.
"""

import math
from datetime import datetime, timedelta

from .database.repository import ConflictError, InvalidRequestError
from .models.loan import Loan, LoanStatus

DEFAULT_LOAN_PERIOD_DAYS = 14
DEFAULT_DAILY_FINE_RATE = 5

_SECONDS_PER_DAY = 24 * 60 * 60


def compute_due_date(issue_date: datetime, loan_period_days: int = DEFAULT_LOAN_PERIOD_DAYS) -> datetime:
    """Add the loan period, in calendar days, to the issue date."""
    if loan_period_days < 0:
        raise InvalidRequestError(f"Loan period cannot be negative: {loan_period_days}")
    return issue_date + timedelta(days=loan_period_days)


def overdue_days(due_date: datetime, reference_date: datetime) -> int:
    """Number of started days between the due date and the reference time."""
    if reference_date <= due_date:
        return 0
    late_seconds = (reference_date - due_date).total_seconds()
    return math.ceil(late_seconds / _SECONDS_PER_DAY)


def compute_fine(
    due_date: datetime, reference_date: datetime, daily_rate: int = DEFAULT_DAILY_FINE_RATE
) -> int:
    """
    Fine owed at ``reference_date`` for a loan due at ``due_date``.

    Args:
        due_date: When the copy was due back
        reference_date: "Now" for an open loan, the return time for a closed one
        daily_rate: Charge per started overdue day

    Returns:
        0 when not late, otherwise overdue days times the daily rate
    """
    if daily_rate < 0:
        raise InvalidRequestError(f"Daily fine rate cannot be negative: {daily_rate}")
    return overdue_days(due_date, reference_date) * daily_rate


def derive_status(loan: Loan, now: datetime) -> LoanStatus:
    """Status implied by the loan's dates at ``now``."""
    if loan.return_date is not None:
        return LoanStatus.RETURNED
    if now > loan.due_date:
        return LoanStatus.OVERDUE
    return LoanStatus.ISSUED


def refresh_status(
    loan: Loan, now: datetime, daily_rate: int = DEFAULT_DAILY_FINE_RATE
) -> bool:
    """
    Bring a loan's cached status and fine up to date.

    Returned loans are left alone: their fine was fixed at return time.
    Calling this twice with the same ``now`` changes nothing the second time.

    Returns:
        True if status or fine changed
    """
    if loan.return_date is not None:
        return False

    status = derive_status(loan, now)
    fine = compute_fine(loan.due_date, now, daily_rate) if status == LoanStatus.OVERDUE else loan.fine

    changed = status != loan.status or fine != loan.fine
    if changed:
        loan.status = status
        loan.fine = fine
    return changed


def close_loan(
    loan: Loan, returned_at: datetime, daily_rate: int = DEFAULT_DAILY_FINE_RATE
) -> Loan:
    """
    Apply a return to an open loan and freeze its fine.

    Raises:
        ConflictError: If the loan was already returned
        InvalidRequestError: If the return predates the issue
    """
    if loan.return_date is not None or loan.status == LoanStatus.RETURNED:
        raise ConflictError(f"Loan {loan.id} has already been returned")
    if returned_at < loan.issue_date:
        raise InvalidRequestError(
            f"Return time {returned_at.isoformat()} is before issue time {loan.issue_date.isoformat()}"
        )

    loan.fine = compute_fine(loan.due_date, returned_at, daily_rate)
    loan.return_date = returned_at
    loan.status = LoanStatus.RETURNED
    return loan
