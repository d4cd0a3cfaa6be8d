"""
Circulation tools for the Library Circulation MCP Server.

These are the state-changing operations of the lending engine:
1. issue_book: Lend a copy to a user and open a loan
2. return_book: Close a loan, freeze its fine and free the copy
3. refresh_overdue_loans: Sweep open loans past due and update their fines
4. reconcile_book: Repair a book's available counter from its open loans

Every handler validates its raw arguments with a Pydantic schema, runs the
blocking service call on a worker thread, and answers with a text message
plus structured ``data``. Failures come back as ``isError`` payloads whose
``data.error.kind`` tells the client what went wrong:

- ``validation``: malformed arguments
- ``not_found``: the book, user or loan does not exist
- ``conflict``: the library state forbids the operation
- ``internal``: anything unexpected
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .. import circulation
from ..database.repository import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    RepositoryException,
)
from ..models.loan import Loan
from ..observability import trace_tool

logger = logging.getLogger(__name__)


def _error(kind: str, message: str) -> dict[str, Any]:
    return {
        "isError": True,
        "content": [{"type": "text", "text": message}],
        "data": {"error": {"kind": kind, "message": message}},
    }


def _error_from_exception(tool_name: str, exc: Exception) -> dict[str, Any]:
    """Map a failure to an MCP error payload."""
    if isinstance(exc, ValidationError | InvalidRequestError):
        logger.info("%s rejected - invalid arguments: %s", tool_name, exc)
        return _error("validation", f"Invalid {tool_name} parameters: {exc}")
    if isinstance(exc, NotFoundError):
        logger.info("%s failed - not found: %s", tool_name, exc)
        return _error("not_found", str(exc))
    if isinstance(exc, ConflictError):
        logger.info("%s failed - conflict: %s", tool_name, exc)
        return _error("conflict", str(exc))
    if isinstance(exc, RepositoryException):
        logger.exception("%s failed in the database layer", tool_name)
        return _error("internal", f"{tool_name} failed: {exc!s}")

    logger.exception("Unexpected error in %s tool", tool_name)
    return _error("internal", f"An unexpected error occurred: {exc!s}")


def _loan_data(loan: Loan) -> dict[str, Any]:
    return loan.model_dump(mode="json")


# =============================================================================
# ISSUE TOOL
# =============================================================================


class IssueBookInput(BaseModel):
    """Input schema for the issue_book tool."""

    book_id: str = Field(
        ...,
        description="Identifier of the book to lend",
        pattern=r"^book_[a-zA-Z0-9]{6,}$",
        examples=["book_3f9a1c2b7d4e"],
    )

    user_id: str = Field(
        ...,
        description="Identifier of the borrowing user",
        pattern=r"^user_[a-zA-Z0-9]{6,}$",
        examples=["user_8b2d6e0f1a3c"],
    )

    due_date: datetime | None = Field(
        default=None,
        description="Optional custom due date (ISO 8601). Defaults to the standard loan period",
        examples=["2024-02-15T17:00:00"],
    )


@trace_tool("issue_book")
async def issue_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the issue_book tool.

    Order of checks: book exists, user exists, no open loan for the pair,
    a copy is available. The first failing check decides the error.
    """
    try:
        params = IssueBookInput.model_validate(arguments)
        service = circulation.get_circulation_service()
        loan = await asyncio.to_thread(
            service.issue_loan, params.book_id, params.user_id, params.due_date
        )
    except Exception as e:
        return _error_from_exception("issue_book", e)

    message = (
        f"Issued book '{loan.book_title or loan.book_id}' to {loan.user_name or loan.user_id}. "
        f"Due date: {loan.due_date.strftime('%B %d, %Y')} ({loan.loan_period_days}-day loan)"
    )
    return {
        "content": [{"type": "text", "text": message}],
        "data": {"loan": _loan_data(loan)},
    }


# =============================================================================
# RETURN TOOL
# =============================================================================


class ReturnBookInput(BaseModel):
    """Input schema for the return_book tool."""

    loan_id: str = Field(
        ...,
        description="Identifier of the loan being returned",
        pattern=r"^loan_[a-zA-Z0-9]{6,}$",
        examples=["loan_5c7e9a1b3d2f"],
    )


@trace_tool("return_book")
async def return_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the return_book tool. The fine is fixed at the return time."""
    try:
        params = ReturnBookInput.model_validate(arguments)
        service = circulation.get_circulation_service()
        loan = await asyncio.to_thread(service.return_loan, params.loan_id)
    except Exception as e:
        return _error_from_exception("return_book", e)

    message = f"Returned loan '{loan.id}' for '{loan.book_title or loan.book_id}'."
    if loan.fine > 0:
        message += f" Late return: fine of {loan.fine} is due."
    else:
        message += " Returned on time, no fine."

    return {
        "content": [{"type": "text", "text": message}],
        "data": {"loan": _loan_data(loan)},
    }


# =============================================================================
# OVERDUE SWEEP TOOL
# =============================================================================


class RefreshOverdueInput(BaseModel):
    """The sweep takes no arguments."""


@trace_tool("refresh_overdue_loans")
async def refresh_overdue_loans_handler(arguments: dict[str, Any] | None = None) -> dict[str, Any]:
    """Handler for the refresh_overdue_loans tool."""
    try:
        RefreshOverdueInput.model_validate(arguments or {})
        service = circulation.get_circulation_service()
        updated = await asyncio.to_thread(service.sweep_overdue)
    except Exception as e:
        return _error_from_exception("refresh_overdue_loans", e)

    return {
        "content": [{"type": "text", "text": f"Refreshed {updated} overdue loan(s)."}],
        "data": {"updated": updated},
    }


# =============================================================================
# RECONCILE TOOL
# =============================================================================


class ReconcileBookInput(BaseModel):
    """Input schema for the reconcile_book tool."""

    book_id: str = Field(
        ...,
        description="Identifier of the book whose available counter should be checked",
        pattern=r"^book_[a-zA-Z0-9]{6,}$",
    )


@trace_tool("reconcile_book")
async def reconcile_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the reconcile_book tool."""
    try:
        params = ReconcileBookInput.model_validate(arguments)
        service = circulation.get_circulation_service()
        book = await asyncio.to_thread(service.reconcile_book, params.book_id)
    except Exception as e:
        return _error_from_exception("reconcile_book", e)

    return {
        "content": [
            {
                "type": "text",
                "text": (
                    f"Book '{book.id}': {book.available} of {book.quantity} copies available."
                ),
            }
        ],
        "data": {"book": book.model_dump(mode="json")},
    }


# =============================================================================
# TOOL DEFINITIONS
# =============================================================================

issue_book = {
    "name": "issue_book",
    "description": (
        "Lend a copy of a book to a user. Takes one copy off the shelf and opens a loan "
        "due after the standard loan period unless a due date is given. Fails if the book "
        "or user is unknown, no copy is free, or the user already holds this book."
    ),
    "inputSchema": IssueBookInput.model_json_schema(),
    "handler": issue_book_handler,
}

return_book = {
    "name": "return_book",
    "description": (
        "Return a loaned book. Closes the loan, fixes any late fine at the return time, "
        "and puts the copy back on the shelf."
    ),
    "inputSchema": ReturnBookInput.model_json_schema(),
    "handler": return_book_handler,
}

refresh_overdue_loans = {
    "name": "refresh_overdue_loans",
    "description": (
        "Mark open loans past their due date as overdue and update their fines. "
        "Returns how many loans changed."
    ),
    "inputSchema": RefreshOverdueInput.model_json_schema(),
    "handler": refresh_overdue_loans_handler,
}

reconcile_book = {
    "name": "reconcile_book",
    "description": (
        "Check a book's available copy count against its open loans and repair it "
        "if the two disagree."
    ),
    "inputSchema": ReconcileBookInput.model_json_schema(),
    "handler": reconcile_book_handler,
}
