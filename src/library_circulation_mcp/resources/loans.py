"""Loan Resources - Circulation Ledger

Read-only views of the loan ledger. Every listing refreshes the overdue status
and fine of the open loans it returns before answering, so clients never see
a stale "issued" on a loan that is already late.

Resources:
- library://users/{user_id}/loans - A user's open loans
- library://users/{user_id}/history - A user's full loan history
- library://loans/overdue - Open loans past their due date
- library://loans/all - Every loan in the ledger
"""

import asyncio
import logging
from typing import Any

from fastmcp.exceptions import ResourceError
from pydantic import BaseModel, Field

from .. import circulation
from ..database.repository import NotFoundError
from ..models.loan import Loan
from ..observability import trace_resource

logger = logging.getLogger(__name__)


class LoanListResponse(BaseModel):
    """Response schema for loan listings."""

    loans: list[Loan] = Field(..., description="Loans in this listing")
    count: int = Field(..., description="Number of loans returned")
    total_fines: int = Field(..., description="Sum of fines across the listed loans")


def _listing(loans: list[Loan]) -> dict[str, Any]:
    return LoanListResponse(
        loans=loans, count=len(loans), total_fines=sum(loan.fine for loan in loans)
    ).model_dump(mode="json")


@trace_resource("user_loans")
async def get_user_loans_handler(user_id: str) -> dict[str, Any]:
    """Returns the user's open loans, newest first."""
    try:
        logger.debug("MCP Resource Request - users/%s/loans", user_id)
        service = circulation.get_circulation_service()
        loans = await asyncio.to_thread(service.list_open_loans_for_user, user_id)
        return _listing(loans)

    except Exception as e:
        logger.exception("Error in users/{user_id}/loans resource")
        raise ResourceError(f"Failed to retrieve loans for user {user_id}: {e!s}") from e


@trace_resource("user_history")
async def get_user_history_handler(user_id: str) -> dict[str, Any]:
    """Returns every loan the user ever had, newest first."""
    try:
        logger.debug("MCP Resource Request - users/%s/history", user_id)
        service = circulation.get_circulation_service()
        loans = await asyncio.to_thread(service.get_user_history, user_id)
        return _listing(loans)

    except NotFoundError as e:
        raise ResourceError(str(e)) from e
    except Exception as e:
        logger.exception("Error in users/{user_id}/history resource")
        raise ResourceError(f"Failed to retrieve history for user {user_id}: {e!s}") from e


@trace_resource("overdue_loans")
async def list_overdue_loans_handler() -> dict[str, Any]:
    """Returns open loans past due with their current fines, oldest due first."""
    try:
        service = circulation.get_circulation_service()
        loans = await asyncio.to_thread(service.list_overdue_loans)
        return _listing(loans)

    except Exception as e:
        logger.exception("Error in loans/overdue resource")
        raise ResourceError(f"Failed to retrieve overdue loans: {e!s}") from e


@trace_resource("all_loans")
async def list_all_loans_handler() -> dict[str, Any]:
    """Returns the whole ledger, newest first."""
    try:
        service = circulation.get_circulation_service()
        loans = await asyncio.to_thread(service.list_all_loans)
        return _listing(loans)

    except Exception as e:
        logger.exception("Error in loans/all resource")
        raise ResourceError(f"Failed to retrieve loans: {e!s}") from e


loan_resources: list[dict[str, Any]] = [
    {
        "uri_template": "library://users/{user_id}/loans",
        "name": "User Loans",
        "description": "Books a user currently has out, with up-to-date overdue status and fines",
        "mime_type": "application/json",
        "handler": get_user_loans_handler,
    },
    {
        "uri_template": "library://users/{user_id}/history",
        "name": "User Loan History",
        "description": "Every loan a user has had, including returned ones",
        "mime_type": "application/json",
        "handler": get_user_history_handler,
    },
    {
        "uri": "library://loans/overdue",
        "name": "Overdue Loans",
        "description": "Open loans past their due date with the fine owed so far",
        "mime_type": "application/json",
        "handler": list_overdue_loans_handler,
    },
    {
        "uri": "library://loans/all",
        "name": "All Loans",
        "description": "The full loan ledger; open loans are refreshed before listing",
        "mime_type": "application/json",
        "handler": list_all_loans_handler,
    },
]
