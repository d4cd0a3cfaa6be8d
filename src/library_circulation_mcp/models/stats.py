"""Circulation statistics model."""

from datetime import datetime

from pydantic import BaseModel, Field


class LibraryStats(BaseModel):
    """Point-in-time counts for the circulation dashboard."""

    timestamp: datetime = Field(..., description="When the stats were calculated")

    total_books: int = Field(..., description="Titles in the catalog")
    total_copies: int = Field(..., description="Physical copies owned")
    available_copies: int = Field(..., description="Copies not attached to an open loan")
    total_categories: int = Field(..., description="Distinct catalog categories")
    total_users: int = Field(..., description="Registered users")

    open_loans: int = Field(..., description="Loans not yet returned (issued or overdue)")
    overdue_loans: int = Field(..., description="Open loans past their due date")
    returned_loans: int = Field(..., description="Loans closed by a return")
