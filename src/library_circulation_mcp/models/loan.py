"""
Loan models for the Library Circulation MCP Server.

A Loan is one issue-to-return transaction for a single physical copy. It is
created by the issue_book tool, mutated only by status refreshes and by the
return_book tool, and never deleted: once returned it is an audit record.

The persisted ``status`` and ``fine`` are a cache of a pure function over
``due_date``, ``return_date`` and the current time (see ``lifecycle``).
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LoanStatus(str, Enum):
    """Lifecycle state of a loan."""

    ISSUED = "issued"
    OVERDUE = "overdue"
    RETURNED = "returned"


class Loan(BaseModel):
    """
    Represents a book loan transaction.

    Tracks when the copy went out, when it is due back, when it actually came
    back, and the fine accrued for lateness.
    """

    id: str = Field(
        ...,
        description="Unique identifier for the loan",
        pattern=r"^loan_[a-zA-Z0-9]{6,}$",
        examples=["loan_5e6f7a8b9c0d"],
    )

    book_id: str = Field(
        ...,
        description="ID of the book a copy of which is on loan",
        pattern=r"^book_[a-zA-Z0-9]{6,}$",
    )

    user_id: str = Field(
        ...,
        description="ID of the user who borrowed the copy",
        pattern=r"^user_[a-zA-Z0-9]{6,}$",
    )

    issue_date: datetime = Field(
        ...,
        description="Date and time when the copy was issued",
    )

    due_date: datetime = Field(
        ...,
        description="Date and time by which the copy should be returned",
    )

    return_date: datetime | None = Field(
        None,
        description="Actual date and time when the copy was returned",
    )

    status: LoanStatus = Field(
        default=LoanStatus.ISSUED,
        description="Current lifecycle state of the loan",
    )

    fine: int = Field(
        default=0,
        description="Fine accrued for late return, in whole currency units",
        ge=0,
    )

    book_title: str | None = Field(
        None,
        description="Title of the borrowed book, for display",
    )

    user_name: str | None = Field(
        None,
        description="Name of the borrower, for display",
    )

    created_at: datetime | None = Field(
        None,
        description="When this record was created",
    )

    updated_at: datetime | None = Field(
        None,
        description="When this record was last updated",
    )

    @model_validator(mode="after")
    def validate_dates(self) -> "Loan":
        """Ensure the return happened after the issue."""
        if self.return_date and self.return_date < self.issue_date:
            raise ValueError("Return date cannot be before issue date")
        return self

    @property
    def is_open(self) -> bool:
        """An open loan still holds a copy of the book."""
        return self.return_date is None

    @property
    def loan_period_days(self) -> int:
        """Whole days between issue and due date."""
        return (self.due_date - self.issue_date).days

    model_config = ConfigDict(
        # Re-validate on assignment so lifecycle updates can't store bad values
        validate_assignment=True,
        # Use string values for enums in JSON serialization
        use_enum_values=True,
        populate_by_name=True,
        validate_default=True,
        json_schema_extra={
            "example": {
                "id": "loan_5e6f7a8b9c0d",
                "book_id": "book_3f9a1c2b7d4e",
                "user_id": "user_8c1d2e3f4a5b",
                "issue_date": "2024-03-01T10:30:00",
                "due_date": "2024-03-15T10:30:00",
                "return_date": None,
                "status": "issued",
                "fine": 0,
            }
        },
    )
