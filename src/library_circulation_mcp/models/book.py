"""
Book model for the Library Circulation MCP Server.

Books belong to the catalog, which the circulation core consumes but does not
own. The core only reads a book and moves its ``available`` counter up or
down as copies go out on loan and come back.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Book(BaseModel):
    """
    Represents a title in the catalog with its copy counters.

    ``quantity`` is the number of physical copies the library owns and
    ``available`` is the number of those copies not attached to an open loan.
    """

    id: str = Field(
        ...,
        description="Unique identifier for the book",
        pattern=r"^book_[a-zA-Z0-9]{6,}$",
        examples=["book_3f9a1c2b7d4e"],
    )

    title: str = Field(
        ...,
        description="The title of the book",
        min_length=1,
        max_length=200,
        examples=["The Great Gatsby", "To Kill a Mockingbird"],
    )

    author: str = Field(
        ...,
        description="Author name as printed on the title page",
        min_length=1,
        max_length=100,
        examples=["F. Scott Fitzgerald", "Harper Lee"],
    )

    isbn: str | None = Field(
        None,
        description="ISBN-13, stored without hyphens",
        examples=["9780743273565"],
    )

    category: str | None = Field(
        None,
        description="Catalog category label",
        max_length=100,
        examples=["Fiction", "Computer Science"],
    )

    quantity: int = Field(
        ...,
        description="Total number of copies owned by the library",
        ge=0,
        examples=[1, 3, 10],
    )

    available: int = Field(
        ...,
        description="Number of copies currently available for loan",
        ge=0,
        examples=[0, 1, 5],
    )

    created_at: datetime | None = Field(
        None,
        description="Timestamp when the book was added to the catalog",
    )

    updated_at: datetime | None = Field(
        None,
        description="Timestamp when the book record was last updated",
    )

    @field_validator("isbn")
    @classmethod
    def normalize_isbn(cls, v: str | None) -> str | None:
        """Normalize ISBN by removing hyphens for consistent storage."""
        if v is None:
            return v
        normalized = v.replace("-", "")
        if len(normalized) != 13 or not normalized.isdigit():
            raise ValueError("ISBN must be 13 digits")
        return normalized

    @model_validator(mode="after")
    def validate_copies(self) -> "Book":
        """Ensure available copies doesn't exceed total copies."""
        if self.available > self.quantity:
            raise ValueError("Available copies cannot exceed quantity")
        return self

    @property
    def is_available(self) -> bool:
        """Check if the book has any available copies."""
        return self.available > 0

    @property
    def on_loan(self) -> int:
        """Number of copies currently attached to open loans."""
        return self.quantity - self.available

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "book_3f9a1c2b7d4e",
                "title": "The Great Gatsby",
                "author": "F. Scott Fitzgerald",
                "isbn": "9780743273565",
                "category": "Fiction",
                "quantity": 3,
                "available": 2,
            }
        }
    )
