"""
User model for the Library Circulation MCP Server.

Users come from the library's member directory. Circulation only needs to
know that a user exists; authentication and roles live elsewhere.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class User(BaseModel):
    """A library member who can borrow books."""

    id: str = Field(
        ...,
        description="Unique identifier for the user",
        pattern=r"^user_[a-zA-Z0-9]{6,}$",
        examples=["user_8c1d2e3f4a5b"],
    )

    name: str = Field(
        ...,
        description="Full name of the user",
        min_length=2,
        max_length=200,
        examples=["John Smith", "Maria Garcia"],
    )

    email: EmailStr = Field(
        ...,
        description="Contact email address",
        examples=["john.smith@example.com"],
    )

    created_at: datetime | None = Field(
        None,
        description="When the user was registered",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "user_8c1d2e3f4a5b",
                "name": "John Smith",
                "email": "john.smith@example.com",
            }
        }
    )
