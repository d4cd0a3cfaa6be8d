"""
User repository implementation for the Library Circulation MCP Server.

Circulation only asks one question of the member directory: does this user
exist? Registration is here for seed data and tests.
"""

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..models.user import User as UserModel
from .repository import BaseRepository, ConflictError, generate_id, safe_query
from .schema import User as UserDB


class UserCreateSchema(BaseModel):
    """Schema for registering a user."""

    name: str = Field(..., min_length=2, max_length=200)
    email: EmailStr


class UserRepository(BaseRepository[UserDB, UserCreateSchema, UserModel]):
    """Repository for the member directory."""

    @property
    def model_class(self):
        return UserDB

    @property
    def response_schema(self):
        return UserModel

    def create(self, data: UserCreateSchema) -> UserModel:
        """
        Register a user.

        Raises:
            ConflictError: If the email is already registered
        """
        user = UserDB(id=generate_id("user"), name=data.name, email=str(data.email).lower())
        try:
            with self.session.begin_nested():
                self.session.add(user)
                self.session.flush()
        except IntegrityError as e:
            raise ConflictError(f"User with email {data.email} already exists") from e
        return self._to_response_model(user)

    def get_by_email(self, email: str) -> UserModel | None:
        user = safe_query(
            self.session,
            lambda s: s.execute(
                select(UserDB).where(UserDB.email == email.lower())
            ).scalar_one_or_none(),
            "Failed to get user by email",
        )
        return self._to_response_model(user) if user else None
