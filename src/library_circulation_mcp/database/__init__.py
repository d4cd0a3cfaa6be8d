"""
Database package for the Library Circulation MCP Server.

This package provides:
- SQLAlchemy schema definitions (schema.py)
- Session management and SQLite concurrency settings (session.py)
- Repositories for books, users and loans
- Faker-based seeding (seed.py)

Repositories never commit. The circulation service owns every transaction.
"""

from .book_repository import BookCreateSchema, BookRepository
from .loan_repository import LoanRepository
from .repository import (
    BaseRepository,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    RepositoryException,
)
from .schema import Base, Book, Loan, LoanStatusEnum, User
from .session import DatabaseManager, get_db_manager, session_scope, set_db_manager
from .user_repository import UserCreateSchema, UserRepository

__all__ = [
    "Base",
    "BaseRepository",
    "Book",
    "BookCreateSchema",
    "BookRepository",
    "ConflictError",
    "DatabaseManager",
    "InvalidRequestError",
    "Loan",
    "LoanRepository",
    "LoanStatusEnum",
    "NotFoundError",
    "RepositoryException",
    "User",
    "UserCreateSchema",
    "UserRepository",
    "get_db_manager",
    "session_scope",
    "set_db_manager",
]
