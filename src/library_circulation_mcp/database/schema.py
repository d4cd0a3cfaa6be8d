"""
SQLAlchemy database schema for the Library Circulation MCP Server.

Three tables back the server:
1. books - the catalog, with ``quantity`` and ``available`` copy counters
2. users - the member directory
3. loans - the ledger of issue-to-return transactions

The availability invariant (``available == quantity - open loans``) is kept
by the circulation service, but the database refuses the states that would
break it outright: counters outside ``0..quantity`` and a second open loan
for the same (book, user) pair.
"""

import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

# Base class for all SQLAlchemy models
Base = declarative_base()


class LoanStatusEnum(str, enum.Enum):
    """Database enum for loan status."""

    ISSUED = "issued"
    OVERDUE = "overdue"
    RETURNED = "returned"


class Book(Base):
    """
    Books table - the library catalog.

    MCP Usage:
    - Tools: issue_book and return_book move ``available`` down and up
    - Resources: library://stats/circulation aggregates the counters
    """

    __tablename__ = "books"

    id = Column(String(50), primary_key=True)
    title = Column(String(200), nullable=False, index=True)
    author = Column(String(100), nullable=False)
    isbn = Column(String(13), nullable=True, unique=True)
    category = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    available = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=True, default=func.now(), onupdate=func.now())

    # Relationships
    loans = relationship("Loan", back_populates="book")

    __table_args__ = (
        Index("idx_book_category", "category"),
        CheckConstraint("id LIKE 'book_%'", name="check_book_id_format"),
        CheckConstraint("quantity >= 0", name="check_quantity_non_negative"),
        CheckConstraint("available >= 0", name="check_available_non_negative"),
        CheckConstraint("available <= quantity", name="check_available_not_exceed_quantity"),
    )


class User(Base):
    """
    Users table - library members who can borrow.

    Only existence is consulted by circulation; authentication is handled
    outside this server.
    """

    __tablename__ = "users"

    id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False, index=True)
    email = Column(String(255), nullable=False, unique=True)

    created_at = Column(DateTime, nullable=False, default=func.now())

    loans = relationship("Loan", back_populates="user")

    __table_args__ = (CheckConstraint("id LIKE 'user_%'", name="check_user_id_format"),)


class Loan(Base):
    """
    Loans table - one row per issue transaction.

    MCP Usage:
    - Tools: issue_book inserts rows, return_book closes them
    - Resources: open, overdue and history listings read them
    - Rows are never deleted; returned loans form the audit trail
    """

    __tablename__ = "loans"

    id = Column(String(50), primary_key=True)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    user_id = Column(String(50), ForeignKey("users.id"), nullable=False)
    issue_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)
    status = Column(
        # Store the lowercase values so the partial index below can name them
        Enum(
            LoanStatusEnum,
            name="loan_status",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=LoanStatusEnum.ISSUED,
    )
    fine = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    # Relationships
    book = relationship("Book", back_populates="loans")
    user = relationship("User", back_populates="loans")

    __table_args__ = (
        Index("idx_loan_user", "user_id"),
        Index("idx_loan_book", "book_id"),
        Index("idx_loan_status", "status"),
        Index("idx_loan_due_date", "due_date"),
        # At most one open loan per (book, user)
        Index(
            "uq_loan_open_book_user",
            "book_id",
            "user_id",
            unique=True,
            sqlite_where=text("status != 'returned'"),
            postgresql_where=text("status != 'returned'"),
        ),
        CheckConstraint("id LIKE 'loan_%'", name="check_loan_id_format"),
        CheckConstraint("fine >= 0", name="check_fine_non_negative"),
    )
