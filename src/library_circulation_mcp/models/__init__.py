"""
Library Circulation MCP Server Models.

Pydantic models for the entities the circulation core works with:
- Book: Catalog titles with quantity/available counters
- User: Members who can borrow
- Loan: Issue-to-return transactions with status and fine
- LibraryStats: Dashboard counts
"""

from .book import Book
from .loan import Loan, LoanStatus
from .stats import LibraryStats
from .user import User

__all__ = [
    "Book",
    "LibraryStats",
    "Loan",
    "LoanStatus",
    "User",
]
