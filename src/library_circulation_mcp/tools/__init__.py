"""
MCP Tools for the Library Circulation Server.

Tools are the state-changing half of the server: issuing and returning books,
sweeping overdue loans, and repairing copy counters. Each tool is a dictionary
with its name, description, JSON input schema and async handler.
"""

from .circulation import issue_book, reconcile_book, refresh_overdue_loans, return_book

# Export all tools for server registration
all_tools = [
    issue_book,
    return_book,
    refresh_overdue_loans,
    reconcile_book,
]

__all__ = [
    "all_tools",
    "issue_book",
    "reconcile_book",
    "refresh_overdue_loans",
    "return_book",
]
