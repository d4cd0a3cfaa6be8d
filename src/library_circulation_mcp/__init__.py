"""
Library Circulation MCP Server Package.

This package implements an MCP (Model Context Protocol) server that tracks
library circulation: books, users, and a ledger of loans with due dates,
returns and late fines.

Key Components:
- models: Pydantic models for data validation and serialization
- database: SQLAlchemy schema, repositories and session management
- lifecycle: Pure loan lifecycle rules (due dates, overdue status, fines)
- circulation: Transactional issue/return coordinator
- config: Configuration management with Pydantic v2
- resources: MCP resources (read-only endpoints)
- tools: MCP tools (operations with side effects)
"""

__version__ = "0.1.0"

# Make database module available at package level
from . import database

__all__ = [
    "__version__",
    "database",
]
