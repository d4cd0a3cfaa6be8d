"""Library Circulation MCP Resources Package

Read-only views of the loan ledger and circulation statistics. State changes
go through the tools package.
"""

from .loans import loan_resources
from .stats import stats_resources

# Combine all resources
all_resources = loan_resources + stats_resources

__all__ = [
    "all_resources",
    "loan_resources",
    "stats_resources",
]
