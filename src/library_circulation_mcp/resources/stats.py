"""Statistics Resources - Circulation Metrics

Resources:
- library://stats/circulation - Current circulation counts
"""

import asyncio
import logging
from typing import Any

from fastmcp.exceptions import ResourceError

from .. import circulation
from ..observability import trace_resource

logger = logging.getLogger(__name__)


@trace_resource("circulation_stats")
async def get_circulation_stats_handler() -> dict[str, Any]:
    """Returns copy, user and loan counts; overdue is judged from due dates."""
    try:
        service = circulation.get_circulation_service()
        stats = await asyncio.to_thread(service.get_stats)
        return stats.model_dump(mode="json")

    except Exception as e:
        logger.exception("Error calculating circulation stats")
        raise ResourceError(f"Failed to calculate circulation stats: {e!s}") from e


stats_resources: list[dict[str, Any]] = [
    {
        "uri": "library://stats/circulation",
        "name": "Circulation Statistics",
        "description": (
            "Catalog size, copies on the shelf, registered users, and open, overdue "
            "and returned loan counts"
        ),
        "mime_type": "application/json",
        "handler": get_circulation_stats_handler,
    },
]
