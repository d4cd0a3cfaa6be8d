"""Library Circulation MCP Server - FastMCP Implementation

Exposes the lending engine of a library over MCP. Clients connect via stdio.

Features exposed:
- Tools: Issue, return, overdue sweep, and copy counter reconciliation
- Resources: Per-user loans and history, overdue and full ledgers, statistics
"""

import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import FastMCP

from .circulation import get_circulation_service
from .config import get_config
from .database.session import get_db_manager
from .observability import configure_tracing
from .resources import all_resources
from .sweeper import OverdueSweeper
from .tools import all_tools

# Initialize logging - stderr for logs, stdout for MCP protocol
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)

logger = logging.getLogger(__name__)

# Load configuration
config = get_config()


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
    """Run the overdue sweeper for as long as the server is up, if enabled."""
    sweeper = None
    if config.overdue_sweep_interval_seconds > 0:
        sweeper = OverdueSweeper(get_circulation_service(), config.overdue_sweep_interval_seconds)
        sweeper.start()
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        logger.info("MCP Server shutting down gracefully...")


# Create the FastMCP server instance
mcp = FastMCP(
    name=config.server_name,
    version=config.server_version,
    instructions=(
        "Library Circulation MCP Server - lends books to users and tracks their return. "
        "Use the issue_book and return_book tools to move copies, and read the "
        "library://users/{user_id}/loans, library://loans/overdue and "
        "library://stats/circulation resources for the current state. Overdue status "
        "and fines are always up to date when read."
    ),
    lifespan=lifespan,
)


def register_components(server: FastMCP) -> None:
    """Register every resource and tool with the server."""
    for resource in all_resources:
        uri = resource.get("uri_template", resource.get("uri"))
        if not uri:
            logger.error("Resource missing URI: %s", resource)
            continue

        logger.debug("Registering resource: %s with URI: %s", resource["name"], uri)
        try:
            server.resource(
                uri=uri,
                name=resource["name"],
                description=resource["description"],
                mime_type=resource["mime_type"],
            )(resource["handler"])
        except Exception:
            logger.exception("Failed to register resource %s", resource["name"])
            raise

    logger.info("Registered %d resources", len(all_resources))

    for tool in all_tools:
        logger.debug("Registering tool: %s", tool["name"])
        try:
            server.tool(
                name=tool["name"],
                description=tool["description"],
            )(tool["handler"])
        except Exception:
            logger.exception("Failed to register tool %s", tool["name"])
            raise

    logger.info("Registered %d tools", len(all_tools))


register_components(mcp)


def run_stdio_server() -> None:
    """Run the MCP server using stdio transport.

    Stdin receives JSON-RPC requests, stdout sends responses.
    """
    logger.info("Starting %s v%s on stdio transport", config.server_name, config.server_version)

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled - verbose protocol logging active")
    else:
        logging.getLogger().setLevel(config.log_level)
        logging.getLogger("fastmcp").setLevel(logging.WARNING)

    def signal_handler(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, initiating shutdown...", signum)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        logger.info("MCP Server ready and waiting for connections...")
        mcp.run(transport="stdio")
    except Exception:
        logger.exception("Fatal error in MCP server")
        sys.exit(1)


def main() -> None:
    """Main entry point for the MCP server."""
    try:
        logger.info("=" * 60)
        logger.info("Library Circulation MCP Server")
        logger.info("Version: %s", config.server_version)
        logger.info("Transport: %s", config.transport)
        logger.info("Database: %s", config.database_path)
        logger.info(
            "Loan period: %d days, fine: %d per day",
            config.loan_period_days,
            config.daily_fine_rate,
        )
        logger.info("=" * 60)

        configure_tracing(config)

        db = get_db_manager()
        db.init_database()
        if not db.verify_connection():
            logger.error("Database at %s is not reachable", config.database_path)
            sys.exit(1)

        run_stdio_server()

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.exception("Failed to start MCP server")
        sys.exit(1)


if __name__ == "__main__":
    main()
