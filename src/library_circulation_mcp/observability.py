"""Logfire tracing for the Library Circulation MCP Server."""

import functools
import logging
import os
from collections.abc import Callable
from datetime import datetime
from typing import Any

import logfire

from .config import ServerConfig

logger = logging.getLogger(__name__)


def configure_tracing(config: ServerConfig) -> None:
    """
    Configure Logfire for this process.

    Spans are only exported when a ``LOGFIRE_TOKEN`` is present, so local runs
    and tests need no account.
    """
    logfire.configure(
        service_name=config.server_name,
        service_version=config.server_version,
        environment=os.getenv("ENVIRONMENT", "development"),
        send_to_logfire="if-token-present",
        console=False,
    )
    logger.debug("Logfire tracing configured for %s", config.server_name)


def trace_tool(tool_name: str):
    """Decorator to trace MCP tool execution."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(arguments: dict[str, Any] | None = None):
            with logfire.span(
                f"tool.execution.{tool_name}",
                tool_name=tool_name,
            ) as span:
                start_time = datetime.now()
                _add_attributes(span, "input", arguments or {})

                try:
                    result = await func(arguments)
                except Exception as e:
                    span.set_attribute("tool.success", False)
                    span.set_attribute("tool.error", str(e))
                    raise

                span.set_attribute("tool.success", not result.get("isError", False))
                span.set_attribute(
                    "tool.duration_ms", (datetime.now() - start_time).total_seconds() * 1000
                )
                error = result.get("data", {}).get("error")
                if error:
                    span.set_attribute("tool.error_kind", error["kind"])
                return result

        return wrapper

    return decorator


def trace_resource(resource_type: str):
    """Lightweight decorator for resource reads."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with logfire.span(
                f"resource.read.{resource_type}",
                resource_type=resource_type,
                **{f"param.{k}": v for k, v in kwargs.items() if isinstance(v, str)},
            ) as span:
                result = await func(*args, **kwargs)

                if isinstance(result, dict) and "count" in result:
                    span.set_attribute("result.item_count", result["count"])

                return result

        return wrapper

    return decorator


def _add_attributes(span, prefix: str, data: dict):
    for key, value in data.items():
        if isinstance(value, str | int | float | bool):
            span.set_attribute(f"{prefix}.{key}", value)
