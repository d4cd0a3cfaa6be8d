"""Configuration management for the Library Circulation MCP Server.

Configuration covers three areas:
1. Protocol Metadata - Server identification for the MCP handshake
2. Persistence - Where the loan ledger and catalog live
3. Circulation Policy - Loan period, fine rate, and overdue sweep cadence
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseSettings):
    """Server configuration loaded from the environment.

    Every field can be overridden with a ``LIBRARY_CIRCULATION_`` prefixed
    environment variable or an entry in a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        # Use LIBRARY_CIRCULATION_ prefix for all env vars
        env_prefix="LIBRARY_CIRCULATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Server Metadata (Required by MCP Protocol) ===

    server_name: str = Field(
        default="library-circulation",
        description="MCP server name used in protocol handshake",
        pattern=r"^[a-z0-9-]+$",
    )

    server_version: str = Field(
        default="0.1.0",
        description="Server version for capability negotiation",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$",
    )

    # === Database Configuration ===

    database_path: Path = Field(
        default=Path("data/circulation.db"),
        description="SQLite database file path",
    )

    sqlite_busy_timeout_seconds: float = Field(
        default=30.0,
        description="How long a SQLite writer waits for the database lock",
        gt=0,
    )

    # === Transport Configuration ===

    transport: str = Field(
        default="stdio",
        description="Transport mechanism; the server speaks MCP over stdio only",
        pattern=r"^stdio$",
    )

    # === Circulation Policy ===

    loan_period_days: int = Field(
        default=14,
        description="Default loan period in calendar days when no due date is supplied",
        ge=1,
        le=365,
    )

    daily_fine_rate: int = Field(
        default=5,
        description="Fine charged per overdue day, in whole currency units",
        ge=0,
    )

    overdue_sweep_interval_seconds: int = Field(
        default=0,
        description="Seconds between background overdue sweeps (0 disables the sweep)",
        ge=0,
    )

    lock_timeout_seconds: float = Field(
        default=10.0,
        description="How long an issue or return waits for another operation on the same book",
        gt=0,
    )

    # === Development Configuration ===

    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR)$",
    )

    # === Validation Methods ===

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Ensure the database directory exists."""
        abs_path = v.absolute()
        abs_path.parent.mkdir(parents=True, exist_ok=True)

        if not abs_path.parent.is_dir():
            raise ValueError(f"Database directory {abs_path.parent} is not accessible")

        return abs_path

    @field_validator("server_name")
    @classmethod
    def validate_server_name(cls, v: str) -> str:
        """Validate server name length."""
        if len(v) < 3:
            raise ValueError("Server name must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Server name must not exceed 50 characters")
        return v

    # === Computed Properties ===

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug or self.log_level == "DEBUG"

    @property
    def server_info(self) -> dict[str, str]:
        """Server information sent during the MCP handshake."""
        return {
            "name": self.server_name,
            "version": self.server_version,
            "transport": self.transport,
        }

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        return f"sqlite:///{self.database_path}"


# === Global Configuration Instance ===


class _ConfigStore:
    """Internal storage for configuration singleton."""

    _instance: ServerConfig | None = None


def get_config() -> ServerConfig:
    """Get or create the global configuration instance."""
    if _ConfigStore._instance is None:  # type: ignore[reportPrivateUsage]
        _ConfigStore._instance = ServerConfig()  # type: ignore[reportPrivateUsage]
    return _ConfigStore._instance  # type: ignore[reportPrivateUsage]


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    _ConfigStore._instance = None  # type: ignore[reportPrivateUsage]
