"""
RTSM - Database Configuration
=============================
Database connection settings and configuration management.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
env_path = Path(__file__).parent.parent.parent / '.env'
load_dotenv(env_path)


@dataclass
class DatabaseConfig:
    """Database configuration settings."""

    host: str = field(default_factory=lambda: os.getenv('DB_HOST', 'localhost'))
    port: int = field(default_factory=lambda: int(os.getenv('DB_PORT', '5432')))
    database: str = field(default_factory=lambda: os.getenv('DB_NAME', 'rtsm'))
    username: str = field(default_factory=lambda: os.getenv('DB_USER', 'postgres'))
    password: str = field(default_factory=lambda: os.getenv('DB_PASSWORD', 'postgres'))

    # Full URL override (e.g. sqlite:///rtsm.db for local runs and tests)
    url: Optional[str] = field(default_factory=lambda: os.getenv('DATABASE_URL'))

    # Connection pool settings
    pool_size: int = field(default_factory=lambda: int(os.getenv('DB_POOL_SIZE', '10')))
    max_overflow: int = field(default_factory=lambda: int(os.getenv('DB_MAX_OVERFLOW', '20')))
    pool_timeout: int = field(default_factory=lambda: int(os.getenv('DB_POOL_TIMEOUT', '30')))
    pool_recycle: int = field(default_factory=lambda: int(os.getenv('DB_POOL_RECYCLE', '1800')))

    # Echo SQL statements (for debugging)
    echo: bool = field(default_factory=lambda: os.getenv('DB_ECHO', 'false').lower() == 'true')

    @property
    def connection_url(self) -> str:
        """Get SQLAlchemy connection URL."""
        if self.url:
            return self.url
        return f"postgresql://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"

    @property
    def is_sqlite(self) -> bool:
        return self.connection_url.startswith("sqlite")

    @property
    def display_name(self) -> str:
        """Connection target without credentials, for log lines."""
        if self.is_sqlite:
            return self.connection_url
        return f"{self.host}:{self.port}/{self.database}"

