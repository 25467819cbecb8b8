"""
Read Model Settings

Environment Variables:
    DATABASE_URL: PostgreSQL URL, e.g. postgresql://user:pw@host:5432/certregistry
    DATABASE_CONNECT_TIMEOUT: Seconds to wait for a connection (default 10)
    DATABASE_LOCK_TIMEOUT_MS: Wait for the indexer cursor lock (default 2000)
    DATABASE_STATEMENT_TIMEOUT_MS: Per-statement limit (default 10000)

    READMODEL_DRIVER: "memory" or "psycopg2". Defaults to psycopg2 when
        DATABASE_URL is set and memory otherwise.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlparse


class ReadModelDriver(str, Enum):
    MEMORY = "memory"
    PSYCOPG2 = "psycopg2"


@dataclass(frozen=True)
class ReadModelSettings:
    driver: ReadModelDriver = ReadModelDriver.MEMORY
    url: Optional[str] = None
    connect_timeout: int = 10
    lock_timeout_ms: int = 2000
    statement_timeout_ms: int = 10000

    @classmethod
    def from_env(cls) -> "ReadModelSettings":
        url = os.getenv("DATABASE_URL") or None
        explicit = os.getenv("READMODEL_DRIVER", "").lower()
        if explicit:
            try:
                driver = ReadModelDriver(explicit)
            except ValueError:
                raise ValueError(
                    f"Unknown READMODEL_DRIVER: {explicit}. Valid values: memory, psycopg2"
                ) from None
        else:
            driver = ReadModelDriver.PSYCOPG2 if url else ReadModelDriver.MEMORY

        return cls(
            driver=driver,
            url=url,
            connect_timeout=int(os.getenv("DATABASE_CONNECT_TIMEOUT", "10")),
            lock_timeout_ms=int(os.getenv("DATABASE_LOCK_TIMEOUT_MS", "2000")),
            statement_timeout_ms=int(os.getenv("DATABASE_STATEMENT_TIMEOUT_MS", "10000")),
        )

    @property
    def uses_postgres(self) -> bool:
        return self.driver == ReadModelDriver.PSYCOPG2 and self.url is not None

    def redacted_url(self) -> str:
        """The URL without its password, for logs."""
        if not self.url:
            return ""
        parsed = urlparse(self.url)
        if parsed.password is None:
            return self.url
        netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@", 1)
        return parsed._replace(netloc=netloc).geturl()
