from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TYPE_CHECKING

from dotenv import load_dotenv
from redis.connection import parse_url

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from database.mysql import MySQLOps
    from database.redis_manager import RedisManager


def _load_env_file(env_path: Optional[Path] = None) -> None:
    path = env_path or Path(__file__).resolve().parents[2] / ".env"
    if path.exists():
        load_dotenv(path, override=False)


@dataclass(frozen=True)
class RedisConfig:
    """Connection settings for the shared Redis store.

    ``REDIS_URI`` wins over the individual ``REDIS_*`` variables.
    ``LAYERSYNC_LOCK_TIMEOUT`` bounds how long a crashed process can hold the
    queue lock.
    """

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    lock_timeout: float = 30.0

    @classmethod
    def from_env(cls, *, env_path: Optional[Path] = None) -> "RedisConfig":
        _load_env_file(env_path)
        lock_timeout = float(os.getenv("LAYERSYNC_LOCK_TIMEOUT", str(cls.lock_timeout)))

        uri = os.getenv("REDIS_URI")
        if uri:
            return cls.from_uri(uri, lock_timeout=lock_timeout)

        return cls(
            host=os.getenv("REDIS_HOST", cls.host),
            port=int(os.getenv("REDIS_PORT", str(cls.port))),
            db=int(os.getenv("REDIS_DB", str(cls.db))),
            password=os.getenv("REDIS_PASSWORD") or None,
            lock_timeout=lock_timeout,
        )

    @classmethod
    def from_uri(cls, uri: str, lock_timeout: float = 30.0) -> "RedisConfig":
        """Build from a Redis URL; an unsupported scheme raises ValueError."""
        options = parse_url(uri)
        return cls(
            host=options.get("host", cls.host),
            port=int(options.get("port", cls.port)),
            db=int(options.get("db", cls.db)),
            password=options.get("password"),
            lock_timeout=lock_timeout,
        )

    def create_manager(self) -> RedisManager:
        from database.redis_manager import RedisManager

        return RedisManager(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            lock_timeout=self.lock_timeout,
        )


@dataclass(frozen=True)
class MySQLConfig:
    host: str = "127.0.0.1"
    user: str = "root"
    password: str = ""
    database: str = "layersync"
    port: int = 3306

    @classmethod
    def from_env(cls, *, env_path: Optional[Path] = None) -> Optional["MySQLConfig"]:
        """Return None unless MYSQL_HOST is set; the archive is optional."""
        _load_env_file(env_path)

        host = os.getenv("MYSQL_HOST")
        if not host:
            return None

        return cls(
            host=host,
            user=os.getenv("MYSQL_USER", cls.user),
            password=os.getenv("MYSQL_PASS", cls.password),
            database=os.getenv("MYSQL_DB", cls.database),
            port=int(os.getenv("MYSQL_PORT", str(cls.port))),
        )

    def create_ops(self) -> MySQLOps:
        from database.mysql import MySQLOps

        return MySQLOps(
            host=self.host,
            user=self.user,
            password=self.password,
            database=self.database,
            port=self.port,
        )


@dataclass(frozen=True)
class SyncSettings:
    backend: str = "memory"
    workers: int = 2
    poll_interval: float = 0.25
    history_days: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, env_path: Optional[Path] = None) -> "SyncSettings":
        _load_env_file(env_path)

        backend = os.getenv("LAYERSYNC_BACKEND", cls.backend).strip().lower()
        if backend not in {"memory", "redis"}:
            raise ValueError(f"Unsupported storage backend: {backend!r}")

        workers = int(os.getenv("LAYERSYNC_WORKERS", str(cls.workers)))
        if workers < 1:
            raise ValueError("LAYERSYNC_WORKERS must be at least 1")

        return cls(
            backend=backend,
            workers=workers,
            poll_interval=float(os.getenv("LAYERSYNC_POLL_INTERVAL", str(cls.poll_interval))),
            history_days=int(os.getenv("LAYERSYNC_HISTORY_DAYS", str(cls.history_days))),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
