# db/session.py
from __future__ import annotations

import logging
import os
import ssl as _ssl
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from db.models import init_db

logger = logging.getLogger("sales-ledger")


def _ssl_arg(sslmode: str) -> Any:
    sslmode = (sslmode or "disable").lower()
    if sslmode in ("disable", "off", "false", "0"):
        return False
    if sslmode in ("require",):
        return "require"  # encrypted, no verification
    if sslmode in ("verify-ca", "verify-full"):
        ctx = _ssl.create_default_context(cafile=os.getenv("DB_SSLROOTCERT"))
        ctx.check_hostname = sslmode == "verify-full"
        return ctx
    return False


def make_engine(url: str, *, sslmode: str = "disable", echo: bool = False) -> AsyncEngine:
    backend = make_url(url).get_backend_name()
    kwargs: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if backend == "postgresql":
        # Serverless Postgres drops idle connections; do not pool them.
        kwargs["poolclass"] = NullPool
        ssl_arg = _ssl_arg(sslmode)
        if ssl_arg:
            kwargs["connect_args"] = {"ssl": ssl_arg}
    elif backend == "sqlite":
        # Wait on the file lock instead of failing fast when writers overlap.
        kwargs["connect_args"] = {"timeout": 30}
    return create_async_engine(url, **kwargs)


class Database:
    """
    Explicit persistence handle: one engine + one session factory.
    The process entry point opens it, injects `session_factory` into services,
    and disposes it on shutdown.
    """

    def __init__(self, url: str, *, sslmode: str = "disable", echo: bool = False,
                 engine: Optional[AsyncEngine] = None):
        self.url = url
        self.engine = engine or make_engine(url, sslmode=sslmode, echo=echo)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(settings.database_url, sslmode=settings.db_sslmode, echo=settings.sql_echo)

    @property
    def backend(self) -> str:
        return self.engine.dialect.name

    async def init(self) -> None:
        await init_db(self.engine)
        logger.info("Database ready (backend=%s)", self.backend)

    async def ping(self) -> bool:
        """Simple connectivity check for health endpoints."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Database ping failed: %s", e)
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()


__all__ = ["Database", "make_engine"]
