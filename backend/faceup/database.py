"""
Motor async de SQLAlchemy y fábrica de sesiones.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from .config import DatabaseConfig
from .models import Base, User

logger = logging.getLogger(__name__)


def create_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    return create_async_engine(
        url or DatabaseConfig.URL,
        echo=DatabaseConfig.ECHO if echo is None else echo,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Crea las tablas que falten."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("[DB] Esquema verificado")


async def create_user(session_factory: async_sessionmaker, username: str, coins: int = 5000,
                      tickets: int = 3, **fields) -> User:
    """Alta de usuario con saldo inicial (sembrado y pruebas)."""
    async with session_factory() as session:
        async with session.begin():
            user = User(username=username, coins=coins, tickets=tickets, **fields)
            session.add(user)
        return user
