# taskmirror/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models  # noqa: F401
from storage import migrations


SessionFactory = Callable[[], AsyncSession]

_engine: Optional[AsyncEngine] = None


def create_engine_for(path: Path | str, *, echo: bool = False) -> AsyncEngine:
    db_path = Path(path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(
        f"sqlite+aiosqlite:///{db_path.as_posix()}",
        echo=echo,
        connect_args={"timeout": 30},
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine_for(DB_PATH)
    return _engine


async def init_db(engine: Optional[AsyncEngine] = None) -> AsyncEngine:
    actual_engine = engine or get_engine()
    async with actual_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        await conn.run_sync(migrations.run_all)
    return actual_engine


def session_factory(engine: Optional[AsyncEngine] = None) -> SessionFactory:
    actual_engine = engine or get_engine()

    def factory() -> AsyncSession:
        return AsyncSession(actual_engine, expire_on_commit=False)

    return factory


def get_session() -> AsyncSession:
    return AsyncSession(get_engine(), expire_on_commit=False)


async def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


__all__ = [
    "SessionFactory",
    "create_engine_for",
    "dispose_engine",
    "get_engine",
    "get_session",
    "init_db",
    "session_factory",
]
