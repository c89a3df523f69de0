import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class LedgerCell(Base):
    """One non-blank cell of a ledger sheet. Rows and columns are 1-based / 0-based like A1 refs."""

    __tablename__ = "ledger_cells"
    __table_args__ = (UniqueConstraint("sheet", "row", "col", name="uq_ledger_cell"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    sheet: Mapped[str] = mapped_column(String, index=True)
    row: Mapped[int] = mapped_column(Integer, index=True)  # 1-based, as in "A3"
    col: Mapped[int] = mapped_column(Integer)  # 0-based, column A == 0
    value: Mapped[Any] = mapped_column(JSON)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow
    )


def async_database_url(url: str) -> str:
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(async_database_url(url), echo=False)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
