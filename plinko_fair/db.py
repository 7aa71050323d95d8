# db.py
"""
Database Layer – Audit Trail

Responsibilities:
- Async database engine & session lifecycle
- Append-only record of every resolved play
- Revealed server seeds, keyed by the commitment published for them

A play row never holds the server seed. The seed only becomes
available through SeedReveal once the player has rotated it away.
"""

from __future__ import annotations

import os
import logging
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Optional

from sqlalchemy import (
    String,
    DateTime,
    Integer,
    Float,
    JSON,
    func,
    Numeric,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from plinko_fair.engine import PlayResult

logger = logging.getLogger("plinko.db")

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./plinko.db"
)

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# MODELS
# =====================================================

class GameRecord(Base):
    """
    Immutable play record (append-only).
    Enough to recompute the outcome once the seed is revealed.
    """

    __tablename__ = "games"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    game_id: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        index=True,
        nullable=False,
    )

    hashed_server_seed: Mapped[str] = mapped_column(
        String(64),
        index=True,
        nullable=False,
    )

    client_seed: Mapped[str] = mapped_column(String(128), nullable=False)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False)
    rows: Mapped[int] = mapped_column(Integer, nullable=False)
    risk: Mapped[str] = mapped_column(String(16), nullable=False)

    # List of 0/1 ints
    path: Mapped[list] = mapped_column(JSON, nullable=False)
    bin_index: Mapped[int] = mapped_column(Integer, nullable=False)
    multiplier: Mapped[float] = mapped_column(Float, nullable=False)

    bet_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    win_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "gameId": self.game_id,
            "hashedServerSeed": self.hashed_server_seed,
            "clientSeed": self.client_seed,
            "nonce": self.nonce,
            "rows": self.rows,
            "riskMode": self.risk,
            "path": list(self.path),
            "binIndex": self.bin_index,
            "multiplier": self.multiplier,
            "betAmount": float(self.bet_amount),
            "winAmount": float(self.win_amount),
            "balance": float(self.balance_after),
        }


class SeedReveal(Base):
    """Server seed disclosed after rotation."""

    __tablename__ = "seed_reveals"

    hashed_server_seed: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    server_seed: Mapped[str] = mapped_column(String(128), nullable=False)

    revealed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


# =====================================================
# ENGINE & SESSION
# =====================================================

engine = create_async_engine(
    DATABASE_URL,
    echo=DB_ECHO,
    # SSL is critical for Postgres in production
    connect_args={"ssl": "require"} if "postgresql" in DATABASE_URL else {},
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# =====================================================
# INIT
# =====================================================

async def init_db() -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def save_game(
    session: AsyncSession,
    game_id: str,
    result: PlayResult,
) -> GameRecord:
    outcome = result.outcome

    record = GameRecord(
        game_id=game_id,
        hashed_server_seed=outcome.hashed_server_seed,
        client_seed=outcome.client_seed,
        nonce=outcome.nonce,
        rows=outcome.rows,
        risk=outcome.risk.value,
        path=list(outcome.path),
        bin_index=outcome.bin_index,
        multiplier=outcome.multiplier,
        bet_amount=result.bet_amount,
        win_amount=result.win_amount,
        balance_after=result.balance,
    )

    session.add(record)
    await session.commit()
    return record


async def get_game(session: AsyncSession, game_id: str) -> Optional[GameRecord]:
    result = await session.execute(
        select(GameRecord).where(GameRecord.game_id == game_id)
    )
    return result.scalar_one_or_none()


async def save_reveal(
    session: AsyncSession,
    server_seed: str,
    hashed_server_seed: str,
) -> SeedReveal:
    """
    Store a revealed seed. Revealing the same commitment twice is a no-op.
    """
    existing = await session.get(SeedReveal, hashed_server_seed)
    if existing:
        return existing

    reveal = SeedReveal(
        hashed_server_seed=hashed_server_seed,
        server_seed=server_seed,
    )
    session.add(reveal)
    await session.commit()

    logger.info(f"Stored reveal for commitment {hashed_server_seed[:16]}...")
    return reveal


async def get_revealed_seed(
    session: AsyncSession,
    hashed_server_seed: str,
) -> Optional[str]:
    reveal = await session.get(SeedReveal, hashed_server_seed)
    return reveal.server_seed if reveal else None
