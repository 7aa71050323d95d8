# engine.py
"""
Plinko Game Engine – Provably Fair

Responsibilities:
- Deterministic path derivation (one digest per peg row)
- Path -> bin folding on a fixed 17-bin board
- Risk tier multiplier tables
- Independent outcome verification
- Per-connection session state (seeds, nonce, balance)

Frozen format:
The digest stream, the RIGHT threshold, and the floor+clamp bin scaling
must not change once games have been recorded, or old games stop
verifying.
"""

from __future__ import annotations

import math
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Any, Sequence, Tuple

from plinko_fair.utils import (
    deterministic_random,
    format_balance,
    format_multiplier,
    generate_client_seed,
    generate_server_seed,
    hash_sha256,
)

logger = logging.getLogger("plinko.engine")

# =========================
# CONFIGURATION
# =========================

class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Direction(int, Enum):
    LEFT = 0
    RIGHT = 1


class GameConfig:
    # --- BOARD ---
    # Reference board: 18 bucket dividers -> 17 bins, whatever the row count.
    BIN_COUNT = 17

    DEFAULT_ROWS = 16
    DEFAULT_RISK = RiskTier.MEDIUM
    AVAILABLE_ROWS = (8, 12, 16)

    # Bounds the number of digests per play
    MIN_ROWS = 1
    MAX_ROWS = 64

    # Samples at or above this go RIGHT
    RIGHT_THRESHOLD = 0.5

    # --- PAYOUTS ---
    MULTIPLIERS: Dict[RiskTier, Tuple[float, ...]] = {
        RiskTier.LOW: (
            1.5, 1.2, 1.1, 1, 0.9, 0.8, 0.7, 0.6, 0.5,
            0.6, 0.7, 0.8, 0.9, 1, 1.1, 1.2, 1.5,
        ),
        RiskTier.MEDIUM: (
            5, 3, 2, 1.5, 1, 0.5, 0.3, 0.2, 0.1,
            0.2, 0.3, 0.5, 1, 1.5, 2, 3, 5,
        ),
        RiskTier.HIGH: (
            110, 41, 10, 5, 3, 2, 1.5, 0.5, 0.3,
            0.5, 1.5, 2, 3, 5, 10, 41, 110,
        ),
    }

# =========================
# EXCEPTIONS
# =========================

class EngineError(Exception):
    """Base engine error"""

class InvalidInput(EngineError, ValueError):
    """Malformed or out-of-range request parameter"""

class InsufficientBalance(EngineError):
    """Bet is not positive or exceeds the balance"""

class ConfigurationError(EngineError):
    """Multiplier tables inconsistent with the board"""


def validate_multiplier_tables(
    tables: Dict[RiskTier, Sequence[float]] = GameConfig.MULTIPLIERS,
    bin_count: int = GameConfig.BIN_COUNT,
) -> None:
    """
    Every tier needs exactly one positive multiplier per bin, mirrored
    around the centre bin. A mismatch would silently pay the wrong bin.
    """
    for tier in RiskTier:
        table = tables.get(tier)
        if table is None:
            raise ConfigurationError(f"No multiplier table for risk tier '{tier.value}'")
        if len(table) != bin_count:
            raise ConfigurationError(
                f"Multiplier table '{tier.value}' has {len(table)} entries, board has {bin_count} bins"
            )
        if any(m <= 0 for m in table):
            raise ConfigurationError(f"Multiplier table '{tier.value}' has non-positive entries")
        if list(table) != list(reversed(table)):
            raise ConfigurationError(f"Multiplier table '{tier.value}' is not symmetric")


validate_multiplier_tables()

# =========================
# INPUT COERCION
# =========================

def parse_risk(risk: Any) -> RiskTier:
    if isinstance(risk, RiskTier):
        return risk
    try:
        return RiskTier(str(risk).lower())
    except ValueError:
        raise InvalidInput(f"Unknown risk tier '{risk}'") from None


def parse_rows(rows: Any) -> int:
    if isinstance(rows, bool) or not isinstance(rows, int):
        raise InvalidInput(f"Row count must be an integer, got {rows!r}")
    if not GameConfig.MIN_ROWS <= rows <= GameConfig.MAX_ROWS:
        raise InvalidInput(
            f"Row count must be between {GameConfig.MIN_ROWS} and {GameConfig.MAX_ROWS}"
        )
    return rows


def parse_nonce(nonce: Any) -> int:
    if isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0:
        raise InvalidInput(f"Nonce must be a non-negative integer, got {nonce!r}")
    return nonce

# =========================
# DOMAIN MODELS
# =========================

@dataclass(frozen=True)
class Outcome:
    """
    One resolved play. Never mutated: verification derives a second
    Outcome and compares.
    """
    server_seed: str
    client_seed: str
    hashed_server_seed: str
    nonce: int
    rows: int
    risk: RiskTier
    path: Tuple[int, ...]
    bin_index: int
    multiplier: float

    def to_dict(self, reveal: bool = True) -> Dict[str, Any]:
        data = {
            "clientSeed": self.client_seed,
            "hashedServerSeed": self.hashed_server_seed,
            "nonce": self.nonce,
            "rows": self.rows,
            "riskMode": self.risk.value,
            "path": list(self.path),
            "binIndex": self.bin_index,
            "multiplier": self.multiplier,
        }
        if reveal:
            data["serverSeed"] = self.server_seed
        return data


@dataclass(frozen=True)
class ClaimedOutcome:
    """The part of an outcome a player submits for verification."""
    path: Tuple[int, ...]
    bin_index: int
    multiplier: float

# =========================
# DERIVATION (PURE)
# =========================

def calculate_path(server_seed: str, client_seed: str, nonce: int, rows: int) -> Tuple[int, ...]:
    """
    One LEFT/RIGHT decision per row. Row i draws from nonce + i.
    """
    return tuple(
        Direction.RIGHT.value
        if deterministic_random(server_seed, client_seed, nonce + i) >= GameConfig.RIGHT_THRESHOLD
        else Direction.LEFT.value
        for i in range(rows)
    )


def calculate_final_bin(path: Sequence[int]) -> int:
    """
    Fold a path into a bin of the fixed 17-bin board.

    The float scale is applied before truncation and the result clamped;
    an all-RIGHT path scales to exactly BIN_COUNT.
    """
    if not path:
        raise InvalidInput("Path must contain at least one row")

    position = 0
    for direction in path:
        position += -1 if direction == Direction.LEFT else 1

    normalized_position = position + len(path)
    scale_factor = GameConfig.BIN_COUNT / (len(path) * 2)

    final_bin = math.floor(normalized_position * scale_factor)
    return max(0, min(final_bin, GameConfig.BIN_COUNT - 1))


def resolve_multiplier(bin_index: int, risk: RiskTier | str) -> float:
    table = GameConfig.MULTIPLIERS[parse_risk(risk)]
    index = max(0, min(bin_index, len(table) - 1))
    return table[index]


def calculate_game_result(
    server_seed: str,
    client_seed: str,
    nonce: int,
    rows: int = GameConfig.DEFAULT_ROWS,
    risk: RiskTier | str = GameConfig.DEFAULT_RISK,
) -> Outcome:
    rows = parse_rows(rows)
    risk = parse_risk(risk)
    nonce = parse_nonce(nonce)

    path = calculate_path(server_seed, client_seed, nonce, rows)
    final_bin = calculate_final_bin(path)

    return Outcome(
        server_seed=server_seed,
        client_seed=client_seed,
        hashed_server_seed=hash_sha256(server_seed),
        nonce=nonce,
        rows=rows,
        risk=risk,
        path=path,
        bin_index=final_bin,
        multiplier=resolve_multiplier(final_bin, risk),
    )


def verify_outcome(
    server_seed: str,
    client_seed: str,
    nonce: int,
    rows: int,
    risk: RiskTier | str,
    claimed: Outcome | ClaimedOutcome,
) -> bool:
    """
    Recompute the outcome and compare path, bin and multiplier exactly.
    A mismatch is a normal False; malformed inputs raise InvalidInput.
    """
    expected = calculate_game_result(server_seed, client_seed, nonce, rows, risk)
    return (
        expected.bin_index == claimed.bin_index
        and expected.multiplier == claimed.multiplier
        and expected.path == tuple(claimed.path)
    )

# =========================
# SESSION STATE
# =========================

@dataclass(frozen=True)
class PlayResult:
    outcome: Outcome
    bet_amount: Decimal
    win_amount: Decimal
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        data = self.outcome.to_dict(reveal=False)
        data.update({
            "betAmount": float(self.bet_amount),
            "winAmount": float(self.win_amount),
            "balance": float(self.balance),
        })
        return data


@dataclass(frozen=True)
class SeedRotation:
    revealed_server_seed: str
    revealed_hashed_server_seed: str
    hashed_server_seed: str


def _to_amount(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise InvalidInput("Bet amount must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput(f"Bet amount must be a number, got {value!r}") from None
    if not amount.is_finite():
        raise InvalidInput("Bet amount must be finite")
    return amount


@dataclass
class PlinkoSession:
    """
    Seeds, nonce and balance owned by a single connection.

    Plays are serialized by a lock so two concurrent plays can never
    derive against the same nonce.
    """
    server_seed: str
    client_seed: str
    balance: Decimal
    nonce: int = 0
    _hashed_server_seed: str = field(init=False, default="", repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._hashed_server_seed = hash_sha256(self.server_seed)

    @classmethod
    def create(cls, balance: Decimal | float | str = Decimal("1000.00")) -> "PlinkoSession":
        """Raises EntropySourceFailure if no secure seed can be made."""
        return cls(
            server_seed=generate_server_seed(),
            client_seed=generate_client_seed(),
            balance=Decimal(str(balance)),
        )

    @property
    def hashed_server_seed(self) -> str:
        return self._hashed_server_seed

    def snapshot(self) -> Dict[str, Any]:
        return {
            "hashedServerSeed": self.hashed_server_seed,
            "clientSeed": self.client_seed,
            "nonce": self.nonce,
            "balance": float(self.balance),
        }

    async def play(
        self,
        bet_amount: Any,
        risk: Any = GameConfig.DEFAULT_RISK,
        rows: Any = GameConfig.DEFAULT_ROWS,
    ) -> PlayResult:
        """
        Validate, derive against the current nonce, settle, advance nonce.
        Rejected bets never consume a nonce.
        """
        bet = _to_amount(bet_amount)
        risk = parse_risk(risk)
        rows = parse_rows(rows)

        async with self._lock:
            if bet <= 0 or bet > self.balance:
                raise InsufficientBalance("Invalid bet amount or insufficient balance")

            outcome = calculate_game_result(
                self.server_seed, self.client_seed, self.nonce, rows, risk
            )

            win = bet * Decimal(str(outcome.multiplier))
            self.balance = self.balance - bet + win
            self.nonce += 1

            logger.info(
                f"Play nonce={outcome.nonce} rows={rows} risk={risk.value} "
                f"bin={outcome.bin_index} {format_multiplier(outcome.multiplier)} "
                f"balance={format_balance(self.balance)}"
            )

            return PlayResult(
                outcome=outcome,
                bet_amount=bet,
                win_amount=win,
                balance=self.balance,
            )

    async def rotate_server_seed(self) -> SeedRotation:
        """
        Reveal the current server seed and commit to a fresh one.
        Nonce resets to 0.
        """
        async with self._lock:
            new_seed = generate_server_seed()

            revealed = SeedRotation(
                revealed_server_seed=self.server_seed,
                revealed_hashed_server_seed=self._hashed_server_seed,
                hashed_server_seed=hash_sha256(new_seed),
            )

            self.server_seed = new_seed
            self._hashed_server_seed = revealed.hashed_server_seed
            self.nonce = 0

            logger.info(
                f"Server seed rotated: revealed {revealed.revealed_hashed_server_seed[:16]}..., "
                f"new commitment {revealed.hashed_server_seed[:16]}..."
            )
            return revealed

    async def set_client_seed(self, client_seed: Optional[str] = None) -> str:
        """Replace the client seed (random if not given). Nonce resets to 0."""
        if client_seed is not None and not client_seed:
            raise InvalidInput("Client seed must not be empty")

        async with self._lock:
            self.client_seed = client_seed or generate_client_seed()
            self.nonce = 0
            return self.client_seed
