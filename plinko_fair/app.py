# app.py
"""
Plinko – Production Entry Point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- WebSocket game channel, one PlinkoSession per connection
- Stateless outcome verification
- Optional audit trail of plays and revealed seeds

Integration:
- Uses engine.py (pure derivation + session state machine)
- Uses db.py (async SQLAlchemy, append-only records)
"""

from __future__ import annotations

import os
import logging
from decimal import Decimal
from contextlib import asynccontextmanager
from typing import Dict, Any, List, Literal, Optional, Set

from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from plinko_fair.engine import (
    ClaimedOutcome,
    EngineError,
    GameConfig,
    InsufficientBalance,
    InvalidInput,
    PlinkoSession,
    PlayResult,
    RiskTier,
    verify_outcome,
)
from plinko_fair.db import (
    AsyncSessionLocal,
    close_db,
    get_game,
    get_revealed_seed,
    get_session,
    init_db,
    save_game,
    save_reveal,
)
from plinko_fair.utils import (
    EntropySourceFailure,
    commitment_matches,
    generate_unique_id,
)

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("plinko.app")

STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))
PERSIST_OUTCOMES = os.getenv("PERSIST_OUTCOMES", "1").lower() not in ("0", "false", "no")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ClaimedResult(WireModel):
    path: List[Literal[0, 1]] = Field(..., min_length=1)
    bin_index: int = Field(..., alias="binIndex")
    multiplier: float

    def to_claim(self) -> ClaimedOutcome:
        return ClaimedOutcome(
            path=tuple(self.path),
            bin_index=self.bin_index,
            multiplier=self.multiplier,
        )


class VerifyRequest(WireModel):
    server_seed: str = Field(..., min_length=1, alias="serverSeed")
    client_seed: str = Field(..., min_length=1, alias="clientSeed")
    nonce: int = Field(..., ge=0)
    rows: int = Field(GameConfig.DEFAULT_ROWS, ge=GameConfig.MIN_ROWS, le=GameConfig.MAX_ROWS)
    risk: RiskTier = Field(GameConfig.DEFAULT_RISK, alias="riskMode")
    result: ClaimedResult
    hashed_server_seed: Optional[str] = Field(None, alias="hashedServerSeed")


class Envelope(BaseModel):
    event: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


class PlayRequest(WireModel):
    # Sign and balance checks belong to the engine
    bet_amount: Decimal = Field(..., alias="betAmount")
    risk: RiskTier = Field(GameConfig.DEFAULT_RISK, alias="riskMode")
    rows: int = Field(GameConfig.DEFAULT_ROWS, ge=GameConfig.MIN_ROWS, le=GameConfig.MAX_ROWS)


class ClientSeedRequest(WireModel):
    client_seed: Optional[str] = Field(None, min_length=1, max_length=128, alias="clientSeed")

# =====================================================
# LIFECYCLE
# =====================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages startup and shutdown events.
    """
    if PERSIST_OUTCOMES:
        logger.info("Startup: Initializing Database...")
        await init_db()

    yield

    logger.info("Shutdown: Cleaning up...")
    await close_db()

# =====================================================
# APP INIT
# =====================================================

app = FastAPI(
    title="Plinko Provably Fair API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# =====================================================
# ERROR HANDLERS
# =====================================================

@app.exception_handler(InvalidInput)
async def invalid_input_handler(_, exc: InvalidInput):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Invalid Input", "detail": str(exc)},
    )

@app.exception_handler(InsufficientBalance)
async def balance_error_handler(_, exc: InsufficientBalance):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Insufficient Balance", "detail": str(exc)},
    )

@app.exception_handler(EntropySourceFailure)
async def entropy_error_handler(_, exc: EntropySourceFailure):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Entropy Source Failure", "detail": str(exc)},
    )

# =====================================================
# API – INFO
# =====================================================

@app.get("/api/health")
async def api_health():
    return {"status": "ok", "message": "Plinko server is running"}


@app.get("/api/plinko/config")
async def api_config(risk: RiskTier = GameConfig.DEFAULT_RISK):
    """
    Board layout and payout table for a risk tier.
    """
    return {
        "risk": risk.value,
        "rows": GameConfig.DEFAULT_ROWS,
        "buckets": GameConfig.BIN_COUNT,
        "multipliers": list(GameConfig.MULTIPLIERS[risk]),
        "availableRows": list(GameConfig.AVAILABLE_ROWS),
        "riskLevels": [
            {"id": tier.value, "name": tier.value.capitalize()} for tier in RiskTier
        ],
    }

# =====================================================
# API – VERIFICATION
# =====================================================

def _verify(payload: VerifyRequest) -> Dict[str, Any]:
    verified = verify_outcome(
        payload.server_seed,
        payload.client_seed,
        payload.nonce,
        payload.rows,
        payload.risk,
        payload.result.to_claim(),
    )

    matches = None
    if payload.hashed_server_seed is not None:
        matches = commitment_matches(payload.server_seed, payload.hashed_server_seed)

    return {"status": "ok", "verified": verified, "commitmentMatches": matches}


@app.post("/api/plinko/verify")
async def api_verify(payload: VerifyRequest):
    """
    Recompute an outcome from revealed inputs. A mismatch is a normal
    {"verified": false}, not an error.
    """
    return _verify(payload)


@app.get("/api/verify")
async def api_verify_query(
    server_seed: str = Query(..., min_length=1, alias="serverSeed"),
    client_seed: str = Query(..., min_length=1, alias="clientSeed"),
    nonce: int = Query(..., ge=0),
    rows: int = Query(GameConfig.DEFAULT_ROWS, ge=GameConfig.MIN_ROWS, le=GameConfig.MAX_ROWS),
    risk: RiskTier = Query(GameConfig.DEFAULT_RISK, alias="riskMode"),
    result: str = Query(..., description="JSON encoded {path, binIndex, multiplier}"),
    hashed_server_seed: Optional[str] = Query(None, alias="hashedServerSeed"),
):
    try:
        claimed = ClaimedResult.model_validate_json(result)
    except ValidationError as e:
        raise InvalidInput(f"Malformed result: {e.error_count()} error(s)") from e

    return _verify(VerifyRequest(
        server_seed=server_seed,
        client_seed=client_seed,
        nonce=nonce,
        rows=rows,
        risk=risk,
        result=claimed,
        hashed_server_seed=hashed_server_seed,
    ))

# =====================================================
# API – GAME HISTORY
# =====================================================

def _require_history() -> None:
    if not PERSIST_OUTCOMES:
        raise HTTPException(status_code=404, detail="Game history is disabled")


@app.get("/api/plinko/games/{game_id}")
async def api_game(
    game_id: str,
    session: AsyncSession = Depends(get_session),
):
    _require_history()
    record = await get_game(session, game_id)
    if not record:
        raise HTTPException(status_code=404, detail="Game not found")
    return record.to_dict()


@app.get("/api/plinko/games/{game_id}/verify")
async def api_game_verify(
    game_id: str,
    session: AsyncSession = Depends(get_session),
):
    """
    Verify a stored game. Only possible once its server seed is revealed.
    """
    _require_history()
    record = await get_game(session, game_id)
    if not record:
        raise HTTPException(status_code=404, detail="Game not found")

    server_seed = await get_revealed_seed(session, record.hashed_server_seed)
    if server_seed is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Server seed not revealed yet, rotate it first",
        )

    verified = verify_outcome(
        server_seed,
        record.client_seed,
        record.nonce,
        record.rows,
        record.risk,
        ClaimedOutcome(
            path=tuple(record.path),
            bin_index=record.bin_index,
            multiplier=record.multiplier,
        ),
    )

    return {
        "gameId": record.game_id,
        "serverSeed": server_seed,
        "hashedServerSeed": record.hashed_server_seed,
        "commitmentMatches": commitment_matches(server_seed, record.hashed_server_seed),
        "verified": verified,
    }

# =====================================================
# WEBSOCKET – GAME CHANNEL
# =====================================================

async def _send(ws: WebSocket, event: str, data: Dict[str, Any]) -> None:
    await ws.send_json({"event": event, "data": data})


async def _send_error(ws: WebSocket, error: str, detail: str) -> None:
    await _send(ws, "game:error", {"error": error, "detail": detail})


async def _persist_game(result: PlayResult) -> Optional[str]:
    if not PERSIST_OUTCOMES:
        return None

    game_id = generate_unique_id()
    try:
        async with AsyncSessionLocal() as db_session:
            await save_game(db_session, game_id, result)
    except SQLAlchemyError as e:
        logger.error(f"Failed to store game {game_id}: {e}")
        return None
    return game_id


async def _persist_reveal(server_seed: str, hashed_server_seed: str) -> None:
    if not PERSIST_OUTCOMES:
        return

    try:
        async with AsyncSessionLocal() as db_session:
            await save_reveal(db_session, server_seed, hashed_server_seed)
    except SQLAlchemyError as e:
        logger.error(f"Failed to store reveal for {hashed_server_seed[:16]}...: {e}")


class GameChannel:
    """
    Routes one connection's messages to its PlinkoSession.
    """

    def __init__(self, ws: WebSocket, session: PlinkoSession) -> None:
        self.ws = ws
        self.session = session
        # Commitments this connection has played under
        self.played_commitments: Set[str] = set()

    async def handle(self, raw: str) -> None:
        try:
            message = Envelope.model_validate_json(raw)
        except ValidationError:
            await _send_error(self.ws, "Invalid Input", "Malformed message")
            return

        handler = {
            "game:play": self.on_play,
            "game:new-server-seed": self.on_new_server_seed,
            "game:new-client-seed": self.on_new_client_seed,
        }.get(message.event)

        if handler is None:
            await _send_error(self.ws, "Invalid Input", f"Unknown event '{message.event}'")
            return

        try:
            await handler(message.data)
        except ValidationError as e:
            await _send_error(self.ws, "Invalid Input", f"{e.error_count()} invalid field(s)")
        except InvalidInput as e:
            await _send_error(self.ws, "Invalid Input", str(e))
        except InsufficientBalance as e:
            await _send_error(self.ws, "Insufficient Balance", str(e))
        except EngineError as e:
            await _send_error(self.ws, "Engine Error", str(e))
        except EntropySourceFailure as e:
            await _send_error(self.ws, "Entropy Source Failure", str(e))

    async def on_play(self, data: Dict[str, Any]) -> None:
        req = PlayRequest.model_validate(data)
        result = await self.session.play(req.bet_amount, req.risk, req.rows)

        self.played_commitments.add(result.outcome.hashed_server_seed)
        game_id = await _persist_game(result)

        await _send(self.ws, "game:result", {"gameId": game_id, **result.to_dict()})

    async def on_new_server_seed(self, data: Dict[str, Any]) -> None:
        rotation = await self.session.rotate_server_seed()
        await _persist_reveal(rotation.revealed_server_seed, rotation.revealed_hashed_server_seed)

        await _send(self.ws, "game:reveal-seed", {
            "serverSeed": rotation.revealed_server_seed,
            "hashedServerSeed": rotation.revealed_hashed_server_seed,
        })
        await _send(self.ws, "game:new-seed", {
            "hashedServerSeed": rotation.hashed_server_seed,
            "nonce": self.session.nonce,
        })

    async def on_new_client_seed(self, data: Dict[str, Any]) -> None:
        req = ClientSeedRequest.model_validate(data)
        client_seed = await self.session.set_client_seed(req.client_seed)

        await _send(self.ws, "game:new-seed", {
            "clientSeed": client_seed,
            "nonce": self.session.nonce,
        })

    async def close(self) -> None:
        """
        The seed dies with the connection, so games played under it can
        be made verifiable.
        """
        if self.session.hashed_server_seed in self.played_commitments:
            await _persist_reveal(self.session.server_seed, self.session.hashed_server_seed)


@app.websocket("/ws")
async def ws_game(ws: WebSocket):
    await ws.accept()

    try:
        session = PlinkoSession.create(balance=STARTING_BALANCE)
    except EntropySourceFailure:
        logger.critical("Refusing connection: cannot create server seed")
        await ws.close(code=1011)
        return

    channel = GameChannel(ws, session)
    logger.info(f"New client connected, commitment {session.hashed_server_seed[:16]}...")

    await _send(ws, "game:init", session.snapshot())

    try:
        while True:
            raw = await ws.receive_text()
            await channel.handle(raw)
    except WebSocketDisconnect:
        logger.info("Client disconnected")
    finally:
        await channel.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3333")))
