# main.py
# =========================================================
# Potkeeper Backend (FastAPI)
# =========================================================
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import AfterValidator, BaseModel, Field, field_validator

from config import Settings, settings as default_settings
from coordinator import PotCoordinator
from db import PotStore
from errors import PotError
from init_db import ensure_games
from ledger import LedgerClient, build_ledger, normalize_address
from models import DistributionRecord, Entry, Game, Pot, PotKey, RankedPlayer, RolloverResult
from recorder import EntryRecorder
from scheduler import RolloverScheduler, retry_transient

VERSION = "0.1.0"

logger = logging.getLogger(__name__)

_auth_scheme = HTTPBearer(auto_error=False)


def admin_guard(request: Request, creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    cfg: Settings = request.app.state.settings
    if not cfg.ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if cfg.DEBUG:
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != cfg.ADMIN_TOKEN:
        raise HTTPException(401, "Unauthorized")
    return True


def get_coordinator(request: Request) -> PotCoordinator:
    return request.app.state.coordinator


def get_recorder(request: Request) -> EntryRecorder:
    return request.app.state.recorder


def get_retry(request: Request):
    """Runs a coordinator call with the transient-failure backoff the scheduler uses."""
    cfg: Settings = request.app.state.settings
    label = f"{request.method} {request.url.path}"

    async def retry(fn):
        return await retry_transient(
            fn, attempts=cfg.RETRY_ATTEMPTS, base_delay=cfg.RETRY_BASE_DELAY_SECONDS, label=label
        )

    return retry


# =========================================================
# Models
# =========================================================
def _check_seed(v: str) -> str:
    # game_id is a PDA seed, limited to 32 bytes rather than 32 characters
    if len(v.encode()) > 32:
        raise ValueError("game_id must encode to at most 32 bytes")
    return v


GameId = Annotated[str, Field(min_length=1), AfterValidator(_check_seed)]


class PotKeyBody(BaseModel):
    game_id: GameId
    pot_number: int = Field(ge=1)

    @property
    def key(self) -> PotKey:
        return PotKey(self.game_id, self.pot_number)


class DistributeBody(PotKeyBody):
    winners: Optional[List[str]] = Field(None, description="Ranked winner addresses; omit to use the computed ranking")


class PlayerBody(PotKeyBody):
    player: str

    @field_validator("player")
    @classmethod
    def _check_player(cls, v: str) -> str:
        ok, norm = normalize_address(v)
        if not ok:
            raise ValueError("not a valid base58 public key")
        return norm


class VerifyPaymentBody(PlayerBody):
    tx_signature: str = Field(min_length=32, max_length=128)


class SponsorEntryBody(PlayerBody):
    amount: Optional[int] = Field(None, ge=1, description="Lamports; defaults to the game's entry fee")


class RolloverBody(BaseModel):
    game_id: GameId


class ScoreBody(BaseModel):
    entry_id: int = Field(ge=1)
    score: int = Field(ge=0)


class GameBody(BaseModel):
    game_id: GameId
    name: str = Field(min_length=1)
    entry_fee: int = Field(ge=0, description="Lamports")
    description: Optional[str] = None
    genre: Optional[str] = None
    logo: Optional[str] = None


class PotResp(BaseModel):
    game_id: str
    pot_number: int
    address: str
    status: str
    total_amount: int
    created_at: str
    closed_at: Optional[str] = None

    @classmethod
    def of(cls, pot: Pot) -> "PotResp":
        return cls(
            game_id=pot.game_id,
            pot_number=pot.pot_number,
            address=pot.address,
            status=pot.status.value,
            total_amount=pot.total_amount,
            created_at=pot.created_at,
            closed_at=pot.closed_at,
        )


class PotDetailResp(PotResp):
    state: str
    ledger_balance: Optional[int] = None
    ledger_status: Optional[str] = None
    in_sync: bool


class EntryResp(BaseModel):
    id: int
    game_id: str
    pot_number: int
    player: str
    payment_ref: str
    amount: int
    score: int
    played: bool
    created_at: str
    scored_at: Optional[str] = None

    @classmethod
    def of(cls, e: Entry) -> "EntryResp":
        return cls(**e.__dict__)


class PayoutResp(BaseModel):
    rank: int
    player: str
    payout_ref: Optional[str] = None


class DistributionResp(BaseModel):
    game_id: str
    pot_number: int
    finalized: bool
    tx_ref: Optional[str] = None
    finalized_at: Optional[str] = None
    winners: List[PayoutResp]

    @classmethod
    def of(cls, d: DistributionRecord) -> "DistributionResp":
        return cls(
            game_id=d.game_id,
            pot_number=d.pot_number,
            finalized=d.finalized,
            tx_ref=d.tx_ref,
            finalized_at=d.finalized_at,
            winners=[PayoutResp(rank=p.rank, player=p.player, payout_ref=p.payout_ref) for p in d.payouts],
        )


class LeaderboardRow(BaseModel):
    rank: int
    player: str
    score: int
    entry_id: int
    scored_at: Optional[str] = None

    @classmethod
    def of(cls, r: RankedPlayer) -> "LeaderboardRow":
        return cls(**r.__dict__)


class RolloverResp(BaseModel):
    game_id: str
    closed: Optional[PotResp] = None
    opened: Optional[PotResp] = None
    distribution: Optional[DistributionResp] = None

    @classmethod
    def of(cls, r: RolloverResult) -> "RolloverResp":
        return cls(
            game_id=r.game_id,
            closed=PotResp.of(r.closed) if r.closed else None,
            opened=PotResp.of(r.opened) if r.opened else None,
            distribution=DistributionResp.of(r.distribution) if r.distribution else None,
        )


class GameResp(GameBody):
    created_at: Optional[str] = None

    @classmethod
    def of(cls, g: Game) -> "GameResp":
        return cls(**g.__dict__)


class EntryTransactionResp(BaseModel):
    pot_address: str
    amount: int
    transaction: str


# =========================================================
# Routes
# =========================================================
router = APIRouter()


@router.get("/health")
async def health(request: Request):
    store: PotStore = request.app.state.store
    cfg: Settings = request.app.state.settings
    games = {}
    for g in cfg.game_ids:
        games[g] = {
            "last_rollover": await store.kv_get(f"rollover:{g}:last_at"),
            "last_error": await store.kv_get(f"rollover:{g}:last_error"),
        }
    return {"ok": True, "ts": time.time(), "service": "potkeeper", "version": VERSION, "games": games}


# ---------------- Games ----------------
@router.get("/games", response_model=list[GameResp])
async def list_games(request: Request):
    return [GameResp.of(g) for g in await request.app.state.store.list_games()]


@router.get("/games/{game_id}", response_model=GameResp)
async def get_game(game_id: str, request: Request):
    game = await request.app.state.store.get_game(game_id)
    if not game:
        raise HTTPException(404, f"Game '{game_id}' not found")
    return GameResp.of(game)


@router.post("/admin/games", response_model=GameResp)
async def upsert_game(body: GameBody, request: Request, auth: bool = Depends(admin_guard)):
    game = await request.app.state.store.upsert_game(Game(**body.model_dump()))
    return GameResp.of(game)


# ---------------- Pot lifecycle (admin) ----------------
@router.post("/pot/initialize", response_model=PotResp)
async def initialize_pot(
    body: PotKeyBody,
    coord: PotCoordinator = Depends(get_coordinator),
    retry=Depends(get_retry),
    auth: bool = Depends(admin_guard),
):
    return PotResp.of(await retry(lambda: coord.create_pot(body.game_id, body.pot_number)))


@router.post("/pot/close", response_model=PotResp)
async def close_pot(
    body: PotKeyBody,
    coord: PotCoordinator = Depends(get_coordinator),
    retry=Depends(get_retry),
    auth: bool = Depends(admin_guard),
):
    return PotResp.of(await retry(lambda: coord.close_pot(body.key)))


@router.post("/pot/distribute-winners", response_model=DistributionResp)
async def distribute_winners(
    body: DistributeBody,
    coord: PotCoordinator = Depends(get_coordinator),
    retry=Depends(get_retry),
    auth: bool = Depends(admin_guard),
):
    return DistributionResp.of(await retry(lambda: coord.distribute_winners(body.key, body.winners)))


@router.post("/pot/rollover", response_model=RolloverResp)
async def rollover(
    body: RolloverBody,
    coord: PotCoordinator = Depends(get_coordinator),
    retry=Depends(get_retry),
    auth: bool = Depends(admin_guard),
):
    return RolloverResp.of(await retry(lambda: coord.rollover_game(body.game_id)))


@router.post("/pot/pay-entry-fee", response_model=EntryResp)
async def pay_entry_fee(
    body: SponsorEntryBody,
    rec: EntryRecorder = Depends(get_recorder),
    retry=Depends(get_retry),
    auth: bool = Depends(admin_guard),
):
    # resends the same signed transaction on retry, so at most one payment lands
    return EntryResp.of(await retry(lambda: rec.sponsor_entry(body.key, body.player, body.amount)))


# ---------------- Entries / scores ----------------
@router.post("/pot/create-transaction", response_model=EntryTransactionResp)
async def create_entry_transaction(
    body: PlayerBody, rec: EntryRecorder = Depends(get_recorder), retry=Depends(get_retry)
):
    return EntryTransactionResp(**await retry(lambda: rec.build_entry_transaction(body.key, body.player)))


@router.post("/pot/verify-payment", response_model=EntryResp)
async def verify_payment(body: VerifyPaymentBody, rec: EntryRecorder = Depends(get_recorder), retry=Depends(get_retry)):
    return EntryResp.of(await retry(lambda: rec.verify_and_record(body.key, body.player, body.tx_signature)))


@router.post("/score/update", response_model=EntryResp)
async def update_score(body: ScoreBody, rec: EntryRecorder = Depends(get_recorder)):
    return EntryResp.of(await rec.submit_score(body.entry_id, body.score))


# ---------------- Reads ----------------
@router.get("/pot/latest/{game_id}", response_model=PotResp)
async def latest_pot(game_id: str, coord: PotCoordinator = Depends(get_coordinator)):
    pot = await coord.latest_pot(game_id)
    if not pot:
        raise HTTPException(404, f"No pot for game '{game_id}'")
    return PotResp.of(pot)


@router.get("/pot/{game_id}/{pot_number}", response_model=PotDetailResp)
async def pot_detail(
    game_id: str, pot_number: int, coord: PotCoordinator = Depends(get_coordinator), retry=Depends(get_retry)
):
    view = await retry(lambda: coord.ledger_view(PotKey(game_id, pot_number)))
    return PotDetailResp(
        **PotResp.of(view["pot"]).model_dump(),
        state=view["state"].value,
        ledger_balance=view["ledger_balance"],
        ledger_status=view["ledger_status"],
        in_sync=view["in_sync"],
    )


@router.get("/pots/{game_id}", response_model=list[PotResp])
async def list_pots(
    game_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    coord: PotCoordinator = Depends(get_coordinator),
):
    return [PotResp.of(p) for p in await coord.list_pots(game_id, limit, offset)]


@router.get("/pot/{game_id}/{pot_number}/entries", response_model=list[EntryResp])
async def pot_entries(game_id: str, pot_number: int, coord: PotCoordinator = Depends(get_coordinator)):
    key = PotKey(game_id, pot_number)
    await coord.require_pot(key)
    return [EntryResp.of(e) for e in await coord.pot_entries(key)]


@router.get("/pot/{game_id}/{pot_number}/players", response_model=list[str])
async def pot_players(game_id: str, pot_number: int, coord: PotCoordinator = Depends(get_coordinator)):
    key = PotKey(game_id, pot_number)
    await coord.require_pot(key)
    return await coord.pot_players(key)


@router.get("/pot/{game_id}/{pot_number}/distribution", response_model=DistributionResp)
async def pot_distribution(game_id: str, pot_number: int, coord: PotCoordinator = Depends(get_coordinator)):
    dist = await coord.get_distribution(PotKey(game_id, pot_number))
    if not dist:
        raise HTTPException(404, "Pot has not been distributed")
    return DistributionResp.of(dist)


@router.get("/leaderboard/{game_id}/{pot_number}", response_model=list[LeaderboardRow])
async def leaderboard(game_id: str, pot_number: int, coord: PotCoordinator = Depends(get_coordinator)):
    return [LeaderboardRow.of(r) for r in await coord.leaderboard(PotKey(game_id, pot_number))]


@router.get("/transaction/{signature}")
async def transaction_status(
    signature: str, coord: PotCoordinator = Depends(get_coordinator), retry=Depends(get_retry)
):
    status = await retry(
        lambda: coord.ledger_call("get_transaction_status", coord.ledger.get_transaction_status(signature))
    )
    if not status:
        raise HTTPException(404, "Transaction not found")
    return status


# =========================================================
# App Init
# =========================================================
def create_app(cfg: Optional[Settings] = None, ledger: Optional[LedgerClient] = None) -> FastAPI:
    cfg = cfg or default_settings
    logging.basicConfig(
        level=getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = await PotStore.open(cfg.DB_PATH)
        chain = ledger or build_ledger(cfg)
        coordinator = PotCoordinator(store, chain, cfg)
        scheduler = RolloverScheduler(coordinator, cfg)
        app.state.store = store
        app.state.ledger = chain
        app.state.coordinator = coordinator
        app.state.recorder = EntryRecorder(coordinator, chain, cfg)
        app.state.scheduler = scheduler
        try:
            await ensure_games(store, cfg)
            if cfg.SCHEDULER_ENABLED:
                scheduler.start()
            yield
        finally:
            await scheduler.stop()
            await chain.close()
            await store.close()
            logger.info("potkeeper stopped")

    app = FastAPI(title="Potkeeper Backend", version=VERSION, lifespan=lifespan)
    app.state.settings = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PotError)
    async def pot_error_handler(request: Request, exc: PotError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.code}: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": str(exc)})

    prefix = "" if cfg.API_PREFIX == "/" else cfg.API_PREFIX
    app.include_router(router, prefix=prefix)
    return app


app = create_app()
