"""Shared fixtures: a throwaway database, the fake ledger and a coordinator on top."""

import pytest
import pytest_asyncio

from config import Settings
from coordinator import PotCoordinator
from db import PotStore
from fakes import FakeLedger
from models import Game, PotKey
from recorder import EntryRecorder

GAME = "flappy_bird"
ENTRY_FEE = 10_000_000


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        DB_PATH=str(tmp_path / "potkeeper.db"),
        GAMES=[GAME],
        WINNER_COUNT=3,
        SCHEDULER_ENABLED=False,
        LEDGER_TIMEOUT_SECONDS=0.2,
        RETRY_ATTEMPTS=3,
        RETRY_BASE_DELAY_SECONDS=0.01,
        ADMIN_TOKEN="secret",
        DEFAULT_ENTRY_FEE=ENTRY_FEE,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest_asyncio.fixture
async def store(settings: Settings):
    """Fresh schema in a per-test SQLite file."""
    store = await PotStore.open(settings.DB_PATH)
    await store.upsert_game(Game(game_id=GAME, name="Flappy Bird", entry_fee=ENTRY_FEE))
    yield store
    await store.close()


@pytest.fixture
def coordinator(store: PotStore, ledger: FakeLedger, settings: Settings) -> PotCoordinator:
    return PotCoordinator(store, ledger, settings)


@pytest.fixture
def recorder(coordinator: PotCoordinator, ledger: FakeLedger, settings: Settings) -> EntryRecorder:
    return EntryRecorder(coordinator, ledger, settings)


@pytest.fixture
def key() -> PotKey:
    return PotKey(GAME, 1)


@pytest_asyncio.fixture
async def active_pot(coordinator: PotCoordinator, key: PotKey):
    return await coordinator.create_pot(key.game_id, key.pot_number)


async def play(coordinator: PotCoordinator, key: PotKey, scores: dict) -> dict:
    """Record one entry per player and score it; returns player -> entry."""
    entries = {}
    for player, score in scores.items():
        entry = await coordinator.record_entry(key, player, f"pay-{key}-{player}", ENTRY_FEE)
        entries[player] = await coordinator.record_score(entry.id, score)
    return entries
