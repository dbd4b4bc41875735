"""
Potkeeper — init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes)
- Registers every configured game in the catalog (default entry fee)
"""

import asyncio
import logging
import os
from typing import List

from config import Settings, settings
from db import PotStore
from models import Game

logger = logging.getLogger(__name__)


# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)


# =========================================================
# Helpers
# =========================================================
def _display_name(game_id: str) -> str:
    return game_id.replace("_", " ").replace("-", " ").title()


async def ensure_games(store: PotStore, cfg: Settings) -> List[Game]:
    """Add missing catalog rows for cfg.game_ids; existing rows keep their fee."""
    added = []
    for game_id in cfg.game_ids:
        if await store.get_game(game_id):
            continue
        game = await store.upsert_game(
            Game(game_id=game_id, name=_display_name(game_id), entry_fee=int(cfg.DEFAULT_ENTRY_FEE))
        )
        logger.info(f"registered game {game_id} (entry fee {game.entry_fee})")
        added.append(game)
    return added


# =========================================================
# Main
# =========================================================
async def main(db_path: str = DB_PATH):
    logger.info(f"Using DB_PATH={db_path}")
    store = await PotStore.open(db_path)
    try:
        await ensure_games(store, settings)
        for game in await store.list_games():
            pot = await store.latest_pot(game.game_id)
            logger.info(f"{game.game_id}: latest pot {pot.pot_number if pot else '-'}")
    finally:
        await store.close()


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
