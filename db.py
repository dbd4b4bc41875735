# db.py

"""
Potkeeper — db.py
Canonical schema + async (aiosqlite) store for pots, entries and distributions.
Target DB path: /data/potkeeper.db
"""

from __future__ import annotations
from typing import AsyncIterator, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import asyncio
import logging
import os
import sqlite3
import aiosqlite

from errors import StoreUnavailable
from models import DistributionRecord, Entry, Game, Payout, Pot, PotKey, PotStatus

logger = logging.getLogger(__name__)

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);

CREATE TABLE IF NOT EXISTS games (
  game_id     TEXT PRIMARY KEY,
  name        TEXT NOT NULL,
  entry_fee   INTEGER NOT NULL DEFAULT 0,
  description TEXT,
  genre       TEXT,
  logo        TEXT,
  created_at  TEXT NOT NULL
);

-- one row per (game, round); address is the on-chain pot PDA
CREATE TABLE IF NOT EXISTS pots (
  id           INTEGER PRIMARY KEY AUTOINCREMENT,
  game_id      TEXT NOT NULL,
  pot_number   INTEGER NOT NULL,
  address      TEXT NOT NULL,
  status       TEXT NOT NULL DEFAULT 'Active',
  total_amount INTEGER NOT NULL DEFAULT 0,
  created_at   TEXT NOT NULL,
  closed_at    TEXT,
  UNIQUE(game_id, pot_number)
);

CREATE TABLE IF NOT EXISTS entries (
  id          INTEGER PRIMARY KEY AUTOINCREMENT,
  game_id     TEXT NOT NULL,
  pot_number  INTEGER NOT NULL,
  player      TEXT NOT NULL,
  payment_ref TEXT NOT NULL,
  amount      INTEGER NOT NULL,
  score       INTEGER NOT NULL DEFAULT 0,
  played      INTEGER NOT NULL DEFAULT 0,
  created_at  TEXT NOT NULL,
  scored_at   TEXT,
  FOREIGN KEY(game_id, pot_number) REFERENCES pots(game_id, pot_number)
);

CREATE TABLE IF NOT EXISTS distributions (
  game_id      TEXT NOT NULL,
  pot_number   INTEGER NOT NULL,
  finalized    INTEGER NOT NULL DEFAULT 0,
  tx_ref       TEXT,
  created_at   TEXT NOT NULL,
  finalized_at TEXT,
  PRIMARY KEY(game_id, pot_number),
  FOREIGN KEY(game_id, pot_number) REFERENCES pots(game_id, pot_number)
);

CREATE TABLE IF NOT EXISTS payouts (
  game_id    TEXT NOT NULL,
  pot_number INTEGER NOT NULL,
  rank       INTEGER NOT NULL,
  player     TEXT NOT NULL,
  payout_ref TEXT,
  PRIMARY KEY(game_id, pot_number, rank),
  FOREIGN KEY(game_id, pot_number) REFERENCES distributions(game_id, pot_number)
);

-- at most one Active pot per game
CREATE UNIQUE INDEX IF NOT EXISTS idx_pots_one_active ON pots(game_id) WHERE status='Active';
CREATE INDEX IF NOT EXISTS idx_pots_game ON pots(game_id, pot_number);
-- a payment may back at most one entry
CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_payment ON entries(payment_ref);
CREATE INDEX IF NOT EXISTS idx_entries_pot ON entries(game_id, pot_number);
CREATE INDEX IF NOT EXISTS idx_entries_player ON entries(game_id, pot_number, player);
""".strip()

# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "/data/potkeeper.db")


def now_iso() -> str:
    """UTC timestamp with microseconds; sorts lexically in time order."""
    return datetime.now(timezone.utc).isoformat()


async def connect(db_path: str = DB_PATH) -> aiosqlite.Connection:
    """
    Async connection for FastAPI handlers; ensures schema and sets PRAGMAs.
    Autocommit mode: writers open their own BEGIN IMMEDIATE (see PotStore.transaction).
    """
    parent = os.path.dirname(db_path)
    if db_path != ":memory:" and parent:
        os.makedirs(parent, exist_ok=True)
    conn = await aiosqlite.connect(db_path, isolation_level=None)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA wal_autocheckpoint=1000")
    await conn.execute("PRAGMA busy_timeout=5000")

    # Use aiosqlite.Row for dict-like access
    conn.row_factory = aiosqlite.Row

    await ensure_schema(conn)
    return conn


async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)


# =========================================================
# Row mapping
# =========================================================
def _pot(row) -> Pot:
    return Pot(
        game_id=row["game_id"],
        pot_number=int(row["pot_number"]),
        address=row["address"],
        status=PotStatus(row["status"]),
        total_amount=int(row["total_amount"] or 0),
        created_at=row["created_at"],
        closed_at=row["closed_at"],
    )


def _entry(row) -> Entry:
    return Entry(
        id=int(row["id"]),
        game_id=row["game_id"],
        pot_number=int(row["pot_number"]),
        player=row["player"],
        payment_ref=row["payment_ref"],
        amount=int(row["amount"] or 0),
        score=int(row["score"] or 0),
        played=bool(row["played"]),
        created_at=row["created_at"],
        scored_at=row["scored_at"],
    )


def _game(row) -> Game:
    return Game(
        game_id=row["game_id"],
        name=row["name"],
        entry_fee=int(row["entry_fee"] or 0),
        description=row["description"],
        genre=row["genre"],
        logo=row["logo"],
        created_at=row["created_at"],
    )


POT_COLS = "game_id, pot_number, address, status, total_amount, created_at, closed_at"
ENTRY_COLS = "id, game_id, pot_number, player, payment_ref, amount, score, played, created_at, scored_at"


# =========================================================
# Store
# =========================================================
class PotStore:
    """
    Durable record of pots, entries and distributions on one aiosqlite connection.

    Reads go straight to the connection. Writes go through ``transaction()``,
    which serializes writers on the connection so two coroutines never
    interleave statements inside one BEGIN/COMMIT.
    """

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, db_path: str) -> "PotStore":
        try:
            conn = await connect(db_path)
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"cannot open {db_path}: {e}") from e
        return cls(conn)

    async def close(self) -> None:
        await self.conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Usage:
            async with store.transaction() as c:
                await c.execute(...)
                await c.execute(...)
        """
        async with self._write_lock:
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise StoreUnavailable(str(e)) from e
            try:
                yield self.conn
                await self.conn.commit()
            except sqlite3.OperationalError as e:
                await self.conn.rollback()
                raise StoreUnavailable(str(e)) from e
            except BaseException:
                await self.conn.rollback()
                raise

    async def _fetchone(self, sql: str, params: tuple = ()):
        try:
            async with self.conn.execute(sql, params) as cur:
                return await cur.fetchone()
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(str(e)) from e

    async def _fetchall(self, sql: str, params: tuple = ()):
        try:
            async with self.conn.execute(sql, params) as cur:
                return await cur.fetchall()
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(str(e)) from e

    # -------------------------
    # KV
    # -------------------------
    async def kv_set(self, k: str, v: str) -> None:
        """Upsert a key/value pair in the KV table."""
        async with self.transaction() as c:
            await c.execute(
                "INSERT INTO kv(k, v) VALUES(?, ?) "
                "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                (k, v),
            )

    async def kv_get(self, k: str) -> Optional[str]:
        """Read a value from KV; return None if missing."""
        row = await self._fetchone("SELECT v FROM kv WHERE k=?", (k,))
        return row[0] if row else None

    async def kv_delete(self, k: str) -> None:
        async with self.transaction() as c:
            await c.execute("DELETE FROM kv WHERE k=?", (k,))

    # -------------------------
    # Games catalog
    # -------------------------
    async def upsert_game(self, game: Game) -> Game:
        created = game.created_at or now_iso()
        async with self.transaction() as c:
            await c.execute(
                "INSERT INTO games(game_id, name, entry_fee, description, genre, logo, created_at) "
                "VALUES(?,?,?,?,?,?,?) "
                "ON CONFLICT(game_id) DO UPDATE SET name=excluded.name, entry_fee=excluded.entry_fee, "
                "description=excluded.description, genre=excluded.genre, logo=excluded.logo",
                (game.game_id, game.name, int(game.entry_fee), game.description, game.genre, game.logo, created),
            )
        return await self.get_game(game.game_id)

    async def get_game(self, game_id: str) -> Optional[Game]:
        row = await self._fetchone("SELECT * FROM games WHERE game_id=?", (game_id,))
        return _game(row) if row else None

    async def list_games(self) -> List[Game]:
        rows = await self._fetchall("SELECT * FROM games ORDER BY game_id")
        return [_game(r) for r in rows]

    # -------------------------
    # Pots
    # -------------------------
    async def get_pot(self, key: PotKey) -> Optional[Pot]:
        row = await self._fetchone(
            f"SELECT {POT_COLS} FROM pots WHERE game_id=? AND pot_number=?",
            (key.game_id, key.pot_number),
        )
        return _pot(row) if row else None

    async def find_active_pot(self, game_id: str) -> Optional[Pot]:
        row = await self._fetchone(
            f"SELECT {POT_COLS} FROM pots WHERE game_id=? AND status='Active' "
            "ORDER BY pot_number DESC LIMIT 1",
            (game_id,),
        )
        return _pot(row) if row else None

    async def latest_pot(self, game_id: str) -> Optional[Pot]:
        row = await self._fetchone(
            f"SELECT {POT_COLS} FROM pots WHERE game_id=? ORDER BY pot_number DESC LIMIT 1",
            (game_id,),
        )
        return _pot(row) if row else None

    async def list_pots(self, game_id: str, limit: int = 50, offset: int = 0) -> List[Pot]:
        rows = await self._fetchall(
            f"SELECT {POT_COLS} FROM pots WHERE game_id=? ORDER BY pot_number DESC LIMIT ? OFFSET ?",
            (game_id, limit, offset),
        )
        return [_pot(r) for r in rows]

    async def insert_pot(self, c: aiosqlite.Connection, pot: Pot) -> None:
        await c.execute(
            "INSERT INTO pots(game_id, pot_number, address, status, total_amount, created_at) "
            "VALUES(?,?,?,?,?,?)",
            (pot.game_id, pot.pot_number, pot.address, pot.status.value, pot.total_amount, pot.created_at),
        )

    async def mark_pot_ended(self, c: aiosqlite.Connection, key: PotKey, closed_at: str) -> bool:
        """Active -> Ended; closed_at is written only by this transition."""
        cur = await c.execute(
            "UPDATE pots SET status='Ended', closed_at=? "
            "WHERE game_id=? AND pot_number=? AND status='Active'",
            (closed_at, key.game_id, key.pot_number),
        )
        return cur.rowcount == 1

    async def add_to_pot_total(self, c: aiosqlite.Connection, key: PotKey, amount: int) -> bool:
        cur = await c.execute(
            "UPDATE pots SET total_amount = total_amount + ? "
            "WHERE game_id=? AND pot_number=? AND status='Active'",
            (amount, key.game_id, key.pot_number),
        )
        return cur.rowcount == 1

    # -------------------------
    # Entries
    # -------------------------
    async def insert_entry(
        self, c: aiosqlite.Connection, key: PotKey, player: str, payment_ref: str, amount: int
    ) -> int:
        cur = await c.execute(
            "INSERT INTO entries(game_id, pot_number, player, payment_ref, amount, created_at) "
            "VALUES(?,?,?,?,?,?)",
            (key.game_id, key.pot_number, player, payment_ref, amount, now_iso()),
        )
        return int(cur.lastrowid)

    async def get_entry(self, entry_id: int) -> Optional[Entry]:
        row = await self._fetchone(f"SELECT {ENTRY_COLS} FROM entries WHERE id=?", (entry_id,))
        return _entry(row) if row else None

    async def entry_by_payment(self, payment_ref: str) -> Optional[Entry]:
        row = await self._fetchone(f"SELECT {ENTRY_COLS} FROM entries WHERE payment_ref=?", (payment_ref,))
        return _entry(row) if row else None

    async def set_score(self, c: aiosqlite.Connection, entry_id: int, score: int) -> bool:
        """Score is written once: only an unplayed entry accepts it."""
        cur = await c.execute(
            "UPDATE entries SET score=?, played=1, scored_at=? WHERE id=? AND played=0",
            (score, now_iso(), entry_id),
        )
        return cur.rowcount == 1

    async def entries_for_pot(self, key: PotKey, played_only: bool = False) -> List[Entry]:
        sql = f"SELECT {ENTRY_COLS} FROM entries WHERE game_id=? AND pot_number=?"
        if played_only:
            sql += " AND played=1"
        rows = await self._fetchall(sql + " ORDER BY id ASC", (key.game_id, key.pot_number))
        return [_entry(r) for r in rows]

    async def players_for_pot(self, key: PotKey) -> List[str]:
        rows = await self._fetchall(
            "SELECT player FROM entries WHERE game_id=? AND pot_number=? "
            "GROUP BY player ORDER BY MIN(id)",
            (key.game_id, key.pot_number),
        )
        return [r[0] for r in rows]

    # -------------------------
    # Distributions
    # -------------------------
    async def get_distribution(self, key: PotKey) -> Optional[DistributionRecord]:
        row = await self._fetchone(
            "SELECT finalized, tx_ref, finalized_at FROM distributions WHERE game_id=? AND pot_number=?",
            (key.game_id, key.pot_number),
        )
        if not row:
            return None
        payouts = await self._fetchall(
            "SELECT rank, player, payout_ref FROM payouts WHERE game_id=? AND pot_number=? ORDER BY rank",
            (key.game_id, key.pot_number),
        )
        return DistributionRecord(
            game_id=key.game_id,
            pot_number=key.pot_number,
            payouts=[Payout(player=p["player"], rank=int(p["rank"]), payout_ref=p["payout_ref"]) for p in payouts],
            finalized=bool(row["finalized"]),
            tx_ref=row["tx_ref"],
            finalized_at=row["finalized_at"],
        )

    async def save_pending_distribution(self, c: aiosqlite.Connection, key: PotKey, winners: List[str]) -> None:
        """Winner list fixed before the payout is sent; finalize_distribution completes it."""
        await c.execute(
            "INSERT INTO distributions(game_id, pot_number, finalized, created_at) VALUES(?,?,0,?)",
            (key.game_id, key.pot_number, now_iso()),
        )
        for rank, player in enumerate(winners, start=1):
            await c.execute(
                "INSERT INTO payouts(game_id, pot_number, rank, player) VALUES(?,?,?,?)",
                (key.game_id, key.pot_number, rank, player),
            )

    async def finalize_distribution(self, c: aiosqlite.Connection, key: PotKey, tx_ref: Optional[str]) -> bool:
        cur = await c.execute(
            "UPDATE distributions SET finalized=1, tx_ref=?, finalized_at=? "
            "WHERE game_id=? AND pot_number=? AND finalized=0",
            (tx_ref, now_iso(), key.game_id, key.pot_number),
        )
        await c.execute(
            "UPDATE payouts SET payout_ref=? WHERE game_id=? AND pot_number=?",
            (tx_ref, key.game_id, key.pot_number),
        )
        return cur.rowcount == 1
