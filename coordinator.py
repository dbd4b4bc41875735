# coordinator.py
"""
Potkeeper — pot lifecycle coordinator.

Owns the per-pot state machine

    Uninitialized -> Active -> Ended -> Distributed

and keeps the store in step with the ledger. Every multi-step operation
either reaches its terminal state or can be retried from the top: before
repeating a ledger write we re-read the ledger account and, when the ledger
already shows the outcome, only repair the store.

Locking (all asyncio, one process):
  * per-pot lock around every mutation of that pot
  * per-game lock around pot creation and rollover
  * game lock is always taken before a pot lock, never the other way round
Reads take no locks.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Awaitable, Iterable, List, Optional, TypeVar
import asyncio
import logging
import sqlite3
import weakref

from config import Settings
from db import PotStore, now_iso
from errors import (
    ActivePotConflict,
    AlreadyDistributed,
    AlreadyExists,
    AlreadyScored,
    DuplicatePayment,
    EntryNotFound,
    InvalidWinnerList,
    LedgerStateMismatch,
    LedgerUnavailable,
    PaymentNotVerified,
    PotError,
    PotNotActive,
    PotNotEnded,
    PotNotFound,
    WinnerMismatch,
)
from ledger import LedgerClient
from models import (
    DistributionRecord,
    Entry,
    LedgerPotAccount,
    LedgerStatus,
    Pot,
    PotKey,
    PotState,
    PotStatus,
    RankedPlayer,
    RolloverResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def rank_entries(entries: Iterable[Entry], tie_break: str = "earliest") -> List[RankedPlayer]:
    """
    Played entries ranked by score, highest first, one slot per player (their
    best entry). Equal scores: the score recorded first wins ("latest" flips
    that); entry id settles anything left.
    """
    ordered = sorted(
        (e for e in entries if e.played),
        key=lambda e: (e.scored_at or e.created_at, e.id),
        reverse=(tie_break == "latest"),
    )
    ordered.sort(key=lambda e: -e.score)

    ranked: List[RankedPlayer] = []
    seen = set()
    for e in ordered:
        if e.player in seen:
            continue
        seen.add(e.player)
        ranked.append(
            RankedPlayer(rank=len(ranked) + 1, player=e.player, score=e.score, entry_id=e.id, scored_at=e.scored_at)
        )
    return ranked


def age_seconds(iso_ts: str) -> float:
    ts = datetime.fromisoformat(iso_ts)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - ts).total_seconds()


class PotCoordinator:
    def __init__(self, store: PotStore, ledger: LedgerClient, settings: Settings):
        self.store = store
        self.ledger = ledger
        self.settings = settings
        # entries vanish once no coroutine holds or waits on the lock
        self._pot_locks: "weakref.WeakValueDictionary[PotKey, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._game_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # =========================================================
    # Helpers
    # =========================================================
    @staticmethod
    def _lock(table: weakref.WeakValueDictionary, k) -> asyncio.Lock:
        lock = table.get(k)
        if lock is None:
            lock = table[k] = asyncio.Lock()
        return lock

    def _pot_lock(self, key: PotKey) -> asyncio.Lock:
        return self._lock(self._pot_locks, key)

    def _game_lock(self, game_id: str) -> asyncio.Lock:
        return self._lock(self._game_locks, game_id)

    async def ledger_call(self, what: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.settings.ledger_timeout)
        except asyncio.TimeoutError as e:
            raise LedgerUnavailable(f"{what} timed out after {self.settings.ledger_timeout}s") from e

    async def require_pot(self, key: PotKey) -> Pot:
        pot = await self.store.get_pot(key)
        if pot is None:
            raise PotNotFound(f"no pot {key}")
        return pot

    async def _ledger_account(self, pot: Pot) -> LedgerPotAccount:
        account = await self.ledger_call("get_pot_account", self.ledger.get_pot_account(pot.address))
        if account is None:
            raise LedgerStateMismatch(f"pot {pot.key} has no ledger account at {pot.address}")
        return account

    # =========================================================
    # CreatePot
    # =========================================================
    async def create_pot(self, game_id: str, pot_number: int) -> Pot:
        async with self._game_lock(game_id):
            return await self._create_pot(PotKey(game_id, pot_number))

    async def _create_pot(self, key: PotKey) -> Pot:
        if await self.store.get_pot(key):
            raise AlreadyExists(f"pot {key} already exists")
        active = await self.store.find_active_pot(key.game_id)
        if active:
            raise ActivePotConflict(f"pot {active.key} is still Active")

        # a previous attempt may have created the account and then failed to write the store
        address = self.ledger.pot_address(key.game_id, key.pot_number)
        account = await self.ledger_call("get_pot_account", self.ledger.get_pot_account(address))
        if account is None:
            address = await self.ledger_call(
                "create_pot_account", self.ledger.create_pot_account(key.game_id, key.pot_number)
            )
            balance = 0
            logger.info(f"pot {key}: ledger account created at {address}")
        elif account.status == LedgerStatus.ACTIVE:
            balance = account.balance
            logger.warning(f"pot {key}: ledger account {address} exists without a store record, adopting it")
        else:
            raise AlreadyExists(f"ledger account {address} for {key} is already {account.status.value}")

        pot = Pot(
            game_id=key.game_id,
            pot_number=key.pot_number,
            address=address,
            status=PotStatus.ACTIVE,
            total_amount=balance,
            created_at=now_iso(),
        )
        try:
            async with self.store.transaction() as c:
                await self.store.insert_pot(c, pot)
        except sqlite3.IntegrityError as e:
            raise AlreadyExists(f"pot {key} was recorded concurrently") from e
        logger.info(f"pot {key}: Active")
        return pot

    # =========================================================
    # RecordEntry
    # =========================================================
    async def record_entry(self, key: PotKey, player: str, payment_ref: str, amount: int) -> Entry:
        """Caller has already verified the payment against the ledger."""
        if amount <= 0:
            raise PaymentNotVerified(f"entry amount must be positive, got {amount}")
        async with self._pot_lock(key):
            pot = await self.require_pot(key)
            if not pot.is_active:
                raise PotNotActive(f"pot {key} is {pot.status.value}")
            if await self.store.entry_by_payment(payment_ref):
                raise DuplicatePayment(f"payment {payment_ref} already recorded")
            try:
                async with self.store.transaction() as c:
                    entry_id = await self.store.insert_entry(c, key, player, payment_ref, amount)
                    if not await self.store.add_to_pot_total(c, key, amount):
                        raise PotNotActive(f"pot {key} closed while recording entry")
            except sqlite3.IntegrityError as e:
                raise DuplicatePayment(f"payment {payment_ref} already recorded") from e
        logger.info(f"pot {key}: entry {entry_id} for {player} (+{amount}) via {payment_ref}")
        return await self.store.get_entry(entry_id)

    # =========================================================
    # RecordScore
    # =========================================================
    async def record_score(self, entry_id: int, score: int) -> Entry:
        entry = await self.store.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(f"no entry {entry_id}")
        async with self._pot_lock(entry.pot_key):
            # the winner list is fixed once a distribution row exists, pending or not
            if await self.store.get_distribution(entry.pot_key):
                raise AlreadyDistributed(f"pot {entry.pot_key} is already being distributed")
            async with self.store.transaction() as c:
                written = await self.store.set_score(c, entry_id, score)
        if not written:
            raise AlreadyScored(f"entry {entry_id} already has a score")
        logger.info(f"pot {entry.pot_key}: entry {entry_id} scored {score}")
        return await self.store.get_entry(entry_id)

    # =========================================================
    # ClosePot
    # =========================================================
    async def close_pot(self, key: PotKey) -> Pot:
        async with self._pot_lock(key):
            return await self._close_pot(key)

    async def _close_pot(self, key: PotKey) -> Pot:
        pot = await self.require_pot(key)
        if not pot.is_active:
            raise PotNotActive(f"pot {key} is already {pot.status.value}")

        account = await self._ledger_account(pot)
        if account.balance != pot.total_amount:
            logger.warning(f"pot {key}: ledger balance {account.balance} != recorded {pot.total_amount}")

        if account.status == LedgerStatus.ACTIVE:
            try:
                sig = await self.ledger_call("close_pot_account", self.ledger.close_pot_account(pot.address))
                logger.info(f"pot {key}: ledger closed ({sig})")
            except PotNotActive:
                account = await self._ledger_account(pot)
                if account.status == LedgerStatus.ACTIVE:
                    raise
                logger.warning(f"pot {key}: ledger refused close, already {account.status.value}; repairing store")
        else:
            logger.warning(f"pot {key}: ledger already {account.status.value}, repairing store record")

        async with self.store.transaction() as c:
            if not await self.store.mark_pot_ended(c, key, now_iso()):
                raise PotNotActive(f"pot {key} left Active concurrently")
        logger.info(f"pot {key}: Ended")
        return await self.store.get_pot(key)

    # =========================================================
    # DistributeWinners
    # =========================================================
    async def compute_ranking(self, key: PotKey) -> List[RankedPlayer]:
        entries = await self.store.entries_for_pot(key, played_only=True)
        return rank_entries(entries, self.settings.TIE_BREAK)

    async def distribute_winners(self, key: PotKey, winner_list: Optional[List[str]] = None) -> DistributionRecord:
        """
        Pay the top WINNER_COUNT players of an Ended pot, once.
        ``winner_list`` must match the computed ranking exactly; None means
        "use the computed ranking".
        """
        async with self._pot_lock(key):
            return await self._distribute(key, winner_list)

    async def _distribute(self, key: PotKey, winner_list: Optional[List[str]]) -> DistributionRecord:
        pot = await self.require_pot(key)
        if pot.is_active:
            raise PotNotEnded(f"pot {key} is still Active")
        existing = await self.store.get_distribution(key)
        if existing and existing.finalized:
            raise AlreadyDistributed(f"pot {key} was distributed ({existing.tx_ref})")

        n = self.settings.WINNER_COUNT
        if existing:
            # an earlier attempt fixed the list before paying; never re-rank
            expected = existing.winners
            logger.warning(f"pot {key}: resuming pending distribution to {expected}")
        else:
            ranking = await self.compute_ranking(key)
            if len(ranking) < n:
                raise InvalidWinnerList(f"only {len(ranking)} players scored in {key}, {n} needed")
            expected = [r.player for r in ranking[:n]]
        if winner_list is None:
            winner_list = expected
        if len(winner_list) != len(expected):
            raise InvalidWinnerList(f"expected {len(expected)} winners, got {len(winner_list)}")
        if list(winner_list) != expected:
            raise WinnerMismatch(f"winner order does not match ranking for {key}")

        account = await self._ledger_account(pot)
        if account.status == LedgerStatus.ACTIVE:
            raise LedgerStateMismatch(f"pot {key} is Ended in the store but Active on the ledger")
        if not existing:
            async with self.store.transaction() as c:
                await self.store.save_pending_distribution(c, key, expected)

        if account.status == LedgerStatus.DISTRIBUTED:
            tx_ref = None
            logger.warning(f"pot {key}: ledger already distributed, finalizing record without payout")
        else:
            tx_ref = await self.ledger_call("distribute", self.ledger.distribute(pot.address, expected))
            logger.info(f"pot {key}: distributed to {expected} ({tx_ref})")

        async with self.store.transaction() as c:
            await self.store.finalize_distribution(c, key, tx_ref)
        return await self.store.get_distribution(key)

    # =========================================================
    # RolloverGame
    # =========================================================
    async def rollover_game(self, game_id: str, min_age: float = 0.0) -> RolloverResult:
        """Close the game's Active pot and open the next one; one rollover per game at a time."""
        async with self._game_lock(game_id):
            result = RolloverResult(game_id=game_id)
            active = await self.store.find_active_pot(game_id)
            if active:
                if min_age and age_seconds(active.created_at) < min_age:
                    logger.debug(f"pot {active.key}: younger than {min_age}s, not rolling over")
                    return result
                async with self._pot_lock(active.key):
                    result.closed = await self._close_pot(active.key)
                next_number = active.pot_number + 1
            else:
                # first run, or a previous rollover stopped between close and create
                latest = await self.store.latest_pot(game_id)
                next_number = latest.pot_number + 1 if latest else 1

            result.opened = await self._create_pot(PotKey(game_id, next_number))

            if result.closed and self.settings.AUTO_DISTRIBUTE:
                result.distribution = await self._auto_distribute(result.closed.key)
            return result

    async def _auto_distribute(self, key: PotKey) -> Optional[DistributionRecord]:
        try:
            async with self._pot_lock(key):
                return await self._distribute(key, None)
        except PotError as e:
            # pot stays Ended; an admin can distribute it later
            logger.warning(f"pot {key}: auto distribution skipped: {e.code}: {e}")
            await self.store.kv_set(f"pot:{key}:distribution_error", f"{e.code}: {e}")
            return None

    # =========================================================
    # Reads (no locks)
    # =========================================================
    async def get_pot(self, key: PotKey) -> Optional[Pot]:
        return await self.store.get_pot(key)

    async def latest_pot(self, game_id: str) -> Optional[Pot]:
        return await self.store.latest_pot(game_id)

    async def active_pot(self, game_id: str) -> Optional[Pot]:
        return await self.store.find_active_pot(game_id)

    async def list_pots(self, game_id: str, limit: int = 50, offset: int = 0) -> List[Pot]:
        return await self.store.list_pots(game_id, limit, offset)

    async def pot_entries(self, key: PotKey) -> List[Entry]:
        return await self.store.entries_for_pot(key)

    async def pot_players(self, key: PotKey) -> List[str]:
        return await self.store.players_for_pot(key)

    async def get_distribution(self, key: PotKey) -> Optional[DistributionRecord]:
        return await self.store.get_distribution(key)

    async def leaderboard(self, key: PotKey) -> List[RankedPlayer]:
        await self.require_pot(key)
        return await self.compute_ranking(key)

    async def pot_state(self, key: PotKey) -> PotState:
        pot = await self.store.get_pot(key)
        if pot is None:
            return PotState.UNINITIALIZED
        if pot.is_active:
            return PotState.ACTIVE
        dist = await self.store.get_distribution(key)
        return PotState.DISTRIBUTED if dist and dist.finalized else PotState.ENDED

    async def ledger_view(self, key: PotKey) -> dict:
        """Store record next to the live ledger account."""
        pot = await self.require_pot(key)
        account = await self.ledger_call("get_pot_account", self.ledger.get_pot_account(pot.address))
        return {
            "pot": pot,
            "state": await self.pot_state(key),
            "ledger_balance": account.balance if account else None,
            "ledger_status": account.status.value if account else None,
            "in_sync": (
                account is not None
                and account.balance == pot.total_amount
                and (account.status == LedgerStatus.ACTIVE) == pot.is_active
            ),
        }
