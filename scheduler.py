# scheduler.py
"""
Potkeeper — rollover scheduler.

Every ROLLOVER_INTERVAL_SECONDS, for each configured game: close the Active
pot and open the next one. A game whose previous rollover is still running
(slow ledger) is skipped for that tick.
"""

from __future__ import annotations
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar
import asyncio
import logging

from config import Settings
from coordinator import PotCoordinator
from db import now_iso
from errors import PotError, TransientError
from models import RolloverResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_transient(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    label: str = "call",
) -> T:
    """Retry ``fn`` on TransientError with exponential backoff; anything else propagates at once."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except TransientError as e:
            if attempt == attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(f"[{label}] {e.code} (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")


class RolloverScheduler:
    def __init__(self, coordinator: PotCoordinator, settings: Settings):
        self.coordinator = coordinator
        self.settings = settings
        self._inflight: Dict[str, asyncio.Task] = {}
        self._loop_task: Optional[asyncio.Task] = None

    def is_running(self, game_id: str) -> bool:
        task = self._inflight.get(game_id)
        return task is not None and not task.done()

    async def _note(self, k: str, v: str) -> None:
        # bookkeeping only; nothing awaits the rollover task that would see this fail
        try:
            await self.coordinator.store.kv_set(k, v)
        except PotError as e:
            logger.error(f"[rollover] could not record {k}: {e.code}: {e}")

    async def _rollover(self, game_id: str) -> Optional[RolloverResult]:
        try:
            result = await retry_transient(
                lambda: self.coordinator.rollover_game(game_id, min_age=self.settings.POT_MIN_AGE_SECONDS),
                attempts=self.settings.RETRY_ATTEMPTS,
                base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
                label=f"rollover {game_id}",
            )
        except PotError as e:
            logger.error(f"[rollover {game_id}] {e.code}: {e}")
            await self._note(f"rollover:{game_id}:last_error", f"{now_iso()} {e.code}: {e}")
            return None
        except Exception:
            logger.exception(f"[rollover {game_id}] unexpected failure")
            return None

        if result.opened:
            closed = f"closed #{result.closed.pot_number}, " if result.closed else ""
            logger.info(f"[rollover {game_id}] {closed}opened #{result.opened.pot_number}")
            await self._note(f"rollover:{game_id}:last_at", now_iso())
        return result

    def tick(self) -> List[asyncio.Task]:
        """Start one rollover per configured game unless that game's last one is still in flight."""
        started = []
        for game_id in self.settings.game_ids:
            if self.is_running(game_id):
                logger.warning(f"[rollover {game_id}] previous rollover still in flight, skipping tick")
                continue
            task = asyncio.create_task(self._rollover(game_id), name=f"rollover:{game_id}")
            self._inflight[game_id] = task
            started.append(task)
        return started

    async def run_once(self) -> List[Optional[RolloverResult]]:
        tasks = self.tick()
        return list(await asyncio.gather(*tasks)) if tasks else []

    async def _loop(self) -> None:
        interval = max(1.0, float(self.settings.ROLLOVER_INTERVAL_SECONDS))
        while True:
            try:
                self.tick()
            except Exception:
                logger.exception("[rollover] tick failed")
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            logger.info(f"[rollover] starting for {self.settings.game_ids}")
            self._loop_task = asyncio.create_task(self._loop(), name="rollover-loop")

    async def stop(self) -> None:
        tasks = [t for t in [self._loop_task, *self._inflight.values()] if t and not t.done()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._inflight.clear()
