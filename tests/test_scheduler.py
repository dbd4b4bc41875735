"""Tests for the rollover scheduler and its retry helper."""

import pytest

from conftest import GAME, make_settings
from errors import AlreadyExists, LedgerUnavailable, StoreUnavailable
from models import LedgerPotAccount, LedgerStatus
from scheduler import RolloverScheduler, retry_transient


class TestRetryTransient:
    async def test_retries_until_success(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise LedgerUnavailable("down")
            return "ok"

        assert await retry_transient(flaky, attempts=3, base_delay=0.001) == "ok"
        assert len(calls) == 3

    async def test_gives_up_after_attempts(self):
        calls = []

        async def down():
            calls.append(1)
            raise LedgerUnavailable("down")

        with pytest.raises(LedgerUnavailable):
            await retry_transient(down, attempts=2, base_delay=0.001)
        assert len(calls) == 2

    async def test_business_errors_are_not_retried(self):
        calls = []

        async def rejected():
            calls.append(1)
            raise AlreadyExists("pot exists")

        with pytest.raises(AlreadyExists):
            await retry_transient(rejected, attempts=5, base_delay=0.001)
        assert len(calls) == 1


class TestRolloverScheduler:
    async def test_run_once_opens_first_pots(self, tmp_path, coordinator, store):
        coordinator.settings = make_settings(tmp_path, GAMES=[GAME, "snake"])
        scheduler = RolloverScheduler(coordinator, coordinator.settings)

        results = await scheduler.run_once()

        assert sorted(r.opened.game_id for r in results) == [GAME, "snake"]
        assert all(r.opened.pot_number == 1 for r in results)
        assert await store.kv_get(f"rollover:{GAME}:last_at") is not None

    async def test_second_run_rolls_over(self, coordinator, settings):
        scheduler = RolloverScheduler(coordinator, settings)
        await scheduler.run_once()

        (result,) = await scheduler.run_once()

        assert result.closed.pot_number == 1
        assert result.opened.pot_number == 2

    async def test_in_flight_game_is_skipped(self, coordinator, settings):
        scheduler = RolloverScheduler(coordinator, settings)

        first = scheduler.tick()
        second = scheduler.tick()

        assert len(first) == 1
        assert second == []
        assert scheduler.is_running(GAME)
        await first[0]
        assert not scheduler.is_running(GAME)

    async def test_transient_failure_is_retried(self, coordinator, ledger, settings):
        ledger.fail_next["create_pot_account"] = LedgerUnavailable("rpc down")
        scheduler = RolloverScheduler(coordinator, settings)

        (result,) = await scheduler.run_once()

        assert result.opened.pot_number == 1
        assert ledger.calls["create_pot_account"] == 2

    async def test_business_failure_is_recorded(self, coordinator, ledger, store, settings):
        address = ledger.pot_address(GAME, 1)
        ledger.accounts[address] = LedgerPotAccount(address=address, balance=0, status=LedgerStatus.ENDED)
        scheduler = RolloverScheduler(coordinator, settings)

        assert await scheduler.run_once() == [None]
        assert ledger.calls["get_pot_account"] == 1
        assert "already_exists" in await store.kv_get(f"rollover:{GAME}:last_error")

    async def test_bookkeeping_failure_does_not_escape(self, coordinator, ledger, store, settings, monkeypatch):
        async def locked(k, v):
            raise StoreUnavailable("database is locked")

        monkeypatch.setattr(store, "kv_set", locked)
        address = ledger.pot_address(GAME, 1)
        ledger.accounts[address] = LedgerPotAccount(address=address, balance=0, status=LedgerStatus.ENDED)
        scheduler = RolloverScheduler(coordinator, settings)

        assert await scheduler.run_once() == [None]
        assert not scheduler.is_running(GAME)

    async def test_rollover_result_survives_bookkeeping_failure(self, coordinator, store, settings, monkeypatch):
        async def locked(k, v):
            raise StoreUnavailable("database is locked")

        monkeypatch.setattr(store, "kv_set", locked)
        scheduler = RolloverScheduler(coordinator, settings)

        (result,) = await scheduler.run_once()

        assert result.opened.pot_number == 1
        assert await store.kv_get(f"rollover:{GAME}:last_at") is None

    async def test_start_and_stop(self, coordinator, settings):
        scheduler = RolloverScheduler(coordinator, settings)

        scheduler.start()
        await scheduler.stop()

        assert scheduler._loop_task is None
        assert not scheduler.is_running(GAME)
