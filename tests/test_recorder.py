"""Tests for payment verification and sponsored entries."""

import json
from dataclasses import asdict

import pytest

from conftest import ENTRY_FEE, GAME, make_settings
from db import now_iso
from errors import DuplicatePayment, LedgerUnavailable, PaymentNotVerified, PotNotActive, PotNotFound
from models import Game, PotKey, PreparedTransaction
from recorder import EntryRecorder


class TestVerifyAndRecord:
    async def test_verified_payment_becomes_entry(self, recorder, ledger, coordinator, active_pot, key):
        ledger.add_payment("sig-1", "p1", active_pot.address, ENTRY_FEE)

        entry = await recorder.verify_and_record(key, "p1", "sig-1")

        assert entry.payment_ref == "sig-1"
        assert entry.amount == ENTRY_FEE
        assert (await coordinator.get_pot(key)).total_amount == ENTRY_FEE

    async def test_overpayment_is_credited_in_full(self, recorder, ledger, active_pot, key):
        ledger.add_payment("sig-1", "p1", active_pot.address, ENTRY_FEE * 2)

        entry = await recorder.verify_and_record(key, "p1", "sig-1")

        assert entry.amount == ENTRY_FEE * 2

    async def test_unknown_transaction(self, recorder, active_pot, key):
        with pytest.raises(PaymentNotVerified):
            await recorder.verify_and_record(key, "p1", "sig-missing")

    async def test_failed_transaction(self, recorder, ledger, active_pot, key):
        ledger.add_payment("sig-1", "p1", active_pot.address, ENTRY_FEE, succeeded=False)

        with pytest.raises(PaymentNotVerified):
            await recorder.verify_and_record(key, "p1", "sig-1")

    async def test_player_must_sign(self, recorder, ledger, active_pot, key):
        ledger.add_payment("sig-1", "p1", active_pot.address, ENTRY_FEE, signers=["someone-else"])

        with pytest.raises(PaymentNotVerified):
            await recorder.verify_and_record(key, "p1", "sig-1")

    async def test_program_must_be_invoked(self, recorder, ledger, active_pot, key):
        ledger.add_payment("sig-1", "p1", active_pot.address, ENTRY_FEE, program_id="OtherProgram111")

        with pytest.raises(PaymentNotVerified):
            await recorder.verify_and_record(key, "p1", "sig-1")

    async def test_underpayment(self, recorder, ledger, active_pot, key):
        ledger.add_payment("sig-1", "p1", active_pot.address, ENTRY_FEE - 1)

        with pytest.raises(PaymentNotVerified):
            await recorder.verify_and_record(key, "p1", "sig-1")

    async def test_payment_to_another_pot(self, recorder, ledger, coordinator, active_pot, key):
        ledger.add_payment("sig-1", "p1", "some-other-pot", ENTRY_FEE)

        with pytest.raises(PaymentNotVerified):
            await recorder.verify_and_record(key, "p1", "sig-1")

    async def test_replayed_signature(self, recorder, ledger, active_pot, key):
        ledger.add_payment("sig-1", "p1", active_pot.address, ENTRY_FEE)
        await recorder.verify_and_record(key, "p1", "sig-1")

        with pytest.raises(DuplicatePayment):
            await recorder.verify_and_record(key, "p1", "sig-1")

        assert ledger.calls["fetch_payment"] == 1

    async def test_closed_pot(self, recorder, ledger, coordinator, active_pot, key):
        ledger.add_payment("sig-1", "p1", active_pot.address, ENTRY_FEE)
        await coordinator.close_pot(key)

        with pytest.raises(PotNotActive):
            await recorder.verify_and_record(key, "p1", "sig-1")

    async def test_slow_ledger(self, recorder, ledger, active_pot, key):
        ledger.hang.add("fetch_payment")

        with pytest.raises(LedgerUnavailable):
            await recorder.verify_and_record(key, "p1", "sig-1")


class TestSponsorEntry:
    async def test_pays_catalog_fee(self, recorder, ledger, coordinator, active_pot, key):
        entry = await recorder.sponsor_entry(key, "p1")

        assert entry.amount == ENTRY_FEE
        assert ledger.accounts[active_pot.address].balance == ENTRY_FEE
        assert (await coordinator.ledger_view(key))["in_sync"] is True

    async def test_explicit_amount(self, recorder, active_pot, key):
        entry = await recorder.sponsor_entry(key, "p1", 123)

        assert entry.amount == 123

    async def test_retry_after_lost_reply_pays_once(self, recorder, ledger, coordinator, store, active_pot, key):
        # the payment lands but the reply never arrives
        ledger.fail_after["send_prepared"] = LedgerUnavailable("connection reset")

        with pytest.raises(LedgerUnavailable):
            await recorder.sponsor_entry(key, "p1")
        entry = await recorder.sponsor_entry(key, "p1")

        assert entry.player == "p1"
        assert ledger.calls["prepare_entry_fee"] == 1
        assert ledger.accounts[active_pot.address].balance == ENTRY_FEE
        assert (await coordinator.get_pot(key)).total_amount == ENTRY_FEE
        assert len(await coordinator.pot_entries(key)) == 1
        assert await store.kv_get(f"sponsor:{key}:p1") is None

    async def test_retry_after_entry_recorded_returns_it(self, recorder, ledger, coordinator, store, active_pot, key):
        first = await recorder.sponsor_entry(key, "p1")
        # simulate a crash after the entry was written but before the pending record was cleared
        prepared = PreparedTransaction(signature=first.payment_ref, transaction=first.payment_ref)
        pending = {**asdict(prepared), "amount": ENTRY_FEE, "prepared_at": now_iso()}
        await store.kv_set(f"sponsor:{key}:p1", json.dumps(pending))

        again = await recorder.sponsor_entry(key, "p1")

        assert again.id == first.id
        assert ledger.accounts[active_pot.address].balance == ENTRY_FEE
        assert len(await coordinator.pot_entries(key)) == 1

    async def test_expired_unsent_payment_is_signed_again(self, tmp_path, coordinator, ledger, active_pot, key):
        recorder = EntryRecorder(coordinator, ledger, make_settings(tmp_path, SPONSOR_PENDING_TTL_SECONDS=0))
        ledger.fail_next["send_prepared"] = LedgerUnavailable("rpc down")

        with pytest.raises(LedgerUnavailable):
            await recorder.sponsor_entry(key, "p1")
        entry = await recorder.sponsor_entry(key, "p1")

        assert ledger.calls["prepare_entry_fee"] == 2
        assert entry.amount == ENTRY_FEE
        assert ledger.accounts[active_pot.address].balance == ENTRY_FEE


class TestEntryFee:
    async def test_unknown_game_uses_default(self, recorder, settings):
        assert await recorder.entry_fee("not_in_catalog") == settings.DEFAULT_ENTRY_FEE

    async def test_catalog_fee_wins(self, recorder, store):
        await store.upsert_game(Game(game_id="snake", name="Snake", entry_fee=42))

        assert await recorder.entry_fee("snake") == 42

    async def test_build_entry_transaction(self, recorder, active_pot, key):
        tx = await recorder.build_entry_transaction(key, "p1")

        assert tx["pot_address"] == active_pot.address
        assert tx["amount"] == ENTRY_FEE
        assert tx["transaction"]

    async def test_build_entry_transaction_needs_active_pot(self, recorder):
        with pytest.raises(PotNotFound):
            await recorder.build_entry_transaction(PotKey(GAME, 5), "p1")
