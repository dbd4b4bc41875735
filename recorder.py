# recorder.py
"""
Potkeeper — entry/score recorder.

Turns "I paid" / "I finished playing" requests into coordinator calls. The
payment check happens here and only here: once ``verify_and_record`` has
matched a transaction to the pot, the coordinator takes the amount as given.
"""

from __future__ import annotations
from dataclasses import asdict
from typing import Optional
import json
import logging

from config import Settings
from coordinator import PotCoordinator, age_seconds
from db import now_iso
from errors import DuplicatePayment, PaymentNotVerified, PotNotActive
from ledger import LedgerClient
from models import Entry, LedgerPayment, Pot, PotKey, PreparedTransaction

logger = logging.getLogger(__name__)


class EntryRecorder:
    def __init__(self, coordinator: PotCoordinator, ledger: LedgerClient, settings: Settings):
        self.coordinator = coordinator
        self.ledger = ledger
        self.settings = settings
        self.program_id = settings.PROGRAM_ID

    async def entry_fee(self, game_id: str) -> int:
        game = await self.coordinator.store.get_game(game_id)
        return game.entry_fee if game else int(self.settings.DEFAULT_ENTRY_FEE)

    async def _active_pot(self, key: PotKey) -> Pot:
        pot = await self.coordinator.require_pot(key)
        if not pot.is_active:
            raise PotNotActive(f"pot {key} is {pot.status.value}")
        return pot

    def _check_payment(self, payment: Optional[LedgerPayment], pot: Pot, player: str, fee: int) -> int:
        """Lamports the payment put into the pot; raises when it does not qualify."""
        if payment is None:
            raise PaymentNotVerified("transaction not found (not confirmed yet?)")
        if not payment.succeeded:
            raise PaymentNotVerified(f"transaction {payment.signature} failed on chain")
        if player not in payment.signers:
            raise PaymentNotVerified(f"{player} did not sign {payment.signature}")
        if self.program_id not in payment.program_ids:
            raise PaymentNotVerified(f"{payment.signature} does not invoke the pot program")
        credited = int(payment.deltas.get(pot.address, 0))
        if credited < fee:
            raise PaymentNotVerified(f"pot received {credited} lamports, entry fee is {fee}")
        return credited

    async def verify_and_record(self, key: PotKey, player: str, signature: str) -> Entry:
        pot = await self._active_pot(key)
        if await self.coordinator.store.entry_by_payment(signature):
            raise DuplicatePayment(f"payment {signature} already recorded")

        fee = await self.entry_fee(key.game_id)
        payment = await self.coordinator.ledger_call("fetch_payment", self.ledger.fetch_payment(signature))
        amount = self._check_payment(payment, pot, player, fee)
        logger.info(f"payment {signature} verified: {player} -> {pot.address} ({amount})")
        return await self.coordinator.record_entry(key, player, signature, amount)

    async def _pending_sponsor(self, pending_key: str) -> Optional[dict]:
        raw = await self.coordinator.store.kv_get(pending_key)
        if raw is None:
            return None
        pending = json.loads(raw)
        if age_seconds(pending["prepared_at"]) < self.settings.SPONSOR_PENDING_TTL_SECONDS:
            return pending
        status = await self.coordinator.ledger_call(
            "get_transaction_status", self.ledger.get_transaction_status(pending["signature"])
        )
        if status is not None:
            return pending
        # blockhash expired without landing: that transaction can never be processed
        logger.warning(f"dropping expired sponsor payment {pending['signature']}")
        await self.coordinator.store.kv_delete(pending_key)
        return None

    async def sponsor_entry(self, key: PotKey, player: str, amount: Optional[int] = None) -> Entry:
        """
        Pay the entry fee from the server wallet and record the entry for ``player``.

        The signed transaction is stored before it is sent. A retry resends the
        same bytes instead of signing a new payment, so the pot is paid once.
        """
        pot = await self._active_pot(key)
        store = self.coordinator.store
        pending_key = f"sponsor:{key}:{player}"
        pending = await self._pending_sponsor(pending_key)
        if pending is None:
            amount = amount or await self.entry_fee(key.game_id)
            prepared = await self.coordinator.ledger_call(
                "prepare_entry_fee", self.ledger.prepare_entry_fee(pot.address, player, amount)
            )
            pending = {**asdict(prepared), "amount": amount, "prepared_at": now_iso()}
            await store.kv_set(pending_key, json.dumps(pending))
        else:
            logger.warning(f"resuming sponsor payment {pending['signature']} for {player} in {key}")

        prepared = PreparedTransaction(signature=pending["signature"], transaction=pending["transaction"])
        sig = await self.coordinator.ledger_call("send_prepared", self.ledger.send_prepared(prepared))
        try:
            entry = await self.coordinator.record_entry(key, player, sig, int(pending["amount"]))
        except DuplicatePayment:
            entry = await store.entry_by_payment(sig)
        await store.kv_delete(pending_key)
        return entry

    async def build_entry_transaction(self, key: PotKey, player: str) -> dict:
        pot = await self._active_pot(key)
        fee = await self.entry_fee(key.game_id)
        tx = await self.coordinator.ledger_call(
            "build_entry_fee_transaction", self.ledger.build_entry_fee_transaction(pot.address, player, fee)
        )
        return {"pot_address": pot.address, "amount": fee, "transaction": tx}

    async def submit_score(self, entry_id: int, score: int) -> Entry:
        return await self.coordinator.record_score(entry_id, score)
