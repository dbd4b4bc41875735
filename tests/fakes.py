"""In-memory ledger used in place of the Solana program."""

import asyncio
import dataclasses
from collections import Counter
from typing import Dict, List, Optional, Set

from config import Settings
from errors import AlreadyExists, PotNotActive
from models import LedgerPayment, LedgerPotAccount, LedgerStatus, PreparedTransaction

PROGRAM_ID = Settings.model_fields["PROGRAM_ID"].default


class FakeLedger:
    def __init__(self):
        self.accounts: Dict[str, LedgerPotAccount] = {}
        self.payments: Dict[str, LedgerPayment] = {}
        self.payouts: Dict[str, List[str]] = {}
        self.calls: Counter = Counter()
        # method name -> exception raised on its next call
        self.fail_next: Dict[str, Exception] = {}
        # method names that never return
        self.hang: Set[str] = set()
        # one-shot: the change is applied, then the call raises or never returns
        self.fail_after: Dict[str, Exception] = {}
        self.hang_after: Set[str] = set()
        # method name -> seconds to stall before applying
        self.slow: Dict[str, float] = {}
        self.prepared: Dict[str, tuple] = {}
        self.closed = False
        self._sig = 0

    async def _enter(self, name: str) -> None:
        self.calls[name] += 1
        if name in self.hang:
            await asyncio.sleep(3600)
        if name in self.fail_next:
            raise self.fail_next.pop(name)
        if name in self.slow:
            await asyncio.sleep(self.slow[name])

    async def _applied(self, name: str) -> None:
        if name in self.fail_after:
            raise self.fail_after.pop(name)
        if name in self.hang_after:
            self.hang_after.discard(name)
            await asyncio.sleep(3600)

    def _next_sig(self, prefix: str) -> str:
        self._sig += 1
        return f"{prefix}-sig-{self._sig}"

    # -------------------------
    # test helpers
    # -------------------------
    def set_status(self, address: str, status: LedgerStatus) -> None:
        self.accounts[address].status = status

    def add_payment(
        self,
        signature: str,
        player: str,
        address: str,
        amount: int,
        succeeded: bool = True,
        program_id: str = PROGRAM_ID,
        signers: Optional[List[str]] = None,
    ) -> LedgerPayment:
        payment = LedgerPayment(
            signature=signature,
            succeeded=succeeded,
            signers=signers if signers is not None else [player],
            account_keys=[player, address, program_id],
            program_ids=[program_id],
            deltas={player: -amount, address: amount},
        )
        self.payments[signature] = payment
        if succeeded and address in self.accounts:
            self.accounts[address].balance += amount
        return payment

    # -------------------------
    # LedgerClient
    # -------------------------
    def pot_address(self, game_id: str, pot_number: int) -> str:
        return f"pot-{game_id}-{pot_number}"

    async def create_pot_account(self, game_id: str, pot_number: int) -> str:
        await self._enter("create_pot_account")
        address = self.pot_address(game_id, pot_number)
        if address in self.accounts:
            raise AlreadyExists(f"account {address} already in use")
        self.accounts[address] = LedgerPotAccount(address=address, balance=0, status=LedgerStatus.ACTIVE)
        await self._applied("create_pot_account")
        return address

    async def get_pot_account(self, address: str) -> Optional[LedgerPotAccount]:
        await self._enter("get_pot_account")
        account = self.accounts.get(address)
        return dataclasses.replace(account) if account else None

    async def close_pot_account(self, address: str) -> str:
        await self._enter("close_pot_account")
        account = self.accounts[address]
        if account.status != LedgerStatus.ACTIVE:
            raise PotNotActive("program error 6000")
        account.status = LedgerStatus.ENDED
        await self._applied("close_pot_account")
        return self._next_sig("close")

    async def prepare_entry_fee(self, address: str, payer: str, amount: int) -> PreparedTransaction:
        await self._enter("prepare_entry_fee")
        sig = self._next_sig("entry")
        self.prepared[sig] = (address, payer, amount)
        return PreparedTransaction(signature=sig, transaction=sig)

    async def send_prepared(self, prepared: PreparedTransaction) -> str:
        await self._enter("send_prepared")
        sig = prepared.signature
        if sig in self.payments:
            # the chain processes a signature once
            return sig
        address, payer, amount = self.prepared[sig]
        account = self.accounts[address]
        if account.status != LedgerStatus.ACTIVE:
            raise PotNotActive("program error 6000")
        account.balance += amount
        self.payments[sig] = LedgerPayment(
            signature=sig,
            succeeded=True,
            signers=["authority"],
            account_keys=["authority", address, PROGRAM_ID],
            program_ids=[PROGRAM_ID],
            deltas={"authority": -amount, address: amount},
        )
        await self._applied("send_prepared")
        return sig

    async def distribute(self, address: str, ranked_payees: List[str]) -> str:
        await self._enter("distribute")
        account = self.accounts[address]
        if account.status != LedgerStatus.ENDED:
            raise PotNotActive("program error 6000")
        account.status = LedgerStatus.DISTRIBUTED
        account.balance = 0
        self.payouts[address] = list(ranked_payees)
        await self._applied("distribute")
        return self._next_sig("payout")

    async def fetch_payment(self, signature: str) -> Optional[LedgerPayment]:
        await self._enter("fetch_payment")
        return self.payments.get(signature)

    async def get_transaction_status(self, signature: str) -> Optional[dict]:
        await self._enter("get_transaction_status")
        payment = self.payments.get(signature)
        if payment is None:
            return None
        return {"signature": signature, "slot": 1, "err": None if payment.succeeded else "failed"}

    async def build_entry_fee_transaction(self, address: str, payer: str, amount: int) -> str:
        await self._enter("build_entry_fee_transaction")
        return "dW5zaWduZWQ="

    async def close(self) -> None:
        self.closed = True
