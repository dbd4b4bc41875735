# ledger.py
"""
Potkeeper — ledger client.

The on-chain arcade program is the authoritative holder of pot funds. The
coordinator only sees it through ``LedgerClient``; ``SolanaLedger`` is the
real implementation (solana-py AsyncClient + solders) against the Anchor
program, tests use an in-memory fake.
"""

from __future__ import annotations
from typing import List, Optional, Protocol, Tuple
import base64
import hashlib
import json
import logging
import re
import struct

import base58 as _b58

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYS_PROGRAM_ID
from solders.transaction import Transaction

from config import Settings
from errors import (
    AlreadyExists,
    InvalidWinnerList,
    LedgerUnavailable,
    PotError,
    PotNotActive,
    WinnerMismatch,
)
from models import LedgerPayment, LedgerPotAccount, LedgerStatus, PreparedTransaction

logger = logging.getLogger(__name__)


class LedgerClient(Protocol):
    """What the coordinator and recorder need from the ledger."""

    def pot_address(self, game_id: str, pot_number: int) -> str: ...

    async def create_pot_account(self, game_id: str, pot_number: int) -> str: ...

    async def get_pot_account(self, address: str) -> Optional[LedgerPotAccount]: ...

    async def close_pot_account(self, address: str) -> str: ...

    async def prepare_entry_fee(self, address: str, payer: str, amount: int) -> PreparedTransaction: ...

    async def send_prepared(self, prepared: PreparedTransaction) -> str: ...

    async def distribute(self, address: str, ranked_payees: List[str]) -> str: ...

    async def fetch_payment(self, signature: str) -> Optional[LedgerPayment]: ...

    async def get_transaction_status(self, signature: str) -> Optional[dict]: ...

    async def build_entry_fee_transaction(self, address: str, payer: str, amount: int) -> str: ...

    async def close(self) -> None: ...


# =========================================================
# Anchor encoding helpers
# =========================================================
POT_SEED = b"pot"
GAME_POT_ACCOUNT = "GamePot"

# Anchor custom errors of the arcade program (6000 + variant index)
PROGRAM_ERRORS = {
    6000: PotNotActive,
    6001: InvalidWinnerList,
    6002: WinnerMismatch,
}

_LEDGER_STATUS = {0: LedgerStatus.ACTIVE, 1: LedgerStatus.ENDED, 2: LedgerStatus.DISTRIBUTED}


def ix_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


def _borsh_string(s: str) -> bytes:
    raw = s.encode()
    return struct.pack("<I", len(raw)) + raw


def _borsh_u64(n: int) -> bytes:
    return struct.pack("<Q", int(n))


def derive_pot_pda(program_id: Pubkey, game_id: str, pot_number: int) -> Pubkey:
    pda, _bump = Pubkey.find_program_address(
        [POT_SEED, game_id.encode(), _borsh_u64(pot_number)],
        program_id,
    )
    return pda


def decode_game_pot(address: str, data: bytes) -> LedgerPotAccount:
    """
    GamePot layout: disc(8) | game_id: string | pot_number: u64 | total_lamports: u64 | status: u8
    """
    disc = account_discriminator(GAME_POT_ACCOUNT)
    if bytes(data[:8]) != disc:
        raise ValueError(f"account {address} is not a GamePot")
    o = 8
    (n,) = struct.unpack_from("<I", data, o)
    o += 4 + n
    _pot_number, total = struct.unpack_from("<QQ", data, o)
    o += 16
    status = _LEDGER_STATUS.get(data[o], LedgerStatus.ENDED)
    return LedgerPotAccount(address=address, balance=int(total), status=status)


def map_rpc_error(err: Exception) -> PotError:
    """Turn a failed send/simulation into the pot error taxonomy."""
    text = str(err)
    if "already in use" in text:
        return AlreadyExists(text)
    m = re.search(r"custom program error: 0x([0-9a-fA-F]+)", text)
    if m:
        code = int(m.group(1), 16)
        cls = PROGRAM_ERRORS.get(code)
        if cls:
            return cls(f"program error {code}")
    m = re.search(r"Error Number: (\d+)", text)
    if m:
        cls = PROGRAM_ERRORS.get(int(m.group(1)))
        if cls:
            return cls(f"program error {m.group(1)}")
    return LedgerUnavailable(text)


# =========================================================
# Keys
# =========================================================
def _kp_from_base58(b58: str) -> Keypair:
    if not b58:
        raise ValueError("Empty secret key provided")
    raw = _b58.b58decode(b58)
    if len(raw) == 64:
        return Keypair.from_bytes(raw)
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ValueError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def _kp_from_wallet_file(path: str) -> Keypair:
    with open(path, "r", encoding="utf-8") as f:
        raw = bytes(json.load(f))
    if len(raw) != 64:
        raise ValueError(f"Wallet file {path} holds {len(raw)} bytes, expected 64")
    return Keypair.from_bytes(raw)


def load_authority(settings: Settings) -> Keypair:
    if settings.AUTHORITY_SECRET:
        return _kp_from_base58(settings.AUTHORITY_SECRET)
    if settings.AUTHORITY_KEYPAIR_PATH:
        return _kp_from_wallet_file(settings.AUTHORITY_KEYPAIR_PATH)
    raise RuntimeError("AUTHORITY_SECRET or AUTHORITY_KEYPAIR_PATH must be set for ledger writes.")


def to_pubkey(addr: str) -> Pubkey:
    if not addr:
        raise ValueError("Empty public key provided")
    try:
        return Pubkey.from_string(addr)
    except ValueError:
        raw = _b58.b58decode(addr)
        if len(raw) != 32:
            raise ValueError(f"Decoded key length != 32 ({len(raw)})")
        return Pubkey.from_bytes(raw)


# =========================================================
# Solana implementation
# =========================================================
class SolanaLedger:
    """
    Anchor arcade program over one AsyncClient.

    Use as ``async with SolanaLedger(settings) as ledger`` or call ``close()``;
    the app lifespan owns the instance.
    """

    def __init__(self, settings: Settings, authority: Optional[Keypair] = None):
        self.settings = settings
        self.program_id = to_pubkey(settings.PROGRAM_ID)
        self._authority = authority
        self.client = AsyncClient(settings.RPC_URL, commitment=Confirmed, timeout=settings.ledger_timeout)

    async def __aenter__(self) -> "SolanaLedger":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.close()

    @property
    def authority(self) -> Keypair:
        # loaded lazily so read-only deployments run without a signer
        if self._authority is None:
            self._authority = load_authority(self.settings)
        return self._authority

    def pot_address(self, game_id: str, pot_number: int) -> str:
        return str(derive_pot_pda(self.program_id, game_id, pot_number))

    # ---------------- reads ----------------
    async def get_pot_account(self, address: str) -> Optional[LedgerPotAccount]:
        try:
            resp = await self.client.get_account_info(to_pubkey(address), commitment=Confirmed)
        except SolanaRpcException as e:
            raise LedgerUnavailable(str(e)) from e
        if resp.value is None:
            return None
        return decode_game_pot(address, bytes(resp.value.data))

    async def _get_transaction_json(self, signature: str) -> Optional[dict]:
        try:
            resp = await self.client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                commitment=Confirmed,
                max_supported_transaction_version=0,
            )
        except SolanaRpcException as e:
            raise LedgerUnavailable(str(e)) from e
        if resp.value is None:
            return None
        return json.loads(resp.to_json()).get("result")

    async def fetch_payment(self, signature: str) -> Optional[LedgerPayment]:
        tx = await self._get_transaction_json(signature)
        if not tx:
            return None
        meta = tx.get("meta") or {}
        msg = ((tx.get("transaction") or {}).get("message")) or {}
        keys = [str(k) for k in (msg.get("accountKeys") or [])]
        n_signers = int((msg.get("header") or {}).get("numRequiredSignatures", 0))
        programs = []
        for ix in msg.get("instructions") or []:
            idx = ix.get("programIdIndex")
            if idx is not None and idx < len(keys):
                programs.append(keys[idx])
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        deltas = {
            k: int(post[i]) - int(pre[i])
            for i, k in enumerate(keys)
            if i < len(pre) and i < len(post)
        }
        return LedgerPayment(
            signature=signature,
            succeeded=meta.get("err") is None,
            signers=keys[:n_signers],
            account_keys=keys,
            program_ids=programs,
            deltas=deltas,
        )

    async def get_transaction_status(self, signature: str) -> Optional[dict]:
        tx = await self._get_transaction_json(signature)
        if not tx:
            return None
        meta = tx.get("meta") or {}
        return {
            "signature": signature,
            "slot": tx.get("slot"),
            "block_time": tx.get("blockTime"),
            "status": "Failed" if meta.get("err") is not None else "Success",
            "fee": meta.get("fee"),
        }

    # ---------------- writes ----------------
    async def _latest_blockhash(self) -> Hash:
        try:
            lbh = await self.client.get_latest_blockhash(commitment=Confirmed)
        except SolanaRpcException as e:
            raise LedgerUnavailable(str(e)) from e
        return lbh.value.blockhash

    def _sign(self, ixs: List[Instruction], signers: List[Keypair], blockhash: Hash) -> Transaction:
        msg = Message.new_with_blockhash(ixs, signers[0].pubkey(), blockhash)
        return Transaction(signers, msg, blockhash)

    async def _send(self, ixs: List[Instruction], signers: List[Keypair]) -> str:
        tx = self._sign(ixs, signers, await self._latest_blockhash())
        return await self._send_raw(bytes(tx), str(tx.signatures[0]))

    async def _send_raw(self, raw: bytes, sig: str) -> str:
        try:
            try:
                await self.client.send_raw_transaction(
                    raw, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
                )
            except SolanaRpcException:
                # one retry with skip_preflight=True (network hiccup)
                await self.client.send_raw_transaction(
                    raw, opts=TxOpts(skip_preflight=True, preflight_commitment=Confirmed)
                )
        except RPCException as e:
            if "already been processed" in str(e):
                logger.info(f"{sig} already landed")
                return sig
            raise map_rpc_error(e) from e
        except SolanaRpcException as e:
            raise LedgerUnavailable(str(e)) from e

        try:
            await self.client.confirm_transaction(Signature.from_string(sig), commitment=Confirmed)
        except (SolanaRpcException, UnconfirmedTxError, TransactionExpiredBlockheightExceededError) as e:
            # sent but unconfirmed: callers reconcile by re-reading the pot account
            logger.warning(f"confirm failed for {sig}: {e}")
        return sig

    def _ix(self, name: str, args: bytes, accounts: List[AccountMeta]) -> Instruction:
        return Instruction(self.program_id, ix_discriminator(name) + args, accounts)

    async def create_pot_account(self, game_id: str, pot_number: int) -> str:
        pda = derive_pot_pda(self.program_id, game_id, pot_number)
        ix = self._ix(
            "initialize_pot",
            _borsh_string(game_id) + _borsh_u64(pot_number),
            [
                AccountMeta(pda, is_signer=False, is_writable=True),
                AccountMeta(self.authority.pubkey(), is_signer=True, is_writable=True),
                AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        sig = await self._send([ix], [self.authority])
        logger.info(f"initialize_pot {game_id}#{pot_number} at {pda}: {sig}")
        return str(pda)

    async def close_pot_account(self, address: str) -> str:
        ix = self._ix(
            "close_pot",
            b"",
            [
                AccountMeta(to_pubkey(address), is_signer=False, is_writable=True),
                AccountMeta(self.authority.pubkey(), is_signer=True, is_writable=False),
            ],
        )
        return await self._send([ix], [self.authority])

    def _entry_fee_ix(self, address: str, payer: Pubkey, amount: int) -> Instruction:
        return self._ix(
            "pay_entry_fee",
            _borsh_u64(amount),
            [
                AccountMeta(to_pubkey(address), is_signer=False, is_writable=True),
                AccountMeta(payer, is_signer=True, is_writable=True),
                AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )

    async def prepare_entry_fee(self, address: str, payer: str, amount: int) -> PreparedTransaction:
        """Server-paid entry signed by the authority; ``payer`` is the player it is paid for."""
        ix = self._entry_fee_ix(address, self.authority.pubkey(), amount)
        tx = self._sign([ix], [self.authority], await self._latest_blockhash())
        sig = str(tx.signatures[0])
        logger.info(f"pay_entry_fee {amount} into {address} on behalf of {payer} prepared: {sig}")
        return PreparedTransaction(signature=sig, transaction=base64.b64encode(bytes(tx)).decode())

    async def send_prepared(self, prepared: PreparedTransaction) -> str:
        return await self._send_raw(base64.b64decode(prepared.transaction), prepared.signature)

    async def build_entry_fee_transaction(self, address: str, payer: str, amount: int) -> str:
        """Unsigned pay_entry_fee transaction (base64) for the player's wallet to sign."""
        payer_pk = to_pubkey(payer)
        blockhash = await self._latest_blockhash()
        msg = Message.new_with_blockhash([self._entry_fee_ix(address, payer_pk, amount)], payer_pk, blockhash)
        return base64.b64encode(bytes(Transaction.new_unsigned(msg))).decode()

    async def distribute(self, address: str, ranked_payees: List[str]) -> str:
        winners = [to_pubkey(p) for p in ranked_payees]
        args = struct.pack("<I", len(winners)) + b"".join(bytes(w) for w in winners)
        accounts = [
            AccountMeta(to_pubkey(address), is_signer=False, is_writable=True),
            AccountMeta(self.authority.pubkey(), is_signer=True, is_writable=True),
            AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        # winners also travel as remaining accounts so the program can credit them
        accounts += [AccountMeta(w, is_signer=False, is_writable=True) for w in winners]
        return await self._send([self._ix("distribute_winners", args, accounts)], [self.authority])


def build_ledger(settings: Settings) -> SolanaLedger:
    return SolanaLedger(settings)


def normalize_address(address: str) -> Tuple[bool, str]:
    """(valid, normalized) for a user supplied base58 address."""
    try:
        return True, str(to_pubkey(address))
    except ValueError:
        return False, address
