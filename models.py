# models.py
"""
Potkeeper — domain records shared by the store, the coordinator and the API.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class PotStatus(str, Enum):
    ACTIVE = "Active"
    ENDED = "Ended"


class PotState(str, Enum):
    UNINITIALIZED = "Uninitialized"
    ACTIVE = "Active"
    ENDED = "Ended"
    DISTRIBUTED = "Distributed"


class LedgerStatus(str, Enum):
    ACTIVE = "Active"
    ENDED = "Ended"
    DISTRIBUTED = "Distributed"


@dataclass(frozen=True)
class PotKey:
    game_id: str
    pot_number: int

    def __str__(self):
        return f"{self.game_id}#{self.pot_number}"


@dataclass
class Game:
    game_id: str
    name: str
    entry_fee: int
    description: Optional[str] = None
    genre: Optional[str] = None
    logo: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Pot:
    game_id: str
    pot_number: int
    address: str
    status: PotStatus
    total_amount: int
    created_at: str
    closed_at: Optional[str] = None

    @property
    def key(self) -> PotKey:
        return PotKey(self.game_id, self.pot_number)

    @property
    def is_active(self) -> bool:
        return self.status == PotStatus.ACTIVE


@dataclass
class Entry:
    id: int
    game_id: str
    pot_number: int
    player: str
    payment_ref: str
    amount: int
    score: int
    played: bool
    created_at: str
    scored_at: Optional[str] = None

    @property
    def pot_key(self) -> PotKey:
        return PotKey(self.game_id, self.pot_number)


@dataclass
class Payout:
    player: str
    rank: int
    payout_ref: Optional[str] = None


@dataclass
class DistributionRecord:
    game_id: str
    pot_number: int
    payouts: List[Payout] = field(default_factory=list)
    finalized: bool = False
    tx_ref: Optional[str] = None
    finalized_at: Optional[str] = None

    @property
    def winners(self) -> List[str]:
        return [p.player for p in sorted(self.payouts, key=lambda p: p.rank)]


@dataclass
class RankedPlayer:
    rank: int
    player: str
    score: int
    entry_id: int
    scored_at: Optional[str]


@dataclass
class LedgerPotAccount:
    address: str
    balance: int
    status: LedgerStatus


@dataclass
class LedgerPayment:
    """What the ledger says about a submitted payment transaction."""
    signature: str
    succeeded: bool
    signers: List[str] = field(default_factory=list)
    account_keys: List[str] = field(default_factory=list)
    program_ids: List[str] = field(default_factory=list)
    # lamports gained (positive) or lost per account key
    deltas: Dict[str, int] = field(default_factory=dict)


@dataclass
class RolloverResult:
    game_id: str
    closed: Optional[Pot] = None
    opened: Optional[Pot] = None
    distribution: Optional[DistributionRecord] = None


@dataclass
class PreparedTransaction:
    """Signed, not yet sent. Resending the same bytes can land at most once."""
    signature: str
    transaction: str  # base64
