# errors.py
"""
Potkeeper — Errors
One taxonomy for the coordinator, the ledger client and the HTTP layer.

TransientError subclasses are retried by whoever called the coordinator
(scheduler / request handler), with backoff. Everything else is a business
rejection and goes straight back to the caller.
"""

from __future__ import annotations


class PotError(Exception):
    code = "pot_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)


# ---------- transient ----------
class TransientError(PotError):
    code = "transient"
    status_code = 503


class LedgerUnavailable(TransientError):
    code = "ledger_unavailable"


class StoreUnavailable(TransientError):
    code = "store_unavailable"


# ---------- business rejections ----------
class AlreadyExists(PotError):
    code = "already_exists"
    status_code = 409


class ActivePotConflict(PotError):
    code = "active_pot_conflict"
    status_code = 409


class PotNotFound(PotError):
    code = "pot_not_found"
    status_code = 404


class PotNotActive(PotError):
    code = "pot_not_active"
    status_code = 409


class PotNotEnded(PotError):
    code = "pot_not_ended"
    status_code = 409


class DuplicatePayment(PotError):
    code = "duplicate_payment"
    status_code = 409


class PaymentNotVerified(PotError):
    code = "payment_not_verified"
    status_code = 402


class EntryNotFound(PotError):
    code = "entry_not_found"
    status_code = 404


class AlreadyScored(PotError):
    code = "already_scored"
    status_code = 409


class InvalidWinnerList(PotError):
    code = "invalid_winner_list"
    status_code = 422


class WinnerMismatch(PotError):
    code = "winner_mismatch"
    status_code = 422


class AlreadyDistributed(PotError):
    code = "already_distributed"
    status_code = 409


class LedgerStateMismatch(PotError):
    """Store and ledger disagree in a way no automatic repair covers."""
    code = "ledger_state_mismatch"
    status_code = 500
