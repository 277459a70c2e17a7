"""
AlgoSend exception hierarchy

Every failure that crosses the service boundary is an `EscrowError` carrying a
`kind` and a human message, so a transport layer can pick a status code
without knowing anything about the protocol.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    LEDGER_REJECTION = "ledger_rejection"
    TRANSIENT = "transient"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"


class EscrowError(Exception):
    """Base exception for all AlgoSend errors"""

    kind: ErrorKind = ErrorKind.VALIDATION
    retryable = False

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "details": dict(self.details)}


class ValidationError(EscrowError):
    """Malformed input, rejected before any ledger I/O"""

    kind = ErrorKind.VALIDATION


class InsufficientBalanceError(EscrowError):
    """Pre-flight budget check failed"""

    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, message: str, shortfall: int, details: Optional[dict] = None):
        merged = {"shortfall": shortfall}
        merged.update(details or {})
        super().__init__(message, merged)
        self.shortfall = shortfall


class LedgerRejectionError(EscrowError):
    """The contract or the ledger refused the transaction group"""

    kind = ErrorKind.LEDGER_REJECTION


class ContractRejection(LedgerRejectionError):
    """Raised by the contract model when a call would fail on-ledger"""


class TransientNetworkError(EscrowError):
    """Ledger unreachable or confirmation timed out; resubmit the same group"""

    kind = ErrorKind.TRANSIENT
    retryable = True

    def __init__(self, message: str, txid: Optional[str] = None, details: Optional[dict] = None):
        merged = dict(details or {})
        if txid:
            merged["txid"] = txid
        super().__init__(message, merged)
        self.txid = txid


class StateConflictError(EscrowError):
    """Escrow already resolved or cleaned up"""

    kind = ErrorKind.STATE_CONFLICT


class EscrowNotFoundError(EscrowError):
    """No escrow matches the claim hash, app id or creator"""

    kind = ErrorKind.NOT_FOUND
