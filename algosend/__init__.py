"""AlgoSend: per-transfer escrow contracts for sending Algorand assets by link"""

from algosend.config import EscrowConfig, FeeSchedule, TransferSchedule
from algosend.errors import (
    ErrorKind,
    EscrowError,
    EscrowNotFoundError,
    InsufficientBalanceError,
    LedgerRejectionError,
    StateConflictError,
    TransientNetworkError,
    ValidationError,
)
from algosend.service import EscrowService

__version__ = "0.1.0"

__all__ = [
    "EscrowConfig",
    "EscrowError",
    "EscrowNotFoundError",
    "EscrowService",
    "ErrorKind",
    "FeeSchedule",
    "InsufficientBalanceError",
    "LedgerRejectionError",
    "StateConflictError",
    "TransferSchedule",
    "TransientNetworkError",
    "ValidationError",
]
