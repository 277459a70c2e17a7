"""
Escrow records

The service keeps one `EscrowRecord` per escrow instance next to the ledger.
The ledger stays the source of truth; records are advanced after a
confirmation, or when the service finds them behind the contract state.
Storage is behind `EscrowStore`: an in-memory store for tests and development,
and a JSON file store for the deploy CLI.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from algosend.errors import EscrowNotFoundError, StateConflictError

logger = logging.getLogger(__name__)


class RecordStatus(Enum):
    AWAITING_FUNDING = "APP_CREATED_AWAITING_FUNDING"
    FUNDED = "FUNDED_READY_TO_CLAIM"
    CLAIMED = "CLAIMED"
    RECLAIMED = "RECLAIMED"
    CLEANED_UP = "CLEANED_UP"
    UNFUNDED_CLEANED_UP = "UNFUNDED_CLEANED_UP"


class ClaimType(Enum):
    OPTIMIZED = "optimized"
    OPT_IN_AND_CLAIM = "opt_in_and_claim"


_TIMESTAMPS = ("created_at", "funded_at", "claimed_at", "reclaimed_at", "cleaned_up_at")


@dataclass(frozen=True)
class EscrowRecord:
    app_id: int
    app_address: str
    creator: str
    authorized_claimer: str
    claim_hash: str
    asset_id: int
    amount: int  # base units
    created_at: datetime
    cover_recipient_fees: bool = False
    recipient_email: Optional[str] = None
    status: RecordStatus = RecordStatus.AWAITING_FUNDING
    create_txid: Optional[str] = None
    funding_txid: Optional[str] = None
    funded_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claim_type: Optional[ClaimType] = None
    reclaimed_at: Optional[datetime] = None
    resolution_txid: Optional[str] = None
    cleaned_up_at: Optional[datetime] = None
    cleanup_txid: Optional[str] = None

    @property
    def funded(self) -> bool:
        return self.funded_at is not None

    @property
    def claimed(self) -> bool:
        return self.claimed_at is not None

    @property
    def reclaimed(self) -> bool:
        return self.reclaimed_at is not None

    @property
    def resolved(self) -> bool:
        return self.claimed or self.reclaimed

    @property
    def cleaned_up(self) -> bool:
        return self.cleaned_up_at is not None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["status"] = self.status.value
        out["claim_type"] = self.claim_type.value if self.claim_type else None
        for name in _TIMESTAMPS:
            value = getattr(self, name)
            out[name] = value.isoformat() if value else None
        return out

    def to_public_dict(self) -> dict:
        """Record fields safe to hand to any caller; the claim digest stays private"""
        out = self.to_dict()
        out.pop("claim_hash")
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "EscrowRecord":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = RecordStatus(values.get("status", RecordStatus.AWAITING_FUNDING.value))
        if values.get("claim_type"):
            values["claim_type"] = ClaimType(values["claim_type"])
        for name in _TIMESTAMPS:
            if values.get(name):
                values[name] = datetime.fromisoformat(values[name])
        return cls(**values)


class EscrowStore(Protocol):
    def add(self, record: EscrowRecord) -> EscrowRecord: ...

    def get(self, app_id: int) -> Optional[EscrowRecord]: ...

    def update(self, app_id: int, **changes) -> EscrowRecord: ...

    def list_by_creator(self, creator: str) -> List[EscrowRecord]: ...


class ReferralLookup(Protocol):
    def referrer_for(self, creator: str) -> Optional[str]: ...


class NoReferrals:
    def referrer_for(self, creator: str) -> Optional[str]:
        return None


class InMemoryEscrowStore:
    """Dict-backed store; safe to share between threads"""

    def __init__(self):
        self._records: Dict[int, EscrowRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: EscrowRecord) -> EscrowRecord:
        with self._lock:
            if record.app_id in self._records:
                raise StateConflictError("Escrow record already exists", {"app_id": record.app_id})
            self._records[record.app_id] = record
            self._saved()
        return record

    def get(self, app_id: int) -> Optional[EscrowRecord]:
        return self._records.get(app_id)

    def update(self, app_id: int, **changes) -> EscrowRecord:
        with self._lock:
            record = self._records.get(app_id)
            if record is None:
                raise EscrowNotFoundError("Escrow not found", {"app_id": app_id})
            record = replace(record, **changes)
            self._records[app_id] = record
            self._saved()
        return record

    def list_by_creator(self, creator: str) -> List[EscrowRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.creator == creator]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def __len__(self) -> int:
        return len(self._records)

    def _saved(self) -> None:
        """Called with the lock held after every write"""


class JsonFileEscrowStore(InMemoryEscrowStore):
    """In-memory store mirrored to a JSON file after every write"""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            data = json.loads(self.path.read_text())
            for item in data.get("escrows", []):
                record = EscrowRecord.from_dict(item)
                self._records[record.app_id] = record
            logger.debug("loaded %d escrow records from %s", len(self._records), self.path)

    def _saved(self) -> None:
        data = {"escrows": [r.to_dict() for r in self._records.values()]}
        # Write to a temp file next to the target, then atomically replace
        tmp = self.path.with_name("." + self.path.name + ".tmp")
        with open(tmp, "w") as f:
            f.write(json.dumps(data, indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)
