"""
AlgoSend configuration

Every flat fee, literal transfer and tuning knob used by the budget calculator,
the group builder and the service lives in one frozen `EscrowConfig`, which is
passed explicitly to whoever needs it.

Amounts are in microAlgos unless stated otherwise.

Environment (.env)
------------------
  ALGOD_SERVER           algod endpoint (default: mainnet algonode)
  ALGOD_TOKEN            algod token (blank for algonode)
  PLATFORM_ADDRESS       receives the swept capsule balance after a claim
  CLAIM_HASH_KEY         secret key for claim-hash lookups (required)
  ALGOSEND_NETWORK       mainnet | testnet | localnet (informational)
  CONFIRMATION_ROUNDS    rounds to wait for a confirmation (default 5)
  SUBMIT_RETRIES         resubmissions on transient failures (default 2)
  BALANCE_BUFFER_PERCENT safety markup over the raw required balance (default 10)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_ALGOD_SERVER = "https://mainnet-api.algonode.cloud"

# ============================================================================
# Ledger Constants
# ============================================================================
ACCOUNT_MIN_BALANCE = 100_000       # base reserve of any account
ASSET_HOLDING_MIN_BALANCE = 100_000  # per opted-in asset
APP_PAGE_MIN_BALANCE = 100_000       # per application page created
SCHEMA_UINT_MIN_BALANCE = 28_500     # per global uint
SCHEMA_BYTES_MIN_BALANCE = 50_000    # per global byte slice

GLOBAL_UINTS = 2   # claimed, amount
GLOBAL_BYTES = 2   # creator, authorized_claimer


@dataclass(frozen=True)
class FeeSchedule:
    """Flat fee of every transaction the protocol issues"""

    app_create: int = 1_000
    fund_contract: int = 1_000
    fund_capsule: int = 1_000
    fund_recipient_fees: int = 1_000
    opt_in_call: int = 2_000          # one inner opt-in
    set_amount_call: int = 1_000
    send_asset: int = 1_000
    claim_call: int = 3_000           # inner asset transfer + inner refund payment
    capsule_close: int = 1_000
    fee_coverage_payment: int = 1_000
    creator_refund_payment: int = 1_000
    recipient_opt_in: int = 1_000     # paid by the recipient
    reclaim_call: int = 4_000         # inner transfer, close-out and refund payment
    cleanup_call: int = 3_000         # inner asset close-out + account close
    cleanup_unfunded_call: int = 2_000

    def deploy_total(self) -> int:
        return self.app_create

    def funding_total(self, cover_recipient_fees: bool) -> int:
        total = (
            self.fund_contract
            + self.fund_capsule
            + self.opt_in_call
            + self.set_amount_call
            + self.send_asset
        )
        if cover_recipient_fees:
            total += self.fund_recipient_fees
        return total

    def claim_total(self) -> int:
        return self.claim_call + self.capsule_close


@dataclass(frozen=True)
class TransferSchedule:
    """Literal microAlgo amounts moved by the funding group"""

    # app account reserve (100000) + asset holding (100000) + slack
    contract_funding: int = 210_000
    # capsule reserve + claim call + close-out payment
    capsule_funding: int = 104_000
    # recipient reserve, asset holding and opt-in fee
    recipient_fee_coverage: int = 210_000


@dataclass(frozen=True)
class EscrowConfig:
    fees: FeeSchedule = field(default_factory=FeeSchedule)
    transfers: TransferSchedule = field(default_factory=TransferSchedule)
    global_uints: int = GLOBAL_UINTS
    global_bytes: int = GLOBAL_BYTES
    extra_pages: int = 0
    buffer_percent: int = 10
    confirmation_rounds: int = 5
    submit_retries: int = 2
    teal_version: int = 8
    platform_address: Optional[str] = None
    claim_hash_key: bytes = b""  # required by EscrowService
    algod_server: str = DEFAULT_ALGOD_SERVER
    algod_token: str = ""
    network: str = "mainnet"

    @property
    def creation_reserve(self) -> int:
        """Minimum-balance increase the creator takes on by creating one escrow app"""
        return (
            APP_PAGE_MIN_BALANCE * (1 + self.extra_pages)
            + SCHEMA_UINT_MIN_BALANCE * self.global_uints
            + SCHEMA_BYTES_MIN_BALANCE * self.global_bytes
        )

    @property
    def claim_reserve(self) -> int:
        """What the capsule must keep back for the claim group it signs"""
        return ACCOUNT_MIN_BALANCE + self.fees.claim_total()

    def with_overrides(self, **changes) -> "EscrowConfig":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "EscrowConfig":
        """Build a config from the process environment (and an optional .env file)"""
        load_dotenv(dotenv_path=env_file)

        def _int(name: str, default: int) -> int:
            raw = os.getenv(name, "").strip()
            if not raw:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{name} must be an integer, got {raw!r}")

        claim_hash_key = os.getenv("CLAIM_HASH_KEY", "").strip()
        if not claim_hash_key:
            raise ValueError("CLAIM_HASH_KEY must be set; claim links are looked up by a keyed digest")

        base = cls()
        return cls(
            buffer_percent=_int("BALANCE_BUFFER_PERCENT", base.buffer_percent),
            confirmation_rounds=_int("CONFIRMATION_ROUNDS", base.confirmation_rounds),
            submit_retries=_int("SUBMIT_RETRIES", base.submit_retries),
            platform_address=os.getenv("PLATFORM_ADDRESS") or None,
            claim_hash_key=claim_hash_key.encode(),
            algod_server=os.getenv("ALGOD_SERVER") or DEFAULT_ALGOD_SERVER,
            algod_token=os.getenv("ALGOD_TOKEN", ""),
            network=os.getenv("ALGOSEND_NETWORK", base.network),
        )
