"""
Escrow contract state machine

Typed model of the escrow approval program in `algosend.contracts.escrow_contract`.
The service uses it to decode and validate on-ledger global state before it
builds anything, and the in-memory ledger used by the tests executes app calls
through `apply_call`, so both sides agree on the same rules.

Phases:
    CREATED  -> app deployed, no amount recorded (never funded)
    FUNDED   -> asset deposited, amount recorded, claimed = 0
    RESOLVED -> claimed = 1 (claimed by the capsule, or reclaimed by the creator)
    DELETED  -> app deleted by the creator

On-ledger, claim and reclaim both set the single `claimed` flag. The caller
learns which one happened from `Transition.resolution`; afterwards only the
app account tells them apart: a claim leaves its asset holding at zero, a
reclaim closes the holding out.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional, Tuple, Union

from algosdk import encoding, logic

from algosend.config import ASSET_HOLDING_MIN_BALANCE
from algosend.errors import ContractRejection

# ============================================================================
# Selectors and Global State Keys
# ============================================================================
SELECTOR_OPT_IN_ASSET = b"opt_in_asset"
SELECTOR_CLAIM = b"claim"
SELECTOR_SET_AMOUNT = b"set_amount"
SELECTOR_RECLAIM = b"reclaim"
SELECTORS = frozenset({SELECTOR_OPT_IN_ASSET, SELECTOR_CLAIM, SELECTOR_SET_AMOUNT, SELECTOR_RECLAIM})

KEY_CREATOR = b"creator"
KEY_AMOUNT = b"amount"
KEY_CLAIMED = b"claimed"
KEY_AUTHORIZED_CLAIMER = b"authorized_claimer"


class EscrowPhase(Enum):
    CREATED = "created"
    FUNDED = "funded"
    RESOLVED = "resolved"
    DELETED = "deleted"


class Resolution(Enum):
    CLAIMED = "claimed"
    RECLAIMED = "reclaimed"


@dataclass(frozen=True)
class EscrowState:
    app_id: int
    creator: str
    authorized_claimer: str
    asset_id: Optional[int] = None  # compiled literal; unknown when decoded from algod
    amount: Optional[int] = None
    claimed: bool = False
    deleted: bool = False

    @property
    def phase(self) -> EscrowPhase:
        if self.deleted:
            return EscrowPhase.DELETED
        if self.claimed:
            return EscrowPhase.RESOLVED
        if self.amount is None:
            return EscrowPhase.CREATED
        return EscrowPhase.FUNDED

    @property
    def app_address(self) -> str:
        return logic.get_application_address(self.app_id)

    @property
    def funded(self) -> bool:
        return self.amount is not None

    def with_asset(self, asset_id: int) -> "EscrowState":
        return replace(self, asset_id=asset_id)

    @classmethod
    def create(cls, app_id: int, creator: str, capsule_address: str, asset_id: int) -> "EscrowState":
        """State right after the creation call"""
        return cls(
            app_id=app_id,
            creator=creator,
            authorized_claimer=capsule_address,
            asset_id=asset_id,
        )

    @classmethod
    def from_global_state(
        cls, app_id: int, entries: Iterable[dict], asset_id: Optional[int] = None
    ) -> "EscrowState":
        """Decode algod's `global-state` list (base64 keys, typed values)"""
        raw = {}
        for kv in entries:
            key = base64.b64decode(kv["key"])
            value = kv["value"]
            if value.get("type") == 1:
                raw[key] = base64.b64decode(value.get("bytes", ""))
            else:
                raw[key] = int(value.get("uint", 0))

        try:
            creator = encoding.encode_address(raw[KEY_CREATOR])
            claimer = encoding.encode_address(raw[KEY_AUTHORIZED_CLAIMER])
        except KeyError as e:
            raise ValueError(f"app {app_id} is not an escrow instance: missing {e.args[0]!r}")
        return cls(
            app_id=app_id,
            creator=creator,
            authorized_claimer=claimer,
            asset_id=asset_id,
            amount=raw.get(KEY_AMOUNT),
            claimed=bool(raw.get(KEY_CLAIMED, 0)),
        )

    def to_global_state(self) -> list:
        """Encode in algod's `global-state` shape"""

        def _bytes(key: bytes, value: bytes) -> dict:
            return {
                "key": base64.b64encode(key).decode(),
                "value": {"type": 1, "bytes": base64.b64encode(value).decode(), "uint": 0},
            }

        def _uint(key: bytes, value: int) -> dict:
            return {"key": base64.b64encode(key).decode(), "value": {"type": 2, "bytes": "", "uint": value}}

        out = [
            _bytes(KEY_CREATOR, encoding.decode_address(self.creator)),
            _bytes(KEY_AUTHORIZED_CLAIMER, encoding.decode_address(self.authorized_claimer)),
            _uint(KEY_CLAIMED, int(self.claimed)),
        ]
        if self.amount is not None:
            out.append(_uint(KEY_AMOUNT, self.amount))
        return out


# ============================================================================
# Calls
# ============================================================================

@dataclass(frozen=True)
class Deposit:
    """The asset transfer that must follow `set_amount` in the funding group"""

    sender: str
    asset_id: int
    receiver: str
    amount: int


@dataclass(frozen=True)
class OptInAsset:
    sender: str
    asset_id: Optional[int]


@dataclass(frozen=True)
class SetAmount:
    sender: str
    amount_bytes: bytes
    deposit: Optional[Deposit] = None


@dataclass(frozen=True)
class Claim:
    sender: str
    asset_id: Optional[int]
    accounts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Reclaim:
    sender: str
    asset_id: Optional[int]


@dataclass(frozen=True)
class Delete:
    sender: str
    asset_ids: Tuple[int, ...] = ()


ContractCall = Union[OptInAsset, SetAmount, Claim, Reclaim, Delete]


# ============================================================================
# Effects
# ============================================================================

@dataclass(frozen=True)
class AppBalances:
    """Application account balances at the time of the call"""

    native: int
    min_balance: int
    asset_holding: Optional[int] = None  # None when not opted in


@dataclass(frozen=True)
class InnerAssetTransfer:
    asset_id: int
    amount: int
    receiver: str
    close_to: Optional[str] = None


@dataclass(frozen=True)
class InnerPayment:
    receiver: str
    amount: int
    close_to: Optional[str] = None


InnerTransaction = Union[InnerAssetTransfer, InnerPayment]


@dataclass(frozen=True)
class Transition:
    state: EscrowState
    effects: Tuple[InnerTransaction, ...] = ()
    resolution: Optional[Resolution] = None


# ============================================================================
# Transition Function
# ============================================================================

def _require(condition: bool, reason: str, state: EscrowState) -> None:
    if not condition:
        raise ContractRejection(reason, {"app_id": state.app_id, "phase": state.phase.value})


def _require_asset(state: EscrowState, asset_id: Optional[int]) -> int:
    _require(asset_id is not None, "asset reference missing", state)
    if state.asset_id is not None:
        _require(asset_id == state.asset_id, "wrong asset", state)
    return asset_id


def _spendable(native: int, min_balance: int) -> int:
    return max(0, native - min_balance)


def apply_call(state: EscrowState, call: ContractCall, balances: AppBalances) -> Transition:
    """Run one application call against the escrow; raise ContractRejection on failure"""
    _require(not state.deleted, "application does not exist", state)

    if isinstance(call, OptInAsset):
        return _opt_in_asset(state, call)
    if isinstance(call, SetAmount):
        return _set_amount(state, call)
    if isinstance(call, Claim):
        return _claim(state, call, balances)
    if isinstance(call, Reclaim):
        return _reclaim(state, call, balances)
    if isinstance(call, Delete):
        return _delete(state, call, balances)
    raise ContractRejection(f"unknown call {type(call).__name__}", {"app_id": state.app_id})


def check_deposit(state: EscrowState, sender: str) -> None:
    """Plain value transfers into the app are only accepted from the creator or the app"""
    _require(
        sender == state.creator or sender == state.app_address,
        "deposits only accepted from the creator",
        state,
    )


def _opt_in_asset(state: EscrowState, call: OptInAsset) -> Transition:
    _require(call.sender == state.creator, "only the creator can opt in", state)
    asset_id = _require_asset(state, call.asset_id)
    return Transition(
        state=state,
        effects=(InnerAssetTransfer(asset_id=asset_id, amount=0, receiver=state.app_address),),
    )


def _set_amount(state: EscrowState, call: SetAmount) -> Transition:
    _require(call.sender == state.creator, "only the creator can set the amount", state)
    _require(len(call.amount_bytes) == 8, "malformed amount encoding", state)
    _require(state.amount is None, "amount already set", state)
    amount = int.from_bytes(call.amount_bytes, "big")
    _require(amount > 0, "amount must be positive", state)

    deposit = call.deposit
    _require(deposit is not None, "set_amount must be followed by the asset deposit", state)
    _require(deposit.sender == state.creator, "deposit must come from the creator", state)
    _require(deposit.receiver == state.app_address, "deposit must go to the app", state)
    _require(deposit.amount == amount, "deposit does not match amount", state)
    _require_asset(state, deposit.asset_id)
    return Transition(state=replace(state, amount=amount))


def _claim(state: EscrowState, call: Claim, balances: AppBalances) -> Transition:
    _require(not state.claimed, "already claimed", state)
    _require(call.sender == state.authorized_claimer, "unauthorized claimer", state)
    _require(len(call.accounts) >= 1, "no recipient account supplied", state)
    _require(state.amount is not None, "escrow not funded", state)
    asset_id = _require_asset(state, call.asset_id)

    recipient = call.accounts[0]
    effects = [InnerAssetTransfer(asset_id=asset_id, amount=state.amount, receiver=recipient)]
    refund = _spendable(balances.native, balances.min_balance)
    if refund > 0:
        effects.append(InnerPayment(receiver=state.creator, amount=refund))
    return Transition(
        state=replace(state, claimed=True),
        effects=tuple(effects),
        resolution=Resolution.CLAIMED,
    )


def _reclaim(state: EscrowState, call: Reclaim, balances: AppBalances) -> Transition:
    _require(call.sender == state.creator, "only the creator can reclaim", state)
    _require(not state.claimed, "already claimed", state)
    asset_id = _require_asset(state, call.asset_id)
    _require(bool(balances.asset_holding), "no asset balance to reclaim", state)

    effects = [
        InnerAssetTransfer(asset_id=asset_id, amount=balances.asset_holding, receiver=state.creator),
        InnerAssetTransfer(asset_id=asset_id, amount=0, receiver=state.creator, close_to=state.creator),
    ]
    refund = _spendable(balances.native, balances.min_balance - ASSET_HOLDING_MIN_BALANCE)
    if refund > 0:
        effects.append(InnerPayment(receiver=state.creator, amount=refund))
    return Transition(
        state=replace(state, claimed=True),
        effects=tuple(effects),
        resolution=Resolution.RECLAIMED,
    )


def _delete(state: EscrowState, call: Delete, balances: AppBalances) -> Transition:
    _require(call.sender == state.creator, "only the creator can delete", state)
    _require(state.claimed or state.amount is None, "escrow not resolved", state)

    effects = []
    if balances.asset_holding is not None:
        _require(bool(call.asset_ids), "asset holding must be closed out", state)
        asset_id = _require_asset(state, call.asset_ids[0])
        effects.append(
            InnerAssetTransfer(asset_id=asset_id, amount=0, receiver=state.creator, close_to=state.creator)
        )
    effects.append(InnerPayment(receiver=state.creator, amount=0, close_to=state.creator))
    return Transition(state=replace(state, deleted=True), effects=tuple(effects))
