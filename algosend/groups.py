"""
Transaction group builder

Pure functions that turn suggested params, addresses and the config into
`GroupPlan`s. Every leg carries a flat fee from the `FeeSchedule`; outer fees
pay for the contract's inner transactions. Multi-leg groups share one group id
and land atomically.

Groups:
    deploy            [create]                                       creator
    funding           [fund app, fund capsule, (cover fees),
                       opt_in_asset, set_amount, deposit]            creator
    claim             [claim, (refund creator), close capsule]       capsule
    opt-in claim      [(cover recipient), recipient opt-in,
                       claim, close capsule]                         capsule + recipient
    reclaim           [reclaim]                                      creator
    cleanup           [delete + asset]                               creator
    cleanup-unfunded  [delete]                                       creator
"""

from __future__ import annotations

import binascii
import copy
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

from algosdk import encoding, logic, transaction

from algosend.assets import encode_amount
from algosend.config import EscrowConfig
from algosend.errors import ValidationError
from algosend.state import SELECTOR_CLAIM, SELECTOR_OPT_IN_ASSET, SELECTOR_RECLAIM, SELECTOR_SET_AMOUNT

logger = logging.getLogger(__name__)


class SignerRole(Enum):
    CREATOR = "creator"
    CAPSULE = "capsule"
    RECIPIENT = "recipient"


class GroupKind(Enum):
    DEPLOY = "deploy"
    FUNDING = "funding"
    CLAIM = "claim"
    OPT_IN_CLAIM = "opt_in_claim"
    RECLAIM = "reclaim"
    CLEANUP = "cleanup"
    CLEANUP_UNFUNDED = "cleanup_unfunded"


@dataclass(frozen=True)
class Leg:
    txn: transaction.Transaction
    signer: SignerRole
    signed: Optional[transaction.SignedTransaction] = None

    @property
    def txid(self) -> str:
        return self.txn.get_txid()


@dataclass(frozen=True)
class GroupPlan:
    kind: GroupKind
    legs: Tuple[Leg, ...]
    recipient_index: Optional[int] = None

    def __len__(self) -> int:
        return len(self.legs)

    @property
    def transactions(self) -> List[transaction.Transaction]:
        return [leg.txn for leg in self.legs]

    @property
    def txids(self) -> List[str]:
        return [leg.txid for leg in self.legs]

    @property
    def primary_txid(self) -> str:
        return self.legs[0].txid

    @property
    def group_id(self) -> Optional[bytes]:
        return self.legs[0].txn.group

    @property
    def total_fee(self) -> int:
        return sum(leg.txn.fee for leg in self.legs)

    def unsigned_slots(self) -> List[int]:
        return [i for i, leg in enumerate(self.legs) if leg.signed is None]

    def slots_for(self, role: SignerRole) -> List[int]:
        return [i for i, leg in enumerate(self.legs) if leg.signer is role]

    def sign(self, role: SignerRole, private_key: str) -> "GroupPlan":
        """Sign every leg that belongs to `role`"""
        legs = list(self.legs)
        for i in self.slots_for(role):
            legs[i] = replace(legs[i], signed=legs[i].txn.sign(private_key))
        return replace(self, legs=tuple(legs))

    def attach(self, index: int, signed: transaction.SignedTransaction) -> "GroupPlan":
        """Attach an externally produced signature to one slot"""
        if not 0 <= index < len(self.legs):
            raise ValidationError("No such group slot", {"index": index, "size": len(self.legs)})
        _require_signature(signed)
        expected = self.legs[index].txid
        if signed.get_txid() != expected:
            raise ValidationError(
                "Signed transaction does not match group slot",
                {"index": index, "expected": expected, "got": signed.get_txid()},
            )
        legs = list(self.legs)
        legs[index] = replace(legs[index], signed=signed)
        return replace(self, legs=tuple(legs))

    def assemble(self) -> List[transaction.SignedTransaction]:
        missing = self.unsigned_slots()
        if missing:
            raise ValidationError("Transaction group is not fully signed", {"unsigned": missing})
        return [leg.signed for leg in self.legs]

    def to_wire(self) -> List[dict]:
        """Base64 msgpack per leg, signed where a signature is already attached"""
        return [
            {
                "index": i,
                "signer": leg.signer.value,
                "txid": leg.txid,
                "txn": encoding.msgpack_encode(leg.txn),
                "signed": encoding.msgpack_encode(leg.signed) if leg.signed is not None else None,
            }
            for i, leg in enumerate(self.legs)
        ]


def _require_signature(signed) -> None:
    if not isinstance(signed, transaction.SignedTransaction):
        raise ValidationError("Expected a signed transaction", {"type": type(signed).__name__})
    if signed.signature is None:
        raise ValidationError("Transaction is not signed", {"txid": signed.get_txid()})


def decode_signed_group(
    blobs: Sequence[Union[str, transaction.SignedTransaction]]
) -> List[transaction.SignedTransaction]:
    """Decode base64 msgpack signed transactions (as produced by wallets)"""
    if not blobs:
        raise ValidationError("Missing signed transactions")
    out = []
    for i, blob in enumerate(blobs):
        if isinstance(blob, transaction.SignedTransaction):
            decoded = blob
        else:
            try:
                decoded = encoding.msgpack_decode(blob)
            except (binascii.Error, ValueError, TypeError, KeyError) as e:
                raise ValidationError("Malformed signed transaction", {"index": i, "error": str(e)})
        _require_signature(decoded)
        out.append(decoded)
    require_complete_group(out)
    return out


def require_complete_group(signed: Sequence[transaction.SignedTransaction]) -> None:
    """Every leg must carry the group id of exactly this set of transactions"""
    txns = [s.transaction for s in signed]
    if len(txns) == 1 and txns[0].group is None:
        return
    stripped = []
    for txn in txns:
        txn = copy.copy(txn)
        txn.group = None
        stripped.append(txn)
    expected = transaction.calculate_group_id(stripped)
    for i, txn in enumerate(txns):
        if txn.group != expected:
            raise ValidationError(
                "Transaction group is incomplete or reordered", {"index": i, "size": len(txns)}
            )


# ============================================================================
# Builders
# ============================================================================

def leg_params(sp: transaction.SuggestedParams, fee: int) -> transaction.SuggestedParams:
    params = copy.copy(sp)
    params.flat_fee = True
    params.fee = fee
    return params


def _plan(kind: GroupKind, legs: List[Leg], recipient_index: Optional[int] = None) -> GroupPlan:
    if len(legs) > 1:
        grouped = transaction.assign_group_id([leg.txn for leg in legs])
        legs = [replace(leg, txn=txn) for leg, txn in zip(legs, grouped)]
    plan = GroupPlan(kind=kind, legs=tuple(legs), recipient_index=recipient_index)
    logger.debug("built %s group: %d legs, %d microAlgos in fees", kind.value, len(plan), plan.total_fee)
    return plan


def build_deployment(
    creator: str,
    sp: transaction.SuggestedParams,
    approval_program: bytes,
    clear_program: bytes,
    asset_id: int,
    config: EscrowConfig,
) -> GroupPlan:
    txn = transaction.ApplicationCreateTxn(
        sender=creator,
        sp=leg_params(sp, config.fees.app_create),
        on_complete=transaction.OnComplete.NoOpOC,
        approval_program=approval_program,
        clear_program=clear_program,
        global_schema=transaction.StateSchema(num_uints=config.global_uints, num_byte_slices=config.global_bytes),
        local_schema=transaction.StateSchema(num_uints=0, num_byte_slices=0),
        foreign_assets=[asset_id],
        extra_pages=config.extra_pages,
    )
    return _plan(GroupKind.DEPLOY, [Leg(txn, SignerRole.CREATOR)])


def build_funding_group(
    creator: str,
    app_id: int,
    capsule_address: str,
    asset_id: int,
    amount: int,
    cover_recipient_fees: bool,
    sp: transaction.SuggestedParams,
    config: EscrowConfig,
) -> GroupPlan:
    fees = config.fees
    transfers = config.transfers
    app_address = logic.get_application_address(app_id)

    txns = [
        transaction.PaymentTxn(creator, leg_params(sp, fees.fund_contract), app_address, transfers.contract_funding),
        transaction.PaymentTxn(creator, leg_params(sp, fees.fund_capsule), capsule_address, transfers.capsule_funding),
    ]
    if cover_recipient_fees:
        txns.append(
            transaction.PaymentTxn(
                creator,
                leg_params(sp, fees.fund_recipient_fees),
                capsule_address,
                transfers.recipient_fee_coverage,
            )
        )
    txns += [
        transaction.ApplicationNoOpTxn(
            creator,
            leg_params(sp, fees.opt_in_call),
            app_id,
            app_args=[SELECTOR_OPT_IN_ASSET],
            foreign_assets=[asset_id],
        ),
        transaction.ApplicationNoOpTxn(
            creator,
            leg_params(sp, fees.set_amount_call),
            app_id,
            app_args=[SELECTOR_SET_AMOUNT, encode_amount(amount)],
            foreign_assets=[asset_id],
        ),
        # Must directly follow set_amount
        transaction.AssetTransferTxn(creator, leg_params(sp, fees.send_asset), app_address, amount, asset_id),
    ]
    return _plan(GroupKind.FUNDING, [Leg(t, SignerRole.CREATOR) for t in txns])


def _claim_call(capsule, app_id, recipient, creator, asset_id, sp, config) -> transaction.Transaction:
    return transaction.ApplicationNoOpTxn(
        capsule,
        leg_params(sp, config.fees.claim_call),
        app_id,
        app_args=[SELECTOR_CLAIM],
        accounts=[recipient, creator],
        foreign_assets=[asset_id],
    )


def _close_capsule(capsule, close_to, sp, config) -> transaction.Transaction:
    return transaction.PaymentTxn(
        capsule, leg_params(sp, config.fees.capsule_close), close_to, 0, close_remainder_to=close_to
    )


def claim_surplus(capsule_balance: int, config: EscrowConfig, extra_leg_fee: int) -> int:
    """What the capsule can pay out on top of one claim and its close-out"""
    return max(0, capsule_balance - config.claim_reserve - extra_leg_fee)


def build_claim_group(
    capsule: str,
    app_id: int,
    recipient: str,
    creator: str,
    asset_id: int,
    close_to: str,
    sp: transaction.SuggestedParams,
    config: EscrowConfig,
    creator_refund: int = 0,
) -> GroupPlan:
    """Recipient already holds the asset: capsule-only group"""
    legs = [Leg(_claim_call(capsule, app_id, recipient, creator, asset_id, sp, config), SignerRole.CAPSULE)]
    if creator_refund > 0:
        refund = transaction.PaymentTxn(
            capsule, leg_params(sp, config.fees.creator_refund_payment), creator, creator_refund
        )
        legs.append(Leg(refund, SignerRole.CAPSULE))
    legs.append(Leg(_close_capsule(capsule, close_to, sp, config), SignerRole.CAPSULE))
    return _plan(GroupKind.CLAIM, legs)


def build_opt_in_claim_group(
    capsule: str,
    app_id: int,
    recipient: str,
    creator: str,
    asset_id: int,
    close_to: str,
    sp: transaction.SuggestedParams,
    config: EscrowConfig,
    fee_coverage: int = 0,
) -> GroupPlan:
    """Recipient opts in inside the claim group; the recipient slot is left unsigned"""
    legs = []
    if fee_coverage > 0:
        cover = transaction.PaymentTxn(
            capsule, leg_params(sp, config.fees.fee_coverage_payment), recipient, fee_coverage
        )
        legs.append(Leg(cover, SignerRole.CAPSULE))
    recipient_index = len(legs)
    opt_in = transaction.AssetOptInTxn(recipient, leg_params(sp, config.fees.recipient_opt_in), asset_id)
    legs.append(Leg(opt_in, SignerRole.RECIPIENT))
    legs.append(Leg(_claim_call(capsule, app_id, recipient, creator, asset_id, sp, config), SignerRole.CAPSULE))
    legs.append(Leg(_close_capsule(capsule, close_to, sp, config), SignerRole.CAPSULE))
    return _plan(GroupKind.OPT_IN_CLAIM, legs, recipient_index=recipient_index)


def build_reclaim(
    creator: str, app_id: int, asset_id: int, sp: transaction.SuggestedParams, config: EscrowConfig
) -> GroupPlan:
    txn = transaction.ApplicationNoOpTxn(
        creator,
        leg_params(sp, config.fees.reclaim_call),
        app_id,
        app_args=[SELECTOR_RECLAIM],
        foreign_assets=[asset_id],
    )
    return _plan(GroupKind.RECLAIM, [Leg(txn, SignerRole.CREATOR)])


def build_cleanup(
    creator: str, app_id: int, asset_id: int, sp: transaction.SuggestedParams, config: EscrowConfig
) -> GroupPlan:
    txn = transaction.ApplicationDeleteTxn(
        creator, leg_params(sp, config.fees.cleanup_call), app_id, foreign_assets=[asset_id]
    )
    return _plan(GroupKind.CLEANUP, [Leg(txn, SignerRole.CREATOR)])


def build_cleanup_unfunded(
    creator: str, app_id: int, sp: transaction.SuggestedParams, config: EscrowConfig
) -> GroupPlan:
    txn = transaction.ApplicationDeleteTxn(creator, leg_params(sp, config.fees.cleanup_unfunded_call), app_id)
    return _plan(GroupKind.CLEANUP_UNFUNDED, [Leg(txn, SignerRole.CREATOR)])
