"""
AlgoSend escrow service

Coordinates the escrow lifecycle for a transport layer:

    generate_deployment  -> creator signs -> submit_deployment   (record created)
    generate_funding_group -> creator signs -> submit_funding_group (record funded)
    generate_claim_group -> recipient signs its slot -> submit_claim_group
    generate_reclaim     -> creator signs -> submit_reclaim
    generate_cleanup     -> creator signs -> submit_cleanup

plus read-only queries (escrow details, per-creator listing, recipient opt-in
and asset balance, supported assets).

Every precondition is decided from the live contract state. A record that is
behind the ledger (a group landed but its confirmation was never observed) is
advanced to what the ledger shows before anything else happens; otherwise
`submit_*` only updates records after a confirmation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple, Union

from algosdk import logic, transaction

from algosend import budget, groups
from algosend.assets import (
    AssetInfo,
    StaticAssetDirectory,
    decode_amount,
    from_base_units,
    require_address,
    require_app_id,
    to_base_units,
)
from algosend.capsule import Capsule, capsule_from_secret, claim_hash, mint_capsule, verify_claim_hash
from algosend.config import ACCOUNT_MIN_BALANCE, ASSET_HOLDING_MIN_BALANCE, EscrowConfig
from algosend.contracts.escrow_contract import compile_escrow_programs
from algosend.errors import (
    EscrowNotFoundError,
    InsufficientBalanceError,
    LedgerRejectionError,
    StateConflictError,
    ValidationError,
)
from algosend.groups import GroupPlan, SignerRole
from algosend.ledger import Confirmation, LedgerClient, submit_and_confirm
from algosend.state import SELECTOR_CLAIM, SELECTOR_RECLAIM, SELECTOR_SET_AMOUNT, EscrowState
from algosend.store import ClaimType, EscrowRecord, EscrowStore, NoReferrals, RecordStatus, ReferralLookup

logger = logging.getLogger(__name__)

SignedInput = Union[str, transaction.SignedTransaction]


# ============================================================================
# Results
# ============================================================================

@dataclass(frozen=True)
class DeploymentDraft:
    plan: GroupPlan
    capsule: Capsule  # secret is handed out once, never stored
    asset: AssetInfo
    amount: int
    budget: budget.BudgetReport


@dataclass(frozen=True)
class GroupDraft:
    plan: GroupPlan
    record: EscrowRecord


@dataclass(frozen=True)
class ClaimDraft:
    plan: GroupPlan
    record: EscrowRecord
    claim_type: ClaimType
    recipient: str
    close_to: str


@dataclass(frozen=True)
class SubmissionResult:
    txid: str
    confirmed_round: int
    already_landed: bool
    record: EscrowRecord


@dataclass(frozen=True)
class AssetBalance:
    address: str
    asset: AssetInfo
    opted_in: bool
    units: int

    @property
    def amount(self) -> Decimal:
        return from_base_units(self.units, self.asset.decimals)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "asset_id": self.asset.id,
            "opted_in": self.opted_in,
            "units": self.units,
            "balance": f"{self.amount:.{self.asset.decimals}f}",
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EscrowService:
    def __init__(
        self,
        ledger: LedgerClient,
        store: EscrowStore,
        config: Optional[EscrowConfig] = None,
        assets=None,
        referrals: Optional[ReferralLookup] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ledger = ledger
        self.store = store
        self.config = config or EscrowConfig()
        self.assets = assets or StaticAssetDirectory()
        self.referrals = referrals or NoReferrals()
        self.clock = clock
        if not self.config.claim_hash_key:
            raise ValueError("EscrowConfig.claim_hash_key must be set")

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    def _compile(self, capsule_address: str, asset_id: int):
        approval_teal, clear_teal = compile_escrow_programs(
            capsule_address, asset_id, version=self.config.teal_version
        )
        return self.ledger.compile_program(approval_teal), self.ledger.compile_program(clear_teal)

    def _record(self, app_id) -> EscrowRecord:
        app_id = require_app_id(app_id)
        record = self.store.get(app_id)
        if record is None:
            raise EscrowNotFoundError("Escrow not found", {"app_id": app_id})
        return record

    def _require_creator(self, record: EscrowRecord, creator: str) -> None:
        require_address(creator, "creator")
        if record.creator != creator:
            raise ValidationError("Only the escrow creator can do this", {"app_id": record.app_id})

    def _reconcile(self, record: EscrowRecord, state: Optional[EscrowState]) -> EscrowRecord:
        """Advance a record that is behind the ledger"""
        changes = {}
        now = self.clock()
        if state is None:
            if not record.cleaned_up:
                status = RecordStatus.CLEANED_UP if record.funded else RecordStatus.UNFUNDED_CLEANED_UP
                changes.update(status=status, cleaned_up_at=now)
        else:
            if state.funded and not record.funded:
                changes.update(status=RecordStatus.FUNDED, funded_at=now)
            if state.claimed and not record.resolved:
                # claim leaves the app opted in; reclaim closes the holding out
                app = self.ledger.get_account_state(record.app_address)
                if app.holds(record.asset_id):
                    changes.update(status=RecordStatus.CLAIMED, claimed_at=now)
                else:
                    changes.update(status=RecordStatus.RECLAIMED, reclaimed_at=now)
        if not changes:
            return record
        logger.warning(
            "escrow %d record was behind the ledger; advanced to %s", record.app_id, changes["status"].value
        )
        return self.store.update(record.app_id, **changes)

    def _sync(self, record: EscrowRecord) -> Tuple[EscrowRecord, EscrowState]:
        """Live contract state, with the record reconciled against it"""
        state = self.ledger.get_contract_state(record.app_id)
        record = self._reconcile(record, state)
        if state is None:
            raise StateConflictError("Escrow contract no longer exists on the ledger", {"app_id": record.app_id})
        return record, state.with_asset(record.asset_id)

    def _submit(self, signed: List[transaction.SignedTransaction]) -> Confirmation:
        return submit_and_confirm(
            self.ledger,
            signed,
            max_rounds=self.config.confirmation_rounds,
            retries=self.config.submit_retries,
        )

    @staticmethod
    def _decode(signed_group: Union[SignedInput, Sequence[SignedInput]]) -> List[transaction.SignedTransaction]:
        if isinstance(signed_group, (str, transaction.SignedTransaction)):
            signed_group = [signed_group]
        return groups.decode_signed_group(list(signed_group))

    @staticmethod
    def _app_calls(signed: List[transaction.SignedTransaction], app_id: int) -> List[transaction.ApplicationCallTxn]:
        return [
            s.transaction
            for s in signed
            if isinstance(s.transaction, transaction.ApplicationCallTxn) and s.transaction.index == app_id
        ]

    def _require_call(self, signed, app_id: int, selector: bytes, sender: Optional[str] = None):
        for call in self._app_calls(signed, app_id):
            args = call.app_args or []
            if args and args[0] == selector:
                if sender is not None and call.sender != sender:
                    raise ValidationError("Transaction signed by the wrong account", {"app_id": app_id})
                return call
        raise ValidationError(
            f"Group does not contain a {selector.decode()} call for this escrow", {"app_id": app_id}
        )

    def _result(self, confirmation: Confirmation, record: EscrowRecord) -> SubmissionResult:
        return SubmissionResult(
            txid=confirmation.txid,
            confirmed_round=confirmation.confirmed_round,
            already_landed=confirmation.already_landed,
            record=record,
        )

    # ------------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------------

    def check_balance(self, creator: str, cover_recipient_fees: bool = False) -> budget.BudgetReport:
        """Budget report for creating one escrow; never raises on a shortfall"""
        require_address(creator, "creator")
        snapshot = self.ledger.get_account_state(creator)
        return budget.assess_budget(snapshot, cover_recipient_fees, self.config)

    def get_escrow(self, app_id) -> EscrowRecord:
        """Escrow record, brought up to date with the ledger"""
        record = self._record(app_id)
        if record.cleaned_up:
            return record
        return self._reconcile(record, self.ledger.get_contract_state(record.app_id))

    def list_escrows(self, creator: str) -> List[EscrowRecord]:
        """All escrows of a creator, newest first, brought up to date with the ledger"""
        require_address(creator, "creator")
        out = []
        for record in self.store.list_by_creator(creator):
            if not record.cleaned_up:
                record = self._reconcile(record, self.ledger.get_contract_state(record.app_id))
            out.append(record)
        return out

    def incomplete_escrows(self, creator: str) -> List[EscrowRecord]:
        """Deployed but never funded escrows, newest first"""
        return [r for r in self.list_escrows(creator) if r.status is RecordStatus.AWAITING_FUNDING]

    def asset_balance(self, address: str, asset_id: Optional[int] = None) -> AssetBalance:
        """Opt-in status and holding of one supported asset"""
        address = require_address(address)
        asset = self.assets.require(asset_id)
        snapshot = self.ledger.get_account_state(address)
        return AssetBalance(
            address=address,
            asset=asset,
            opted_in=snapshot.holds(asset.id),
            units=snapshot.asset_balance(asset.id),
        )

    def check_opt_in(self, address: str, asset_id: Optional[int] = None) -> bool:
        return self.asset_balance(address, asset_id).opted_in

    def supported_assets(self) -> List[AssetInfo]:
        return self.assets.supported()

    # ------------------------------------------------------------------------
    # Phase 1: deployment
    # ------------------------------------------------------------------------

    def generate_deployment(
        self,
        creator: str,
        amount,
        asset_id: Optional[int] = None,
        cover_recipient_fees: bool = False,
    ) -> DeploymentDraft:
        require_address(creator, "creator")
        asset = self.assets.require(asset_id)
        units = to_base_units(amount, asset.decimals)

        snapshot = self.ledger.get_account_state(creator)
        report = budget.require_affordable(budget.assess_budget(snapshot, cover_recipient_fees, self.config))
        if snapshot.asset_balance(asset.id) < units:
            raise InsufficientBalanceError(
                f"Insufficient {asset.unit_name} balance",
                shortfall=units - snapshot.asset_balance(asset.id),
                details={"asset_id": asset.id},
            )

        capsule = mint_capsule()
        approval, clear = self._compile(capsule.address, asset.id)
        plan = groups.build_deployment(creator, self.ledger.suggested_params(), approval, clear, asset.id, self.config)
        logger.info("deployment prepared for %s: %s %s, capsule %s", creator, units, asset.unit_name, capsule.address)
        return DeploymentDraft(plan=plan, capsule=capsule, asset=asset, amount=units, budget=report)

    def submit_deployment(
        self,
        signed_txn: Union[SignedInput, Sequence[SignedInput]],
        capsule_secret: str,
        amount,
        asset_id: Optional[int] = None,
        cover_recipient_fees: bool = False,
        recipient_email: Optional[str] = None,
    ) -> SubmissionResult:
        signed = self._decode(signed_txn)
        if len(signed) != 1:
            raise ValidationError("Deployment is a single transaction", {"size": len(signed)})
        txn = signed[0].transaction
        if not isinstance(txn, transaction.ApplicationCallTxn) or txn.index:
            raise ValidationError("Expected an application create transaction")

        asset = self.assets.require(asset_id)
        units = to_base_units(amount, asset.decimals)
        capsule = capsule_from_secret(capsule_secret)
        approval, _ = self._compile(capsule.address, asset.id)
        if txn.approval_program != approval or asset.id not in (txn.foreign_assets or []):
            raise ValidationError("Deployment transaction does not match the capsule or asset")

        confirmation = self._submit(signed)
        app_id = confirmation.application_index
        if not app_id:
            raise LedgerRejectionError("Deployment confirmed without an application id", {"txid": confirmation.txid})

        existing = self.store.get(app_id)
        if existing is not None:
            return self._result(confirmation, existing)

        record = self.store.add(
            EscrowRecord(
                app_id=app_id,
                app_address=logic.get_application_address(app_id),
                creator=txn.sender,
                authorized_claimer=capsule.address,
                claim_hash=claim_hash(capsule.secret, app_id, self.config.claim_hash_key),
                asset_id=asset.id,
                amount=units,
                created_at=self.clock(),
                cover_recipient_fees=cover_recipient_fees,
                recipient_email=recipient_email,
                create_txid=confirmation.txid,
            )
        )
        logger.info("escrow %d deployed by %s", app_id, record.creator)
        return self._result(confirmation, record)

    # ------------------------------------------------------------------------
    # Phase 2: funding
    # ------------------------------------------------------------------------

    def generate_funding_group(self, app_id, creator: str) -> GroupDraft:
        record = self._record(app_id)
        self._require_creator(record, creator)
        if record.cleaned_up:
            raise StateConflictError("Escrow has been cleaned up", {"app_id": record.app_id})
        record, state = self._sync(record)
        if state.funded:
            raise StateConflictError("Escrow already funded", {"app_id": record.app_id})

        snapshot = self.ledger.get_account_state(creator)
        needed = budget.funding_requirement(record.cover_recipient_fees, self.config)
        if snapshot.available < needed:
            raise InsufficientBalanceError(
                "Insufficient ALGO balance to fund the escrow", shortfall=needed - snapshot.available
            )
        if snapshot.asset_balance(record.asset_id) < record.amount:
            raise InsufficientBalanceError(
                "Insufficient asset balance to fund the escrow",
                shortfall=record.amount - snapshot.asset_balance(record.asset_id),
                details={"asset_id": record.asset_id},
            )

        plan = groups.build_funding_group(
            creator,
            record.app_id,
            record.authorized_claimer,
            record.asset_id,
            record.amount,
            record.cover_recipient_fees,
            self.ledger.suggested_params(),
            self.config,
        )
        return GroupDraft(plan=plan, record=record)

    def submit_funding_group(self, app_id, signed_group) -> SubmissionResult:
        record = self._record(app_id)
        signed = self._decode(signed_group)
        if any(s.transaction.sender != record.creator for s in signed):
            raise ValidationError("Funding group must be signed by the creator", {"app_id": record.app_id})
        call = self._require_call(signed, record.app_id, SELECTOR_SET_AMOUNT, sender=record.creator)
        args = call.app_args or []
        if len(args) < 2 or decode_amount(args[1]) != record.amount:
            raise ValidationError("Funding amount does not match the escrow", {"app_id": record.app_id})

        confirmation = self._submit(signed)
        if record.funding_txid is None:
            changes = {"funding_txid": confirmation.txid}
            if not record.funded:
                changes.update(status=RecordStatus.FUNDED, funded_at=self.clock())
            record = self.store.update(record.app_id, **changes)
            logger.info("escrow %d funded", record.app_id)
        return self._result(confirmation, record)

    # ------------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------------

    def _close_target(self, record: EscrowRecord) -> str:
        return self.referrals.referrer_for(record.creator) or self.config.platform_address or record.creator

    def generate_claim_group(self, capsule_secret: str, app_id, recipient: str) -> ClaimDraft:
        app_id = require_app_id(app_id)
        recipient = require_address(recipient, "recipient")
        capsule = capsule_from_secret(capsule_secret)

        record = self.store.get(app_id)
        if record is None or not verify_claim_hash(
            capsule.secret, app_id, self.config.claim_hash_key, record.claim_hash
        ):
            raise EscrowNotFoundError("Invalid or expired claim link", {"app_id": app_id})
        if record.cleaned_up:
            raise StateConflictError("Escrow has been cleaned up", {"app_id": app_id})

        record, state = self._sync(record)
        if state.claimed:
            if record.reclaimed:
                raise StateConflictError("Escrow was reclaimed by the sender", {"app_id": app_id})
            raise StateConflictError("Escrow already claimed", {"app_id": app_id})
        if not state.funded:
            raise StateConflictError("Escrow is not funded yet", {"app_id": app_id})
        if state.authorized_claimer != capsule.address:
            raise ValidationError("Claim link does not match this escrow", {"app_id": app_id})

        fees = self.config.fees
        close_to = self._close_target(record)
        recipient_state = self.ledger.get_account_state(recipient)
        capsule_state = self.ledger.get_account_state(capsule.address)
        sp = self.ledger.suggested_params()

        if recipient_state.holds(record.asset_id):
            refund = 0
            if record.cover_recipient_fees:
                refund = groups.claim_surplus(capsule_state.balance, self.config, fees.creator_refund_payment)
            plan = groups.build_claim_group(
                capsule.address, app_id, recipient, record.creator, record.asset_id, close_to, sp, self.config,
                creator_refund=refund,
            )
            claim_type = ClaimType.OPTIMIZED
        else:
            coverage = 0
            if record.cover_recipient_fees:
                coverage = groups.claim_surplus(capsule_state.balance, self.config, fees.fee_coverage_payment)
            needed = (
                max(recipient_state.min_balance, ACCOUNT_MIN_BALANCE)
                + ASSET_HOLDING_MIN_BALANCE
                + fees.recipient_opt_in
            )
            shortfall = needed - (recipient_state.balance + coverage)
            if shortfall > 0:
                raise InsufficientBalanceError(
                    "Recipient needs ALGO to opt in to the asset", shortfall=shortfall, details={"recipient": recipient}
                )
            plan = groups.build_opt_in_claim_group(
                capsule.address, app_id, recipient, record.creator, record.asset_id, close_to, sp, self.config,
                fee_coverage=coverage,
            )
            claim_type = ClaimType.OPT_IN_AND_CLAIM

        plan = plan.sign(SignerRole.CAPSULE, capsule.secret)
        logger.info("%s claim prepared for escrow %d -> %s", claim_type.value, app_id, recipient)
        return ClaimDraft(plan=plan, record=record, claim_type=claim_type, recipient=recipient, close_to=close_to)

    def submit_claim_group(self, app_id, signed_group) -> SubmissionResult:
        record = self._record(app_id)
        signed = self._decode(signed_group)
        call = self._require_call(signed, record.app_id, SELECTOR_CLAIM, sender=record.authorized_claimer)
        if not call.accounts:
            raise ValidationError("Claim call names no recipient", {"app_id": record.app_id})
        recipient = call.accounts[0]

        opted_in = any(
            isinstance(s.transaction, transaction.AssetTransferTxn)
            and s.transaction.sender == recipient
            and s.transaction.receiver == recipient
            for s in signed
        )
        claim_type = ClaimType.OPT_IN_AND_CLAIM if opted_in else ClaimType.OPTIMIZED

        confirmation = self._submit(signed)
        if record.resolution_txid is None:
            changes = {"claimed_by": recipient, "claim_type": claim_type, "resolution_txid": confirmation.txid}
            if not record.resolved:
                changes.update(status=RecordStatus.CLAIMED, claimed_at=self.clock())
            record = self.store.update(record.app_id, **changes)
            logger.info("escrow %d claimed by %s", record.app_id, recipient)
        return self._result(confirmation, record)

    # ------------------------------------------------------------------------
    # Reclaim
    # ------------------------------------------------------------------------

    def generate_reclaim(self, app_id, creator: str) -> GroupDraft:
        record = self._record(app_id)
        self._require_creator(record, creator)
        if record.cleaned_up:
            raise StateConflictError("Escrow has been cleaned up", {"app_id": record.app_id})

        record, state = self._sync(record)
        if state.claimed:
            if record.reclaimed:
                raise StateConflictError("Escrow already reclaimed", {"app_id": record.app_id})
            raise StateConflictError("Escrow already claimed", {"app_id": record.app_id})
        if not state.funded:
            raise StateConflictError("Escrow was never funded; clean it up instead", {"app_id": record.app_id})

        plan = groups.build_reclaim(creator, record.app_id, record.asset_id, self.ledger.suggested_params(), self.config)
        return GroupDraft(plan=plan, record=record)

    def submit_reclaim(self, app_id, signed_group) -> SubmissionResult:
        record = self._record(app_id)
        signed = self._decode(signed_group)
        self._require_call(signed, record.app_id, SELECTOR_RECLAIM, sender=record.creator)

        confirmation = self._submit(signed)
        if record.resolution_txid is None:
            changes = {"resolution_txid": confirmation.txid}
            if not record.resolved:
                changes.update(status=RecordStatus.RECLAIMED, reclaimed_at=self.clock())
            record = self.store.update(record.app_id, **changes)
            logger.info("escrow %d reclaimed by %s", record.app_id, record.creator)
        return self._result(confirmation, record)

    # ------------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------------

    def generate_cleanup(self, app_id, creator: str) -> GroupDraft:
        record = self._record(app_id)
        self._require_creator(record, creator)
        if record.cleaned_up:
            raise StateConflictError("Escrow already cleaned up", {"app_id": record.app_id})

        record, state = self._sync(record)
        sp = self.ledger.suggested_params()
        if state.claimed:
            plan = groups.build_cleanup(creator, record.app_id, record.asset_id, sp, self.config)
        elif not state.funded:
            plan = groups.build_cleanup_unfunded(creator, record.app_id, sp, self.config)
        else:
            raise StateConflictError("Escrow still holds funds; reclaim it first", {"app_id": record.app_id})
        return GroupDraft(plan=plan, record=record)

    def submit_cleanup(self, app_id, signed_group) -> SubmissionResult:
        record = self._record(app_id)
        signed = self._decode(signed_group)
        calls = self._app_calls(signed, record.app_id)
        if len(calls) != 1 or calls[0].on_complete != transaction.OnComplete.DeleteApplicationOC:
            raise ValidationError("Expected a single delete call for this escrow", {"app_id": record.app_id})
        if calls[0].sender != record.creator:
            raise ValidationError("Transaction signed by the wrong account", {"app_id": record.app_id})

        confirmation = self._submit(signed)
        if record.cleanup_txid is None:
            changes = {"cleanup_txid": confirmation.txid}
            if not record.cleaned_up:
                status = RecordStatus.CLEANED_UP if calls[0].foreign_assets else RecordStatus.UNFUNDED_CLEANED_UP
                changes.update(status=status, cleaned_up_at=self.clock())
            record = self.store.update(record.app_id, **changes)
            logger.info("escrow %d cleaned up (%s)", record.app_id, record.status.value)
        return self._result(confirmation, record)
