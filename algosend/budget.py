"""
Fee & balance budget

Pure arithmetic over an account snapshot and the config: what creating and
funding one escrow costs the creator, how much of it comes back, and whether
the account can afford it with the safety buffer applied.

All values are integer microAlgos.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Tuple

from algosend.config import EscrowConfig
from algosend.errors import InsufficientBalanceError
from algosend.ledger import AccountSnapshot


@dataclass(frozen=True)
class PhaseReport:
    name: str
    available_before: int
    debit: int
    available_after: int

    @property
    def affordable(self) -> bool:
        return self.available_after >= 0


@dataclass(frozen=True)
class BudgetReport:
    address: str
    available: int
    phases: Tuple[PhaseReport, ...]
    raw_total: int
    buffer_percent: int
    required_balance: int
    recoverable: int
    real_cost: int
    cleanup_fee: int

    @property
    def shortfall(self) -> int:
        return max(0, self.required_balance - self.available)

    @property
    def affordable(self) -> bool:
        return self.shortfall == 0 and all(p.affordable for p in self.phases)

    def to_dict(self) -> dict:
        out = asdict(self)
        out["phases"] = [dict(asdict(p), affordable=p.affordable) for p in self.phases]
        out["shortfall"] = self.shortfall
        out["affordable"] = self.affordable
        return out


def apply_buffer(raw_total: int, buffer_percent: int) -> int:
    """ceil(raw_total * (100 + buffer_percent) / 100) in integers"""
    return -(-raw_total * (100 + buffer_percent) // 100)


def assess_budget(snapshot: AccountSnapshot, cover_recipient_fees: bool, config: EscrowConfig) -> BudgetReport:
    fees = config.fees
    transfers = config.transfers

    coverage = transfers.recipient_fee_coverage if cover_recipient_fees else 0
    funding_transfers = transfers.contract_funding + transfers.capsule_funding + coverage
    funding_fees = fees.funding_total(cover_recipient_fees)
    deploy_fee = fees.deploy_total()
    reserve = config.creation_reserve

    available = snapshot.balance - snapshot.min_balance

    # Creating the app raises the creator's own minimum balance by the reserve
    deploy = PhaseReport(
        name="deploy",
        available_before=available,
        debit=deploy_fee + reserve,
        available_after=available - deploy_fee - reserve,
    )
    fund = PhaseReport(
        name="fund",
        available_before=deploy.available_after,
        debit=funding_fees + funding_transfers,
        available_after=deploy.available_after - funding_fees - funding_transfers,
    )

    raw_total = deploy_fee + funding_fees + funding_transfers + reserve
    return BudgetReport(
        address=snapshot.address,
        available=available,
        phases=(deploy, fund),
        raw_total=raw_total,
        buffer_percent=config.buffer_percent,
        required_balance=apply_buffer(raw_total, config.buffer_percent),
        recoverable=reserve + transfers.contract_funding,
        real_cost=transfers.capsule_funding + deploy_fee + funding_fees + coverage,
        cleanup_fee=fees.cleanup_call,
    )


def funding_requirement(cover_recipient_fees: bool, config: EscrowConfig) -> int:
    """ALGO the creator spends on the funding group alone"""
    transfers = config.transfers
    total = config.fees.funding_total(cover_recipient_fees) + transfers.contract_funding + transfers.capsule_funding
    if cover_recipient_fees:
        total += transfers.recipient_fee_coverage
    return total


def require_affordable(report: BudgetReport) -> BudgetReport:
    if not report.affordable:
        raise InsufficientBalanceError(
            f"Insufficient ALGO balance: {report.required_balance} microAlgos needed, "
            f"{max(0, report.available)} available",
            shortfall=report.shortfall,
            details={"required": report.required_balance, "available": report.available},
        )
    return report
