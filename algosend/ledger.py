"""
Ledger access

`LedgerClient` is everything the service needs from the network. The
`AlgodLedgerClient` adapter is the only code that looks at algod's error
prose; everything above it works with `SubmissionOutcome` values and typed
exceptions.

Submission discipline (`submit_and_confirm`):
- the primary txid of a group is the txid of its first leg;
- a group the node has already seen resolves as AlreadyLanded, not as an error;
- transient failures are retried with the same signed bytes;
- a confirmation that does not arrive within `max_rounds` is looked up once
  more, then surfaces as a TransientNetworkError carrying the txid.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Protocol, Sequence, Union

from algokit_utils import AlgoClientConfig, get_algod_client
from algosdk import transaction
from algosdk.error import AlgodHTTPError
from algosdk.v2client import algod

from algosend.config import EscrowConfig
from algosend.errors import LedgerRejectionError, TransientNetworkError
from algosend.state import EscrowState

logger = logging.getLogger(__name__)

# Node messages meaning "this exact transaction was already accepted". Other
# pool rejections share the "TransactionPool.Remember" prefix, so it is not one.
_ALREADY_SEEN_MARKERS = ("already in ledger", "transaction already in pool")
_ALREADY_IN_LEDGER_RE = re.compile(r"already in ledger: ([A-Z2-7]{52})")


# ============================================================================
# Ledger Types
# ============================================================================

@dataclass(frozen=True)
class AccountSnapshot:
    address: str
    balance: int
    min_balance: int
    assets: Dict[int, int] = field(default_factory=dict)

    @property
    def available(self) -> int:
        """Native balance above the minimum balance"""
        return max(0, self.balance - self.min_balance)

    def holds(self, asset_id: int) -> bool:
        return asset_id in self.assets

    def asset_balance(self, asset_id: int) -> int:
        return self.assets.get(asset_id, 0)


@dataclass(frozen=True)
class Confirmation:
    txid: str
    confirmed_round: int
    application_index: Optional[int] = None
    already_landed: bool = False


@dataclass(frozen=True)
class Confirmed:
    """The node accepted the group; confirmation follows"""

    txid: str


@dataclass(frozen=True)
class AlreadyLanded:
    """The node had already seen this exact group"""

    txid: str


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class Transient:
    reason: str


SubmissionOutcome = Union[Confirmed, AlreadyLanded, Rejected, Transient]


class ConfirmationTimeout(Exception):
    def __init__(self, txid: str, rounds: int):
        super().__init__(f"Transaction {txid} not confirmed after {rounds} rounds")
        self.txid = txid
        self.rounds = rounds


class LedgerClient(Protocol):
    def suggested_params(self) -> transaction.SuggestedParams: ...

    def compile_program(self, source: str) -> bytes: ...

    def submit(self, signed_group: Sequence[transaction.SignedTransaction]) -> SubmissionOutcome: ...

    def await_confirmation(self, txid: str, max_rounds: int) -> Confirmation: ...

    def lookup_transaction(self, txid: str) -> Optional[Confirmation]: ...

    def get_account_state(self, address: str) -> AccountSnapshot: ...

    def get_contract_state(self, app_id: int) -> Optional[EscrowState]: ...


def primary_txid(signed_group: Sequence[transaction.SignedTransaction]) -> str:
    if not signed_group:
        raise ValueError("empty transaction group")
    return signed_group[0].get_txid()


def classify_submit_error(message: str, status: Optional[int], txid: str) -> SubmissionOutcome:
    """Map an algod submission error to an outcome.

    "already in ledger" names the leg the node matched, which is not always
    the first one; every leg of a group confirms in the same round, so that
    txid is as good as the primary one for lookups.
    """
    if any(marker in message for marker in _ALREADY_SEEN_MARKERS):
        match = _ALREADY_IN_LEDGER_RE.search(message)
        return AlreadyLanded(match.group(1) if match else txid)
    if status is None or status >= 500 or status == 429:
        return Transient(message)
    return Rejected(message)


# ============================================================================
# algod adapter
# ============================================================================

class AlgodLedgerClient:
    """LedgerClient over an algod REST endpoint"""

    def __init__(self, client: algod.AlgodClient):
        self.client = client

    @classmethod
    def from_config(cls, config: EscrowConfig) -> "AlgodLedgerClient":
        return cls(make_algod_client(config))

    def _transient(self, action: str, e: Exception) -> TransientNetworkError:
        logger.warning("algod %s failed: %s", action, e)
        return TransientNetworkError(f"Ledger unavailable during {action}: {e}")

    def suggested_params(self) -> transaction.SuggestedParams:
        try:
            return self.client.suggested_params()
        except (AlgodHTTPError, OSError) as e:
            raise self._transient("suggested_params", e)

    def compile_program(self, source: str) -> bytes:
        try:
            result = self.client.compile(source)
        except AlgodHTTPError as e:
            if e.code is not None and 400 <= e.code < 500:
                raise LedgerRejectionError(f"Program failed to compile: {e}")
            raise self._transient("compile", e)
        except OSError as e:
            raise self._transient("compile", e)
        return base64.b64decode(result["result"])

    def submit(self, signed_group: Sequence[transaction.SignedTransaction]) -> SubmissionOutcome:
        txid = primary_txid(signed_group)
        try:
            self.client.send_transactions(list(signed_group))
        except AlgodHTTPError as e:
            outcome = classify_submit_error(str(e), e.code, txid)
            logger.info("submit %s -> %s", txid, type(outcome).__name__)
            return outcome
        except OSError as e:
            return Transient(str(e))
        return Confirmed(txid)

    def _pending(self, txid: str) -> Optional[dict]:
        try:
            return self.client.pending_transaction_info(txid)
        except AlgodHTTPError as e:
            if e.code == 404:
                return None
            raise self._transient("pending_transaction_info", e)
        except OSError as e:
            raise self._transient("pending_transaction_info", e)

    @staticmethod
    def _confirmation(txid: str, info: dict) -> Optional[Confirmation]:
        if info.get("confirmed-round", 0) > 0:
            return Confirmation(
                txid=txid,
                confirmed_round=info["confirmed-round"],
                application_index=info.get("application-index"),
            )
        return None

    def await_confirmation(self, txid: str, max_rounds: int) -> Confirmation:
        try:
            last_round = self.client.status().get("last-round", 0)
        except (AlgodHTTPError, OSError) as e:
            raise self._transient("status", e)

        for _ in range(max_rounds):
            info = self._pending(txid) or {}
            pool_error = info.get("pool-error")
            if pool_error:
                raise LedgerRejectionError(f"Transaction rejected: {pool_error}", {"txid": txid})
            confirmed = self._confirmation(txid, info)
            if confirmed:
                return confirmed
            last_round += 1
            try:
                self.client.status_after_block(last_round)
            except (AlgodHTTPError, OSError) as e:
                raise self._transient("status_after_block", e)
        raise ConfirmationTimeout(txid, max_rounds)

    def lookup_transaction(self, txid: str) -> Optional[Confirmation]:
        """Confirmation from algod's pending pool.

        The pool only remembers recently confirmed transactions, so a group
        confirmed long ago reads as unknown here. Callers recover such groups
        from contract state instead (see `EscrowService` reconciliation).
        """
        info = self._pending(txid)
        if info is None:
            return None
        return self._confirmation(txid, info)

    def get_account_state(self, address: str) -> AccountSnapshot:
        try:
            info = self.client.account_info(address)
        except (AlgodHTTPError, OSError) as e:
            raise self._transient("account_info", e)
        return AccountSnapshot(
            address=address,
            balance=info.get("amount", 0),
            min_balance=info.get("min-balance", 0),
            assets={a["asset-id"]: a.get("amount", 0) for a in info.get("assets", [])},
        )

    def get_contract_state(self, app_id: int) -> Optional[EscrowState]:
        try:
            info = self.client.application_info(app_id)
        except AlgodHTTPError as e:
            if e.code == 404:
                return None
            raise self._transient("application_info", e)
        except OSError as e:
            raise self._transient("application_info", e)

        params = info.get("params", {})
        try:
            return EscrowState.from_global_state(app_id, params.get("global-state", []))
        except ValueError as e:
            raise LedgerRejectionError(str(e), {"app_id": app_id})


def make_algod_client(config: EscrowConfig) -> algod.AlgodClient:
    return get_algod_client(AlgoClientConfig(server=config.algod_server, token=config.algod_token))


# ============================================================================
# Submission discipline
# ============================================================================

def submit_and_confirm(
    ledger: LedgerClient,
    signed_group: Sequence[transaction.SignedTransaction],
    max_rounds: int,
    retries: int = 0,
) -> Confirmation:
    """Submit a signed group and wait for it; resubmitting the same bytes is safe"""
    txid = primary_txid(signed_group)
    attempt = 0
    while True:
        outcome = ledger.submit(signed_group)
        if isinstance(outcome, Rejected):
            logger.warning("group %s rejected: %s", txid, outcome.reason)
            raise LedgerRejectionError(outcome.reason, {"txid": txid})
        if isinstance(outcome, Transient):
            if attempt < retries:
                attempt += 1
                logger.warning("transient failure submitting %s (attempt %d): %s", txid, attempt, outcome.reason)
                continue
            raise TransientNetworkError(outcome.reason, txid=txid)
        break

    landed = isinstance(outcome, AlreadyLanded)
    watch = outcome.txid
    if landed:
        logger.info("group %s already landed (seen as %s)", txid, watch)
        found = ledger.lookup_transaction(watch)
        if found is not None:
            return replace(found, txid=txid, already_landed=True)

    try:
        confirmation = ledger.await_confirmation(watch, max_rounds)
    except ConfirmationTimeout:
        found = ledger.lookup_transaction(watch)
        if found is None:
            raise TransientNetworkError(
                f"Confirmation not observed within {max_rounds} rounds", txid=txid
            )
        confirmation = found
    logger.info("group %s confirmed in round %d", txid, confirmation.confirmed_round)
    return replace(confirmation, txid=txid, already_landed=landed)
