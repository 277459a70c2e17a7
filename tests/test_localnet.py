"""
Escrow lifecycle against a running localnet, executing the compiled TEAL.

Start one with `algokit localnet start`; run with `pytest -m localnet`.
Skipped when no algod answers on the default localnet port.
"""

import pytest
from algokit_utils import get_algod_client, get_default_localnet_config, get_localnet_default_account
from algosdk import transaction
from algosdk.error import AlgodHTTPError

from algosend.assets import AssetInfo, StaticAssetDirectory
from algosend.config import EscrowConfig
from algosend.errors import LedgerRejectionError
from algosend.groups import SignerRole
from algosend.ledger import AlgodLedgerClient
from algosend.service import EscrowService
from algosend.store import InMemoryEscrowStore, RecordStatus

from helpers.escrow_flows import Wallet, new_wallet

pytestmark = pytest.mark.localnet


@pytest.fixture(scope="module")
def algod():
    client = get_algod_client(get_default_localnet_config("algod"))
    try:
        client.status()
    except (AlgodHTTPError, OSError) as e:
        pytest.skip(f"localnet algod not reachable: {e}")
    return client


@pytest.fixture(scope="module")
def dispenser(algod):
    acct = get_localnet_default_account(algod)
    return Wallet(address=acct.address, private_key=acct.private_key)


def send(algod, txn, private_key):
    txid = algod.send_transaction(txn.sign(private_key))
    return transaction.wait_for_confirmation(algod, txid, 4)


@pytest.fixture(scope="module")
def asset_id(algod, dispenser):
    txn = transaction.AssetConfigTxn(
        dispenser.address,
        algod.suggested_params(),
        total=10**12,
        decimals=6,
        default_frozen=False,
        unit_name="TUSD",
        asset_name="Test USD",
        manager=dispenser.address,
        strict_empty_address_check=False,
    )
    return send(algod, txn, dispenser.private_key)["asset-index"]


@pytest.fixture
def service(algod, asset_id):
    return EscrowService(
        AlgodLedgerClient(algod),
        InMemoryEscrowStore(),
        config=EscrowConfig(claim_hash_key=b"localnet-claim-key"),
        assets=StaticAssetDirectory([AssetInfo(asset_id, "Test USD", "TUSD", 6, is_default=True)]),
    )


@pytest.fixture
def recipient(algod, dispenser, asset_id):
    wallet = new_wallet()
    send(algod, transaction.PaymentTxn(dispenser.address, algod.suggested_params(), wallet.address, 1_000_000),
         dispenser.private_key)
    send(algod, transaction.AssetTransferTxn(wallet.address, algod.suggested_params(), wallet.address, 0, asset_id),
         wallet.private_key)
    return wallet


def holding(algod, address, asset_id):
    return algod.account_asset_info(address, asset_id)["asset-holding"]["amount"]


def deploy_and_fund(service, creator, amount="2.5"):
    draft = service.generate_deployment(creator.address, amount)
    signed = draft.plan.sign(SignerRole.CREATOR, creator.private_key).assemble()
    record = service.submit_deployment(signed, draft.capsule.secret, amount).record

    funding = service.generate_funding_group(record.app_id, creator.address)
    signed = funding.plan.sign(SignerRole.CREATOR, creator.private_key).assemble()
    return service.submit_funding_group(record.app_id, signed).record, draft.capsule.secret


def test_claim_then_cleanup(algod, service, dispenser, recipient, asset_id):
    record, secret = deploy_and_fund(service, dispenser)
    assert holding(algod, record.app_address, asset_id) == 2_500_000

    draft = service.generate_claim_group(secret, record.app_id, recipient.address)
    claimed = service.submit_claim_group(record.app_id, draft.plan.assemble()).record
    assert claimed.status is RecordStatus.CLAIMED
    assert holding(algod, recipient.address, asset_id) == 2_500_000
    assert algod.account_info(record.authorized_claimer)["amount"] == 0

    cleanup = service.generate_cleanup(record.app_id, dispenser.address)
    signed = cleanup.plan.sign(SignerRole.CREATOR, dispenser.private_key).assemble()
    assert service.submit_cleanup(record.app_id, signed).record.status is RecordStatus.CLEANED_UP
    assert service.ledger.get_contract_state(record.app_id) is None


def test_claim_after_reclaim_is_rejected_by_the_program(algod, service, dispenser, recipient, asset_id):
    record, secret = deploy_and_fund(service, dispenser)
    stale_claim = service.generate_claim_group(secret, record.app_id, recipient.address).plan.assemble()

    reclaim = service.generate_reclaim(record.app_id, dispenser.address)
    signed = reclaim.plan.sign(SignerRole.CREATOR, dispenser.private_key).assemble()
    assert service.submit_reclaim(record.app_id, signed).record.status is RecordStatus.RECLAIMED

    with pytest.raises(LedgerRejectionError):
        service.submit_claim_group(record.app_id, stale_claim)
    assert holding(algod, recipient.address, asset_id) == 0


def test_unfunded_escrow_is_deleted(algod, service, dispenser):
    draft = service.generate_deployment(dispenser.address, "1")
    signed = draft.plan.sign(SignerRole.CREATOR, dispenser.private_key).assemble()
    record = service.submit_deployment(signed, draft.capsule.secret, "1").record

    cleanup = service.generate_cleanup(record.app_id, dispenser.address)
    signed = cleanup.plan.sign(SignerRole.CREATOR, dispenser.private_key).assemble()
    result = service.submit_cleanup(record.app_id, signed)
    assert result.record.status is RecordStatus.UNFUNDED_CLEANED_UP
    assert service.get_escrow(record.app_id).status is RecordStatus.UNFUNDED_CLEANED_UP

