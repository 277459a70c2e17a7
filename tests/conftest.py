"""Shared fixtures: an in-memory ledger, funded accounts and a wired service."""

from datetime import datetime, timezone

import pytest

from algosend.config import EscrowConfig
from algosend.service import EscrowService
from algosend.store import InMemoryEscrowStore

from helpers.escrow_flows import USDC, new_wallet
from helpers.fake_ledger import FakeLedger


@pytest.fixture
def platform():
    return new_wallet()


@pytest.fixture
def config(platform):
    return EscrowConfig(platform_address=platform.address, claim_hash_key=b"test-claim-key")


@pytest.fixture
def ledger(config):
    return FakeLedger(config)


@pytest.fixture
def store():
    return InMemoryEscrowStore()


@pytest.fixture
def service(ledger, store, config):
    return EscrowService(
        ledger, store, config=config, clock=lambda: datetime(2025, 1, 1, tzinfo=timezone.utc)
    )


@pytest.fixture
def creator(ledger):
    wallet = new_wallet()
    ledger.fund(wallet.address, 5_000_000)
    ledger.give_asset(wallet.address, USDC, 100_000_000)
    return wallet


@pytest.fixture
def recipient(ledger):
    """Existing account, not opted in to USDC"""
    wallet = new_wallet()
    ledger.fund(wallet.address, 1_000_000)
    return wallet


@pytest.fixture
def opted_in_recipient(ledger):
    wallet = new_wallet()
    ledger.fund(wallet.address, 1_000_000)
    ledger.give_asset(wallet.address, USDC, 0)
    return wallet
