#!/usr/bin/env python3
"""
Deploy and fund one AlgoSend escrow from the command line

Runs both phases for a creator account:
  1. compile the escrow for a fresh capsule and create the application
  2. fund it (app reserve, capsule, asset deposit) in one atomic group

The claim link secret is printed once at the end. Records are kept in a JSON
file so `incomplete` escrows can be found again if funding fails.

Usage:
  algosend-deploy --network localnet --asset 1234 --amount 5
  algosend-deploy --network testnet --asset 10458941 --amount 1.5 --cover-recipient-fees
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from algokit_utils import get_algod_client, get_default_localnet_config, get_localnet_default_account
from algosdk import account, mnemonic as mn
from dotenv import dotenv_values

from algosend.assets import MAINNET_ASSETS, AssetInfo, StaticAssetDirectory
from algosend.config import EscrowConfig
from algosend.errors import EscrowError
from algosend.groups import SignerRole
from algosend.ledger import AlgodLedgerClient
from algosend.service import EscrowService
from algosend.store import JsonFileEscrowStore

logger = logging.getLogger(__name__)

NETWORK_SERVERS = {
    "testnet": "https://testnet-api.algonode.cloud",
    "mainnet": "https://mainnet-api.algonode.cloud",
}
MNEMONIC_KEYS = ("ALGOSEND_CREATOR_MNEMONIC", "CREATOR_MNEMONIC")
DEFAULT_ENV_FILE = Path("contract.env")


def load_creator_mnemonic(env_file: Path = DEFAULT_ENV_FILE):
    """Load creator mnemonic from environment or an env file"""
    for key in MNEMONIC_KEYS:
        if os.getenv(key):
            return os.getenv(key).strip()

    if env_file and Path(env_file).exists():
        values = dotenv_values(env_file)
        for key in MNEMONIC_KEYS:
            if values.get(key):
                return values[key].strip()
    return None


def load_creator(network: str, config: EscrowConfig, env_file: Path):
    """Return (ledger, address, private_key) for the chosen network"""
    if network == "localnet":
        client = get_algod_client(get_default_localnet_config("algod"))
        creator = get_localnet_default_account(client)
        print(f"✅ Using localnet default account: {creator.address}")
        return AlgodLedgerClient(client), creator.address, creator.private_key

    phrase = load_creator_mnemonic(env_file)
    if not phrase:
        print("⚠️  Creator mnemonic not found!")
        print(f"   Please set {' or '.join(MNEMONIC_KEYS)}")
        print(f"   environment variable, or add it to {env_file}")
        return None

    private_key = mn.to_private_key(phrase)
    address = account.address_from_private_key(private_key)
    print(f"✅ Loaded creator account: {address}")
    return AlgodLedgerClient.from_config(config), address, private_key


def deploy_and_fund(service: EscrowService, creator: str, private_key: str, args):
    """Deploy, then fund. Returns (record, capsule secret)."""
    report = service.check_balance(creator, args.cover_recipient_fees)
    print("💰 Balance check:")
    print(f"   Available: {report.available} microAlgos")
    print(f"   Required (with {report.buffer_percent}% buffer): {report.required_balance} microAlgos")
    print(f"   Recoverable after cleanup: {report.recoverable} microAlgos")

    print("🔨 Compiling escrow for a fresh capsule...")
    draft = service.generate_deployment(creator, args.amount, args.asset, args.cover_recipient_fees)

    print("📝 Creating application...")
    signed = draft.plan.sign(SignerRole.CREATOR, private_key).assemble()
    deployed = service.submit_deployment(
        signed, draft.capsule.secret, args.amount, args.asset, args.cover_recipient_fees, args.email
    )
    record = deployed.record
    print(f"✅ Application created: {record.app_id} ({deployed.txid})")

    print("💸 Funding escrow...")
    funding = service.generate_funding_group(record.app_id, creator)
    signed = funding.plan.sign(SignerRole.CREATOR, private_key).assemble()
    funded = service.submit_funding_group(record.app_id, signed)
    print(f"✅ Escrow funded ({funded.txid})")
    logger.debug("escrow record: %s", funded.record.to_public_dict())
    return funded.record, draft.capsule.secret


def main(argv=None):
    parser = argparse.ArgumentParser(description="Deploy and fund an AlgoSend escrow")
    parser.add_argument(
        "--network",
        choices=["localnet", "testnet", "mainnet"],
        default="testnet",
        help="Network to deploy to (default: testnet)",
    )
    parser.add_argument("--asset", type=int, required=True, help="Asset ID to escrow")
    parser.add_argument("--amount", required=True, help="Amount in display units, e.g. 1.5")
    parser.add_argument("--decimals", type=int, default=6, help="Asset decimals off mainnet (default: 6)")
    parser.add_argument("--cover-recipient-fees", action="store_true", help="Pre-pay the recipient's opt-in")
    parser.add_argument("--email", default=None, help="Recipient email stored with the record")
    parser.add_argument("--store", type=Path, default=Path("escrows.json"), help="Escrow record file")
    parser.add_argument("--env-file", type=Path, default=DEFAULT_ENV_FILE, help="Env file to read")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        config = EscrowConfig.from_env(args.env_file if args.env_file.exists() else None)
    except ValueError as e:
        print(f"⚠️  {e}")
        sys.exit(1)
    if args.network in NETWORK_SERVERS and not os.getenv("ALGOD_SERVER"):
        config = config.with_overrides(algod_server=NETWORK_SERVERS[args.network])
    config = config.with_overrides(network=args.network)

    if args.network == "mainnet":
        assets = StaticAssetDirectory(MAINNET_ASSETS)
    else:
        assets = StaticAssetDirectory([AssetInfo(args.asset, "ASA", "ASA", args.decimals, is_default=True)])

    print(f"🚀 Deploying escrow to {args.network}...")
    loaded = load_creator(args.network, config, args.env_file)
    if loaded is None:
        sys.exit(1)
    ledger, creator, private_key = loaded

    service = EscrowService(ledger, JsonFileEscrowStore(args.store), config=config, assets=assets)
    try:
        record, secret = deploy_and_fund(service, creator, private_key, args)
    except EscrowError as e:
        print(f"❌ Deployment failed: {e}")
        pending = service.incomplete_escrows(creator)
        if pending:
            print("⚠️  Escrows awaiting funding:")
            for r in pending:
                print(f"   App ID {r.app_id} ({r.amount} base units of {r.asset_id})")
        sys.exit(1)

    print("\n📋 Escrow Summary:")
    print(f"   Network: {args.network}")
    print(f"   App ID: {record.app_id}")
    print(f"   App Address: {record.app_address}")
    print(f"   Amount: {record.amount} base units of asset {record.asset_id}")
    print("\n🔑 Claim secret (shown once, send it to the recipient):")
    print(f"   {secret}")
    return record


if __name__ == "__main__":
    main()
