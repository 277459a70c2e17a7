"""Wallets and multi-step escrow flows used across the test modules."""

from dataclasses import dataclass

from algosdk import account

from algosend.groups import SignerRole

USDC = 31566704


@dataclass(frozen=True)
class Wallet:
    address: str
    private_key: str


def new_wallet() -> Wallet:
    private_key, address = account.generate_account()
    return Wallet(address=address, private_key=private_key)


def deploy(service, creator, amount="25", cover_recipient_fees=False):
    """Run the deploy phase; returns (record, capsule secret)"""
    draft = service.generate_deployment(creator.address, amount, USDC, cover_recipient_fees)
    signed = draft.plan.sign(SignerRole.CREATOR, creator.private_key).assemble()
    result = service.submit_deployment(signed, draft.capsule.secret, amount, USDC, cover_recipient_fees)
    return result.record, draft.capsule.secret


def deploy_and_fund(service, creator, amount="25", cover_recipient_fees=False):
    record, secret = deploy(service, creator, amount, cover_recipient_fees)
    funding = service.generate_funding_group(record.app_id, creator.address)
    signed = funding.plan.sign(SignerRole.CREATOR, creator.private_key).assemble()
    result = service.submit_funding_group(record.app_id, signed)
    return result.record, secret


def sign_as(plan, role, wallet):
    return plan.sign(role, wallet.private_key).assemble()
