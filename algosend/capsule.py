"""
Authorization capsules

A capsule is a throwaway Algorand keypair minted for exactly one escrow. Its
address is compiled into that escrow's approval program as the only account
allowed to call `claim`; the secret travels to the recipient out of band and is
never stored by the service. Lookups go through `claim_hash`, a keyed digest
of the secret and the app id.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass

from algosdk import account

from algosend.errors import ValidationError

logger = logging.getLogger(__name__)

PRIVATE_KEY_LENGTH = 64


@dataclass(frozen=True)
class Capsule:
    address: str
    secret: str  # algosdk base64 private key

    def __repr__(self) -> str:
        return f"Capsule(address={self.address!r}, secret=<redacted>)"


def mint_capsule() -> Capsule:
    """Generate a fresh keypair for a new escrow"""
    secret, address = account.generate_account()
    logger.debug("minted capsule %s", address)
    return Capsule(address=address, secret=secret)


def capsule_from_secret(secret: str) -> Capsule:
    """Rebuild a capsule from the secret carried in a claim link"""
    if not secret or not isinstance(secret, str):
        raise ValidationError("Missing capsule secret")
    try:
        raw = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Malformed capsule secret")
    if len(raw) != PRIVATE_KEY_LENGTH:
        raise ValidationError("Malformed capsule secret")
    return Capsule(address=account.address_from_private_key(secret), secret=secret)


def claim_hash(secret: str, app_id: int, key: bytes) -> str:
    """Keyed one-way digest of (capsule secret, app id), hex encoded"""
    if not key:
        raise ValueError("claim hash key must not be empty")
    message = secret.encode() + str(int(app_id)).encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def verify_claim_hash(secret: str, app_id: int, key: bytes, expected: str) -> bool:
    return hmac.compare_digest(claim_hash(secret, app_id, key), expected)
