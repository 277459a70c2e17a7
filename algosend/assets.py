"""Supported assets, amount conversion and address validation"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Protocol, Union

from algosdk import encoding

from algosend.errors import ValidationError

AMOUNT_WIDTH = 8  # set_amount argument is a big-endian uint64
MAX_UINT64 = 2**64 - 1


@dataclass(frozen=True)
class AssetInfo:
    id: int
    name: str
    unit_name: str
    decimals: int
    is_default: bool = False


class AssetDirectory(Protocol):
    def get(self, asset_id: int) -> Optional[AssetInfo]: ...

    def default_asset_id(self) -> int: ...

    def supported(self) -> List[AssetInfo]: ...

    def require(self, asset_id: Optional[int]) -> AssetInfo: ...


MAINNET_ASSETS = (
    AssetInfo(31566704, "USDC", "USDC", 6, is_default=True),
    AssetInfo(760037151, "xUSD", "xUSD", 6),
    AssetInfo(2494786278, "Monko", "MONKO", 6),
    AssetInfo(2726252423, "Alpha", "ALPHA", 6),
    AssetInfo(523683256, "Akita Inu", "AKITA", 6),
    AssetInfo(2656692124, "BallSack", "BALLSACK", 6),
)


class StaticAssetDirectory:
    """Fixed table of assets the service accepts"""

    def __init__(self, assets: Iterable[AssetInfo] = MAINNET_ASSETS):
        self._assets: Dict[int, AssetInfo] = {a.id: a for a in assets}
        if not self._assets:
            raise ValueError("asset directory cannot be empty")

    def get(self, asset_id: int) -> Optional[AssetInfo]:
        return self._assets.get(int(asset_id))

    def default_asset_id(self) -> int:
        for asset in self._assets.values():
            if asset.is_default:
                return asset.id
        return next(iter(self._assets))

    def supported(self) -> List[AssetInfo]:
        return list(self._assets.values())

    def require(self, asset_id: Optional[int]) -> AssetInfo:
        target = self.default_asset_id() if asset_id is None else asset_id
        info = self.get(target)
        if info is None:
            raise ValidationError("Unsupported asset selected", {"asset_id": target})
        return info


# ============================================================================
# Amounts
# ============================================================================

def to_base_units(amount: Union[str, int, Decimal], decimals: int) -> int:
    """Convert a display amount to the asset's smallest unit.

    Floats are refused; amounts with more precision than the asset supports
    are rejected instead of truncated.
    """
    if isinstance(amount, float) or isinstance(amount, bool):
        raise ValidationError("Amount must be given as a string, int or Decimal")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError("Invalid amount", {"amount": amount})
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be a positive number", {"amount": amount})

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            "Amount has more decimal places than the asset supports",
            {"amount": amount, "decimals": decimals},
        )
    units = int(scaled)
    if units > MAX_UINT64:
        raise ValidationError("Amount too large", {"amount": amount})
    return units


def from_base_units(units: int, decimals: int) -> Decimal:
    return Decimal(units).scaleb(-decimals)


def encode_amount(units: int) -> bytes:
    if not 0 < units <= MAX_UINT64:
        raise ValidationError("Amount out of uint64 range", {"units": units})
    return units.to_bytes(AMOUNT_WIDTH, "big")


def decode_amount(raw: bytes) -> int:
    if len(raw) != AMOUNT_WIDTH:
        raise ValidationError(
            "Malformed amount encoding", {"expected": AMOUNT_WIDTH, "got": len(raw)}
        )
    return int.from_bytes(raw, "big")


# ============================================================================
# Addresses
# ============================================================================

def require_address(address: Optional[str], field: str = "address") -> str:
    if not address or not isinstance(address, str) or not encoding.is_valid_address(address):
        raise ValidationError(f"Invalid {field} format", {field: address})
    return address


def require_app_id(app_id) -> int:
    try:
        value = int(app_id)
    except (TypeError, ValueError):
        raise ValidationError("Invalid app ID", {"app_id": app_id})
    if value <= 0 or isinstance(app_id, bool):
        raise ValidationError("Invalid app ID", {"app_id": app_id})
    return value
