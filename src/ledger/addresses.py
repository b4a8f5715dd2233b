"""Deterministic program-derived addresses for promo records.

Seeds must match the program byte for byte: a 4-byte index where the program
expects 8 bytes derives a different (valid-looking, wrong) address instead of
failing. Integers therefore only enter a seed list through ``U64Seed``.
"""

from typing import NamedTuple, Sequence, Union

from solders.pubkey import Pubkey

from src.errors import ValidationError

CONFIG_SEED = b"config"
CAMPAIGN_SEED = b"campaign"
VAULT_SEED = b"vault"
COUPON_SEED = b"coupon"


class U64Seed(NamedTuple):
    """An unsigned 64-bit integer seed, encoded little-endian."""

    value: int

    def to_bytes(self) -> bytes:
        return int(self.value).to_bytes(8, "little", signed=False)


Seed = Union[bytes, Pubkey, U64Seed]


def seed_bytes(seed: Seed) -> bytes:
    """Encode one seed component.

    Raises:
        TypeError: For values without an explicit encoding (bare ints, str).
    """
    if isinstance(seed, U64Seed):
        return seed.to_bytes()
    if isinstance(seed, Pubkey):
        return bytes(seed)
    if isinstance(seed, (bytes, bytearray)):
        return bytes(seed)
    raise TypeError(f"Unsupported seed component: {type(seed).__name__}")


def derive(namespace: bytes, seeds: Sequence[Seed], program_id: Pubkey) -> Pubkey:
    """Derive the program address for ``namespace`` followed by ``seeds``."""
    return Pubkey.find_program_address([namespace, *(seed_bytes(s) for s in seeds)], program_id)[0]


def config_address(program_id: Pubkey) -> Pubkey:
    return derive(CONFIG_SEED, [], program_id)


def campaign_address(merchant: Pubkey, campaign_id: int, program_id: Pubkey) -> Pubkey:
    return derive(CAMPAIGN_SEED, [merchant, U64Seed(campaign_id)], program_id)


def vault_address(campaign: Pubkey, program_id: Pubkey) -> Pubkey:
    return derive(VAULT_SEED, [campaign], program_id)


def coupon_address(campaign: Pubkey, coupon_index: int, program_id: Pubkey) -> Pubkey:
    return derive(COUPON_SEED, [campaign, U64Seed(coupon_index)], program_id)


def parse_address(value, field: str = "address") -> Pubkey:
    """Parse a base58 address from request input.

    Raises:
        ValidationError: If the value is empty or not a valid address.
    """
    if isinstance(value, Pubkey):
        return value
    if not value or not isinstance(value, str):
        raise ValidationError(f"Missing {field}.")
    try:
        return Pubkey.from_string(value.strip())
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}", details={"field": field})
