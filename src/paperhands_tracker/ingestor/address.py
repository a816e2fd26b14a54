"""Solana account address validation."""

from __future__ import annotations

import base58

MIN_ADDRESS_LENGTH = 32
MAX_ADDRESS_LENGTH = 44
PUBKEY_BYTES = 32

BASE58_ALPHABET = frozenset("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")


class InvalidAddressError(ValueError):
    """Raised when a string is not a well-formed Solana account address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Invalid Solana wallet address: {address!r}")
        self.address = address


def is_valid_address(value: str) -> bool:
    """Return True if `value` is a base58-encoded 32-byte public key."""
    if not isinstance(value, str) or not value:
        return False
    if not MIN_ADDRESS_LENGTH <= len(value) <= MAX_ADDRESS_LENGTH:
        return False
    if any(ch not in BASE58_ALPHABET for ch in value):
        return False
    try:
        decoded = base58.b58decode(value)
    except ValueError:
        return False
    return len(decoded) == PUBKEY_BYTES


def validate_address(value: str) -> str:
    """Return the stripped address or raise `InvalidAddressError`."""
    candidate = value.strip() if isinstance(value, str) else value
    if not is_valid_address(candidate):
        raise InvalidAddressError(str(value))
    return candidate
