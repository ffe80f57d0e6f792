"""
Bitcoin Cash address decoding utilities.

Resolves a payout destination into the 20-byte HASH160 that the
covenant's P2PKH output check expects.

Supports:
- raw HASH160 as 40 hex characters
- CashAddr P2PKH: bitcoincash:q... (mainnet), bchtest:q... (testnet/chipnet),
  bchreg:q... (regtest)
"""

import re
from typing import Optional, Tuple

from .errors import InvalidAddress, UnsupportedAddressType

# CashAddr character set (same alphabet as bech32)
CASHADDR_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
CHARSET_MAP = {c: i for i, c in enumerate(CASHADDR_CHARSET)}

KNOWN_PREFIXES = ("bitcoincash", "bchtest", "bchreg")

# Address kinds (type bits of the version byte)
P2PKH = 0
P2SH = 1
P2PKH_TOKENS = 2
P2SH_TOKENS = 3

CHECKSUM_LENGTH = 8
HASH160_SIZE = 20

# Version byte size code -> hash size in bytes
HASH_SIZES = {0: 20, 1: 24, 2: 28, 3: 32, 4: 40, 5: 48, 6: 56, 7: 64}

_RAW_HASH160 = re.compile(r"^[0-9a-fA-F]{40}$")


def cashaddr_polymod(values: list[int]) -> int:
    """Internal function for CashAddr checksum computation (40-bit BCH code)."""
    GEN = [0x98F2BC8E61, 0x79B76D99E2, 0xF33E5FB3C4, 0xAE2EABE2A8, 0x1E4F43E470]
    chk = 1
    for v in values:
        b = chk >> 35
        chk = ((chk & 0x07FFFFFFFF) << 5) ^ v
        for i in range(5):
            chk ^= GEN[i] if ((b >> i) & 1) else 0
    return chk ^ 1


def cashaddr_prefix_expand(prefix: str) -> list[int]:
    """Expand prefix for checksum computation."""
    return [ord(x) & 0x1F for x in prefix] + [0]


def cashaddr_verify_checksum(prefix: str, data: list[int]) -> bool:
    """Verify CashAddr checksum."""
    return cashaddr_polymod(cashaddr_prefix_expand(prefix) + data) == 0


def cashaddr_create_checksum(prefix: str, data: list[int]) -> list[int]:
    """Compute the 8 checksum symbols for a payload."""
    poly = cashaddr_polymod(cashaddr_prefix_expand(prefix) + data + [0] * CHECKSUM_LENGTH)
    return [(poly >> 5 * (7 - i)) & 0x1F for i in range(CHECKSUM_LENGTH)]


def convert_bits(data: list[int], frombits: int, tobits: int, pad: bool) -> list[int] | None:
    """Convert between bit widths."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def _split_address(address: str) -> Tuple[Optional[str], str]:
    if ":" in address:
        prefix, payload = address.split(":", 1)
        return prefix, payload
    return None, address


def cashaddr_decode(
    address: str, default_prefix: Optional[str] = None
) -> Tuple[str, list[int]] | None:
    """
    Decode a CashAddr string into its prefix and 5-bit payload.

    The checksum is verified and stripped. A prefix-less address is checked
    against `default_prefix`, or against the known network prefixes when
    none is given.

    Returns:
        (prefix, data) or None if invalid
    """
    address = address.strip()

    # Mixed case is never valid
    if address.lower() != address and address.upper() != address:
        return None
    address = address.lower()

    prefix, payload = _split_address(address)
    if not payload or len(payload) <= CHECKSUM_LENGTH:
        return None

    data = []
    for c in payload:
        if c not in CHARSET_MAP:
            return None
        data.append(CHARSET_MAP[c])

    if prefix is not None:
        candidates: Tuple[str, ...] = (prefix,)
    elif default_prefix:
        candidates = (default_prefix.lower(),)
    else:
        candidates = KNOWN_PREFIXES
    for candidate in candidates:
        if candidate and cashaddr_verify_checksum(candidate, data):
            return (candidate, data[:-CHECKSUM_LENGTH])

    return None


def decode_cashaddr(
    address: str, default_prefix: Optional[str] = None
) -> Tuple[str, int, bytes]:
    """
    Decode a CashAddr into (prefix, kind, hash).

    Raises:
        InvalidAddress: bad characters, checksum, padding or length
    """
    result = cashaddr_decode(address, default_prefix)
    if result is None:
        raise InvalidAddress(f"Invalid CashAddr: {address!r}")

    prefix, data = result

    # Strict conversion: padding bits are dropped and must be zero
    converted = convert_bits(data, 5, 8, False)
    if converted is None:
        raise InvalidAddress(f"Invalid CashAddr padding: {address!r}")

    if len(converted) < 1 + HASH160_SIZE:
        raise InvalidAddress(
            f"CashAddr payload too short: {len(converted)} bytes, need at least 21"
        )

    version = converted[0]
    if version & 0x80:
        raise InvalidAddress(f"CashAddr reserved version bit set: {version:#04x}")

    kind = (version >> 3) & 0x0F
    hash_size = HASH_SIZES[version & 0x07]
    payload = bytes(converted[1:])

    if len(payload) != hash_size:
        raise InvalidAddress(
            f"CashAddr hash length {len(payload)} does not match version byte {version:#04x}"
        )

    return (prefix, kind, payload)


def encode_cashaddr(prefix: str, kind: int, payload: bytes) -> str:
    """Encode a hash as a CashAddr string."""
    size_codes = {size: code for code, size in HASH_SIZES.items()}
    if len(payload) not in size_codes:
        raise ValueError(f"Unsupported CashAddr hash length: {len(payload)}")
    if not 0 <= kind <= 0x0F:
        raise ValueError(f"Unsupported CashAddr kind: {kind}")

    version = (kind << 3) | size_codes[len(payload)]
    data = convert_bits([version] + list(payload), 8, 5, True)
    assert data is not None
    checksum = cashaddr_create_checksum(prefix, data)
    return prefix + ":" + "".join(CASHADDR_CHARSET[d] for d in data + checksum)


def is_raw_hash160(value: str) -> bool:
    """Check if a string looks like a raw 40-char hex HASH160."""
    return bool(_RAW_HASH160.match(value))


def resolve_recipient_hash(destination: str, default_prefix: Optional[str] = None) -> bytes:
    """
    Resolve a payout destination to a 20-byte HASH160.

    Args:
        destination: Either a 40-char hex hash or a CashAddr string
        default_prefix: Network prefix assumed for a prefix-less CashAddr

    Returns:
        20-byte HASH160

    Raises:
        InvalidAddress: undecodable destination
        UnsupportedAddressType: decodes, but is not a P2PKH address
    """
    destination = destination.strip()

    if is_raw_hash160(destination):
        return bytes.fromhex(destination)

    _, kind, payload = decode_cashaddr(destination, default_prefix)

    if kind != P2PKH:
        raise UnsupportedAddressType(kind)
    if len(payload) != HASH160_SIZE:
        raise UnsupportedAddressType(
            kind, f"Unsupported hash size for P2PKH: {len(payload)} bytes"
        )

    return payload
