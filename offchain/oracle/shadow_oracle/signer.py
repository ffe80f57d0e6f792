"""
Oracle attestation signing for the ShadowCard covenant.

The covenant checks the oracle signature with OP_CHECKDATASIG, which
SHA256-hashes the message before verification, so the signer applies
the same pre-hash.

Oracle message format (36 bytes, little-endian):
    Bytes  0-19:  recipient hash   (HASH160 of recipient pubkey)
    Bytes 20-27:  amount in sats   (uint64 LE)
    Bytes 28-35:  nonce            (uint64 LE)
"""

import struct
from dataclasses import dataclass

import structlog

from .crypto import get_secp256k1, parse_private_key, sha256
from .errors import InvalidInput

logger = structlog.get_logger()

MESSAGE_SIZE = 36
RECIPIENT_HASH_SIZE = 20
MAX_UINT64 = 2**64 - 1


@dataclass(frozen=True)
class Attestation:
    """Signed oracle attestation."""

    signature: bytes  # 64 bytes (BCH Schnorr)
    message: bytes  # 36 bytes (20 + 8 + 8)
    public_key: bytes  # 33 bytes (compressed)


def pack_oracle_message(recipient_hash: bytes, amount_sats: int, nonce: int) -> bytes:
    """
    Pack the oracle message in the exact layout the covenant parses.

    Raises:
        InvalidInput: wrong hash length, non-positive amount, or a field
            that does not fit in uint64
    """
    if len(recipient_hash) != RECIPIENT_HASH_SIZE:
        raise InvalidInput(
            f"recipient hash must be {RECIPIENT_HASH_SIZE} bytes, got {len(recipient_hash)}"
        )
    if amount_sats <= 0:
        raise InvalidInput(f"amount_sats must be positive, got {amount_sats}")
    if amount_sats > MAX_UINT64:
        raise InvalidInput(f"amount_sats does not fit in uint64: {amount_sats}")
    if not 0 <= nonce <= MAX_UINT64:
        raise InvalidInput(f"nonce does not fit in uint64: {nonce}")

    return bytes(recipient_hash) + struct.pack("<QQ", amount_sats, nonce)


def unpack_oracle_message(message: bytes) -> tuple[bytes, int, int]:
    """
    Split a packed oracle message into (recipient_hash, amount_sats, nonce).
    """
    if len(message) != MESSAGE_SIZE:
        raise InvalidInput(f"oracle message must be {MESSAGE_SIZE} bytes, got {len(message)}")
    amount_sats, nonce = struct.unpack("<QQ", message[RECIPIENT_HASH_SIZE:])
    return message[:RECIPIENT_HASH_SIZE], amount_sats, nonce


def sign_attestation(
    private_key: str | bytes,
    recipient_hash: bytes,
    amount_sats: int,
    nonce: int,
) -> Attestation:
    """
    Sign an attestation for the covenant.

    Signing is deterministic: the same key and inputs always give the same
    signature, so a retried payout reuses byte-identical evidence.

    Args:
        private_key: Oracle secp256k1 private key (32 bytes, raw or hex)
        recipient_hash: 20-byte HASH160 of the recipient
        amount_sats: Payout amount in satoshis
        nonce: Replay-protection nonce

    Returns:
        Signature, packed message, and compressed public key
    """
    secp256k1 = get_secp256k1()

    message = pack_oracle_message(recipient_hash, amount_sats, nonce)
    key = parse_private_key(private_key)
    public_key = secp256k1.derive_public_key_compressed(key)
    signature = secp256k1.sign_message_hash_schnorr(key, sha256(message))

    logger.debug(
        "attestation_signed",
        recipient_hash=recipient_hash.hex(),
        amount_sats=amount_sats,
        nonce=nonce,
        oracle_pubkey=public_key.hex(),
    )

    return Attestation(signature=signature, message=message, public_key=public_key)


def verify_attestation(signature: bytes, message: bytes, public_key: bytes) -> bool:
    """Verify an attestation signature the way OP_CHECKDATASIG does."""
    return get_secp256k1().verify_signature_schnorr(signature, public_key, sha256(message))
