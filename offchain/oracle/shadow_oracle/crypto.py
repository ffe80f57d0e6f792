"""
secp256k1 primitives for Bitcoin Cash.

Implements the BCH Schnorr construction (May 2019 upgrade) used by
OP_CHECKDATASIG and OP_CHECKSIG with 64-byte signatures. This is NOT
BIP340: public keys are 33-byte compressed points, R is chosen with a
quadratic-residue y coordinate and the challenge is plain SHA256.

    e = SHA256(R.x || compressed(P) || m)
    sig = R.x || (k + e*x mod n)
"""

import hashlib
import threading
from typing import Optional

from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.ellipticcurve import INFINITY
from ecdsa.errors import MalformedPointError
from ecdsa.rfc6979 import generate_k

from .errors import InvalidInput

# Algorithm tag mixed into RFC6979 so Schnorr nonces never collide with ECDSA nonces
SCHNORR_ALGO_TAG = b"Schnorr+SHA256  "

PRIVATE_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 33
SIGNATURE_SIZE = 64


def sha256(data: bytes) -> bytes:
    """Single SHA256 (the OP_CHECKDATASIG pre-hash)."""
    return hashlib.sha256(data).digest()


def parse_private_key(value: str | bytes) -> bytes:
    """Accept a 32-byte key as raw bytes or hex (with or without 0x)."""
    if isinstance(value, bytes):
        key = value
    else:
        value = value.strip()
        if value.startswith("0x"):
            value = value[2:]
        try:
            key = bytes.fromhex(value)
        except ValueError as e:
            raise InvalidInput("Private key is not valid hex") from e

    if len(key) != PRIVATE_KEY_SIZE:
        raise InvalidInput(f"Private key must be {PRIVATE_KEY_SIZE} bytes, got {len(key)}")
    return key


class Secp256k1:
    """
    Stateless secp256k1 operations.

    Safe for concurrent use; obtain the shared instance via get_secp256k1().
    """

    def __init__(self) -> None:
        self.curve = SECP256k1
        self.generator = SECP256k1.generator
        self.order = SECP256k1.order
        self.field_prime = SECP256k1.curve.p()

    def _signing_key(self, private_key: bytes) -> SigningKey:
        try:
            return SigningKey.from_string(private_key, curve=self.curve)
        except (MalformedPointError, ValueError) as e:
            raise InvalidInput(f"Invalid private key: {e}") from e

    def _has_square_y(self, point) -> bool:
        y = point.y()
        return pow(y, (self.field_prime - 1) // 2, self.field_prime) == 1

    def derive_public_key_compressed(self, private_key: bytes) -> bytes:
        """Derive the 33-byte compressed public key."""
        sk = self._signing_key(private_key)
        return sk.get_verifying_key().to_string("compressed")

    def sign_message_hash_schnorr(self, private_key: bytes, message_hash: bytes) -> bytes:
        """
        Sign a 32-byte message hash with BCH Schnorr.

        Deterministic: the nonce is derived with RFC6979 from the key,
        the hash and the Schnorr algorithm tag.

        Returns:
            64-byte signature (r || s)
        """
        if len(message_hash) != 32:
            raise InvalidInput(f"Message hash must be 32 bytes, got {len(message_hash)}")

        sk = self._signing_key(private_key)
        secret = sk.privkey.secret_multiplier
        public_key = sk.get_verifying_key().to_string("compressed")

        k = generate_k(
            self.order,
            secret,
            hashlib.sha256,
            message_hash,
            extra_entropy=SCHNORR_ALGO_TAG,
        )
        R = self.generator * k
        if not self._has_square_y(R):
            k = self.order - k

        r_bytes = R.x().to_bytes(32, "big")
        e = int.from_bytes(sha256(r_bytes + public_key + message_hash), "big") % self.order
        s = (k + e * secret) % self.order

        return r_bytes + s.to_bytes(32, "big")

    def verify_signature_schnorr(
        self, signature: bytes, public_key: bytes, message_hash: bytes
    ) -> bool:
        """Verify a BCH Schnorr signature over a 32-byte message hash."""
        if len(signature) != SIGNATURE_SIZE or len(message_hash) != 32:
            return False

        try:
            vk = VerifyingKey.from_string(public_key, curve=self.curve)
        except (MalformedPointError, ValueError):
            return False

        r = int.from_bytes(signature[:32], "big")
        s = int.from_bytes(signature[32:], "big")
        if r >= self.field_prime or s >= self.order:
            return False

        compressed = vk.to_string("compressed")
        e = int.from_bytes(sha256(signature[:32] + compressed + message_hash), "big") % self.order

        # R = s*G - e*P
        R = self.generator.mul_add(s, vk.pubkey.point, self.order - e)
        if R == INFINITY:
            return False
        if not self._has_square_y(R):
            return False
        return R.x() == r


_secp256k1: Optional[Secp256k1] = None
_secp256k1_lock = threading.Lock()


def get_secp256k1() -> Secp256k1:
    """Get the process-wide secp256k1 handle, creating it on first use."""
    global _secp256k1
    if _secp256k1 is None:
        with _secp256k1_lock:
            if _secp256k1 is None:
                _secp256k1 = Secp256k1()
    return _secp256k1
