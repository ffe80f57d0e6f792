"""
Bitcoin Cash transaction construction for covenant payouts.

Serialization follows the legacy (non-segwit) format. Signature hashes use
the BIP143-style digest with SIGHASH_FORKID that Bitcoin Cash requires.
"""

import hashlib
import struct
from dataclasses import dataclass, field
from typing import List, Tuple

# Opcodes
OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1 = 0x51
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_HASH256 = 0xAA
OP_CHECKSIG = 0xAC

SIGHASH_ALL = 0x01
SIGHASH_FORKID = 0x40
SIGHASH_ALL_FORKID = SIGHASH_ALL | SIGHASH_FORKID

DEFAULT_SEQUENCE = 0xFFFFFFFF
DUST_LIMIT_SATS = 546


def sha256d(data: bytes) -> bytes:
    """Double SHA256 hash (Bitcoin standard)."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def txid_display_to_internal(txid_hex: str) -> bytes:
    """Convert display-format txid (block explorers, RPC) to internal byte order."""
    return bytes.fromhex(txid_hex)[::-1]


def txid_internal_to_display(internal: bytes) -> str:
    """Convert internal byte order txid to display hex."""
    return internal[::-1].hex()


def encode_varint(n: int) -> bytes:
    """Encode Bitcoin VarInt."""
    if n < 0xFD:
        return struct.pack("<B", n)
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def parse_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Parse Bitcoin VarInt.
    Returns (value, new_offset).
    """
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    elif first == 0xFD:
        return int.from_bytes(data[offset + 1 : offset + 3], "little"), offset + 3
    elif first == 0xFE:
        return int.from_bytes(data[offset + 1 : offset + 5], "little"), offset + 5
    else:
        return int.from_bytes(data[offset + 1 : offset + 9], "little"), offset + 9


def var_bytes(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


def push_data(data: bytes) -> bytes:
    """Minimal push of a byte string onto the script stack."""
    n = len(data)
    if n == 0:
        return bytes([OP_0])
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xFF:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", n) + data


def push_number(n: int) -> bytes:
    """Minimal push of a script number (used for function selectors)."""
    if n == 0:
        return bytes([OP_0])
    if 1 <= n <= 16:
        return bytes([OP_1 + n - 1])

    negative = n < 0
    value = abs(n)
    encoded = bytearray()
    while value:
        encoded.append(value & 0xFF)
        value >>= 8
    if encoded[-1] & 0x80:
        encoded.append(0x80 if negative else 0x00)
    elif negative:
        encoded[-1] |= 0x80
    return push_data(bytes(encoded))


def p2pkh_locking_bytecode(pubkey_hash: bytes) -> bytes:
    """
    P2PKH locking script:
    OP_DUP OP_HASH160 <20-byte hash> OP_EQUALVERIFY OP_CHECKSIG
    """
    if len(pubkey_hash) != 20:
        raise ValueError(f"pubkey hash must be 20 bytes, got {len(pubkey_hash)}")
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh32_locking_bytecode(redeem_script: bytes) -> bytes:
    """P2SH32 locking script: OP_HASH256 <32-byte hash> OP_EQUAL."""
    return bytes([OP_HASH256, 0x20]) + sha256d(redeem_script) + bytes([OP_EQUAL])


def extract_p2pkh_hash(locking_script: bytes) -> bytes | None:
    """Return the pubkey hash of a P2PKH locking script, or None."""
    if (
        len(locking_script) == 25
        and locking_script[0] == OP_DUP
        and locking_script[1] == OP_HASH160
        and locking_script[2] == 0x14
        and locking_script[23] == OP_EQUALVERIFY
        and locking_script[24] == OP_CHECKSIG
    ):
        return locking_script[3:23]
    return None


@dataclass
class TxInput:
    """Transaction input spending a known UTXO."""

    txid: str  # display format
    vout: int
    value_sats: int
    unlocking_script: bytes = b""
    sequence: int = DEFAULT_SEQUENCE

    def outpoint(self) -> bytes:
        return txid_display_to_internal(self.txid) + struct.pack("<I", self.vout)

    def serialize(self) -> bytes:
        return (
            self.outpoint()
            + var_bytes(self.unlocking_script)
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOutput:
    """Transaction output."""

    value: int  # satoshis
    locking_script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + var_bytes(self.locking_script)


@dataclass
class Transaction:
    """Bitcoin Cash transaction."""

    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    version: int = 2
    locktime: int = 0

    def serialize(self) -> bytes:
        return (
            struct.pack("<I", self.version)
            + encode_varint(len(self.inputs))
            + b"".join(i.serialize() for i in self.inputs)
            + encode_varint(len(self.outputs))
            + b"".join(o.serialize() for o in self.outputs)
            + struct.pack("<I", self.locktime)
        )

    def txid(self) -> str:
        """Transaction id in display format."""
        return txid_internal_to_display(sha256d(self.serialize()))

    def size(self) -> int:
        return len(self.serialize())

    def sighash_preimage(
        self,
        input_index: int,
        script_code: bytes,
        hash_type: int = SIGHASH_ALL_FORKID,
    ) -> bytes:
        """
        Build the FORKID signature hash preimage for one input.

        Only SIGHASH_ALL | SIGHASH_FORKID is supported; that is what the
        covenant co-signature uses.
        """
        if hash_type != SIGHASH_ALL_FORKID:
            raise ValueError(f"Unsupported sighash type: {hash_type:#x}")

        txin = self.inputs[input_index]
        hash_prevouts = sha256d(b"".join(i.outpoint() for i in self.inputs))
        hash_sequence = sha256d(b"".join(struct.pack("<I", i.sequence) for i in self.inputs))
        hash_outputs = sha256d(b"".join(o.serialize() for o in self.outputs))

        return (
            struct.pack("<I", self.version)
            + hash_prevouts
            + hash_sequence
            + txin.outpoint()
            + var_bytes(script_code)
            + struct.pack("<Q", txin.value_sats)
            + struct.pack("<I", txin.sequence)
            + hash_outputs
            + struct.pack("<I", self.locktime)
            + struct.pack("<I", hash_type)
        )

    def signature_hash(
        self,
        input_index: int,
        script_code: bytes,
        hash_type: int = SIGHASH_ALL_FORKID,
    ) -> bytes:
        return sha256d(self.sighash_preimage(input_index, script_code, hash_type))


def parse_tx_outputs(raw_tx: bytes) -> List[TxOutput]:
    """
    Parse transaction outputs from raw transaction.
    """
    offset = 4  # Skip version

    # Skip inputs
    input_count, offset = parse_varint(raw_tx, offset)
    for _ in range(input_count):
        offset += 32  # prev txid
        offset += 4  # prev vout
        script_len, offset = parse_varint(raw_tx, offset)
        offset += script_len  # script
        offset += 4  # sequence

    # Parse outputs
    output_count, offset = parse_varint(raw_tx, offset)
    outputs = []

    for _ in range(output_count):
        value = int.from_bytes(raw_tx[offset : offset + 8], "little")
        offset += 8
        script_len, offset = parse_varint(raw_tx, offset)
        locking_script = raw_tx[offset : offset + script_len]
        offset += script_len
        outputs.append(TxOutput(value=value, locking_script=locking_script))

    return outputs
