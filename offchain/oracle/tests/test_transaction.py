"""
Tests for transaction serialization, script pushes and FORKID sighash.
"""

import hashlib

import pytest

from shadow_oracle.transaction import (
    SIGHASH_ALL_FORKID,
    Transaction,
    TxInput,
    TxOutput,
    encode_varint,
    extract_p2pkh_hash,
    p2pkh_locking_bytecode,
    p2sh32_locking_bytecode,
    parse_tx_outputs,
    parse_varint,
    push_data,
    push_number,
    sha256d,
    txid_display_to_internal,
)

RECIPIENT = bytes.fromhex("0e521510b2d62a7d4014b7630f00f8d59f64521e")
PREV_TXID = "abcdef0123456789abcdef0123456789abcdef0123456789abcdef0123456789"


def _tx(amount: int = 100_000) -> Transaction:
    return Transaction(
        inputs=[TxInput(txid=PREV_TXID, vout=1, value_sats=500_000)],
        outputs=[TxOutput(value=amount, locking_script=p2pkh_locking_bytecode(RECIPIENT))],
    )


class TestVarint:
    """Tests for VarInt encoding."""

    @pytest.mark.parametrize(
        "value,encoded",
        [
            (0, "00"),
            (0xFC, "fc"),
            (0xFD, "fdfd00"),
            (0xFFFF, "fdffff"),
            (0x10000, "fe00000100"),
            (0x100000000, "ff0000000001000000"),
        ],
    )
    def test_encode(self, value, encoded):
        assert encode_varint(value).hex() == encoded

    def test_parse_returns_offset(self):
        data = bytes.fromhex("aa" + "fd0302")
        assert parse_varint(data, 1) == (0x0203, 4)


class TestScriptPushes:
    """Tests for minimal data and number pushes."""

    def test_push_data_direct(self):
        assert push_data(b"\x01\x02") == b"\x02\x01\x02"

    def test_push_data_empty(self):
        assert push_data(b"") == b"\x00"

    def test_push_data_pushdata1(self):
        data = bytes(76)
        assert push_data(data)[:2] == b"\x4c\x4c"
        assert len(push_data(data)) == 78

    def test_push_data_pushdata2(self):
        data = bytes(300)
        assert push_data(data)[:3] == b"\x4d\x2c\x01"

    def test_push_number_small(self):
        assert push_number(0) == b"\x00"
        assert push_number(1) == b"\x51"
        assert push_number(16) == b"\x60"

    def test_push_number_scriptnum(self):
        assert push_number(17) == b"\x01\x11"
        assert push_number(128) == b"\x02\x80\x00"
        assert push_number(-1) == b"\x01\x81"


class TestLockingScripts:
    """Tests for locking bytecode helpers."""

    def test_p2pkh(self):
        script = p2pkh_locking_bytecode(RECIPIENT)
        assert script.hex() == "76a914" + RECIPIENT.hex() + "88ac"
        assert extract_p2pkh_hash(script) == RECIPIENT

    def test_p2pkh_wrong_length(self):
        with pytest.raises(ValueError):
            p2pkh_locking_bytecode(bytes(32))

    def test_extract_rejects_other_scripts(self):
        assert extract_p2pkh_hash(p2sh32_locking_bytecode(b"\x51")) is None
        assert extract_p2pkh_hash(b"") is None

    def test_p2sh32(self):
        redeem = bytes.fromhex("5279009c63")
        script = p2sh32_locking_bytecode(redeem)
        assert script == b"\xaa\x20" + sha256d(redeem) + b"\x87"
        assert len(script) == 35


class TestTransaction:
    """Tests for Transaction serialization."""

    def test_serialize_layout(self):
        raw = _tx().serialize()

        assert raw[:4] == bytes.fromhex("02000000")
        assert raw[4] == 1  # input count
        assert raw[5:37] == txid_display_to_internal(PREV_TXID)
        assert raw[37:41] == bytes.fromhex("01000000")
        assert raw[41] == 0  # empty unlocking script
        assert raw[42:46] == b"\xff\xff\xff\xff"
        assert raw[46] == 1  # output count
        assert raw[-4:] == bytes(4)  # locktime

    def test_txid_is_reversed_double_sha(self):
        tx = _tx()
        digest = hashlib.sha256(hashlib.sha256(tx.serialize()).digest()).digest()
        assert tx.txid() == digest[::-1].hex()

    def test_parse_outputs(self):
        tx = _tx(123_456)
        tx.inputs[0].unlocking_script = bytes(300)

        outputs = parse_tx_outputs(tx.serialize())

        assert len(outputs) == 1
        assert outputs[0].value == 123_456
        assert extract_p2pkh_hash(outputs[0].locking_script) == RECIPIENT


class TestSighash:
    """Tests for the FORKID signature hash."""

    def test_preimage_layout(self):
        tx = _tx()
        script_code = bytes.fromhex("5279009c63")

        preimage = tx.sighash_preimage(0, script_code)

        assert len(preimage) == 156 + 1 + len(script_code)
        assert preimage[:4] == bytes.fromhex("02000000")
        assert preimage[68:104] == tx.inputs[0].outpoint()
        assert preimage[-4:] == bytes.fromhex("41000000")

    def test_unlocking_script_not_committed(self):
        tx = _tx()
        before = tx.signature_hash(0, b"\x51")
        tx.inputs[0].unlocking_script = bytes(65)
        assert tx.signature_hash(0, b"\x51") == before

    def test_outputs_committed(self):
        assert _tx(100_000).signature_hash(0, b"\x51") != _tx(100_001).signature_hash(0, b"\x51")

    def test_input_value_committed(self):
        tx = _tx()
        before = tx.signature_hash(0, b"\x51")
        tx.inputs[0].value_sats += 1
        assert tx.signature_hash(0, b"\x51") != before

    def test_only_all_forkid_supported(self):
        with pytest.raises(ValueError):
            _tx().sighash_preimage(0, b"\x51", hash_type=0x01)
        assert SIGHASH_ALL_FORKID == 0x41
