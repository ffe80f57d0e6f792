"""
Tests for CashAddr decoding and payout destination resolution.
"""

import pytest

from shadow_oracle.cashaddr import (
    P2PKH,
    P2PKH_TOKENS,
    P2SH,
    P2SH_TOKENS,
    decode_cashaddr,
    encode_cashaddr,
    is_raw_hash160,
    resolve_recipient_hash,
)
from shadow_oracle.errors import InvalidAddress, UnsupportedAddressType

MAINNET_P2PKH = "bitcoincash:qr6m7j9njldwwzlg9v7v53unlr4jkmx6eylep8ekg2"
MAINNET_HASH = "f5bf48b397dae70be82b3cca4793f8eb2b6cdac9"


class TestDecodeCashaddr:
    """Tests for decode_cashaddr."""

    def test_mainnet_p2pkh(self):
        prefix, kind, payload = decode_cashaddr(MAINNET_P2PKH)
        assert prefix == "bitcoincash"
        assert kind == P2PKH
        assert payload.hex() == MAINNET_HASH

    def test_testnet_p2pkh(self):
        prefix, kind, payload = decode_cashaddr(
            "bchtest:qq89y9gskttz5l2qzjmkxrcqlr2e7ezjrcl3gtpf5y"
        )
        assert prefix == "bchtest"
        assert kind == P2PKH
        assert payload.hex() == "0e521510b2d62a7d4014b7630f00f8d59f64521e"

    def test_p2sh(self):
        prefix, kind, payload = decode_cashaddr(
            "bchtest:pr6m7j9njldwwzlg9v7v53unlr4jkmx6eyvwc0uz5t"
        )
        assert kind == P2SH
        assert payload.hex() == MAINNET_HASH

    def test_zero_hash(self):
        _, kind, payload = decode_cashaddr("bchtest:qqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqdpn3jdgd")
        assert kind == P2PKH
        assert payload == bytes(20)

    def test_32_byte_hash(self):
        _, kind, payload = decode_cashaddr(
            "bchtest:rvqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqvdzt89eh"
        )
        assert kind == P2SH_TOKENS
        assert len(payload) == 32

    def test_uppercase_accepted(self):
        _, kind, payload = decode_cashaddr(MAINNET_P2PKH.upper())
        assert kind == P2PKH
        assert payload.hex() == MAINNET_HASH

    def test_missing_prefix_uses_known_networks(self):
        prefix, _, payload = decode_cashaddr(MAINNET_P2PKH.split(":")[1])
        assert prefix == "bitcoincash"
        assert payload.hex() == MAINNET_HASH

    def test_mixed_case_rejected(self):
        with pytest.raises(InvalidAddress):
            decode_cashaddr("bitcoincash:qr6m7j9njldwwzlg9v7v53unlr4jkmx6eylep8ekG2")

    def test_bad_checksum_rejected(self):
        with pytest.raises(InvalidAddress):
            decode_cashaddr("bchtest:qpd9x25dwms0hqfqf7f0aa65ebb0371a292df23f9c")

    def test_wrong_prefix_rejected(self):
        """The checksum covers the prefix."""
        with pytest.raises(InvalidAddress):
            decode_cashaddr("bchtest:" + MAINNET_P2PKH.split(":")[1])

    def test_invalid_character_rejected(self):
        with pytest.raises(InvalidAddress):
            decode_cashaddr("bitcoincash:qr6m7j9njldwwzlg9v7v53unlr4jkmx6eylep8ekgb")

    def test_empty_rejected(self):
        with pytest.raises(InvalidAddress):
            decode_cashaddr("")
        with pytest.raises(InvalidAddress):
            decode_cashaddr("bitcoincash:")


class TestEncodeCashaddr:
    """Tests for encode_cashaddr."""

    def test_known_vector(self):
        encoded = encode_cashaddr("bitcoincash", P2PKH, bytes.fromhex(MAINNET_HASH))
        assert encoded == MAINNET_P2PKH

    def test_kind_and_prefix_change_address(self):
        encoded = encode_cashaddr("bchtest", P2SH, bytes.fromhex(MAINNET_HASH))
        assert encoded == "bchtest:pr6m7j9njldwwzlg9v7v53unlr4jkmx6eyvwc0uz5t"

    def test_unsupported_length(self):
        with pytest.raises(ValueError):
            encode_cashaddr("bchtest", P2PKH, bytes(19))


class TestResolveRecipientHash:
    """Tests for resolve_recipient_hash."""

    def test_raw_hex_returned_verbatim(self):
        raw = "0e521510b2d62a7d4014b7630f00f8d59f64521e"
        assert resolve_recipient_hash(raw) == bytes.fromhex(raw)

    def test_raw_hex_is_not_decoded_as_cashaddr(self):
        assert is_raw_hash160("00" * 20)
        assert resolve_recipient_hash("00" * 20) == bytes(20)

    def test_p2pkh_cashaddr(self):
        assert resolve_recipient_hash(MAINNET_P2PKH).hex() == MAINNET_HASH

    def test_p2sh_unsupported(self):
        with pytest.raises(UnsupportedAddressType) as exc_info:
            resolve_recipient_hash("bchtest:pr6m7j9njldwwzlg9v7v53unlr4jkmx6eyvwc0uz5t")
        assert exc_info.value.kind == P2SH

    def test_token_aware_p2pkh_unsupported(self):
        with pytest.raises(UnsupportedAddressType) as exc_info:
            resolve_recipient_hash("bitcoincash:zpm2qsznhks23z7629mms6s4cwef74vcwvrqekrq9w")
        assert exc_info.value.kind == P2PKH_TOKENS

    def test_garbage_is_invalid(self):
        with pytest.raises(InvalidAddress):
            resolve_recipient_hash("not-an-address")

    def test_short_hex_is_not_raw(self):
        assert not is_raw_hash160("00" * 19)
        with pytest.raises(InvalidAddress):
            resolve_recipient_hash("00" * 19)

    def test_prefixless_uses_configured_network(self):
        payload = MAINNET_P2PKH.split(":")[1]
        assert resolve_recipient_hash(payload, default_prefix="bitcoincash").hex() == MAINNET_HASH

    def test_prefixless_wrong_network_rejected(self):
        """A mainnet payload does not checksum under the testnet prefix."""
        with pytest.raises(InvalidAddress):
            resolve_recipient_hash(MAINNET_P2PKH.split(":")[1], default_prefix="bchtest")

    def test_explicit_prefix_wins_over_default(self):
        assert resolve_recipient_hash(MAINNET_P2PKH, default_prefix="bchtest").hex() == MAINNET_HASH
