"""
Covenant payout construction and submission.

Builds the single-input, single-output transaction that spends the
ShadowCard covenant through its swipe path:

    swipe(datasig oracleSig, bytes oracleMessage, sig userSig, pubkey userPubKey)

The covenant requires exactly one P2PKH output paying the hash encoded in
the oracle message, with the value encoded in the oracle message. Any
covenant value above amount + fee goes to the miner.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from .crypto import get_secp256k1, parse_private_key
from .errors import (
    BroadcastRejected,
    BroadcastTimeout,
    InsufficientCovenantFunds,
    PayoutShapeError,
    SettlementRPCError,
)
from .models import PayoutIntent
from .rpc import CovenantUtxo, SettlementRPC
from .signer import unpack_oracle_message
from .transaction import (
    DUST_LIMIT_SATS,
    SIGHASH_ALL_FORKID,
    Transaction,
    TxInput,
    TxOutput,
    extract_p2pkh_hash,
    p2pkh_locking_bytecode,
    p2sh32_locking_bytecode,
    parse_tx_outputs,
    push_data,
    push_number,
)

logger = structlog.get_logger()

# 64-byte Schnorr signature + sighash type byte
_PLACEHOLDER_SIGNATURE = bytes(65)


@dataclass
class AttestedPayout:
    """An intent with its attestation evidence, ready to broadcast."""

    intent_id: str
    destination_hash: bytes
    amount_sats: int
    oracle_signature: bytes
    oracle_message: bytes

    @classmethod
    def from_intent(cls, intent: PayoutIntent) -> "AttestedPayout":
        if not intent.is_attested or intent.destination_hash is None:
            raise PayoutShapeError(f"Intent {intent.id} has no stored attestation")
        return cls(
            intent_id=intent.id,
            destination_hash=bytes.fromhex(intent.destination_hash),
            amount_sats=intent.amount_sats,
            oracle_signature=bytes.fromhex(intent.oracle_signature),
            oracle_message=bytes.fromhex(intent.oracle_message),
        )


def build_unlocking_bytecode(
    oracle_signature: bytes,
    oracle_message: bytes,
    counterparty_signature: bytes,
    counterparty_public_key: bytes,
    redeem_script: bytes,
    function_index: Optional[int] = None,
) -> bytes:
    """
    Build the P2SH unlocking bytecode for the swipe path.

    Arguments are pushed in reverse order so the first function parameter
    ends up on top of the stack, followed by the optional function
    selector and the redeem script.
    """
    script = (
        push_data(counterparty_public_key)
        + push_data(counterparty_signature)
        + push_data(oracle_message)
        + push_data(oracle_signature)
    )
    if function_index is not None:
        script += push_number(function_index)
    return script + push_data(redeem_script)


class CovenantBroadcaster:
    """
    Builds and submits covenant payout transactions.

    Idempotency is the caller's responsibility: every call to broadcast()
    performs exactly one submission.
    """

    def __init__(
        self,
        rpc: SettlementRPC,
        redeem_script: bytes,
        counterparty_private_key: str | bytes,
        function_index: Optional[int] = None,
        fee_rate_sats_per_byte: int = 1,
        timeout_seconds: float = 30.0,
    ):
        self.rpc = rpc
        self.redeem_script = redeem_script
        self.function_index = function_index
        self.fee_rate = fee_rate_sats_per_byte
        self.timeout_seconds = timeout_seconds

        self._counterparty_key = parse_private_key(counterparty_private_key)
        self.counterparty_public_key = get_secp256k1().derive_public_key_compressed(
            self._counterparty_key
        )
        self.locking_script = p2sh32_locking_bytecode(redeem_script)

        logger.info(
            "broadcaster_initialized",
            covenant_locking_script=self.locking_script.hex(),
            counterparty_pubkey=self.counterparty_public_key.hex(),
            fee_rate=fee_rate_sats_per_byte,
        )

    async def get_utxos(self) -> list[CovenantUtxo]:
        """Unspent outputs currently locked by the covenant."""
        return await self.rpc.scan_utxos(self.locking_script)

    async def get_balance(self) -> int:
        """Total covenant balance in satoshis."""
        return sum(u.value_sats for u in await self.get_utxos())

    def _assemble(
        self, payout: AttestedPayout, utxo: CovenantUtxo, counterparty_signature: bytes
    ) -> Transaction:
        tx = Transaction(
            inputs=[TxInput(txid=utxo.txid, vout=utxo.vout, value_sats=utxo.value_sats)],
            outputs=[
                TxOutput(
                    value=payout.amount_sats,
                    locking_script=p2pkh_locking_bytecode(payout.destination_hash),
                )
            ],
        )
        tx.inputs[0].unlocking_script = build_unlocking_bytecode(
            oracle_signature=payout.oracle_signature,
            oracle_message=payout.oracle_message,
            counterparty_signature=counterparty_signature,
            counterparty_public_key=self.counterparty_public_key,
            redeem_script=self.redeem_script,
            function_index=self.function_index,
        )
        return tx

    def estimate_fee(self, payout: AttestedPayout, utxo: CovenantUtxo) -> int:
        """Fee for the payout transaction at the configured rate."""
        size = self._assemble(payout, utxo, _PLACEHOLDER_SIGNATURE).size()
        return size * self.fee_rate

    def select_utxo(self, payout: AttestedPayout, utxos: list[CovenantUtxo]) -> CovenantUtxo:
        """
        Pick the smallest UTXO covering amount + fee.

        The single-output shape means the remainder is paid as fee, so the
        smallest sufficient UTXO wastes the least.
        """
        for utxo in sorted(utxos, key=lambda u: u.value_sats):
            required = payout.amount_sats + self.estimate_fee(payout, utxo)
            if utxo.value_sats >= required:
                return utxo

        largest = max((u.value_sats for u in utxos), default=0)
        raise InsufficientCovenantFunds(
            required_sats=payout.amount_sats + (self.estimate_fee(payout, utxos[0]) if utxos else 0),
            available_sats=largest,
        )

    def check_payout_shape(self, payout: AttestedPayout) -> None:
        """The intent fields must match the signed oracle message exactly."""
        recipient_hash, amount_sats, _ = unpack_oracle_message(payout.oracle_message)
        if recipient_hash != payout.destination_hash:
            raise PayoutShapeError(
                f"Destination {payout.destination_hash.hex()} does not match "
                f"attested recipient {recipient_hash.hex()}"
            )
        if amount_sats != payout.amount_sats:
            raise PayoutShapeError(
                f"Amount {payout.amount_sats} does not match attested amount {amount_sats}"
            )
        if amount_sats < DUST_LIMIT_SATS:
            raise PayoutShapeError(f"Amount {amount_sats} is below the dust limit")

    def build_payout_transaction(
        self, payout: AttestedPayout, utxo: CovenantUtxo
    ) -> Transaction:
        """Build and co-sign the payout transaction spending one covenant UTXO."""
        self.check_payout_shape(payout)

        # The co-signature commits to the outputs, so sign the final shape
        # with a placeholder unlocking script; only outpoints, sequences
        # and outputs enter the digest.
        tx = self._assemble(payout, utxo, _PLACEHOLDER_SIGNATURE)
        sighash = tx.signature_hash(0, self.redeem_script, SIGHASH_ALL_FORKID)
        signature = get_secp256k1().sign_message_hash_schnorr(self._counterparty_key, sighash)
        tx = self._assemble(payout, utxo, signature + bytes([SIGHASH_ALL_FORKID]))

        outputs = parse_tx_outputs(tx.serialize())
        if (
            len(outputs) != 1
            or outputs[0].value != payout.amount_sats
            or extract_p2pkh_hash(outputs[0].locking_script) != payout.destination_hash
        ):
            raise PayoutShapeError("Built transaction does not have the attested output")

        return tx

    async def _submit(self, payout: AttestedPayout) -> str:
        try:
            utxos = await self.get_utxos()
        except (SettlementRPCError, httpx.HTTPError) as e:
            raise BroadcastRejected(f"Covenant UTXO lookup failed: {e}") from e

        if not utxos:
            raise InsufficientCovenantFunds(required_sats=payout.amount_sats, available_sats=0)

        utxo = self.select_utxo(payout, utxos)
        tx = self.build_payout_transaction(payout, utxo)
        raw_hex = tx.serialize().hex()

        logger.info(
            "payout_tx_built",
            intent_id=payout.intent_id,
            txid=tx.txid(),
            utxo=f"{utxo.txid}:{utxo.vout}",
            utxo_sats=utxo.value_sats,
            amount_sats=payout.amount_sats,
            fee_sats=utxo.value_sats - payout.amount_sats,
            size=len(raw_hex) // 2,
        )

        try:
            txid = await self.rpc.send_raw_transaction(raw_hex)
        except SettlementRPCError as e:
            raise BroadcastRejected(e.message) from e
        except httpx.HTTPError as e:
            raise BroadcastRejected(f"Submission failed: {e}") from e

        if txid != tx.txid():
            logger.warning("payout_txid_mismatch", expected=tx.txid(), returned=txid)

        return txid

    async def broadcast(self, payout: AttestedPayout) -> str:
        """
        Submit the payout transaction.

        Returns:
            Settlement transaction id

        Raises:
            InsufficientCovenantFunds: no UTXO covers amount + fee
            BroadcastRejected: the node refused the transaction
            BroadcastTimeout: the deadline passed first
            PayoutShapeError: the attestation does not match the payout
        """
        try:
            return await asyncio.wait_for(self._submit(payout), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise BroadcastTimeout(
                f"Broadcast did not complete within {self.timeout_seconds}s"
            ) from e
