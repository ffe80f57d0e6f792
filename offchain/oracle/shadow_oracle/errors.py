"""
Error taxonomy for the settlement pipeline.

Resolution and signing errors are fatal for the intent (FAILED).
Broadcast errors keep the attestation and leave the intent ATTESTED.
"""


class OracleError(Exception):
    """Base class for all pipeline errors."""


class InvalidAddress(OracleError):
    """Destination could not be decoded."""


class UnsupportedAddressType(OracleError):
    """Destination decoded to an address kind the covenant cannot pay."""

    def __init__(self, kind: int, message: str | None = None):
        self.kind = kind
        super().__init__(message or f"Unsupported address type: {kind}")


class InvalidInput(OracleError):
    """Attestation input rejected before signing."""


class NonceAlreadyAttested(InvalidInput):
    """(destination, nonce) pair was already attested for another intent."""

    def __init__(self, destination_hash: str, nonce: int):
        self.destination_hash = destination_hash
        self.nonce = nonce
        super().__init__(
            f"Nonce {nonce} already attested for destination {destination_hash}"
        )


class InsufficientCovenantFunds(OracleError):
    """No covenant UTXO can cover the payout plus fee."""

    def __init__(self, required_sats: int, available_sats: int):
        self.required_sats = required_sats
        self.available_sats = available_sats
        super().__init__(
            f"Covenant cannot cover {required_sats} sats "
            f"(largest spendable UTXO: {available_sats} sats)"
        )


class BroadcastRejected(OracleError):
    """Settlement network refused the payout transaction."""


class BroadcastTimeout(BroadcastRejected):
    """Broadcast did not complete before its deadline."""


class PayoutShapeError(OracleError):
    """Built transaction does not match the attested payout."""


class SettlementRPCError(OracleError):
    """Error returned by the settlement node's JSON-RPC interface."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


# Errors that end an intent in FAILED.
FATAL_ERRORS = (InvalidAddress, UnsupportedAddressType, InvalidInput)

# Errors after which an intent stays ATTESTED and may be retried.
RETRYABLE_ERRORS = (InsufficientCovenantFunds, BroadcastRejected)
