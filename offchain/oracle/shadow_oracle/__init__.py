"""
Shadow Oracle

Settlement oracle for ShadowCard swipes. Watches the swipes table for new
PENDING payout intents, signs a CHECKDATASIG attestation binding recipient,
amount and nonce, and spends the ShadowCard covenant on Bitcoin Cash to pay
the recipient.

Usage:
    # Resolve a payout destination
    shadow-oracle resolve bchtest:qq...

    # Run the oracle
    shadow-oracle run --config .env

    # Process current intents once and exit
    shadow-oracle run --once
"""

__version__ = "0.1.0"

from .broadcaster import AttestedPayout, CovenantBroadcaster
from .cashaddr import decode_cashaddr, encode_cashaddr, resolve_recipient_hash
from .config import OracleConfig, Settings
from .db import IntentStore
from .listener import StorePollingSource, SwipeListener
from .models import PayoutIntent, SwipeSnapshot, SwipeStatus
from .orchestrator import OracleOrchestrator, settlement_amount_sats
from .rpc import SettlementRPC, SettlementRPCConfig
from .signer import Attestation, sign_attestation, verify_attestation

__all__ = [
    "__version__",
    "AttestedPayout",
    "CovenantBroadcaster",
    "decode_cashaddr",
    "encode_cashaddr",
    "resolve_recipient_hash",
    "OracleConfig",
    "Settings",
    "IntentStore",
    "StorePollingSource",
    "SwipeListener",
    "PayoutIntent",
    "SwipeSnapshot",
    "SwipeStatus",
    "OracleOrchestrator",
    "settlement_amount_sats",
    "SettlementRPC",
    "SettlementRPCConfig",
    "Attestation",
    "sign_attestation",
    "verify_attestation",
]
