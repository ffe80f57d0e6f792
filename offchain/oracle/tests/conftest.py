"""
Shared fixtures: SQLite store in tmp_path and a fake settlement node.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from shadow_oracle.broadcaster import CovenantBroadcaster
from shadow_oracle.config import OracleConfig, Settings
from shadow_oracle.db import IntentStore
from shadow_oracle.errors import SettlementRPCError
from shadow_oracle.models import PayoutIntent, utcnow
from shadow_oracle.rpc import CovenantUtxo
from shadow_oracle.transaction import sha256d, txid_internal_to_display

ORACLE_KEY = "4e76972049fd3dcc0aab42eba3e1e38f75ac5261dbaa52c3cd72bbb564c60e1e"
COUNTERPARTY_KEY = "11" * 32
REDEEM_SCRIPT = bytes.fromhex("5279009c635279827701147f")

RECIPIENT_HASH = "0e521510b2d62a7d4014b7630f00f8d59f64521e"
RECIPIENT_ADDRESS = "bchtest:qq89y9gskttz5l2qzjmkxrcqlr2e7ezjrcl3gtpf5y"
P2SH_ADDRESS = "bchtest:pr6m7j9njldwwzlg9v7v53unlr4jkmx6eyvwc0uz5t"


class FakeSettlementRPC:
    """In-memory stand-in for the settlement node."""

    def __init__(self, utxos: Optional[list[CovenantUtxo]] = None):
        self.utxos = utxos if utxos is not None else [
            CovenantUtxo(txid="ab" * 32, vout=0, value_sats=10_000_000, locking_script=b"")
        ]
        self.sent: list[str] = []
        self.reject_with: Optional[str] = None

    async def scan_utxos(self, locking_script: bytes) -> list[CovenantUtxo]:
        return list(self.utxos)

    async def send_raw_transaction(self, raw_tx_hex: str) -> str:
        self.sent.append(raw_tx_hex)
        if self.reject_with is not None:
            raise SettlementRPCError(-26, self.reject_with)
        return txid_internal_to_display(sha256d(bytes.fromhex(raw_tx_hex)))


@pytest.fixture
def store(tmp_path: Path) -> IntentStore:
    db = IntentStore(f"sqlite:///{tmp_path / 'oracle.db'}")
    yield db
    db.close()


@pytest.fixture
def fake_rpc() -> FakeSettlementRPC:
    return FakeSettlementRPC()


@pytest.fixture
def broadcaster(fake_rpc: FakeSettlementRPC) -> CovenantBroadcaster:
    return CovenantBroadcaster(
        rpc=fake_rpc,  # type: ignore[arg-type]
        redeem_script=REDEEM_SCRIPT,
        counterparty_private_key=COUNTERPARTY_KEY,
        timeout_seconds=5.0,
    )


@pytest.fixture
def config(tmp_path: Path) -> OracleConfig:
    settings = Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'oracle.db'}",
        oracle_private_key=ORACLE_KEY,
        bch_usd_rate=Decimal("400"),
        worker_count=2,
        queue_size=10,
        poll_interval_seconds=0.01,
    )
    return OracleConfig(settings=settings)


@pytest.fixture
def make_intent(store: IntentStore) -> Callable[..., PayoutIntent]:
    """Insert a PENDING intent with sensible defaults."""

    def _make(**overrides: Any) -> PayoutIntent:
        values: dict[str, Any] = {
            "user_id": "user-1",
            "nonce": 1,
            "amount_usd": Decimal("10.00"),
            "amount_bch": Decimal("0.025"),
            "bch_recipient": RECIPIENT_ADDRESS,
            "starknet_tx_hash": "0x" + "12" * 32,
        }
        values.update(overrides)
        return store.create_intent(**values)

    return _make


@pytest.fixture
def expired_at():
    return utcnow() - timedelta(seconds=60)
