"""
Bitcoin Cash Node RPC client for covenant UTXOs and broadcasting.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Union

import httpx
import structlog
from pydantic import BaseModel

from .errors import SettlementRPCError

logger = structlog.get_logger()

# Constants for BCH to satoshis conversion
SATS_PER_BCH = Decimal("100000000")


def bch_to_sats(value: Union[int, float, str, Decimal]) -> int:
    """
    Convert a BCH value to satoshis with exact precision.

    Uses Decimal arithmetic to avoid float precision issues
    (float(0.1) * 1e8 = 9999999.999999998, not 10000000).

    Examples:
        >>> bch_to_sats(0.00015)
        15000
        >>> bch_to_sats("0.00000001")
        1
    """
    if isinstance(value, Decimal):
        dec_value = value
    elif isinstance(value, str):
        dec_value = Decimal(value)
    else:
        # int or float: convert via string to avoid float representation issues
        dec_value = Decimal(str(value))

    sats = dec_value * SATS_PER_BCH

    # Ensure exact integer (no fractional satoshis)
    if sats != sats.to_integral_value():
        raise ValueError(f"BCH value {value} results in fractional satoshis: {sats}")

    return int(sats)


class SettlementRPCConfig(BaseModel):
    """Configuration for the settlement node RPC connection."""

    url: str = "http://localhost:48332"
    user: str = ""
    password: str = ""
    timeout: float = 30.0


@dataclass
class CovenantUtxo:
    """Unspent output locked by the covenant."""

    txid: str  # display format
    vout: int
    value_sats: int
    locking_script: bytes
    height: Optional[int] = None


class SettlementRPC:
    """
    Async Bitcoin Cash Node JSON-RPC client.

    Provides the calls the broadcaster needs: covenant UTXO lookup via
    scantxoutset and raw transaction submission.
    """

    def __init__(
        self,
        config: SettlementRPCConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._transport = transport
        self._request_id = 0

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """Make RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        auth = None
        if self.config.user and self.config.password:
            auth = (self.config.user, self.config.password)

        async with httpx.AsyncClient(
            timeout=self.config.timeout, transport=self._transport
        ) as client:
            response = await client.post(
                self.config.url,
                json=payload,
                auth=auth,
            )
            # bitcoind reports RPC errors with HTTP 500 and a JSON body
            if response.status_code >= 400 and not response.content:
                response.raise_for_status()
            try:
                result = response.json(parse_float=Decimal)
            except ValueError as e:
                # Proxies in front of the node answer with HTML error pages
                raise SettlementRPCError(
                    -1, f"HTTP {response.status_code}: non-JSON response"
                ) from e

        if result.get("error"):
            error = result["error"]
            raise SettlementRPCError(error.get("code", -1), error.get("message", "Unknown error"))

        return result.get("result")

    async def scan_utxos(self, locking_script: bytes) -> list[CovenantUtxo]:
        """
        List unspent outputs locked by a script.

        Uses scantxoutset with a raw() descriptor so the node needs no
        wallet or address index.
        """
        result = await self._call("scantxoutset", ["start", [f"raw({locking_script.hex()})"]])
        if not result or not result.get("success", False):
            raise SettlementRPCError(-1, "scantxoutset did not complete")

        utxos = []
        for item in result.get("unspents", []):
            utxos.append(
                CovenantUtxo(
                    txid=item["txid"],
                    vout=item["vout"],
                    value_sats=bch_to_sats(item["amount"]),
                    locking_script=bytes.fromhex(item.get("scriptPubKey", locking_script.hex())),
                    height=item.get("height"),
                )
            )

        logger.debug(
            "covenant_utxos_scanned",
            count=len(utxos),
            total_sats=sum(u.value_sats for u in utxos),
        )
        return utxos

    async def send_raw_transaction(self, raw_tx_hex: str) -> str:
        """Submit a raw transaction. Returns the txid."""
        return await self._call("sendrawtransaction", [raw_tx_hex])
