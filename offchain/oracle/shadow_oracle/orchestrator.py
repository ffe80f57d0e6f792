"""
Settlement pipeline - attests PENDING intents and broadcasts covenant payouts.

Lifecycle driven here:
    PENDING  -> ATTESTED   resolve, price, sign, persist evidence
    PENDING  -> FAILED     resolution, pricing or signing rejected the intent
    ATTESTED -> CONFIRMED  payout accepted by the settlement node

A failed broadcast leaves the intent ATTESTED with the error recorded so
the retry loop (or `shadow-oracle retry`) can submit it again using the
stored attestation.

A PENDING intent whose processing stopped on an unexpected error keeps
the error recorded and is picked up again by the same retry loop.
"""

import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Optional

import structlog

from .broadcaster import AttestedPayout, CovenantBroadcaster
from .cashaddr import resolve_recipient_hash
from .config import OracleConfig, mask_key
from .crypto import parse_private_key
from .db import IntentStore
from .errors import (
    FATAL_ERRORS,
    RETRYABLE_ERRORS,
    InvalidInput,
    NonceAlreadyAttested,
    PayoutShapeError,
)
from .listener import StorePollingSource, SwipeListener
from .models import PayoutIntent, SwipeSnapshot, SwipeStatus, utcnow
from .rpc import SATS_PER_BCH, SettlementRPC, bch_to_sats
from .signer import sign_attestation
from .transaction import DUST_LIMIT_SATS

logger = structlog.get_logger()


def settlement_amount_sats(
    amount_usd: Decimal,
    amount_bch: Optional[Decimal] = None,
    bch_usd_rate: Optional[Decimal] = None,
) -> int:
    """
    Satoshi amount the covenant should pay for an intent.

    Uses the intent's BCH amount when present, otherwise converts the USD
    amount at the configured rate and rounds down to a whole satoshi.

    Raises:
        InvalidInput: no usable amount, or the amount is below dust
    """
    if amount_bch is not None:
        try:
            sats = bch_to_sats(amount_bch)
        except ValueError as e:
            raise InvalidInput(str(e)) from e
    elif bch_usd_rate:
        bch = Decimal(amount_usd) / Decimal(bch_usd_rate)
        sats = int((bch * SATS_PER_BCH).to_integral_value(rounding=ROUND_DOWN))
    else:
        raise InvalidInput("Intent has no amount_bch and no BCH/USD rate is configured")

    if sats < DUST_LIMIT_SATS:
        raise InvalidInput(f"Settlement amount {sats} sats is below the dust limit")
    return sats


@dataclass
class OrchestratorState:
    """Current pipeline state."""

    is_running: bool = False
    last_retry_time: Optional[datetime] = None
    intents_attested: int = 0
    intents_confirmed: int = 0
    intents_failed: int = 0
    broadcast_failures: int = 0


class OracleOrchestrator:
    """
    Drives intents through the settlement state machine.

    Observed intents go into a bounded queue served by a fixed pool of
    workers. Store calls run in worker threads; broadcasts for the same
    intent are serialised by a per-intent lock.
    """

    def __init__(
        self,
        config: OracleConfig,
        store: Optional[IntentStore] = None,
        broadcaster: Optional[CovenantBroadcaster] = None,
        listener: Optional[SwipeListener] = None,
    ):
        self.config = config
        self.state = OrchestratorState()
        settings = config.settings

        self._oracle_key = parse_private_key(settings.oracle_private_key)

        self.store = store or IntentStore(settings.database_url)

        if broadcaster is not None:
            self.broadcaster: Optional[CovenantBroadcaster] = broadcaster
        elif config.can_broadcast:
            self.broadcaster = CovenantBroadcaster(
                rpc=SettlementRPC(config.rpc_config),
                redeem_script=config.redeem_script,
                counterparty_private_key=settings.counterparty_private_key,
                function_index=settings.covenant_function_index,
                fee_rate_sats_per_byte=settings.fee_rate_sats_per_byte,
                timeout_seconds=settings.broadcast_timeout_seconds,
            )
        else:
            self.broadcaster = None
            logger.warning("Broadcaster not configured - dry run mode")

        self.listener = listener or SwipeListener(
            StorePollingSource(self.store),
            poll_interval_seconds=settings.poll_interval_seconds,
            max_backoff_seconds=settings.reconnect_max_backoff_seconds,
        )

        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=settings.queue_size)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

        logger.info(
            "orchestrator_initialized",
            oracle_key=mask_key(settings.oracle_private_key),
            workers=settings.worker_count,
            queue_size=settings.queue_size,
            retry_interval=settings.retry_interval_seconds,
            dry_run=self.broadcaster is None,
        )

    @property
    def dry_run(self) -> bool:
        return self.broadcaster is None

    def _lock_for(self, intent_id: str) -> asyncio.Lock:
        lock = self._locks.get(intent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[intent_id] = lock
        return lock

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def enqueue(self, snapshot: SwipeSnapshot) -> None:
        """Listener handler: queue an observed intent, waiting while full."""
        await self.queue.put(snapshot.id)

    async def process_intent(self, intent_id: str) -> Optional[SwipeStatus]:
        """
        Take one intent as far through the pipeline as it can go.

        Returns:
            Status after processing, or None if the intent does not exist
        """
        intent = await asyncio.to_thread(self.store.get, intent_id)
        if intent is None:
            logger.warning("intent_not_found", intent_id=intent_id)
            return None

        if intent.status == SwipeStatus.PENDING:
            attested = await self.attest(intent)
            if attested is None:
                current = await asyncio.to_thread(self.store.get, intent_id)
                return current.status if current else None
            intent = attested

        if intent.status == SwipeStatus.ATTESTED and self.broadcaster is not None:
            await self.settle(intent_id)
            current = await asyncio.to_thread(self.store.get, intent_id)
            return current.status if current else None

        return intent.status

    async def attest(self, intent: PayoutIntent) -> Optional[PayoutIntent]:
        """
        PENDING -> ATTESTED (or FAILED).

        Returns:
            The attested intent, or None if it was not attested by this call
        """
        now = utcnow()
        snapshot = intent.snapshot()

        if snapshot.is_expired(now):
            logger.info("intent_expired_skipped", intent_id=intent.id, expires_at=str(intent.expires_at))
            return None

        try:
            destination_hash = resolve_recipient_hash(
                snapshot.bch_recipient, default_prefix=self.config.settings.address_prefix
            )
            amount_sats = settlement_amount_sats(
                snapshot.amount_usd,
                amount_bch=snapshot.amount_bch,
                bch_usd_rate=self.config.settings.bch_usd_rate,
            )
            attestation = sign_attestation(
                self._oracle_key, destination_hash, amount_sats, snapshot.nonce
            )
            updated = await asyncio.to_thread(
                self.store.mark_attested,
                intent.id,
                destination_hash,
                amount_sats,
                attestation.signature,
                attestation.message,
                attestation.public_key,
                snapshot.nonce,
                now,
            )
        except FATAL_ERRORS as e:
            await self._fail(intent, e)
            return None

        if not updated:
            logger.info("attestation_skipped", intent_id=intent.id, reason="status_changed_or_expired")
            return None

        self.state.intents_attested += 1
        logger.info(
            "intent_attested",
            intent_id=intent.id,
            destination_hash=destination_hash.hex(),
            amount_sats=amount_sats,
            nonce=snapshot.nonce,
        )
        return await asyncio.to_thread(self.store.get, intent.id)

    async def _fail(self, intent: PayoutIntent, error: Exception) -> None:
        reason = f"{type(error).__name__}: {error}"
        failed = await asyncio.to_thread(self.store.mark_failed, intent.id, reason)
        if failed:
            self.state.intents_failed += 1
        log = logger.warning if isinstance(error, NonceAlreadyAttested) else logger.info
        log("intent_failed", intent_id=intent.id, error=reason, persisted=failed)

    async def settle(self, intent_id: str) -> bool:
        """
        ATTESTED -> CONFIRMED using the stored attestation.

        Returns:
            True if this call confirmed the intent
        """
        if self.broadcaster is None:
            logger.warning("dry_run_mode", message="Broadcaster not configured", intent_id=intent_id)
            return False

        async with self._lock_for(intent_id):
            intent = await asyncio.to_thread(self.store.get, intent_id)
            if intent is None or intent.status != SwipeStatus.ATTESTED:
                return False

            try:
                payout = AttestedPayout.from_intent(intent)
                txid = await self.broadcaster.broadcast(payout)
            except PayoutShapeError as e:
                logger.error("payout_shape_error", intent_id=intent_id, error=str(e))
                await self._record_broadcast_failure(intent_id, e)
                return False
            except RETRYABLE_ERRORS as e:
                logger.warning(
                    "broadcast_failed",
                    intent_id=intent_id,
                    error_type=type(e).__name__,
                    error=str(e),
                    attempts=intent.broadcast_attempts + 1,
                )
                await self._record_broadcast_failure(intent_id, e)
                return False
            except Exception as e:
                logger.error(
                    "broadcast_error",
                    intent_id=intent_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._record_broadcast_failure(intent_id, e)
                return False

            confirmed = await asyncio.to_thread(self.store.mark_confirmed, intent_id, txid)

        if confirmed:
            self.state.intents_confirmed += 1
            logger.info("intent_confirmed", intent_id=intent_id, bch_tx_hash=txid)
        return confirmed

    async def _record_broadcast_failure(self, intent_id: str, error: Exception) -> None:
        self.state.broadcast_failures += 1
        await asyncio.to_thread(
            self.store.record_broadcast_failure,
            intent_id,
            f"{type(error).__name__}: {error}",
        )

    async def retry_attested(self, intent_id: Optional[str] = None) -> int:
        """
        Re-broadcast ATTESTED intents from their stored attestations.

        Returns:
            Number of intents confirmed
        """
        self.state.last_retry_time = datetime.now()
        if self.broadcaster is None:
            logger.warning("dry_run_mode", message="Broadcaster not configured - nothing retried")
            return 0

        if intent_id is not None:
            ids = [intent_id]
        else:
            intents = await asyncio.to_thread(self.store.list_by_status, SwipeStatus.ATTESTED)
            ids = [intent.id for intent in intents]

        confirmed = 0
        for current_id in ids:
            if await self.settle(current_id):
                confirmed += 1

        if ids:
            logger.info("retry_complete", attempted=len(ids), confirmed=confirmed)
        return confirmed

    async def retry_pending(self) -> int:
        """
        Reprocess unexpired PENDING intents older than one poll interval.

        Picks up intents whose processing stopped on an unexpected error
        after the listener had already delivered them.

        Returns:
            Number of intents reprocessed
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=self.config.settings.poll_interval_seconds)
        stalled = await asyncio.to_thread(self.store.list_stalled_pending, cutoff, now)
        for intent in stalled:
            await self._process_safely(intent.id)

        if stalled:
            logger.info("pending_retry_complete", attempted=len(stalled))
        return len(stalled)

    # ------------------------------------------------------------------
    # Run loops
    # ------------------------------------------------------------------

    async def _process_safely(
        self, intent_id: str, worker_id: Optional[int] = None
    ) -> Optional[SwipeStatus]:
        """process_intent that records unexpected errors on the intent."""
        try:
            return await self.process_intent(intent_id)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.error(
                "intent_processing_error", worker=worker_id, intent_id=intent_id, error=reason
            )
            try:
                await asyncio.to_thread(self.store.record_error, intent_id, reason)
            except Exception as record_error:
                logger.error(
                    "intent_error_not_recorded",
                    intent_id=intent_id,
                    error=str(record_error),
                )
            return None

    async def _worker(self, worker_id: int) -> None:
        while True:
            intent_id = await self.queue.get()
            try:
                await self._process_safely(intent_id, worker_id)
            finally:
                self.queue.task_done()

    async def _retry_loop(self) -> None:
        interval = self.config.settings.retry_interval_seconds
        while self.state.is_running:
            await asyncio.sleep(interval)
            try:
                await self.retry_pending()
                if self.broadcaster is not None:
                    await self.retry_attested()
            except Exception as e:
                logger.error("retry_cycle_error", error=str(e))

    async def run_once(self) -> dict[str, int]:
        """
        Process every current PENDING intent, then retry ATTESTED ones.

        Returns:
            Count of intents per status reached
        """
        pending = await asyncio.to_thread(self.store.list_by_status, SwipeStatus.PENDING)
        outcomes: dict[str, int] = {}
        for intent in pending:
            status = await self._process_safely(intent.id)
            if status is not None:
                outcomes[status.value] = outcomes.get(status.value, 0) + 1

        confirmed = await self.retry_attested()
        if confirmed:
            outcomes[SwipeStatus.CONFIRMED.value] = (
                outcomes.get(SwipeStatus.CONFIRMED.value, 0) + confirmed
            )

        logger.info("run_once_complete", pending=len(pending), **outcomes)
        return outcomes

    async def run(self) -> None:
        """Run the pipeline until stopped."""
        settings = self.config.settings
        self.state.is_running = True
        self.listener.subscribe(self.enqueue)

        tasks = [
            asyncio.create_task(self._worker(i)) for i in range(settings.worker_count)
        ]
        if settings.retry_interval_seconds > 0:
            tasks.append(asyncio.create_task(self._retry_loop()))

        logger.info("orchestrator_starting", workers=settings.worker_count, dry_run=self.dry_run)
        try:
            await self.listener.run()
        finally:
            self.state.is_running = False
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(
                "orchestrator_stopped",
                attested=self.state.intents_attested,
                confirmed=self.state.intents_confirmed,
                failed=self.state.intents_failed,
            )

    def stop(self) -> None:
        """Stop the pipeline."""
        self.state.is_running = False
        self.listener.stop()
        logger.info("orchestrator_stopping")
