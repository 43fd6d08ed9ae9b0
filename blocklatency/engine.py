import asyncio
import sys
from typing import Coroutine

import quattro
from ape.logging import logger
from pydantic import BaseModel, ConfigDict, Field

from .cache import FEE_RATE_TTL, SEQUENCE_TTL, ParameterCache
from .client import ChainClient
from .exceptions import Halt, ParameterFetchError, SubmissionError
from .feeds import BaseBlockFeed
from .recorder import BaseRecorder
from .types import (
    BlockEvent,
    CacheKind,
    ConfirmationMetrics,
    EngineStatus,
    PendingTransaction,
    RunID,
    utc_now,
)

if sys.version_info < (3, 11):
    from exceptiongroup import ExceptionGroup

# NOTE: Smallest transfer that still shows up as a value transfer on explorers
TRANSFER_AMOUNT = 10  # wei


class EngineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    recipient_address: str
    gas_limit: int = Field(gt=0)
    initial_blocks_to_skip: int = Field(ge=0)
    transaction_budget: int = Field(ge=1, le=10)
    transfer_amount: int = TRANSFER_AMOUNT

    run_name: str = "run"

    # Timers (secs)
    confirmation_interval: float = 2.0
    refresh_interval: float = 20.0
    fee_rate_ttl: float = FEE_RATE_TTL
    sequence_ttl: float = SEQUENCE_TTL


class LatencyEngine:
    """
    Reacts to every new block by sending a transfer, then measures how long it takes for
    that transfer to be confirmed (in both wall-clock time and blocks).

    Usage example::

        engine = LatencyEngine(client, feed, config)
        await engine.run()  # Returns when every transaction is confirmed, or on `stop`

    All shared state (parameter cache, pending transactions, counters) is owned by the
    engine, and every read-modify-write of it happens under a single lock.
    """

    def __init__(
        self,
        client: ChainClient,
        feed: BaseBlockFeed,
        config: EngineConfig,
        recorder: BaseRecorder | None = None,
        cache: ParameterCache | None = None,
    ):
        self.client = client
        self.feed = feed
        self.config = config
        self.recorder = recorder
        self.cache = cache or ParameterCache(
            client,
            client.address,
            fee_rate_ttl=config.fee_rate_ttl,
            sequence_ttl=config.sequence_ttl,
        )

        self.blocks_seen = 0
        self.transactions_sent = 0
        self.pending: dict[str, PendingTransaction] = {}
        self.metrics: list[ConfirmationMetrics] = []

        # NOTE: Serializes dispatch, background refresh and pending-map removal
        self._lock = asyncio.Lock()
        self._halt = asyncio.Event()
        self._started = False

        logger.info(
            f"Using {self.__class__.__name__}: feed={self.feed.name} "
            f"budget={config.transaction_budget} skip={config.initial_blocks_to_skip}"
        )

    # Lifecycle

    def is_running(self) -> bool:
        return self.feed.is_running or len(self.pending) > 0

    def should_continue(self) -> bool:
        return self.transactions_sent < self.config.transaction_budget

    def is_completed(self) -> bool:
        return len(self.metrics) >= self.config.transaction_budget

    def get_status(self) -> EngineStatus:
        return EngineStatus(
            sent=self.transactions_sent,
            confirmed=len(self.metrics),
            total=self.config.transaction_budget,
        )

    async def start(self):
        """
        Execute the engine startup sequence: warm up the parameter cache, initialize
        the recorder (if any), and start the block feed.
        """
        if self._started:
            return

        self._started = True
        self._halt.clear()

        logger.info("Pre-fetching fee rate and sequence...")
        for kind in CacheKind:
            try:
                value, _ = await self.cache.get(kind)
                logger.info(f"Starting {kind}: {value}")

            except ParameterFetchError as err:
                # NOTE: Not fatal, the first dispatch will fetch it again
                logger.warning(str(err))

        if self.recorder:
            await self.recorder.init(
                RunID(
                    name=self.config.run_name,
                    chain_id=await self.client.get_chain_id(),
                    feed=self.feed.name,
                )
            )

        self.feed.start()
        logger.info(f"Will skip first {self.config.initial_blocks_to_skip} blocks...")

    def stop(self, force: bool = False):
        """
        Stop reacting to new blocks. Already pending transactions keep being monitored
        until confirmed, unless ``force`` is set.
        """
        self.feed.stop()

        if force:
            self._halt.set()
        else:
            self._halt_if_idle()

    def _halt_if_idle(self):
        # NOTE: A dispatch holding the lock may be in the middle of a submission
        if not self.feed.is_running and not self.pending and not self._lock.locked():
            self._halt.set()

    # Dispatch

    async def handle_block(self, block: BlockEvent) -> str | None:
        self.blocks_seen += 1
        skip = self.config.initial_blocks_to_skip

        if self.blocks_seen <= skip:
            logger.info(f"Skipping block #{block.number} ({self.blocks_seen}/{skip} skipped)")
            return None

        logger.info(
            f"New block detected: #{block.number} ({self.blocks_seen} total, "
            f"{self.blocks_seen - skip} processed, {len(block.transactions)} txns)"
        )

        async with self._lock:
            if self.transactions_sent >= self.config.transaction_budget:
                logger.info(
                    f"Transaction budget reached ({self.transactions_sent}/"
                    f"{self.config.transaction_budget} sent), no longer sending"
                )
                self.stop()
                txn_hash = None

            else:
                txn_hash = await self.dispatch(block)

        # NOTE: A stop may have arrived while dispatching
        self._halt_if_idle()
        return txn_hash

    async def dispatch(self, block: BlockEvent) -> str | None:
        """
        Send one transfer in reaction to ``block``.

        NOTE: Must be called while holding the engine lock.
        """
        try:
            fee_rate, fee_cached = await self.cache.get(CacheKind.FEE_RATE)
            sequence, sequence_cached = await self.cache.get(CacheKind.SEQUENCE)

        except ParameterFetchError as err:
            logger.error(f"Cannot send transaction from block #{block.number}: {err}")
            return None

        # NOTE: Reserve the budget slot before the network call completes
        self.transactions_sent += 1
        logger.info(
            f"Sending transaction {self.transactions_sent}/{self.config.transaction_budget} "
            f"from block #{block.number}..."
        )

        try:
            txn_hash = await self.client.submit_transaction(
                to=self.config.recipient_address,
                amount=self.config.transfer_amount,
                gas_limit=self.config.gas_limit,
                fee_rate=fee_rate,
                sequence=sequence,
            )

        except SubmissionError as err:
            self.transactions_sent -= 1
            logger.error(f"Error sending transaction: {err}")
            return None

        # NOTE: An accepted submission consumes the nonce, whether or not it is ever included
        self.cache.advance_sequence()
        self.pending[txn_hash] = PendingTransaction(
            hash=txn_hash,
            sent_block_number=block.number,
            sent_at=utc_now(),
            sent_block_timestamp=block.timestamp,
        )

        logger.success(
            f"Transaction sent: {txn_hash}\n"
            f"  Fee rate: {fee_rate} wei ({'cached' if fee_cached else 'fresh'})\n"
            f"  Nonce: {sequence} ({'cached' if sequence_cached else 'fresh'})"
        )
        return txn_hash

    # Confirmation

    async def _confirmed_block_timestamp(self, block_number: int) -> int | None:
        try:
            block = await self.client.get_block(block_number)

        except Exception as err:
            logger.warning(f"Could not fetch confirming block #{block_number}: {err}")
            return None

        return block.timestamp if block else None

    async def check_confirmations(self) -> list[ConfirmationMetrics]:
        """
        Look up a receipt for every pending transaction, and turn receipts into metrics.

        Returns:
            list[:class:`~blocklatency.types.ConfirmationMetrics`]: Newly confirmed this tick.
        """
        confirmed = []

        # NOTE: Snapshot, since dispatch may add entries while we are suspended
        for txn_hash, pending in list(self.pending.items()):
            try:
                receipt = await self.client.get_transaction_receipt(txn_hash)

            except Exception as err:
                logger.debug(f"Receipt lookup failed for {txn_hash}, will retry: {err}")
                continue

            if receipt is None:
                continue  # Still pending

            confirmed_at = utc_now()

            async with self._lock:
                if self.pending.pop(txn_hash, None) is None:
                    continue  # Already handled

            metrics = ConfirmationMetrics.from_receipt(
                pending,
                receipt,
                confirmed_block_timestamp=await self._confirmed_block_timestamp(
                    receipt.block_number
                ),
                confirmed_at=confirmed_at,
            )
            self.metrics.append(metrics)
            confirmed.append(metrics)

            logger.success(
                f"Transaction confirmed: {txn_hash}\n"
                f"  Sent in block: #{metrics.sent_block_number}\n"
                f"  Confirmed in block: #{metrics.confirmed_block_number}\n"
                f"  Blocks to confirm: {metrics.blocks_to_confirm}\n"
                f"  Confirmation time: {metrics.confirmation_time_ms:.0f}ms\n"
                f"  Gas used: {metrics.gas_used}\n"
                f"  Effective fee rate: {metrics.effective_fee_rate} wei"
            )

            if self.recorder:
                try:
                    await self.recorder.add_result(metrics)

                except Exception as err:
                    logger.error(f"Failed to record result for {txn_hash}: {err}")

        if self.is_completed():
            logger.success(f"All {self.config.transaction_budget} transactions confirmed!")
            self._halt.set()

        else:
            # NOTE: Stopped early, nothing left to wait for
            self._halt_if_idle()

        return confirmed

    # Refresh

    async def refresh_parameters(self):
        """Force-refresh every cached parameter, ahead of the next dispatch"""
        async with self._lock:
            for kind in CacheKind:
                try:
                    value = await self.cache.refresh(kind)
                    logger.debug(f"Refreshed {kind}: {value}")

                except ParameterFetchError as err:
                    logger.warning(f"Failed to refresh {kind}: {err}")

    # Runtime

    async def _dispatch_blocks(self):
        async for block in self.feed:
            await self.handle_block(block)

    async def _monitor_confirmations(self):
        while True:
            await asyncio.sleep(self.config.confirmation_interval)
            await self.check_confirmations()

    async def _refresh_parameters(self):
        while True:
            await asyncio.sleep(self.config.refresh_interval)
            await self.refresh_parameters()

    async def _wait_for_halt(self):
        await self._halt.wait()
        raise Halt()  # Trigger shutdown process

    def _runtime_tasks(self) -> list[Coroutine]:
        return [
            self.feed.run(),
            self._dispatch_blocks(),
            self._monitor_confirmations(),
            self._refresh_parameters(),
        ]

    async def run(self):
        """
        Start the engine, and run until every transaction is confirmed or it is stopped.
        """
        await self.start()

        try:
            async with quattro.TaskGroup() as tg:
                for coro in self._runtime_tasks():
                    tg.create_task(coro)

                # NOTE: Will wait forever on this task to halt
                tg.create_task(self._wait_for_halt())

        except ExceptionGroup as eg:
            if error_str := "\n".join(str(e) for e in eg.exceptions if not isinstance(e, Halt)):
                logger.error(error_str)

        await self.shutdown()

    async def shutdown(self):
        self.feed.stop()

        status = self.get_status()
        if pending := len(self.pending):
            logger.warning(f"Shutting down with {pending} unconfirmed transaction(s)")

        logger.info(f"Engine stopped: {status.confirmed}/{status.total} confirmed")
