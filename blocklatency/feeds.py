import asyncio
import json
from abc import ABC, abstractmethod
from typing import AsyncIterator

import websockets
from ape.logging import logger
from pydantic import ValidationError

from .client import ChainClient
from .exceptions import SubscriptionError
from .types import BlockEvent, FeedType


class BaseBlockFeed(ABC):
    """
    Source of newly observed blocks, in increasing block number order.

    The engine schedules :meth:`run` as a task, and consumes blocks via ``async for``.
    Iteration ends as soon as the feed is stopped.
    """

    name: FeedType

    def __init__(self):
        self._queue: asyncio.Queue[BlockEvent | None] = asyncio.Queue()
        self._stopped = asyncio.Event()
        self._running = False

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} running={self._running}>"

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            return

        self._running = True
        self._stopped.clear()

    def stop(self):
        if not self._running:
            return  # NOTE: Idempotent

        logger.info(f"Stopping {self.__class__.__name__}")
        self._running = False
        self._stopped.set()
        # NOTE: Wake up any consumer waiting on the queue
        self._queue.put_nowait(None)

    def deliver(self, block: BlockEvent):
        if self._running:
            self._queue.put_nowait(block)

    async def _sleep(self, seconds: float):
        """Sleep, but wake up early if stopped"""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass  # Slept the whole duration

    @abstractmethod
    async def run(self) -> None:
        """
        Produce blocks until stopped.
        """

    def __aiter__(self) -> AsyncIterator[BlockEvent]:
        return self

    async def __anext__(self) -> BlockEvent:
        if not self._running:
            raise StopAsyncIteration

        if (block := await self._queue.get()) is None or not self._running:
            raise StopAsyncIteration

        return block


class WebsocketBlockFeed(BaseBlockFeed):
    """
    Push-based feed, using an ``eth_subscribe`` subscription to ``newHeads``.

    Reconnects (and re-subscribes) after a fixed backoff whenever the connection drops.
    """

    name: FeedType = "websocket"
    reconnect_delay: float = 5.0  # secs

    def __init__(self, ws_uri: str, reconnect_delay: float | None = None):
        super().__init__()

        self.ws_uri = ws_uri
        if reconnect_delay is not None:
            self.reconnect_delay = reconnect_delay

        # Stateful
        self.is_connected = False
        self.subscription_id: str | None = None
        self._last_request: int = 0
        self._subscribe_request_id: int | None = None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} uri={self.ws_uri} connected={self.is_connected}>"

    def _create_request(self, method: str, params: list) -> dict:
        self._last_request += 1
        return {
            "jsonrpc": "2.0",
            "id": self._last_request,
            "method": method,
            "params": params,
        }

    def handle_message(self, raw_message: str | bytes):
        """
        Decode one inbound websocket message, and deliver it if it is a new block header.

        Malformed messages are logged and dropped.

        Raises:
            :class:`~blocklatency.exceptions.SubscriptionError`:
                If the node rejected our subscribe request.
        """
        try:
            message = json.loads(raw_message)
        except (json.JSONDecodeError, UnicodeDecodeError) as err:
            logger.warning(f"Dropping non-JSON message: {err}")
            return

        if not isinstance(message, dict):
            logger.warning(f"Dropping unexpected message: {message}")
            return

        if message.get("method") == "eth_subscription":
            params = message.get("params")
            if not isinstance(params, dict) or not isinstance(params.get("result"), dict):
                logger.warning(f"Corrupted subscription data: {message}")
                return

            sub_id = params.get("subscription")
            if self.subscription_id and sub_id != self.subscription_id:
                logger.debug(f"Ignoring data for unknown subscription: {sub_id}")
                return

            try:
                block = BlockEvent.from_rpc(params["result"])
            except (KeyError, TypeError, ValueError, ValidationError) as err:
                logger.warning(f"Dropping undecodable block header: {err}")
                return

            logger.debug(f"Received block #{block.number} ({block.hash})")
            self.deliver(block)

        elif self._subscribe_request_id is not None and (
            message.get("id") == self._subscribe_request_id
        ):
            if message.get("error") or not (sub_id := message.get("result")):
                raise SubscriptionError(message)

            self.subscription_id = sub_id
            logger.success(f"Subscribed to new block headers via {sub_id}")

        else:
            logger.debug(f"Unhandled message: {message}")

    async def _subscribe(self, connection):
        request = self._create_request("eth_subscribe", ["newHeads"])
        self._subscribe_request_id = request["id"]
        self.subscription_id = None
        await connection.send(json.dumps(request))

    async def _receive_until_stopped(self, connection):
        while self._running:
            recv_task = asyncio.ensure_future(connection.recv())
            halt_task = asyncio.ensure_future(self._stopped.wait())

            done, pending = await asyncio.wait(
                {recv_task, halt_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()

            if halt_task in done:
                return

            # NOTE: Raises if the connection closed, which triggers a reconnect
            self.handle_message(recv_task.result())

    async def run(self):
        while self._running:
            logger.info(f"Connecting to {self.ws_uri}")
            try:
                async with websockets.connect(self.ws_uri) as connection:
                    self.is_connected = True
                    logger.success(f"Websocket connected: {self.ws_uri}")
                    await self._subscribe(connection)
                    await self._receive_until_stopped(connection)

            except asyncio.CancelledError:
                raise

            except Exception as err:
                logger.warning(f"Websocket connection lost: {err}")

            finally:
                self.is_connected = False
                self.subscription_id = None

            if not self._running:
                break

            logger.info(f"Reconnecting in {self.reconnect_delay:.1f}s")
            await self._sleep(self.reconnect_delay)

        logger.info("Websocket block feed stopped")


class PollingBlockFeed(BaseBlockFeed):
    """
    Pull-based feed, polling the chain height and replaying every block since the last one.

    A block that fails to fetch is retried on the next poll, never skipped.
    """

    name: FeedType = "polling"
    poll_interval: float = 0.02  # secs

    def __init__(self, client: ChainClient, poll_interval: float | None = None):
        super().__init__()

        self.client = client
        if poll_interval is not None:
            self.poll_interval = poll_interval

        self.last_block: int | None = None
        logger.warning(
            "The polling feed makes a significant amount of requests. "
            "Do not use over long time periods unless you know what you're doing."
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} last_block={self.last_block}>"

    async def _init_baseline(self):
        while self._running and self.last_block is None:
            try:
                self.last_block = await self.client.get_block_number()
                logger.info(f"Starting block monitoring from block #{self.last_block}")

            except Exception as err:
                logger.error(f"Error fetching chain height: {err}")
                await self._sleep(self.poll_interval)

    async def poll(self) -> int:
        """
        Deliver every block after the baseline, up to the current height.

        Returns:
            int: The number of blocks delivered.
        """
        if self.last_block is None:
            return 0  # Baseline not initialized yet

        current_block = await self.client.get_block_number()

        delivered = 0
        for number in range(self.last_block + 1, current_block + 1):
            if not self._running:
                break

            try:
                block = await self.client.get_block(number)
            except Exception as err:
                logger.warning(f"Error fetching block #{number}, will retry: {err}")
                break

            if block is None:
                logger.warning(f"Block #{number} not found yet, will retry")
                break

            self.deliver(block)
            # NOTE: Only move past a block once it has been delivered
            self.last_block = number
            delivered += 1

        return delivered

    async def run(self):
        await self._init_baseline()

        while self._running:
            try:
                await self.poll()
            except Exception as err:
                logger.error(f"Error polling for blocks: {err}")

            await self._sleep(self.poll_interval)

        logger.info("Polling block feed stopped")
