"""
Short-lived cache for the parameters needed to build a transaction.

Fetching the fee rate and the account sequence (nonce) on every dispatch adds two network
round trips to the measured latency, so both are kept in memory with independent TTLs:

- fee rate: 30s, replaced on expiry
- sequence: 60s, replaced on expiry, and advanced locally after every accepted submission

A refresh of the sequence never moves it backwards: the node may not have seen our latest
submissions yet, so the larger of the fetched and the locally-advanced value wins.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from ape.logging import logger

from .client import ChainClient
from .exceptions import ParameterFetchError
from .types import CacheKind

T = TypeVar("T")

FEE_RATE_TTL = 30.0  # secs
SEQUENCE_TTL = 60.0  # secs


@dataclass
class CachedValue(Generic[T]):
    value: T
    last_updated: float

    def is_valid(self, now: float, ttl: float) -> bool:
        return now - self.last_updated < ttl


class ParameterCache:
    def __init__(
        self,
        client: ChainClient,
        address: str,
        fee_rate_ttl: float = FEE_RATE_TTL,
        sequence_ttl: float = SEQUENCE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.address = address
        self.ttls = {CacheKind.FEE_RATE: fee_rate_ttl, CacheKind.SEQUENCE: sequence_ttl}
        self._clock = clock

        self._cells: dict[CacheKind, CachedValue[int] | None] = {kind: None for kind in CacheKind}
        # NOTE: One lock per cell, so concurrent misses only trigger a single query
        self._locks = {kind: asyncio.Lock() for kind in CacheKind}

    def __repr__(self) -> str:
        cells = " ".join(f"{kind}={self.peek(kind)}" for kind in CacheKind)
        return f"<{self.__class__.__name__} {cells}>"

    def peek(self, kind: CacheKind) -> int | None:
        """Currently stored value (fresh or not), without any I/O"""
        return cell.value if (cell := self._cells[kind]) else None

    def is_fresh(self, kind: CacheKind) -> bool:
        cell = self._cells[kind]
        return cell is not None and cell.is_valid(self._clock(), self.ttls[kind])

    async def _query(self, kind: CacheKind) -> int:
        if kind is CacheKind.FEE_RATE:
            return await self.client.get_fee_rate()

        return await self.client.get_account_sequence(self.address)

    async def _refresh(self, kind: CacheKind) -> int:
        logger.debug(f"Fetching fresh {kind}...")
        try:
            value = await self._query(kind)

        except Exception as err:
            raise ParameterFetchError(kind, err) from err

        if kind is CacheKind.SEQUENCE and (cell := self._cells[kind]) and cell.value > value:
            logger.debug(f"Keeping locally advanced {kind} {cell.value} (node reported {value})")
            value = cell.value

        self._cells[kind] = CachedValue(value=value, last_updated=self._clock())
        return value

    async def get(self, kind: CacheKind) -> tuple[int, bool]:
        """
        Get a parameter, querying the chain client only if the cached value expired.

        Returns:
            tuple[int, bool]: The value, and whether it was served from cache.

        Raises:
            :class:`~blocklatency.exceptions.ParameterFetchError`:
                If a query was needed and it failed.
        """
        async with self._locks[kind]:
            if self.is_fresh(kind):
                return self._cells[kind].value, True  # type: ignore[union-attr]

            return await self._refresh(kind), False

    async def refresh(self, kind: CacheKind) -> int:
        """Query the chain client regardless of TTL"""
        async with self._locks[kind]:
            return await self._refresh(kind)

    def advance_sequence(self) -> int | None:
        """
        Increment the cached sequence after an accepted submission, without any I/O.

        NOTE: Does not touch the timestamp, works even if the value is stale by TTL.
        """
        if not (cell := self._cells[CacheKind.SEQUENCE]):
            logger.warning("No sequence cached yet, nothing to advance")
            return None

        cell.value += 1
        return cell.value
