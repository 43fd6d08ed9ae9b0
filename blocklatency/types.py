from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum  # NOTE: `enum.StrEnum` only in Python 3.11+
from statistics import mean
from typing import Any, Literal

from eth_utils import to_hex
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.functional_serializers import PlainSerializer
from typing_extensions import Annotated, Self

from .utils import clean_hexbytes_dict, hex_to_int


class CacheKind(str, Enum):
    FEE_RATE = "fee-rate"
    SEQUENCE = "sequence"

    def __str__(self) -> str:
        return self.value


FeedType = Literal["websocket", "polling"]


class RunID(BaseModel):
    name: str
    chain_id: int
    feed: FeedType


def iso_format(dt: datetime) -> str:
    return dt.isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


UTCTimestamp = Annotated[
    datetime,
    # NOTE: Always render as ISO string, even in python-mode dumps
    PlainSerializer(iso_format, return_type=str),
]


class BlockEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    hash: str
    # Unix seconds, as reported by the block header
    timestamp: int
    # NOTE: `newHeads` notifications do not carry transactions
    transactions: tuple[str, ...] = ()

    @field_validator("number", "timestamp", mode="before")
    @classmethod
    def parse_quantity(cls, value: Any) -> int:
        return hex_to_int(value)

    @field_validator("transactions", mode="before")
    @classmethod
    def parse_transaction_hashes(cls, value: Any) -> tuple[str, ...]:
        hashes = []
        for txn in value or ():
            if isinstance(txn, Mapping):  # Full transaction objects
                txn = txn["hash"]

            hashes.append(to_hex(txn) if isinstance(txn, bytes) else txn)

        return tuple(hashes)

    @classmethod
    def from_rpc(cls, data: Mapping) -> Self:
        """Decode a raw JSON-RPC block header, or a web3py block object"""
        return cls.model_validate(clean_hexbytes_dict(data))


class TransactionReceipt(BaseModel):
    transaction_hash: str
    block_number: int
    gas_used: int
    effective_gas_price: int = 0
    status: int = 1


class PendingTransaction(BaseModel):
    hash: str
    sent_block_number: int
    sent_at: UTCTimestamp = Field(default_factory=utc_now)
    sent_block_timestamp: int


class ConfirmationMetrics(BaseModel):
    transaction_hash: str
    sent_block_number: int
    confirmed_block_number: int
    blocks_to_confirm: int = Field(ge=0)
    confirmation_time_ms: float = Field(ge=0)
    gas_used: int
    effective_fee_rate: int
    sent_block_timestamp: int
    # NOTE: `None` if the confirming block could not be fetched
    confirmed_block_timestamp: int | None = None
    sent_at: UTCTimestamp
    confirmed_at: UTCTimestamp = Field(default_factory=utc_now)

    @classmethod
    def from_receipt(
        cls,
        pending: PendingTransaction,
        receipt: TransactionReceipt,
        confirmed_block_timestamp: int | None = None,
        confirmed_at: datetime | None = None,
    ) -> Self:
        confirmed_at = confirmed_at or utc_now()
        elapsed = (confirmed_at - pending.sent_at).total_seconds()
        return cls(
            transaction_hash=pending.hash,
            sent_block_number=pending.sent_block_number,
            confirmed_block_number=receipt.block_number,
            # NOTE: Chain is treated as append-only, so this can only go negative on a reorg
            blocks_to_confirm=max(receipt.block_number - pending.sent_block_number, 0),
            confirmation_time_ms=max(elapsed * 1000, 0.0),
            gas_used=receipt.gas_used,
            effective_fee_rate=receipt.effective_gas_price,
            sent_block_timestamp=pending.sent_block_timestamp,
            confirmed_block_timestamp=confirmed_block_timestamp,
            sent_at=pending.sent_at,
            confirmed_at=confirmed_at,
        )


class EngineStatus(BaseModel):
    sent: int
    confirmed: int
    total: int


class LatencySummary(BaseModel):
    transactions_sent: int
    transactions_confirmed: int
    average_blocks_to_confirm: float | None = None
    average_confirmation_time_ms: float | None = None
    min_confirmation_time_ms: float | None = None
    max_confirmation_time_ms: float | None = None
    total_gas_used: int = 0

    @classmethod
    def from_metrics(cls, metrics: list[ConfirmationMetrics], sent: int | None = None) -> Self:
        if not metrics:
            return cls(transactions_sent=sent or 0, transactions_confirmed=0)

        times = [m.confirmation_time_ms for m in metrics]
        return cls(
            transactions_sent=len(metrics) if sent is None else sent,
            transactions_confirmed=len(metrics),
            average_blocks_to_confirm=mean(m.blocks_to_confirm for m in metrics),
            average_confirmation_time_ms=mean(times),
            min_confirmation_time_ms=min(times),
            max_confirmation_time_ms=max(times),
            total_gas_used=sum(m.gas_used for m in metrics),
        )
