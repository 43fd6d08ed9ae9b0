import asyncio
import os
from collections import Counter, defaultdict

import pytest
from click.testing import CliRunner

from blocklatency._cli import cli as root_cli
from blocklatency.cache import ParameterCache
from blocklatency.client import ChainClient
from blocklatency.engine import EngineConfig, LatencyEngine
from blocklatency.feeds import BaseBlockFeed
from blocklatency.types import BlockEvent, TransactionReceipt

SIGNER = "0x786f4dBD3675A59140d39b421adbE9A756836561"
RECIPIENT = "0x00000000000000000000000000000000DeaDBeef"
PRIVATE_KEY = "0x" + "11" * 32
GENESIS_TIME = 1_700_000_000
ENV_FILE_TEST_VARS = ("ADDRESS", "SHARED_VAR", "UNIQUE_A", "UNIQUE_B", "VAR")


def make_block(number: int, txns: int = 0) -> BlockEvent:
    return BlockEvent(
        number=number,
        hash=f"0x{number:064x}",
        timestamp=GENESIS_TIME + 12 * number,
        transactions=tuple(f"0x{number:032x}{i:032x}" for i in range(txns)),
    )


class FakeChainClient(ChainClient):
    def __init__(self, sequence: int = 7, fee_rate: int = 10**9, height: int = 100):
        self.sequence = sequence
        self.fee_rate = fee_rate
        self.height = height

        self.missing_blocks: set[int] = set()
        self.receipts: dict[str, TransactionReceipt] = {}
        self.submitted: list[dict] = []
        # NOTE: If set, every accepted transaction is immediately "mined" in this block
        self.auto_confirm_block: int | None = None

        self.calls: Counter = Counter()
        self._failures: dict[str, list[Exception]] = defaultdict(list)

    @property
    def address(self) -> str:
        return SIGNER

    def fail_next(self, method: str, error: Exception, times: int = 1):
        self._failures[method].extend([error] * times)

    def _call(self, method: str):
        self.calls[method] += 1
        if self._failures[method]:
            raise self._failures[method].pop(0)

    def confirm(self, txn_hash: str, block_number: int, gas_used: int = 21_000):
        self.receipts[txn_hash] = TransactionReceipt(
            transaction_hash=txn_hash,
            block_number=block_number,
            gas_used=gas_used,
            effective_gas_price=self.fee_rate,
        )

    async def get_chain_id(self) -> int:
        self._call("get_chain_id")
        return 1337

    async def get_block_number(self) -> int:
        self._call("get_block_number")
        return self.height

    async def get_block(self, number: int) -> BlockEvent | None:
        self._call("get_block")
        if number > self.height or number in self.missing_blocks:
            return None

        return make_block(number)

    async def get_fee_rate(self) -> int:
        self._call("get_fee_rate")
        return self.fee_rate

    async def get_account_sequence(self, address: str) -> int:
        self._call("get_account_sequence")
        return self.sequence

    async def submit_transaction(self, to, amount, gas_limit, fee_rate, sequence) -> str:
        self._call("submit_transaction")
        txn_hash = f"0x{len(self.submitted) + 1:064x}"
        self.submitted.append(
            dict(
                hash=txn_hash,
                to=to,
                amount=amount,
                gas_limit=gas_limit,
                fee_rate=fee_rate,
                sequence=sequence,
            )
        )
        if self.auto_confirm_block is not None:
            self.confirm(txn_hash, self.auto_confirm_block)

        return txn_hash

    async def get_transaction_receipt(self, txn_hash: str) -> TransactionReceipt | None:
        self._call("get_transaction_receipt")
        return self.receipts.get(txn_hash)


class ScriptedFeed(BaseBlockFeed):
    """Delivers a fixed list of blocks, then idles until stopped"""

    name = "polling"

    def __init__(self, blocks: list[BlockEvent], delay: float = 0.0):
        super().__init__()
        self.blocks = blocks
        self.delay = delay

    async def run(self):
        for block in self.blocks:
            if not self.is_running:
                return

            self.deliver(block)
            await asyncio.sleep(self.delay)

        await self._stopped.wait()


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli():
    return root_cli


@pytest.fixture
def clean_env():
    yield
    # NOTE: env files are loaded straight into `os.environ`
    for name in list(os.environ):
        if name.startswith("BLOCKLATENCY_") or name in ENV_FILE_TEST_VARS:
            del os.environ[name]


@pytest.fixture
def client():
    return FakeChainClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def create_engine():
    def _make(
        client: FakeChainClient | None = None,
        blocks: list[BlockEvent] | None = None,
        clock: FakeClock | None = None,
        **config_overrides,
    ) -> LatencyEngine:
        client = client or FakeChainClient()
        config = EngineConfig(
            **{
                "recipient_address": RECIPIENT,
                "gas_limit": 21_000,
                "initial_blocks_to_skip": 0,
                "transaction_budget": 2,
                "confirmation_interval": 0.01,
                "refresh_interval": 0.05,
                **config_overrides,
            }
        )
        cache = ParameterCache(
            client,
            client.address,
            fee_rate_ttl=config.fee_rate_ttl,
            sequence_ttl=config.sequence_ttl,
            **(dict(clock=clock) if clock else {}),
        )
        return LatencyEngine(client, ScriptedFeed(blocks or []), config, cache=cache)

    return _make
