from abc import ABC, abstractmethod

from ape.logging import logger
from eth_account import Account
from eth_utils import to_checksum_address, to_hex
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BlockNotFound, TransactionNotFound

from .exceptions import SubmissionError
from .types import BlockEvent, TransactionReceipt


class ChainClient(ABC):
    """
    Base class for the chain capability the engine depends on.

    All methods are suspension points; the engine shields them with caching and treats
    their failures as transient, except for `submit_transaction` which must raise
    :class:`~blocklatency.exceptions.SubmissionError` when a transaction is not accepted.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        """Address of the account that signs submitted transactions"""

    @abstractmethod
    async def get_chain_id(self) -> int: ...

    @abstractmethod
    async def get_block_number(self) -> int: ...

    @abstractmethod
    async def get_block(self, number: int) -> BlockEvent | None: ...

    @abstractmethod
    async def get_fee_rate(self) -> int:
        """Current fee rate (gas price), in wei"""

    @abstractmethod
    async def get_account_sequence(self, address: str) -> int:
        """Next sequence number (nonce) to use for ``address``"""

    @abstractmethod
    async def submit_transaction(
        self,
        to: str,
        amount: int,
        gas_limit: int,
        fee_rate: int,
        sequence: int,
    ) -> str:
        """Sign and broadcast a transfer, returning its transaction hash"""

    @abstractmethod
    async def get_transaction_receipt(self, txn_hash: str) -> TransactionReceipt | None: ...


class Web3ChainClient(ChainClient):
    """
    Chain client using an async web3py HTTP provider, and a local signer.

    Transactions are legacy (``gasPrice``) transfers, signed locally and broadcast raw so
    that no additional RPC calls (estimation, nonce lookup) happen at submission time.
    """

    def __init__(
        self,
        http_uri: str,
        private_key: str,
        default_fee_rate: int,
        web3: AsyncWeb3 | None = None,
    ):
        self.http_uri = http_uri
        self.default_fee_rate = default_fee_rate
        self.web3 = web3 or AsyncWeb3(AsyncHTTPProvider(http_uri, request_kwargs={"timeout": 10}))
        self._account = Account.from_key(private_key)
        self._chain_id: int | None = None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} uri={self.http_uri} address={self.address}>"

    @property
    def address(self) -> str:
        return self._account.address

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self.web3.eth.chain_id)

        return self._chain_id

    async def get_block_number(self) -> int:
        return int(await self.web3.eth.block_number)

    async def get_block(self, number: int) -> BlockEvent | None:
        try:
            block = await self.web3.eth.get_block(number)

        except BlockNotFound:
            return None

        return BlockEvent.from_rpc(block)

    async def get_fee_rate(self) -> int:
        if gas_price := await self.web3.eth.gas_price:
            return int(gas_price)

        logger.warning(f"Node reported no gas price, using default ({self.default_fee_rate} wei)")
        return self.default_fee_rate

    async def get_account_sequence(self, address: str) -> int:
        # NOTE: 'pending' to include our own transactions still in the mempool
        return int(
            await self.web3.eth.get_transaction_count(
                to_checksum_address(address), block_identifier="pending"
            )
        )

    async def submit_transaction(
        self,
        to: str,
        amount: int,
        gas_limit: int,
        fee_rate: int,
        sequence: int,
    ) -> str:
        try:
            txn = {
                "to": to_checksum_address(to),
                "value": amount,
                "gas": gas_limit,
                "gasPrice": fee_rate,
                "nonce": sequence,
                "chainId": await self.get_chain_id(),
            }
            signed = self._account.sign_transaction(txn)
            txn_hash = await self.web3.eth.send_raw_transaction(signed.raw_transaction)

        except Exception as err:
            # NOTE: Node rejections and transport failures both mean the nonce was not consumed
            raise SubmissionError(f"Transaction with nonce {sequence} not accepted: {err}") from err

        return to_hex(txn_hash)

    async def get_transaction_receipt(self, txn_hash: str) -> TransactionReceipt | None:
        try:
            receipt = await self.web3.eth.get_transaction_receipt(txn_hash)

        except TransactionNotFound:
            return None

        return TransactionReceipt(
            transaction_hash=to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            effective_gas_price=receipt.get("effectiveGasPrice") or 0,
            status=receipt.get("status", 1),
        )
