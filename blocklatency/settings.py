from decimal import Decimal
from typing import Any, Literal

from ape.logging import logger
from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .client import ChainClient, Web3ChainClient
from .engine import EngineConfig
from .exceptions import ConfigurationError, NoWebsocketAvailableError
from .feeds import BaseBlockFeed, PollingBlockFeed, WebsocketBlockFeed
from .recorder import BaseRecorder, JSONLineRecorder
from .utils import gwei_to_wei, mask_secret

ENV_PREFIX = "BLOCKLATENCY_"
# NOTE: Below this the node is likely to reject or never include our transactions
LOW_GAS_PRICE_GWEI = Decimal("0.000001")

FeedChoice = Literal["auto", "websocket", "polling"]


def _is_hex(value: str) -> bool:
    try:
        int(value, 16)
    except ValueError:
        return False

    return True


class Settings(BaseSettings):
    """
    Settings for a blocklatency run.

    Loaded from environment variables (prefixed with ``BLOCKLATENCY_``), and validated
    before the engine starts.
    """

    # Endpoints
    WEBSOCKET_URI: str = ""
    HTTP_URI: str

    # Signer and recipient
    PRIVATE_KEY: SecretStr
    RECIPIENT_ADDRESS: str

    # Transaction construction
    GAS_LIMIT: int = Field(default=21_000, gt=0)
    # NOTE: Only used when the node does not report a gas price
    GAS_PRICE_GWEI: Decimal = Field(default=Decimal(20), gt=0)

    # Run shape
    INITIAL_BLOCKS_TO_SKIP: int = Field(default=10, ge=0)
    TRANSACTION_COUNT: int = Field(default=5, ge=1, le=10)
    FEED: FeedChoice = "auto"

    # Used for recorder
    RUN_NAME: str = "run"
    RECORD_RESULTS: bool = False

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, case_sensitive=True)

    @field_validator("WEBSOCKET_URI")
    @classmethod
    def check_websocket_uri(cls, value: str) -> str:
        if value and not value.startswith(("ws://", "wss://")):
            raise ValueError("must start with ws:// or wss://")

        return value

    @field_validator("HTTP_URI")
    @classmethod
    def check_http_uri(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")

        return value

    @field_validator("PRIVATE_KEY")
    @classmethod
    def check_private_key(cls, value: SecretStr) -> SecretStr:
        key = value.get_secret_value()
        if not key.startswith("0x") or len(key) != 66 or not _is_hex(key[2:]):
            raise ValueError("must be a 32-byte hex string starting with 0x")

        return value

    @field_validator("RECIPIENT_ADDRESS")
    @classmethod
    def check_recipient_address(cls, value: str) -> str:
        if not value.startswith("0x") or len(value) != 42 or not _is_hex(value[2:]):
            raise ValueError("must be a valid Ethereum address")

        return value

    @field_validator("GAS_PRICE_GWEI")
    @classmethod
    def check_gas_price(cls, value: Decimal) -> Decimal:
        if value < LOW_GAS_PRICE_GWEI:
            logger.warning(
                f"Very low gas price detected: {value} gwei. "
                "This might cause transaction failures."
            )

        return value

    def display(self) -> str:
        def render(val: Any) -> str:
            if isinstance(val, SecretStr):
                return mask_secret(val.get_secret_value())

            return str(val)

        return "\n  ".join(
            f'{ENV_PREFIX}{key}="{render(val)}"' for key, val in self if val not in ("", None)
        )

    def get_chain_client(self) -> ChainClient:
        return Web3ChainClient(
            self.HTTP_URI,
            self.PRIVATE_KEY.get_secret_value(),
            default_fee_rate=gwei_to_wei(self.GAS_PRICE_GWEI),
        )

    def get_feed_choice(self, feed: FeedChoice | None = None) -> Literal["websocket", "polling"]:
        if (feed := feed or self.FEED) == "auto":
            # NOTE: Prefer subscriptions whenever a websocket endpoint is available
            return "websocket" if self.WEBSOCKET_URI else "polling"

        return feed

    def get_block_feed(self, client: ChainClient, feed: FeedChoice | None = None) -> BaseBlockFeed:
        if self.get_feed_choice(feed) == "polling":
            return PollingBlockFeed(client)

        elif not self.WEBSOCKET_URI:
            raise NoWebsocketAvailableError()

        return WebsocketBlockFeed(self.WEBSOCKET_URI)

    def get_engine_config(self) -> EngineConfig:
        return EngineConfig(
            recipient_address=self.RECIPIENT_ADDRESS,
            gas_limit=self.GAS_LIMIT,
            initial_blocks_to_skip=self.INITIAL_BLOCKS_TO_SKIP,
            transaction_budget=self.TRANSACTION_COUNT,
            run_name=self.RUN_NAME,
        )

    def get_recorder(self) -> BaseRecorder | None:
        if not self.RECORD_RESULTS:
            return None

        return JSONLineRecorder()


def load_settings(**overrides: Any) -> Settings:
    """
    Load and validate settings from the environment.

    Raises:
        :class:`~blocklatency.exceptions.ConfigurationError`: If any setting is invalid.
    """
    try:
        settings = Settings(**overrides)

    except ValidationError as err:
        raise ConfigurationError(
            *(
                f"{ENV_PREFIX}{'.'.join(map(str, e['loc']))}: {e['msg']}"
                for e in err.errors(include_url=False)
            )
        ) from err

    logger.info(f"Loaded settings:\n  {settings.display()}")
    return settings
