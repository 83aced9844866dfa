# casino_backend/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from web3 import Web3

from .errors import ConfigError

MOCA_TESTNET_CHAIN_ID = 222888
ARBITRUM_SEPOLIA_CHAIN_ID = 421614


class FulfillmentStrategy(str, Enum):
    EVENT = "event"
    POLL = "poll"
    BOTH = "both"

    @property
    def listens(self) -> bool:
        return self in (FulfillmentStrategy.EVENT, FulfillmentStrategy.BOTH)

    @property
    def polls(self) -> bool:
        return self in (FulfillmentStrategy.POLL, FulfillmentStrategy.BOTH)


class FallbackPolicy(str, Enum):
    """What the poller does when the oracle has not fulfilled in time."""

    NONE = "none"
    TX_HASH = "tx_hash"


class SettlementFailurePolicy(str, Enum):
    DROP = "drop"
    RETRY = "retry"


def _env(*names: str, default: str = "") -> str:
    # first non-empty wins, so the legacy NEXT_PUBLIC_* names still work
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return default


def _require(*names: str) -> str:
    value = _env(*names)
    if not value:
        raise ConfigError(f"Set {names[0]} in the environment or .env")
    return value


def _int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _wei(name: str, default: str, unit: str) -> int:
    raw = _env(name, default=default)
    try:
        return int(Web3.to_wei(Decimal(raw), unit))
    except (InvalidOperation, ValueError):
        raise ConfigError(f"{name} must be a decimal amount, got {raw!r}") from None


def _choice(name: str, enum_cls, default):
    raw = _env(name, default=default.value).lower()
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{name} must be one of: {allowed} (got {raw!r})") from None


def _address(name: str, *aliases: str) -> str:
    raw = _require(name, *aliases)
    if not Web3.is_address(raw):
        raise ConfigError(f"{name} is not a valid address: {raw!r}")
    return Web3.to_checksum_address(raw)


@dataclass(frozen=True)
class ChainSettings:
    name: str
    rpc_url: str
    chain_id: int
    private_key: str
    contract_address: str
    gas_price: int
    explorer_url: str = ""


@dataclass(frozen=True)
class Settings:
    game_chain: ChainSettings
    oracle_chain: ChainSettings

    entropy_fee_fallback: int
    entropy_gas_limit: int = 500_000
    settlement_gas_limit: int = 500_000

    rpc_timeout: float = 20.0
    receipt_timeout: float = 120.0
    nonce_max_attempts: int = 3
    nonce_retry_backoff: float = 1.0

    event_poll_interval: float = 2.0
    fulfillment_strategy: FulfillmentStrategy = FulfillmentStrategy.BOTH
    fulfillment_wait: float = 3.0
    fulfillment_fallback: FallbackPolicy = FallbackPolicy.NONE
    early_fulfillment_ttl: float = 120.0

    settlement_failure_policy: SettlementFailurePolicy = SettlementFailurePolicy.DROP
    settlement_max_attempts: int = 3
    settlement_retry_backoff: float = 5.0

    status_interval: float = 30.0
    stale_request_seconds: float = 600.0
    pending_journal_path: Optional[str] = None

    status_api_host: str = "127.0.0.1"
    status_api_port: Optional[int] = None
    log_level: str = "INFO"
    log_format: str = "console"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)

        game_chain = ChainSettings(
            name="moca",
            rpc_url=_env("MOCA_RPC_URL", "NEXT_PUBLIC_MOCA_TESTNET_RPC",
                         default="https://testnet-rpc.mocachain.org/"),
            chain_id=_int("MOCA_CHAIN_ID", MOCA_TESTNET_CHAIN_ID),
            private_key=_require("MOCA_TREASURY_PRIVATE_KEY", "TREASURY_PRIVATE_KEY"),
            contract_address=_address("MOCA_CASINO_CONTRACT", "NEXT_PUBLIC_MOCA_CASINO_CONTRACT"),
            gas_price=_wei("MOCA_GAS_PRICE_GWEI", "1", "gwei"),
            explorer_url=_env("MOCA_EXPLORER_URL", "NEXT_PUBLIC_MOCA_TESTNET_EXPLORER",
                              default="https://testnet-scan.mocachain.org"),
        )
        oracle_chain = ChainSettings(
            name="arbitrum-sepolia",
            rpc_url=_env("ARBITRUM_RPC_URL", "NEXT_PUBLIC_ARBITRUM_SEPOLIA_RPC",
                         default="https://sepolia-rollup.arbitrum.io/rpc"),
            chain_id=_int("ARBITRUM_CHAIN_ID", ARBITRUM_SEPOLIA_CHAIN_ID),
            private_key=_require("ARBITRUM_TREASURY_PRIVATE_KEY"),
            contract_address=_address("ENTROPY_CONSUMER_CONTRACT",
                                      "NEXT_PUBLIC_ARBITRUM_SEPOLIA_CASINO_CONTRACT"),
            gas_price=_wei("ARBITRUM_GAS_PRICE_GWEI", "0.1", "gwei"),
            explorer_url=_env("ARBITRUM_EXPLORER_URL", default="https://sepolia.arbiscan.io"),
        )

        api_port = _env("STATUS_API_PORT")
        journal = _env("PENDING_JOURNAL_PATH")

        return cls(
            game_chain=game_chain,
            oracle_chain=oracle_chain,
            entropy_fee_fallback=_wei("ENTROPY_FEE_FALLBACK_ETH", "0.001", "ether"),
            entropy_gas_limit=_int("ENTROPY_GAS_LIMIT", 500_000),
            settlement_gas_limit=_int("SETTLEMENT_GAS_LIMIT", 500_000),
            rpc_timeout=_float("RPC_TIMEOUT_SECONDS", 20.0),
            receipt_timeout=_float("RECEIPT_TIMEOUT_SECONDS", 120.0),
            nonce_max_attempts=_int("NONCE_MAX_ATTEMPTS", 3),
            nonce_retry_backoff=_float("NONCE_RETRY_BACKOFF_SECONDS", 1.0),
            event_poll_interval=_float("EVENT_POLL_INTERVAL_SECONDS", 2.0),
            fulfillment_strategy=_choice("FULFILLMENT_STRATEGY", FulfillmentStrategy,
                                         FulfillmentStrategy.BOTH),
            fulfillment_wait=_float("FULFILLMENT_WAIT_SECONDS", 3.0),
            fulfillment_fallback=_choice("FULFILLMENT_FALLBACK", FallbackPolicy, FallbackPolicy.NONE),
            early_fulfillment_ttl=_float("EARLY_FULFILLMENT_TTL_SECONDS", 120.0),
            settlement_failure_policy=_choice("SETTLEMENT_FAILURE_POLICY", SettlementFailurePolicy,
                                              SettlementFailurePolicy.DROP),
            settlement_max_attempts=_int("SETTLEMENT_MAX_ATTEMPTS", 3),
            settlement_retry_backoff=_float("SETTLEMENT_RETRY_BACKOFF_SECONDS", 5.0),
            status_interval=_float("STATUS_INTERVAL_SECONDS", 30.0),
            stale_request_seconds=_float("STALE_REQUEST_SECONDS", 600.0),
            pending_journal_path=journal or None,
            status_api_host=_env("STATUS_API_HOST", default="127.0.0.1"),
            status_api_port=_int("STATUS_API_PORT", 0) if api_port else None,
            log_level=_env("LOG_LEVEL", default="INFO").upper(),
            log_format=_env("LOG_FORMAT", default="console").lower(),
        )

