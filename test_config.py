import pytest
from web3 import Web3

from casino_backend.config import (
    FallbackPolicy,
    FulfillmentStrategy,
    SettlementFailurePolicy,
    Settings,
)
from casino_backend.errors import ConfigError

ENV_NAMES = [
    "MOCA_RPC_URL", "NEXT_PUBLIC_MOCA_TESTNET_RPC", "ARBITRUM_RPC_URL", "NEXT_PUBLIC_ARBITRUM_SEPOLIA_RPC",
    "MOCA_TREASURY_PRIVATE_KEY", "TREASURY_PRIVATE_KEY", "ARBITRUM_TREASURY_PRIVATE_KEY",
    "MOCA_CASINO_CONTRACT", "NEXT_PUBLIC_MOCA_CASINO_CONTRACT",
    "ENTROPY_CONSUMER_CONTRACT", "NEXT_PUBLIC_ARBITRUM_SEPOLIA_CASINO_CONTRACT",
    "MOCA_CHAIN_ID", "ARBITRUM_CHAIN_ID", "MOCA_GAS_PRICE_GWEI", "ARBITRUM_GAS_PRICE_GWEI",
    "ENTROPY_FEE_FALLBACK_ETH", "FULFILLMENT_STRATEGY", "FULFILLMENT_FALLBACK",
    "SETTLEMENT_FAILURE_POLICY", "SETTLEMENT_MAX_ATTEMPTS", "STATUS_API_PORT", "PENDING_JOURNAL_PATH",
    "LOG_LEVEL", "LOG_FORMAT", "NONCE_MAX_ATTEMPTS", "EARLY_FULFILLMENT_TTL_SECONDS",
    "MOCA_EXPLORER_URL", "NEXT_PUBLIC_MOCA_TESTNET_EXPLORER", "ARBITRUM_EXPLORER_URL",
]

CASINO = "0x" + "11" * 20
CONSUMER = "0x" + "22" * 20


@pytest.fixture
def env(monkeypatch, tmp_path):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MOCA_TREASURY_PRIVATE_KEY", "0x" + "01" * 32)
    monkeypatch.setenv("ARBITRUM_TREASURY_PRIVATE_KEY", "0x" + "02" * 32)
    monkeypatch.setenv("MOCA_CASINO_CONTRACT", CASINO)
    monkeypatch.setenv("ENTROPY_CONSUMER_CONTRACT", CONSUMER)
    empty = tmp_path / "empty.env"
    empty.write_text("")
    return monkeypatch, str(empty)


def test_defaults(env):
    _, env_file = env
    settings = Settings.from_env(env_file)

    assert settings.game_chain.chain_id == 222888
    assert settings.oracle_chain.chain_id == 421614
    assert settings.game_chain.contract_address == Web3.to_checksum_address(CASINO)
    assert settings.oracle_chain.contract_address == Web3.to_checksum_address(CONSUMER)
    assert settings.game_chain.gas_price == 10**9
    assert settings.oracle_chain.gas_price == 10**8
    assert settings.entropy_fee_fallback == 10**15
    assert settings.fulfillment_strategy is FulfillmentStrategy.BOTH
    assert settings.fulfillment_fallback is FallbackPolicy.NONE
    assert settings.settlement_failure_policy is SettlementFailurePolicy.DROP
    assert settings.nonce_max_attempts == 3
    assert settings.status_api_port is None
    assert settings.pending_journal_path is None
    assert settings.early_fulfillment_ttl == 120.0
    assert settings.oracle_chain.explorer_url == "https://sepolia.arbiscan.io"


def test_legacy_names_still_work(env):
    monkeypatch, env_file = env
    monkeypatch.delenv("MOCA_TREASURY_PRIVATE_KEY")
    monkeypatch.delenv("ENTROPY_CONSUMER_CONTRACT")
    monkeypatch.setenv("TREASURY_PRIVATE_KEY", "0x" + "03" * 32)
    monkeypatch.setenv("NEXT_PUBLIC_ARBITRUM_SEPOLIA_CASINO_CONTRACT", CONSUMER)

    settings = Settings.from_env(env_file)
    assert settings.game_chain.private_key == "0x" + "03" * 32
    assert settings.oracle_chain.contract_address == Web3.to_checksum_address(CONSUMER)


def test_overrides(env):
    monkeypatch, env_file = env
    monkeypatch.setenv("FULFILLMENT_STRATEGY", "Poll")
    monkeypatch.setenv("FULFILLMENT_FALLBACK", "tx_hash")
    monkeypatch.setenv("SETTLEMENT_FAILURE_POLICY", "retry")
    monkeypatch.setenv("ENTROPY_FEE_FALLBACK_ETH", "0.002")
    monkeypatch.setenv("STATUS_API_PORT", "8080")
    monkeypatch.setenv("EARLY_FULFILLMENT_TTL_SECONDS", "30")

    settings = Settings.from_env(env_file)
    assert settings.fulfillment_strategy is FulfillmentStrategy.POLL
    assert settings.fulfillment_fallback is FallbackPolicy.TX_HASH
    assert settings.settlement_failure_policy is SettlementFailurePolicy.RETRY
    assert settings.entropy_fee_fallback == 2 * 10**15
    assert settings.status_api_port == 8080
    assert settings.early_fulfillment_ttl == 30.0


def test_reads_dotenv_file(env, tmp_path):
    monkeypatch, _ = env
    monkeypatch.delenv("ARBITRUM_TREASURY_PRIVATE_KEY")
    dotenv = tmp_path / ".env"
    dotenv.write_text("ARBITRUM_TREASURY_PRIVATE_KEY=0x" + "04" * 32 + "\nNONCE_MAX_ATTEMPTS=5\n")

    settings = Settings.from_env(str(dotenv))
    assert settings.oracle_chain.private_key == "0x" + "04" * 32
    assert settings.nonce_max_attempts == 5


@pytest.mark.parametrize("name,value", [
    ("MOCA_CASINO_CONTRACT", "not-an-address"),
    ("FULFILLMENT_STRATEGY", "sometimes"),
    ("SETTLEMENT_MAX_ATTEMPTS", "three"),
    ("ENTROPY_FEE_FALLBACK_ETH", "lots"),
])
def test_bad_values_raise_config_error(env, name, value):
    monkeypatch, env_file = env
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError):
        Settings.from_env(env_file)


def test_missing_private_key(env):
    monkeypatch, env_file = env
    monkeypatch.delenv("ARBITRUM_TREASURY_PRIVATE_KEY")
    with pytest.raises(ConfigError, match="ARBITRUM_TREASURY_PRIVATE_KEY"):
        Settings.from_env(env_file)


def test_strategy_flags():
    assert FulfillmentStrategy.BOTH.listens and FulfillmentStrategy.BOTH.polls
    assert FulfillmentStrategy.EVENT.listens and not FulfillmentStrategy.EVENT.polls
    assert FulfillmentStrategy.POLL.polls and not FulfillmentStrategy.POLL.listens
