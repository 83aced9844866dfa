from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from hexbytes import HexBytes
from web3 import Web3

from casino_backend.chain.abis import ENTROPY_REQUESTED, event_topic
from casino_backend.chain.connector import Receipt, TreasuryIdentity
from casino_backend.config import (
    ChainSettings,
    FallbackPolicy,
    FulfillmentStrategy,
    SettlementFailurePolicy,
    Settings,
)
from casino_backend.errors import ConfirmationTimeout

CASINO = Web3.to_checksum_address("0x" + "11" * 20)
CONSUMER = Web3.to_checksum_address("0x" + "22" * 20)
TREASURY = Web3.to_checksum_address("0x" + "aa" * 20)
ALICE = Web3.to_checksum_address("0x" + "a1" * 20)
BOB = Web3.to_checksum_address("0x" + "b0" * 20)

ENTROPY_FEE = Web3.to_wei(0.001, "ether")


@dataclass(frozen=True)
class EncodedCall:
    """What FakeConnector.encode_call returns instead of calldata, so tests can read the arguments."""

    address: str
    fn_name: str
    args: Tuple[Any, ...]


class FakeConnector:
    """In-memory stand-in for ChainConnector."""

    def __init__(self, name: str = "fake", *, balance: int = Web3.to_wei(10, "ether"),
                 latest_nonce: int = 0, pending_nonce: Optional[int] = None, chain_id: int = 1):
        self.name = name
        self.chain_id = chain_id
        self.treasury = TreasuryIdentity(address=TREASURY, account=None)
        self.balance = balance
        self.balance_error: Optional[Exception] = None
        self.latest_nonce = latest_nonce
        self.pending_nonce = pending_nonce
        self.block_number = 100

        # fn_name -> value, exception, or callable(*args)
        self.calls: Dict[str, Any] = {}
        self.submit_errors: List[Exception] = []
        self.sent: List[Dict[str, Any]] = []
        self.by_hash: Dict[str, Dict[str, Any]] = {}
        self.receipt_status = 1
        self.receipt_logs: Callable[[str, Dict[str, Any]], List[Any]] = lambda tx_hash, tx: []
        self.receipt_timeouts: Dict[str, int] = {}
        self.receipt_waits: List[str] = []
        self.logs: List[Dict[str, Any]] = []
        self.block_error: Optional[Exception] = None
        self.closed = False
        self.explorer_url = ""

    def tx_link(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}" if self.explorer_url else tx_hash

    async def get_balance(self, address=None) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance

    async def get_transaction_count(self, address: str, tag: str = "latest") -> int:
        if tag == "pending" and self.pending_nonce is not None:
            return self.pending_nonce
        return self.latest_nonce

    async def get_block_number(self) -> int:
        if self.block_error is not None:
            raise self.block_error
        return self.block_number

    async def get_logs(self, address, topic, from_block, to_block):
        return [log for log in self.logs if from_block <= log["blockNumber"] <= to_block]

    async def call_contract(self, address, abi, fn_name, *args):
        handler = self.calls[fn_name]
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(*args)
        return handler

    def encode_call(self, address, abi, fn_name, *args) -> EncodedCall:
        return EncodedCall(address, fn_name, tuple(args))

    def decode_log(self, event_abi, log):
        if log.get("undecodable"):
            raise ValueError("bad log data")
        return log

    async def submit_transaction(self, tx: Dict[str, Any]) -> str:
        self.sent.append(dict(tx))
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        tx_hash = Web3.to_hex(Web3.keccak(text=f"{self.name}-{len(self.sent)}"))
        self.by_hash[tx_hash] = tx
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        self.receipt_waits.append(tx_hash)
        if self.receipt_timeouts.get(tx_hash, 0) > 0:
            self.receipt_timeouts[tx_hash] -= 1
            raise ConfirmationTimeout(tx_hash, 120)
        tx = self.by_hash.get(tx_hash, {})
        return Receipt(
            tx_hash=tx_hash,
            block_number=self.block_number,
            gas_used=21_000,
            status=self.receipt_status,
            logs=self.receipt_logs(tx_hash, tx),
        )

    async def close(self) -> None:
        self.closed = True


def entropy_requested_log(request_id: bytes, consumer: str = CONSUMER) -> Dict[str, Any]:
    return {
        "address": consumer,
        "topics": [HexBytes(event_topic(ENTROPY_REQUESTED)), HexBytes(request_id)],
        "args": {"requestId": request_id, "gameType": 2, "gameSubType": "", "requester": TREASURY},
    }


def emit_request_ids(connector: FakeConnector) -> None:
    """Make every entropy request receipt carry an EntropyRequested log with a fresh id."""
    connector.receipt_logs = lambda tx_hash, tx: [
        entropy_requested_log(bytes(Web3.keccak(text="request:" + tx_hash)))
    ]


def sent_calls(connector: FakeConnector) -> List[EncodedCall]:
    return [tx["data"] for tx in connector.sent]


def make_settings(**overrides) -> Settings:
    values = dict(
        game_chain=ChainSettings(
            name="moca", rpc_url="http://localhost:8545", chain_id=222888,
            private_key="0x" + "01" * 32, contract_address=CASINO, gas_price=Web3.to_wei(1, "gwei"),
        ),
        oracle_chain=ChainSettings(
            name="arbitrum-sepolia", rpc_url="http://localhost:8546", chain_id=421614,
            private_key="0x" + "02" * 32, contract_address=CONSUMER, gas_price=Web3.to_wei(0.1, "gwei"),
        ),
        entropy_fee_fallback=ENTROPY_FEE,
        nonce_retry_backoff=0.0,
        event_poll_interval=0.01,
        fulfillment_strategy=FulfillmentStrategy.EVENT,
        fulfillment_wait=0.0,
        fulfillment_fallback=FallbackPolicy.NONE,
        settlement_failure_policy=SettlementFailurePolicy.DROP,
        settlement_retry_backoff=0.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def game_chain():
    return FakeConnector("moca", chain_id=222888)


@pytest.fixture
def oracle_chain():
    connector = FakeConnector("arbitrum-sepolia", chain_id=421614)
    connector.calls["entropyFee"] = ENTROPY_FEE
    emit_request_ids(connector)
    return connector


@pytest.fixture
def settings():
    return make_settings()
