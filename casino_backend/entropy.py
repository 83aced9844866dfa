# casino_backend/entropy.py
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import MismatchedABI

from .chain.abis import ENTROPY_CONSUMER_ABI, ENTROPY_REQUESTED, event_topic
from .chain.connector import Receipt
from .errors import (
    ContractReverted,
    InsufficientTreasuryBalance,
    NetworkError,
    TransactionReverted,
)
from .models.game import GameType
from .models.pending import PendingGameRequest, PendingRequestTable, request_key

logger = logging.getLogger(__name__)


def derive_request_id(user_seed: bytes, block_number: int) -> bytes:
    """keccak256(abi.encode(bytes32 seed, uint256 block)), used when the request event can't be decoded."""
    return bytes(Web3.solidity_keccak(["bytes32", "uint256"], [user_seed, int(block_number)]))


@dataclass
class EntropyRequest:
    request_id: bytes
    user_seed: bytes
    tx_hash: str
    block_number: int
    fee: int
    request_id_source: str
    game_type: int
    game_config: Optional[Dict[str, Any]] = None
    requested_at: float = field(default_factory=time.time)

    @property
    def request_id_hex(self) -> str:
        return "0x" + self.request_id.hex()


class EntropyRequester:
    """Pays the oracle-chain consumer for randomness and tracks the request."""

    def __init__(
        self,
        connector,
        submitter,
        table: PendingRequestTable,
        consumer_address: str,
        *,
        fee_fallback: int,
        gas_limit: int = 500_000,
    ):
        self.connector = connector
        self.submitter = submitter
        self.table = table
        self.consumer_address = consumer_address
        self.fee_fallback = fee_fallback
        self.gas_limit = gas_limit
        self._requested_topic = HexBytes(event_topic(ENTROPY_REQUESTED))

    async def entropy_fee(self) -> int:
        # NoContractCode propagates: a missing consumer is a config problem, not a flaky read
        try:
            return int(await self.connector.call_contract(
                self.consumer_address, ENTROPY_CONSUMER_ABI, "entropyFee"))
        except (ContractReverted, NetworkError) as e:
            logger.warning("⚠️ entropyFee() read failed, using fallback %d wei: %s", self.fee_fallback, e)
            return self.fee_fallback

    def find_request_id(self, receipt: Receipt) -> Optional[bytes]:
        consumer = self.consumer_address.lower()
        for log in receipt.logs:
            if str(log["address"]).lower() != consumer:
                continue
            topics = log.get("topics", [])
            if not topics or HexBytes(topics[0]) != self._requested_topic:
                continue
            try:
                event = self.connector.decode_log(ENTROPY_REQUESTED, log)
            except (MismatchedABI, DecodingError, KeyError, ValueError) as e:
                logger.warning("⚠️ EntropyRequested log in %s did not decode: %s", receipt.tx_hash, e)
                continue
            return request_key(event["args"]["requestId"])
        return None

    async def request_entropy(
        self,
        game_type: int,
        game_config: Optional[Dict[str, Any]] = None,
        user_seed: Optional[bytes] = None,
    ) -> EntropyRequest:
        seed = user_seed if user_seed is not None else secrets.token_bytes(32)
        if len(seed) != 32:
            raise ValueError("user_seed must be 32 bytes")

        fee = await self.entropy_fee()

        # checked before submitting so a doomed tx never burns a nonce
        treasury = self.connector.treasury.address
        balance = await self.connector.get_balance(treasury)
        if balance < fee:
            raise InsufficientTreasuryBalance(treasury, fee, balance)

        data = self.connector.encode_call(self.consumer_address, ENTROPY_CONSUMER_ABI, "request", seed)
        logger.info("🎯 Requesting entropy for %s (fee %s ETH)", GameType.label(game_type), Web3.from_wei(fee, "ether"))

        tx_hash = await self.submitter.submit(self.consumer_address, data, gas=self.gas_limit, value=fee)
        receipt = await self.connector.wait_for_receipt(tx_hash)
        if not receipt.succeeded:
            raise TransactionReverted(tx_hash)

        request_id = self.find_request_id(receipt)
        source = "event"
        if request_id is None:
            request_id = derive_request_id(seed, receipt.block_number)
            source = "derived"
            logger.warning("⚠️ No EntropyRequested event in %s, derived request id 0x%s",
                           tx_hash, request_id.hex())

        logger.info("✅ Entropy request confirmed in block %d, request id 0x%s",
                    receipt.block_number, request_id.hex())
        return EntropyRequest(
            request_id=request_id,
            user_seed=seed,
            tx_hash=tx_hash,
            block_number=receipt.block_number,
            fee=fee,
            request_id_source=source,
            game_type=int(game_type),
            game_config=game_config,
        )

    async def log_game_request(
        self,
        origin_tx_hash: str,
        user: str,
        game_type: int,
        bet_amount: int,
        game_config: Optional[Dict[str, Any]] = None,
    ) -> PendingGameRequest:
        """
        Request entropy for a game seen on the game chain and register it as pending.
        Nothing is registered if any step fails.
        """
        if int(bet_amount) <= 0:
            raise ValueError("bet_amount must be > 0")
        if Web3.is_address(user):
            user = Web3.to_checksum_address(user)

        request = await self.request_entropy(game_type, game_config)
        record = PendingGameRequest(
            request_id=request.request_id,
            origin_tx_hash=origin_tx_hash,
            user=user,
            game_type=game_type,
            bet_amount=bet_amount,
            entropy_tx_hash=request.tx_hash,
            user_seed=request.user_seed,
            request_id_source=request.request_id_source,
            game_config=game_config,
        )
        await self.table.add(record)
        logger.info("📝 Stored pending request %s (%s, bet %d wei, user %s)",
                    record.request_id_hex, GameType.label(game_type), record.bet_amount, user)
        return record
