# casino_backend/fulfillment.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple

from hexbytes import HexBytes
from web3 import Web3

from .chain.abis import ENTROPY_CONSUMER_ABI, ENTROPY_FULFILLED
from .chain.events import LogSubscription
from .config import FallbackPolicy
from .errors import ContractCallError, NetworkError
from .models.pending import request_key

logger = logging.getLogger(__name__)


class FulfillmentSource(str, Enum):
    ORACLE_EVENT = "oracle_event"
    ORACLE_POLL = "oracle_poll"
    # not oracle randomness: derived from the request tx hash
    TX_HASH_FALLBACK = "tx_hash_fallback"


@dataclass(frozen=True)
class Fulfillment:
    request_id: bytes
    random_value: int
    source: FulfillmentSource
    tx_hash: Optional[str] = None

    @property
    def is_oracle_sourced(self) -> bool:
        return self.source is not FulfillmentSource.TX_HASH_FALLBACK

    @property
    def request_id_hex(self) -> str:
        return "0x" + self.request_id.hex()


FulfillmentHandler = Callable[[Fulfillment], Awaitable[None]]


def random_from_tx_hash(tx_hash: str) -> int:
    """First 4 bytes of the tx hash, mod 1e6. Deterministic, NOT fair randomness."""
    digits = tx_hash[2:] if tx_hash.lower().startswith("0x") else tx_hash
    return int(digits[:8], 16) % 1_000_000


def random_value_to_int(value) -> int:
    if isinstance(value, int):
        return value
    return int.from_bytes(bytes(HexBytes(value)), "big")


def fulfillment_from_event(event) -> Fulfillment:
    args = event["args"]
    tx_hash = event.get("transactionHash")
    return Fulfillment(
        request_id=request_key(args["requestId"]),
        random_value=random_value_to_int(args["randomValue"]),
        source=FulfillmentSource.ORACLE_EVENT,
        tx_hash=Web3.to_hex(tx_hash) if tx_hash is not None else None,
    )


class FulfillmentListener:
    """Event-driven strategy: follows EntropyFulfilled on the consumer contract."""

    def __init__(self, connector, consumer_address: str, handler: FulfillmentHandler, *,
                 poll_interval: float = 2.0):
        self.handler = handler
        self.subscription = LogSubscription(
            connector, consumer_address, ENTROPY_FULFILLED, self._on_event,
            poll_interval=poll_interval,
        )

    async def _on_event(self, event) -> None:
        fulfillment = fulfillment_from_event(event)
        logger.info("🎲 Entropy fulfilled: %s", fulfillment.request_id_hex)
        await self.handler(fulfillment)

    def start(self) -> asyncio.Task:
        return self.subscription.start()

    async def stop(self) -> None:
        await self.subscription.stop()


class EarlyFulfillments:
    """
    EntropyFulfilled events whose request id is not in the pending table yet.

    On fast oracle chains the fulfillment can be mined before our receipt
    poll for the request tx returns, so the event beats table.add(). The
    game handler takes the held fulfillment once the record is stored.
    Entries nobody claims expire after `ttl` seconds.
    """

    def __init__(self, ttl: float = 120.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._held: Dict[bytes, Tuple[Fulfillment, float]] = {}
        self.expired = 0

    def __len__(self) -> int:
        self._prune()
        return len(self._held)

    def hold(self, fulfillment: Fulfillment) -> None:
        self._prune()
        self._held[fulfillment.request_id] = (fulfillment, self._clock())

    def take(self, request_id) -> Optional[Fulfillment]:
        self._prune()
        held = self._held.pop(request_key(request_id), None)
        return held[0] if held is not None else None

    def _prune(self) -> None:
        now = self._clock()
        stale = [rid for rid, (_, held_at) in self._held.items() if now - held_at > self.ttl]
        for rid in stale:
            del self._held[rid]
            self.expired += 1
            logger.info("⌛ Dropped unmatched fulfillment 0x%s after %.0fs", rid.hex(), self.ttl)


class FulfillmentPoller:
    """
    Poll-then-timeout strategy: wait a fixed budget, then ask the consumer
    whether the request was fulfilled.

    If it wasn't, the fallback policy decides: NONE leaves the request for
    the event listener, TX_HASH synthesizes a value from the request tx hash
    and tags it TX_HASH_FALLBACK so callers can tell it apart.
    """

    def __init__(self, connector, consumer_address: str, *, wait: float = 3.0,
                 fallback: FallbackPolicy = FallbackPolicy.NONE):
        self.connector = connector
        self.consumer_address = consumer_address
        self.wait = wait
        self.fallback = fallback

    async def check(self, request_id: bytes) -> Optional[int]:
        fulfilled = await self.connector.call_contract(
            self.consumer_address, ENTROPY_CONSUMER_ABI, "isRequestFulfilled", request_id)
        if not fulfilled:
            return None
        value = await self.connector.call_contract(
            self.consumer_address, ENTROPY_CONSUMER_ABI, "getRandomValue", request_id)
        return random_value_to_int(value)

    async def await_fulfillment(self, request_id, tx_hash: Optional[str] = None) -> Optional[Fulfillment]:
        request_id = request_key(request_id)
        await asyncio.sleep(self.wait)

        try:
            value = await self.check(request_id)
        except (ContractCallError, NetworkError) as e:
            logger.warning("⚠️ Fulfillment check for 0x%s failed: %s", request_id.hex(), e)
            value = None

        if value is not None:
            logger.info("✅ Entropy fulfilled (poll): 0x%s", request_id.hex())
            return Fulfillment(request_id, value, FulfillmentSource.ORACLE_POLL, tx_hash)

        if self.fallback is FallbackPolicy.TX_HASH and tx_hash:
            logger.warning("⚠️ 0x%s not fulfilled after %.0fs, using tx-hash fallback value "
                           "(NOT oracle randomness)", request_id.hex(), self.wait)
            return Fulfillment(request_id, random_from_tx_hash(tx_hash),
                               FulfillmentSource.TX_HASH_FALLBACK, tx_hash)

        logger.info("⏳ 0x%s not fulfilled after %.0fs, waiting for the oracle event",
                    request_id.hex(), self.wait)
        return None
