# casino_backend/settlement.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_abi import encode as abi_encode
from web3 import Web3

from .chain.abis import CASINO_ABI
from .config import SettlementFailurePolicy
from .errors import CasinoBackendError, ConfirmationTimeout, NonceExhaustedError, TransactionReverted
from .fulfillment import Fulfillment
from .models.game import GameOutcome, GameType, compute_outcome
from .models.pending import PendingGameRequest, PendingRequestTable, RequestState

logger = logging.getLogger(__name__)


def derive_session_id(user: str, game_type: int, created_at_ms: int) -> bytes:
    """keccak256(abi.encode(address user, uint256 gameType, uint256 createdAtMillis))"""
    encoded = abi_encode(
        ["address", "uint256", "uint256"],
        [Web3.to_checksum_address(user), int(game_type), int(created_at_ms)],
    )
    return bytes(Web3.keccak(encoded))


@dataclass
class SettlementResult:
    request_id: bytes
    session_id: bytes
    outcome: GameOutcome
    settled: bool
    attempts: int
    fulfillment_source: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": "0x" + self.request_id.hex(),
            "sessionId": "0x" + self.session_id.hex(),
            "outcome": self.outcome.to_dict(),
            "settled": self.settled,
            "attempts": self.attempts,
            "fulfillmentSource": self.fulfillment_source,
            "txHash": self.tx_hash,
            "error": self.error,
        }


class SettlementDispatcher:
    """
    Turns a fulfilled random value into a payout and records it on the game
    chain with completeGameSession(sessionId, won, winAmount, requestId).

    The pending record is removed afterwards whatever happens; with the
    RETRY policy failed settlements are attempted again first.
    """

    def __init__(
        self,
        connector,
        submitter,
        table: PendingRequestTable,
        casino_address: str,
        *,
        gas_limit: int = 500_000,
        policy: SettlementFailurePolicy = SettlementFailurePolicy.DROP,
        max_attempts: int = 3,
        retry_backoff: float = 5.0,
    ):
        self.connector = connector
        self.submitter = submitter
        self.table = table
        self.casino_address = casino_address
        self.gas_limit = gas_limit
        self.policy = policy
        self.max_attempts = max_attempts if policy is SettlementFailurePolicy.RETRY else 1
        self.retry_backoff = retry_backoff

        self.settled = 0
        self.abandoned = 0
        self.correlation_misses = 0

    async def _submit(self, session_id: bytes, outcome: GameOutcome, request_id: bytes) -> str:
        data = self.connector.encode_call(
            self.casino_address, CASINO_ABI, "completeGameSession",
            session_id, outcome.won, outcome.win_amount, request_id,
        )
        return await self.submitter.submit(self.casino_address, data, gas=self.gas_limit)

    async def _confirm(self, tx_hash: str) -> None:
        receipt = await self.connector.wait_for_receipt(tx_hash)
        if not receipt.succeeded:
            raise TransactionReverted(tx_hash)
        logger.info("✅ Game session completed on %s (block %d, gas %d): %s",
                    self.connector.name, receipt.block_number, receipt.gas_used,
                    self.connector.tx_link(tx_hash))

    async def dispatch(self, fulfillment: Fulfillment) -> Optional[SettlementResult]:
        record = await self.table.claim(fulfillment.request_id)
        if record is None:
            self.correlation_misses += 1
            logger.info("⚠️ No pending request found for %s (already settled or from another run)",
                        fulfillment.request_id_hex)
            return None

        outcome = compute_outcome(record.game_type, fulfillment.random_value, record.bet_amount)
        logger.info("🎲 %s %s: draw=%d -> %s, win %d wei",
                    record.request_id_hex, GameType.label(record.game_type), outcome.draw,
                    "WIN" if outcome.won else "LOSE", outcome.win_amount)
        if not fulfillment.is_oracle_sourced:
            logger.warning("⚠️ Settling %s with %s value, not oracle randomness",
                           record.request_id_hex, fulfillment.source.value)

        try:
            return await self._settle(record, outcome, fulfillment)
        except asyncio.CancelledError:
            # shutting down mid-settlement: keep the record for the next run
            await self.table.release(record.request_id)
            raise
        except Exception:
            if await self.table.remove(record.request_id, RequestState.ABANDONED) is not None:
                self.abandoned += 1
            raise

    async def _settle(self, record: PendingGameRequest, outcome: GameOutcome,
                      fulfillment: Fulfillment) -> SettlementResult:
        session_id = derive_session_id(record.user, record.game_type, int(record.created_at * 1000))
        result = SettlementResult(
            request_id=record.request_id,
            session_id=session_id,
            outcome=outcome,
            settled=False,
            attempts=0,
            fulfillment_source=fulfillment.source.value,
        )

        sent_tx: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            try:
                # a tx that timed out may still mine: wait on it again instead of resubmitting
                if sent_tx is None:
                    sent_tx = await self._submit(session_id, outcome, record.request_id)
                    result.tx_hash = sent_tx
                await self._confirm(sent_tx)
            except NonceExhaustedError as e:
                result.error = str(e)
                logger.error("❌ Settlement of %s gave up on nonces: %s", record.request_id_hex, e)
                break
            except ConfirmationTimeout as e:
                result.error = str(e)
                logger.error("❌ Settlement of %s not confirmed (attempt %d/%d): %s",
                             record.request_id_hex, attempt, self.max_attempts, e)
            except CasinoBackendError as e:
                result.error = str(e)
                sent_tx = None
                logger.error("❌ Settlement of %s failed (attempt %d/%d): %s",
                             record.request_id_hex, attempt, self.max_attempts, e)
            else:
                result.settled = True
                result.error = None
                await self.table.remove(record.request_id, RequestState.SETTLED)
                self.settled += 1
                return result

            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_backoff)

        await self.table.remove(record.request_id, RequestState.ABANDONED)
        self.abandoned += 1
        logger.error("❌ Dropped pending request %s after %d attempt(s) (policy=%s): "
                     "game %s was fulfilled but not settled",
                     record.request_id_hex, result.attempts, self.policy.value, record.origin_tx_hash)
        return result
