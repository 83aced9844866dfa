# casino_backend/service.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine, Dict, Optional, Set

from web3 import Web3

from .chain.abis import GAME_PLAYED
from .chain.connector import ChainConnector
from .chain.events import LogSubscription
from .chain.nonce import NonceSafeSubmitter
from .config import Settings
from .entropy import EntropyRequester
from .errors import InsufficientTreasuryBalance, NonceExhaustedError
from .fulfillment import EarlyFulfillments, Fulfillment, FulfillmentListener, FulfillmentPoller
from .models.game import GameType
from .models.pending import PendingGameRequest, PendingRequestTable
from .settlement import SettlementDispatcher, SettlementResult
from .storage import PendingRequestJournal

logger = logging.getLogger(__name__)


class EntropyBackendService:
    """
    Bridges the game chain and the oracle chain:

    GamePlayed (game chain) -> entropy request (oracle chain) -> pending table
    -> EntropyFulfilled event or poll -> completeGameSession (game chain).

    Built once at startup from two connectors; every event is handled in
    its own task and its own try/except so one broken game never stalls
    the listeners.
    """

    def __init__(
        self,
        settings: Settings,
        game_chain,
        oracle_chain,
        *,
        table: Optional[PendingRequestTable] = None,
    ):
        self.settings = settings
        self.game_chain = game_chain
        self.oracle_chain = oracle_chain
        self.table = table if table is not None else PendingRequestTable()

        casino = settings.game_chain.contract_address
        consumer = settings.oracle_chain.contract_address

        self.game_submitter = NonceSafeSubmitter(
            game_chain,
            gas_price=settings.game_chain.gas_price,
            max_attempts=settings.nonce_max_attempts,
            backoff=settings.nonce_retry_backoff,
        )
        self.oracle_submitter = NonceSafeSubmitter(
            oracle_chain,
            gas_price=settings.oracle_chain.gas_price,
            max_attempts=settings.nonce_max_attempts,
            backoff=settings.nonce_retry_backoff,
        )
        self.requester = EntropyRequester(
            oracle_chain, self.oracle_submitter, self.table, consumer,
            fee_fallback=settings.entropy_fee_fallback,
            gas_limit=settings.entropy_gas_limit,
        )
        self.poller = FulfillmentPoller(
            oracle_chain, consumer,
            wait=settings.fulfillment_wait,
            fallback=settings.fulfillment_fallback,
        )
        self.dispatcher = SettlementDispatcher(
            game_chain, self.game_submitter, self.table, casino,
            gas_limit=settings.settlement_gas_limit,
            policy=settings.settlement_failure_policy,
            max_attempts=settings.settlement_max_attempts,
            retry_backoff=settings.settlement_retry_backoff,
        )
        self.game_listener = LogSubscription(
            game_chain, casino, GAME_PLAYED, self._on_game_played,
            poll_interval=settings.event_poll_interval,
        )
        self.fulfillment_listener = FulfillmentListener(
            oracle_chain, consumer, self._on_fulfillment,
            poll_interval=settings.event_poll_interval,
        )
        self.early_fulfillments = EarlyFulfillments(ttl=settings.early_fulfillment_ttl)

        self.is_running = False
        self.games_seen = 0
        self.requests_failed = 0
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EntropyBackendService":
        journal = PendingRequestJournal(settings.pending_journal_path) if settings.pending_journal_path else None
        return cls(
            settings,
            ChainConnector.from_settings(settings.game_chain, settings),
            ChainConnector.from_settings(settings.oracle_chain, settings),
            table=PendingRequestTable(journal),
        )

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self.is_running:
            logger.warning("⚠️ Service is already running")
            return

        logger.info("🚀 Starting entropy backend service")
        restored = await self.table.load()
        self.is_running = True

        self.game_listener.start()
        if self.settings.fulfillment_strategy.listens:
            self.fulfillment_listener.start()
        # restored requests may have been fulfilled while we were down, before the listener's head
        if restored:
            for record in self.table.snapshot():
                self._spawn(self.poll_fulfillment(record), f"poll-{record.request_id_hex[:10]}")

        logger.info("✅ Listening: casino %s on %s, entropy consumer %s on %s",
                    self.settings.game_chain.contract_address, self.game_chain.name,
                    self.settings.oracle_chain.contract_address, self.oracle_chain.name)
        logger.info("🏦 Treasuries: %s=%s %s=%s",
                    self.game_chain.name, self.game_chain.treasury.address,
                    self.oracle_chain.name, self.oracle_chain.treasury.address)

    async def stop(self) -> None:
        logger.info("🛑 Stopping entropy backend service...")
        self.is_running = False

        await self.game_listener.stop()
        await self.fulfillment_listener.stop()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.game_chain.close()
        await self.oracle_chain.close()
        logger.info("✅ Service stopped (%d request(s) still pending)", len(self.table))

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ---------- event handlers ----------

    async def _on_game_played(self, event) -> None:
        self._spawn(self.handle_game_played(event), "game-played")

    async def _on_fulfillment(self, fulfillment: Fulfillment) -> None:
        if fulfillment.request_id not in self.table:
            self.early_fulfillments.hold(fulfillment)
            logger.info("⏳ Fulfillment for %s arrived before its request was stored, holding it",
                        fulfillment.request_id_hex)
            return
        self._spawn(self.handle_fulfillment(fulfillment), f"settle-{fulfillment.request_id_hex[:10]}")

    async def handle_game_played(self, event) -> Optional[PendingGameRequest]:
        args = event["args"]
        tx_hash = Web3.to_hex(event["transactionHash"])
        self.games_seen += 1

        played_at = datetime.fromtimestamp(int(args["timestamp"]), tz=timezone.utc)
        logger.info("🎮 New game detected: user=%s type=%s bet=%s MOCA at %s (tx %s)",
                    args["user"], GameType.label(args["gameType"]),
                    Web3.from_wei(int(args["betAmount"]), "ether"), played_at.isoformat(), tx_hash)

        try:
            record = await self.requester.log_game_request(
                tx_hash, args["user"], int(args["gameType"]), int(args["betAmount"]),
            )
        except InsufficientTreasuryBalance as e:
            self.requests_failed += 1
            logger.warning("💸 Game %s abandoned, oracle treasury underfunded: %s", tx_hash, e)
            return None
        except NonceExhaustedError as e:
            self.requests_failed += 1
            logger.error("❌ Game %s abandoned, entropy request could not get a nonce: %s", tx_hash, e)
            return None
        except Exception:
            self.requests_failed += 1
            logger.exception("❌ Error handling game event %s", tx_hash)
            return None

        early = self.early_fulfillments.take(record.request_id)
        if early is not None:
            logger.info("🎲 Using fulfillment that arrived before %s was stored", record.request_id_hex)
            self._spawn(self.handle_fulfillment(early), f"settle-{record.request_id_hex[:10]}")
        elif self.settings.fulfillment_strategy.polls:
            self._spawn(self.poll_fulfillment(record), f"poll-{record.request_id_hex[:10]}")
        return record

    async def poll_fulfillment(self, record: PendingGameRequest) -> Optional[SettlementResult]:
        fulfillment = await self.poller.await_fulfillment(record.request_id, record.entropy_tx_hash)
        if fulfillment is None:
            return None
        return await self.handle_fulfillment(fulfillment)

    async def handle_fulfillment(self, fulfillment: Fulfillment) -> Optional[SettlementResult]:
        try:
            return await self.dispatcher.dispatch(fulfillment)
        except Exception:
            logger.exception("❌ Error completing game session for %s", fulfillment.request_id_hex)
            return None

    # ---------- status ----------

    def get_status(self) -> Dict[str, Any]:
        oldest = self.table.oldest_age()
        return {
            "isRunning": self.is_running,
            "pendingRequests": len(self.table),
            "oldestPendingSeconds": round(oldest, 1) if oldest is not None else None,
            "gamesSeen": self.games_seen,
            "requestsFailed": self.requests_failed,
            "settled": self.dispatcher.settled,
            "abandoned": self.dispatcher.abandoned,
            "correlationMisses": self.dispatcher.correlation_misses,
            "heldFulfillments": len(self.early_fulfillments),
            "expiredFulfillments": self.early_fulfillments.expired,
            "treasury": {
                self.game_chain.name: self.game_chain.treasury.address,
                self.oracle_chain.name: self.oracle_chain.treasury.address,
            },
            "fulfillmentStrategy": self.settings.fulfillment_strategy.value,
            "fulfillmentFallback": self.settings.fulfillment_fallback.value,
            "settlementFailurePolicy": self.settings.settlement_failure_policy.value,
        }

    async def treasury_balances(self) -> Dict[str, Dict[str, Any]]:
        out = {}
        for chain in (self.game_chain, self.oracle_chain):
            wei = await chain.get_balance(chain.treasury.address)
            out[chain.name] = {
                "address": chain.treasury.address,
                "chainId": chain.chain_id,
                "balanceWei": str(wei),
                "balance": str(Web3.from_wei(wei, "ether")),
            }
        out[self.oracle_chain.name]["entropyFeeFallbackWei"] = str(self.settings.entropy_fee_fallback)
        return out

    def stale_requests(self):
        return self.table.stale(self.settings.stale_request_seconds)
