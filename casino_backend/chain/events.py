# casino_backend/chain/events.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from eth_abi.exceptions import DecodingError
from web3.exceptions import MismatchedABI

from ..errors import NetworkError
from .abis import event_topic

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]


class LogSubscription:
    """
    Follows one contract event by polling eth_getLogs over a block cursor.

    Starts at the chain head (only new events, like a websocket "on"), never
    skips a block on RPC failure, and isolates handler errors per log so one
    bad event never stops the subscription.
    """

    def __init__(
        self,
        connector,
        address: str,
        event_abi: Dict[str, Any],
        handler: EventHandler,
        *,
        poll_interval: float = 2.0,
        max_block_range: int = 500,
        start_block: Optional[int] = None,
    ):
        self.connector = connector
        self.address = address
        self.event_abi = event_abi
        self.topic = event_topic(event_abi)
        self.handler = handler
        self.poll_interval = poll_interval
        self.max_block_range = max_block_range
        self.cursor = start_block
        self._task: Optional[asyncio.Task] = None

    @property
    def label(self) -> str:
        return f"{self.connector.name}:{self.event_abi['name']}"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> int:
        """Fetch and dispatch logs from the cursor up to the head. Returns logs handled."""
        try:
            head = await self.connector.get_block_number()
            if self.cursor is None:
                self.cursor = head + 1
                logger.info("👂 [%s] listening from block %d", self.label, self.cursor)
                return 0
            if head < self.cursor:
                return 0
            to_block = min(head, self.cursor + self.max_block_range - 1)
            logs = await self.connector.get_logs(self.address, self.topic, self.cursor, to_block)
        except NetworkError as e:
            logger.warning("⚠️ [%s] log poll failed, retrying: %s", self.label, e)
            return 0

        handled = 0
        for log in logs:
            try:
                event = self.connector.decode_log(self.event_abi, log)
            except (MismatchedABI, DecodingError, KeyError, ValueError):
                logger.exception("❌ [%s] could not decode log %s", self.label, log)
                continue
            try:
                await self.handler(event)
                handled += 1
            except Exception:
                logger.exception("❌ [%s] handler failed", self.label)

        self.cursor = to_block + 1
        return handled

    async def run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self.run(), name=f"logs-{self.label}")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("🛑 [%s] unsubscribed", self.label)
