# casino_backend/chain/nonce.py
from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional, Pattern, Tuple

from ..errors import NonceExhaustedError, TransactionRejected

logger = logging.getLogger(__name__)


# (provider, pattern) - group 1 is the nonce the node wants next.
# Order matters: specific formats before the generic "expected N".
EXPECTED_NONCE_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    # Cosmos EVM nodes (Moca): "invalid nonce; got 5, expected 7: invalid sequence"
    ("cosmos-evm", re.compile(r"invalid nonce;\s*got \d+,\s*expected (\d+)", re.I)),
    # Hardhat: "Nonce too low. Expected nonce to be 7 but got 5."
    ("hardhat", re.compile(r"expected nonce to be (\d+)", re.I)),
    # older geth: "nonce too low: next nonce 7, tx nonce 5"
    ("geth-next-nonce", re.compile(r"next nonce (\d+)", re.I)),
    # geth / nitro: "nonce too low: address 0xabc..., tx: 5 state: 7"
    ("geth-state", re.compile(r"tx:\s*\d+\s+state:\s*(\d+)", re.I)),
    ("generic", re.compile(r"expected(?: nonce)?:?\s*(\d+)", re.I)),
)

_NONCE_ERROR = re.compile(
    r"nonce too low|nonce too high|invalid nonce|invalid sequence|incorrect nonce|"
    r"replacement transaction underpriced|already known|expected nonce",
    re.I,
)


def parse_expected_nonce(message: str) -> Optional[int]:
    """Pull the node's expected nonce out of an RPC error message, if present."""
    if not message:
        return None
    for _provider, pattern in EXPECTED_NONCE_PATTERNS:
        m = pattern.search(message)
        if m:
            return int(m.group(1))
    return None


def is_nonce_error(message: str) -> bool:
    if not message:
        return False
    return bool(_NONCE_ERROR.search(message)) or parse_expected_nonce(message) is not None


class NonceSafeSubmitter:
    """
    Submits treasury transactions on one chain, recovering from nonce
    collisions caused by RPC nodes that lag on pending transactions.

    Gas limit and gas price are fixed per call: no estimation round-trips.
    """

    def __init__(
        self,
        connector,
        *,
        gas_price: int,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.connector = connector
        self.gas_price = gas_price
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._lock = asyncio.Lock()
        self._last_nonce: Optional[int] = None

    async def _candidate_nonce(self) -> int:
        address = self.connector.treasury.address
        latest = await self.connector.get_transaction_count(address, "latest")
        pending = await self.connector.get_transaction_count(address, "pending")
        nonce = max(latest, pending)
        if self._last_nonce is not None:
            nonce = max(nonce, self._last_nonce + 1)
        logger.debug("[%s] nonce latest=%d pending=%d using=%d", self.connector.name, latest, pending, nonce)
        return nonce

    def _forget_last_nonce(self) -> None:
        if self._last_nonce is not None:
            logger.warning("⚠️ [%s] dropping local nonce floor %d, re-reading from node",
                           self.connector.name, self._last_nonce + 1)
        self._last_nonce = None

    async def submit(self, to: str, data: str, *, gas: int, value: int = 0) -> str:
        async with self._lock:
            nonce = await self._candidate_nonce()
            last_error: Optional[TransactionRejected] = None

            for attempt in range(1, self.max_attempts + 1):
                tx = {
                    "to": to,
                    "data": data,
                    "value": int(value),
                    "gas": int(gas),
                    "gasPrice": int(self.gas_price),
                    "nonce": nonce,
                }
                try:
                    tx_hash = await self.connector.submit_transaction(tx)
                except TransactionRejected as e:
                    message = str(e)
                    if not is_nonce_error(message):
                        raise
                    last_error = e
                    if attempt == self.max_attempts:
                        break

                    expected = parse_expected_nonce(message)
                    if expected is not None:
                        logger.warning("⚠️ [%s] nonce %d rejected (attempt %d/%d), node expects %d",
                                       self.connector.name, nonce, attempt, self.max_attempts, expected)
                        if self._last_nonce is not None and expected <= self._last_nonce:
                            # a tx we sent never landed, the node wants its nonce again
                            self._forget_last_nonce()
                        nonce = expected
                    else:
                        logger.warning("⚠️ [%s] nonce %d rejected (attempt %d/%d), refreshing: %s",
                                       self.connector.name, nonce, attempt, self.max_attempts, message)
                        await asyncio.sleep(self.backoff)
                        nonce = max(await self._candidate_nonce(), nonce + 1)
                    continue

                self._last_nonce = nonce
                logger.info("📤 [%s] tx sent %s (nonce=%d)", self.connector.name,
                            self.connector.tx_link(tx_hash), nonce)
                return tx_hash

            # next submit re-reads the nonce from the node
            self._forget_last_nonce()
            raise NonceExhaustedError(self.max_attempts, last_error)
