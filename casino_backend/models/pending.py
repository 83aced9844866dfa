from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from hexbytes import HexBytes

from .game import GameType

if TYPE_CHECKING:
    from ..storage import PendingRequestJournal

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    REQUESTED = "requested"
    FULFILLED = "fulfilled"
    SETTLED = "settled"
    ABANDONED = "abandoned"


def request_key(request_id) -> bytes:
    """Normalise a request id (bytes, HexBytes or 0x-hex) to 32 raw bytes."""
    raw = bytes(HexBytes(request_id))
    if len(raw) > 32:
        raise ValueError(f"request id longer than 32 bytes: {raw.hex()}")
    return raw.rjust(32, b"\x00")


@dataclass
class PendingGameRequest:
    request_id: bytes
    origin_tx_hash: str
    user: str
    game_type: int
    bet_amount: int
    created_at: float = field(default_factory=time.time)

    entropy_tx_hash: Optional[str] = None
    user_seed: Optional[bytes] = None
    request_id_source: str = "event"
    game_config: Optional[Dict[str, Any]] = None
    state: RequestState = RequestState.REQUESTED

    def __post_init__(self):
        self.request_id = request_key(self.request_id)
        self.bet_amount = int(self.bet_amount)
        self.game_type = int(self.game_type)
        if self.bet_amount <= 0:
            raise ValueError("bet_amount must be > 0")

    @property
    def request_id_hex(self) -> str:
        return "0x" + self.request_id.hex()

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id_hex,
            "originTxHash": self.origin_tx_hash,
            "user": self.user,
            "gameType": self.game_type,
            "gameTypeName": GameType.label(self.game_type),
            "betAmount": str(self.bet_amount),
            "createdAt": self.created_at,
            "entropyTxHash": self.entropy_tx_hash,
            "userSeed": "0x" + self.user_seed.hex() if self.user_seed else None,
            "requestIdSource": self.request_id_source,
            "gameConfig": self.game_config,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingGameRequest":
        seed = data.get("userSeed")
        return cls(
            request_id=data["requestId"],
            origin_tx_hash=data["originTxHash"],
            user=data["user"],
            game_type=int(data["gameType"]),
            bet_amount=int(data["betAmount"]),
            created_at=float(data["createdAt"]),
            entropy_tx_hash=data.get("entropyTxHash"),
            user_seed=bytes(HexBytes(seed)) if seed else None,
            request_id_source=data.get("requestIdSource", "event"),
            game_config=data.get("gameConfig"),
            state=RequestState(data.get("state", RequestState.REQUESTED.value)),
        )


class PendingRequestTable:
    """
    requestId -> PendingGameRequest, the only mutable state shared between
    the game listener, the fulfillment listener and the pollers.

    All mutations go through one asyncio.Lock. claim() is the single
    REQUESTED -> FULFILLED transition, so a request id settles at most once
    no matter how many fulfillment signals arrive for it.
    """

    def __init__(self, journal: Optional["PendingRequestJournal"] = None):
        self._records: Dict[bytes, PendingGameRequest] = {}
        self._lock = asyncio.Lock()
        self._journal = journal

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, request_id) -> bool:
        return request_key(request_id) in self._records

    def get(self, request_id) -> Optional[PendingGameRequest]:
        return self._records.get(request_key(request_id))

    def snapshot(self) -> List[PendingGameRequest]:
        return list(self._records.values())

    async def load(self) -> int:
        """Replay the journal (if any) into memory. Returns records restored."""
        if self._journal is None:
            return 0
        async with self._lock:
            restored = self._journal.replay()
            for record in restored.values():
                # anything mid-settlement when the process died gets another chance
                record.state = RequestState.REQUESTED
                self._records[record.request_id] = record
            self._journal.compact(self._records.values())
        if restored:
            logger.info("📂 Restored %d pending request(s) from journal", len(restored))
        return len(restored)

    async def add(self, record: PendingGameRequest) -> None:
        async with self._lock:
            if record.request_id in self._records:
                raise ValueError(f"duplicate request id {record.request_id_hex}")
            record.state = RequestState.REQUESTED
            self._records[record.request_id] = record
            if self._journal is not None:
                self._journal.record_added(record)

    async def claim(self, request_id) -> Optional[PendingGameRequest]:
        key = request_key(request_id)
        async with self._lock:
            record = self._records.get(key)
            if record is None or record.state is not RequestState.REQUESTED:
                return None
            record.state = RequestState.FULFILLED
            return record

    async def release(self, request_id) -> None:
        """Hand a claimed record back (FULFILLED -> REQUESTED) for a later attempt."""
        key = request_key(request_id)
        async with self._lock:
            record = self._records.get(key)
            if record is not None and record.state is RequestState.FULFILLED:
                record.state = RequestState.REQUESTED

    async def remove(self, request_id, final_state: RequestState) -> Optional[PendingGameRequest]:
        key = request_key(request_id)
        async with self._lock:
            record = self._records.pop(key, None)
            if record is None:
                return None
            record.state = final_state
            if self._journal is not None:
                self._journal.record_removed(key, final_state)
            return record

    def stale(self, max_age: float, now: Optional[float] = None) -> List[PendingGameRequest]:
        now = now if now is not None else time.time()
        return [r for r in self._records.values() if r.age(now) > max_age]

    def oldest_age(self, now: Optional[float] = None) -> Optional[float]:
        if not self._records:
            return None
        now = now if now is not None else time.time()
        return max(r.age(now) for r in self._records.values())
