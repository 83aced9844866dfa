import json
import logging
import os
from typing import Any, Dict

from .models.pending import PendingGameRequest, RequestState, request_key

logger = logging.getLogger(__name__)


class PendingRequestJournal:
    """
    Append-only JSON-lines log of pending request adds/removes.

    Replaying it at startup rebuilds the pending table, so fulfillments that
    arrive after a restart can still be settled.
    """

    def __init__(self, path: str):
        self.path = path

    def _append(self, entry: Dict[str, Any]) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def record_added(self, record: PendingGameRequest) -> None:
        self._append({"op": "add", "record": record.to_dict()})

    def record_removed(self, request_id: bytes, final_state: RequestState) -> None:
        self._append({"op": "remove", "requestId": "0x" + request_id.hex(), "state": final_state.value})

    def replay(self) -> Dict[bytes, PendingGameRequest]:
        records: Dict[bytes, PendingGameRequest] = {}
        if not os.path.exists(self.path):
            return records

        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                    if entry["op"] == "add":
                        record = PendingGameRequest.from_dict(entry["record"])
                        records[record.request_id] = record
                    elif entry["op"] == "remove":
                        records.pop(request_key(entry["requestId"]), None)
                except (ValueError, KeyError) as e:
                    # a torn last line after a crash is expected; skip it
                    logger.warning("⚠️ Skipping bad journal line %d in %s: %s", lineno, self.path, e)
        return records

    def compact(self, records) -> None:
        """Rewrite the journal with only the given live records."""
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps({"op": "add", "record": record.to_dict()}) + "\n")
        os.replace(tmp, self.path)
