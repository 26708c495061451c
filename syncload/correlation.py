"""Match inbound responses to the sends that caused them.

Both trackers keep ``key -> send time`` for messages still in flight and
hand back the round-trip time in milliseconds when a response resolves a
key.  A tracker belongs to exactly one session and is emptied by
``discard()`` when that session ends.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Tuple

from .errors import ProtocolError


class CorrelationTracker:
    def __init__(self, owner: str = "", clock: Callable[[], float] = time.perf_counter) -> None:
        self.owner = owner
        self.clock = clock
        self.protocol_errors = 0
        self.duplicates = 0
        self.closed = False
        self._pending: Dict[Hashable, float] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _store(self, key: Hashable) -> None:
        if key in self._pending:
            self.duplicates += 1
            logging.warning("[%s] duplicate in-flight key %r overwritten", self.owner, key)
        self._pending[key] = self.clock()

    def _resolve(self, key: Hashable, received_at: Optional[float] = None) -> float:
        sent_at = self._pending.pop(key)
        if received_at is None:
            received_at = self.clock()
        return max(0.0, (received_at - sent_at) * 1000.0)

    def _reject(self, exc: ProtocolError) -> None:
        self.protocol_errors += 1
        logging.debug("[%s] %s", self.owner, exc)

    def discard(self) -> int:
        """Drop every unresolved entry; later responses count as protocol errors."""
        dropped = len(self._pending)
        self._pending.clear()
        self.closed = True
        if dropped:
            logging.debug("[%s] discarded %d in-flight messages at teardown", self.owner, dropped)
        return dropped


class ExactKeyTracker(CorrelationTracker):
    """Free-form matching on ``(user id, message id)``."""

    def on_send(self, key: Hashable, payload: Any = None) -> None:
        if self.closed:
            raise ProtocolError(f"send on closed tracker: {key!r}")
        self._store(key)

    def on_receive(self, key: Optional[Hashable], received_at: Optional[float] = None) -> Optional[float]:
        try:
            if self.closed:
                raise ProtocolError(f"response {key!r} after teardown")
            if key is None or key not in self._pending:
                raise ProtocolError(f"unmatched response {key!r}")
        except ProtocolError as exc:
            self._reject(exc)
            return None
        return self._resolve(key, received_at)

    @staticmethod
    def key_from_response(user_id: str, text: Any) -> Optional[Tuple[str, str]]:
        """Recover the key from an echoed JSON envelope or a bare sequence number."""
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        stripped = str(text).strip()
        if stripped.isdigit():
            return (user_id, stripped)
        try:
            message = json.loads(stripped)
        except json.JSONDecodeError:
            return None
        if not isinstance(message, dict) or "messageId" not in message:
            return None
        return (str(message.get("userId", user_id)), str(message["messageId"]))


class OrderedTransactionTracker(CorrelationTracker):
    """FIFO matching within each transaction, any order across transactions.

    A response resolves only the entry at its transaction's cursor.  A
    response that matches a later entry of some transaction is rejected as
    out of order and nothing is resolved.
    """

    def __init__(self, owner: str = "", clock: Callable[[], float] = time.perf_counter) -> None:
        super().__init__(owner, clock)
        self._expected: Dict[Hashable, List[str]] = {}
        self._cursors: Dict[Hashable, int] = {}
        self.completed = 0

    def open(self, txn_id: Hashable, expected_responses: Sequence[str]) -> None:
        if txn_id in self._expected:
            raise ValueError(f"transaction {txn_id!r} already open")
        self._expected[txn_id] = [str(r) for r in expected_responses]
        self._cursors[txn_id] = 0
        if not expected_responses:
            self._finish(txn_id)

    def on_send(self, key: Tuple[Hashable, int], payload: Any = None) -> None:
        txn_id, index = key
        if self.closed:
            raise ProtocolError(f"send on closed tracker: {key!r}")
        if txn_id not in self._expected:
            raise ValueError(f"transaction {txn_id!r} is not open")
        self._store((txn_id, index))

    def on_receive(self, response: Any, received_at: Optional[float] = None) -> Optional[float]:
        if isinstance(response, bytes):
            response = response.decode("utf-8", errors="replace")
        text = str(response)
        try:
            if self.closed:
                raise ProtocolError(f"response {text!r} after teardown")
            key = self._match(text)
        except ProtocolError as exc:
            self._reject(exc)
            return None
        txn_id, index = key
        rtt = self._resolve(key, received_at)
        self._cursors[txn_id] = index + 1
        if self._cursors[txn_id] >= len(self._expected[txn_id]):
            self._finish(txn_id)
        return rtt

    def _match(self, text: str) -> Tuple[Hashable, int]:
        for txn_id, expected in self._expected.items():
            cursor = self._cursors[txn_id]
            key = (txn_id, cursor)
            if expected[cursor] == text and key in self._pending:
                return key
        for txn_id, expected in self._expected.items():
            if text in expected[self._cursors[txn_id] + 1:]:
                raise ProtocolError(f"out-of-order response {text!r} in transaction {txn_id!r}")
        raise ProtocolError(f"unmatched response {text!r}")

    def _finish(self, txn_id: Hashable) -> None:
        del self._expected[txn_id]
        del self._cursors[txn_id]
        self.completed += 1

    def is_complete(self, txn_id: Hashable) -> bool:
        return txn_id not in self._expected

    def cursor(self, txn_id: Hashable) -> int:
        return self._cursors.get(txn_id, -1)

    def discard(self) -> int:
        self._expected.clear()
        self._cursors.clear()
        return super().discard()
