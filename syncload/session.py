"""One simulated client driving one persistent WebSocket session.

The session is an explicit state machine fed by a single event queue: a
reader task turns inbound frames and transport faults into events, a ticker
task emits send ticks for fixed-interval pacing, think-time is a delayed
tick, and the scheduler's deadline arrives as a stop event.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Optional, Tuple

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import Correlation, Pacing, SessionConfig, create_ssl_context
from .correlation import CorrelationTracker, ExactKeyTracker, OrderedTransactionTracker
from .errors import (
    ErrorKind,
    SessionConnectionError,
    SessionStateError,
    SessionTimeout,
    SyncLoadError,
    TransportError,
)
from .metrics import METRIC_NAMES, MetricNames, MetricsRegistry
from .payload import PayloadMode, expected_response, message_id, seeded_random

NORMAL_CLOSURE = 1000


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    SENDING = "sending"
    AWAITING_IDLE = "awaiting_idle"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


# SENDING and AWAITING_IDLE share a rank so the session can alternate between them.
STATE_RANK = {
    SessionState.CONNECTING: 0,
    SessionState.OPEN: 1,
    SessionState.SENDING: 2,
    SessionState.AWAITING_IDLE: 2,
    SessionState.CLOSING: 3,
    SessionState.CLOSED: 4,
    SessionState.FAILED: 4,
}
TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})


class EventKind(str, enum.Enum):
    MESSAGE = "message"
    CLOSED = "closed"
    ERROR = "error"
    TICK = "tick"
    STOP = "stop"


@dataclass
class SessionEvent:
    kind: EventKind
    data: Any = None
    at: float = field(default_factory=time.perf_counter)


@dataclass
class VirtualUser:
    user_id: str
    seq: int = 0
    sessions: int = 0
    rng: Any = None

    def __post_init__(self) -> None:
        if self.rng is None:
            self.rng = seeded_random("vu", self.user_id)

    def next_seq(self) -> int:
        self.seq += 1
        return self.seq


@dataclass
class SessionResult:
    user_id: str
    session_id: str
    state: SessionState = SessionState.CONNECTING
    error_kind: Optional[ErrorKind] = None
    errors: List[str] = field(default_factory=list)
    sent: int = 0
    received: int = 0
    rtt_samples: int = 0
    protocol_errors: int = 0
    pending_discarded: int = 0
    forced_close: bool = False
    connect_ms: Optional[float] = None
    duration_sec: float = 0.0

    def mark_error(self, kind: ErrorKind, message: str) -> None:
        if message not in self.errors:
            logging.warning("[%s] %s", self.session_id, message)
            self.errors.append(message)
        if self.error_kind is None:
            self.error_kind = kind

    @property
    def ok(self) -> bool:
        return self.state is SessionState.CLOSED and self.error_kind is None


Connector = Callable[..., Any]


class Session:
    def __init__(self,
                 user: VirtualUser,
                 config: SessionConfig,
                 registry: MetricsRegistry,
                 connector: Optional[Connector] = None,
                 names: MetricNames = METRIC_NAMES,
                 handshake_gate: Optional[asyncio.Semaphore] = None) -> None:
        user.sessions += 1
        self.user = user
        self.config = config
        self.registry = registry
        self.connector = connector or ws_connect
        self.names = names
        self.session_id = f"{user.user_id}#{user.sessions}"
        self.state = SessionState.CONNECTING
        self.result = SessionResult(user_id=user.user_id, session_id=self.session_id)
        self.tracker: CorrelationTracker
        if config.correlation is Correlation.ORDERED:
            self.tracker = OrderedTransactionTracker(owner=self.session_id)
        else:
            self.tracker = ExactKeyTracker(owner=self.session_id)
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._handshake_gate = handshake_gate
        self._conn: Any = None
        self._opened = False
        self._stop_requested = False
        self._tasks: List[asyncio.Task] = []
        self._timers: List[asyncio.TimerHandle] = []
        self._last_activity = 0.0
        self._transactions: Optional[Iterator[Tuple[str, List[dict]]]] = None
        self._current_txn: Optional[str] = None
        self._exhausted = False
        self._finalized = False

    # -- state machine -------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        old = self.state
        if old in TERMINAL_STATES:
            raise SessionStateError(f"{self.session_id}: {old.value} is terminal, cannot enter {new_state.value}")
        if STATE_RANK[new_state] < STATE_RANK[old]:
            raise SessionStateError(f"{self.session_id}: {old.value} -> {new_state.value} goes backwards")
        if new_state is not old:
            logging.debug("[%s] %s -> %s", self.session_id, old.value, new_state.value)
        self.state = new_state
        self.result.state = new_state

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def request_stop(self) -> None:
        """Ask for a graceful close; honoured at the next event-loop turn."""
        if self.terminal or self._stop_requested:
            return
        self._stop_requested = True
        self._events.put_nowait(SessionEvent(EventKind.STOP))

    # -- lifecycle -------------------------------------------------------

    async def run(self) -> SessionResult:
        start = time.perf_counter()
        try:
            try:
                await self._connect()
            except (SessionConnectionError, SessionTimeout) as exc:
                self._fail_connect(exc)
                return self.result
            if not self._stop_requested:
                await self._drive()
            await self._close()
        except TransportError as exc:
            self._abort()
            self.registry.counter(self.names.transport_errors).add(1)
            self._fail(exc.kind, str(exc))
        except asyncio.CancelledError:
            self._abort()
            if self.state is SessionState.CLOSING:
                self.result.forced_close = True
                self._transition(SessionState.CLOSED)
            elif not self.terminal:
                self._fail(ErrorKind.CANCELLED, f"cancelled in state {self.state.value}")
            raise
        finally:
            self.result.duration_sec = time.perf_counter() - start
            await self._teardown()
        return self.result

    async def _connect(self) -> None:
        cfg = self.config
        target = cfg.target
        url = target.endpoint_url(self.user.user_id)
        options: dict = {
            "open_timeout": None,
            "close_timeout": cfg.close_grace_ms / 1000.0,
            "max_size": cfg.max_message_bytes,
            "ping_interval": cfg.ping_interval_ms / 1000.0 if cfg.ping_interval_ms else None,
        }
        if target.headers:
            options["additional_headers"] = dict(target.headers)
        if target.secure:
            options["ssl"] = create_ssl_context(target.tls)

        gate = self._handshake_gate if self._handshake_gate is not None else contextlib.nullcontext()
        timeout = cfg.connect_timeout_ms / 1000.0 if cfg.connect_timeout_ms else None
        logging.debug("[%s] connecting to %s", self.session_id, url)
        async with gate:
            started = time.perf_counter()
            try:
                self._conn = await asyncio.wait_for(self.connector(url, **options), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise SessionTimeout(f"connect timeout after {cfg.connect_timeout_ms} ms") from exc
            except (OSError, WebSocketException, ValueError) as exc:
                raise SessionConnectionError(f"connect failed: {exc}") from exc
        connect_ms = (time.perf_counter() - started) * 1000.0

        self._opened = True
        self.result.connect_ms = connect_ms
        self.registry.distribution(self.names.connecting).observe(connect_ms)
        self.registry.rate(self.names.connection_success).add(True)
        self.registry.counter(self.names.sessions).add(1)
        self.registry.counter(self.names.active).add(1)
        self._transition(SessionState.OPEN)

    async def _drive(self) -> None:
        cfg = self.config
        loop = asyncio.get_running_loop()
        self._tasks.append(asyncio.create_task(self._reader()))
        pacing = cfg.effective_pacing
        if pacing is Pacing.INTERVAL and cfg.send_interval_ms > 0 and cfg.correlation is Correlation.EXACT:
            self._tasks.append(asyncio.create_task(self._ticker(cfg.send_interval_ms / 1000.0)))

        deadline = None
        if cfg.session_duration_ms:
            deadline = loop.time() + cfg.session_duration_ms / 1000.0
        self._last_activity = loop.time()

        self._transition(SessionState.SENDING)
        await self._send_initial()

        while not self._work_done():
            timeout = self._next_timeout(loop, deadline)
            try:
                event = await asyncio.wait_for(self._events.get(), timeout=timeout)
            except asyncio.TimeoutError:
                if deadline is not None and loop.time() >= deadline:
                    logging.debug("[%s] session duration reached", self.session_id)
                    return
                self._stalled()
                return

            if event.kind is EventKind.MESSAGE:
                self._last_activity = loop.time()
                await self._on_message(event)
            elif event.kind is EventKind.TICK:
                await self._on_tick()
            elif event.kind is EventKind.STOP:
                logging.debug("[%s] stop requested", self.session_id)
                return
            elif event.kind is EventKind.CLOSED:
                code, reason = event.data
                raise TransportError(f"connection closed by peer (code={code} reason={reason!r})")
            elif event.kind is EventKind.ERROR:
                raise TransportError(f"transport error: {event.data}") from event.data

    def _next_timeout(self, loop: asyncio.AbstractEventLoop, deadline: Optional[float]) -> Optional[float]:
        candidates = []
        if deadline is not None:
            candidates.append(deadline - loop.time())
        if self.tracker.pending_count and self.config.stall_timeout_ms > 0:
            candidates.append(self._last_activity + self.config.stall_timeout_ms / 1000.0 - loop.time())
        if not candidates:
            return None
        return max(0.0, min(candidates))

    def _stalled(self) -> None:
        self.registry.counter(self.names.timeouts).add(1)
        self.result.mark_error(
            ErrorKind.TIMEOUT,
            f"stalled: no response for {self.config.stall_timeout_ms} ms "
            f"({self.tracker.pending_count} pending)",
        )

    async def _close(self) -> None:
        self._transition(SessionState.CLOSING)
        grace = self.config.close_grace_ms / 1000.0
        try:
            await asyncio.wait_for(self._conn.close(code=NORMAL_CLOSURE, reason="done"), timeout=grace)
        except asyncio.TimeoutError:
            logging.warning("[%s] close not acknowledged within %d ms, aborting",
                            self.session_id, self.config.close_grace_ms)
            self.result.forced_close = True
            self._abort()
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"close failed: {exc}") from exc
        self._transition(SessionState.CLOSED)

    def _abort(self) -> None:
        transport = getattr(self._conn, "transport", None)
        if transport is not None:
            transport.abort()

    def _fail(self, kind: ErrorKind, message: str) -> None:
        self.result.mark_error(kind, message)
        if not self.terminal:
            self._transition(SessionState.FAILED)

    def _fail_connect(self, exc: SyncLoadError) -> None:
        self.registry.rate(self.names.connection_success).add(False)
        self.registry.counter(self.names.connection_failures).add(1)
        if exc.kind is ErrorKind.TIMEOUT:
            self.registry.counter(self.names.timeouts).add(1)
        self._fail(exc.kind, str(exc))

    async def _teardown(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        for handle in self._timers:
            handle.cancel()
        for task in self._tasks:
            task.cancel()
        self.result.pending_discarded = self.tracker.discard()
        late = self._drain_late_messages()
        if late:
            logging.debug("[%s] %d responses arrived after the last read", self.session_id, late)
        self.result.protocol_errors = self.tracker.protocol_errors
        if self._opened:
            self.registry.counter(self.names.active).add(-1)
        self.registry.counter(self.names.iterations).add(1)
        logging.debug(
            "[%s] %s sent=%d received=%d rtt=%d protocol_errors=%d discarded=%d %.3fs",
            self.session_id,
            self.state.value,
            self.result.sent,
            self.result.received,
            self.result.rtt_samples,
            self.result.protocol_errors,
            self.result.pending_discarded,
            self.result.duration_sec,
        )
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _drain_late_messages(self) -> int:
        """Count frames the reader queued after the event loop stopped reading."""
        late = 0
        while True:
            try:
                event = self._events.get_nowait()
            except asyncio.QueueEmpty:
                return late
            if event.kind is EventKind.MESSAGE:
                late += 1
                self._record_inbound(event)

    # -- background tasks ----------------------------------------------

    async def _reader(self) -> None:
        conn = self._conn
        try:
            async for message in conn:
                self._events.put_nowait(SessionEvent(EventKind.MESSAGE, message))
        except ConnectionClosed as exc:
            self._events.put_nowait(SessionEvent(EventKind.ERROR, exc))
            return
        except OSError as exc:
            self._events.put_nowait(SessionEvent(EventKind.ERROR, exc))
            return
        code = getattr(conn, "close_code", None)
        reason = getattr(conn, "close_reason", None)
        self._events.put_nowait(SessionEvent(EventKind.CLOSED, (code, reason)))

    async def _ticker(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._events.put_nowait(SessionEvent(EventKind.TICK))

    def _tick_later(self, delay_ms: int) -> None:
        loop = asyncio.get_running_loop()
        self._timers.append(
            loop.call_later(delay_ms / 1000.0, self._events.put_nowait, SessionEvent(EventKind.TICK))
        )

    # -- sending ---------------------------------------------------------

    def _budget_left(self) -> bool:
        count = self.config.message_count
        return count is None or self.result.sent < count

    def _work_done(self) -> bool:
        if self.tracker.pending_count:
            return False
        if self.config.correlation is Correlation.ORDERED:
            return self._current_txn is None and self._transactions is not None and self._exhausted
        return not self._budget_left()

    async def _send_initial(self) -> None:
        cfg = self.config
        if cfg.correlation is Correlation.ORDERED:
            self._transactions = self._iter_transactions()
            await self._start_next_transaction()
            return
        pacing = cfg.effective_pacing
        if pacing is Pacing.BURST:
            burst = cfg.message_count if cfg.message_count is not None else cfg.initial_burst
        elif pacing is Pacing.REQUEST_RESPONSE:
            burst = 1
        else:
            burst = cfg.initial_burst
        for index in range(max(0, burst)):
            if not self._budget_left():
                break
            if index and cfg.burst_delay_ms:
                await asyncio.sleep(cfg.burst_delay_ms / 1000.0)
            await self._send_next()

    async def _send_next(self) -> None:
        if not self._budget_left():
            return
        cfg = self.config
        user_id = self.user.user_id
        seq = self.user.next_seq()
        text = cfg.payload.generate(user_id, seq, cfg.mode, rng=self.user.rng)
        if cfg.mode is PayloadMode.SEQUENCE:
            key = (user_id, str(seq))
        else:
            key = (user_id, message_id(user_id, seq))
        await self._send(text, key)
        if not self._budget_left():
            self._transition(SessionState.AWAITING_IDLE)

    async def _send(self, text: str, key: Any) -> None:
        loop = asyncio.get_running_loop()
        if not self.tracker.pending_count:
            self._last_activity = loop.time()
        self.tracker.on_send(key, text)
        try:
            await self._conn.send(text)
        except ConnectionClosed as exc:
            raise TransportError(f"send failed: {exc}") from exc
        except OSError as exc:
            raise TransportError(f"send failed: {exc}") from exc
        self.result.sent += 1
        self.registry.counter(self.names.messages_sent).add(1)
        self.registry.counter(self.names.bytes_sent).add(len(text.encode("utf-8")))

    def _iter_transactions(self) -> Iterator[Tuple[str, List[dict]]]:
        cfg = self.config
        if cfg.transactions:
            for index, txn in enumerate(cfg.transactions):
                yield f"t{index}", txn
            return
        for index in itertools.count():
            if not self._budget_left():
                return
            seq = self.user.seq + 1
            yield f"t{index}", [cfg.payload.generate_dict(self.user.user_id, seq, PayloadMode.REQUEST)]

    async def _start_next_transaction(self) -> None:
        tracker = self.tracker
        transactions = self._transactions
        if not isinstance(tracker, OrderedTransactionTracker) or transactions is None:
            raise SessionStateError(f"{self.session_id}: transactions need ordered correlation")
        try:
            txn_id, messages = next(transactions)
        except StopIteration:
            self._current_txn = None
            self._exhausted = True
            self._transition(SessionState.AWAITING_IDLE)
            return
        self._current_txn = txn_id
        self._transition(SessionState.SENDING)
        tracker.open(txn_id, [expected_response(m["msg"], m["code"]) for m in messages])
        for index, item in enumerate(messages):
            if index and self.config.burst_delay_ms:
                await asyncio.sleep(self.config.burst_delay_ms / 1000.0)
            self.user.next_seq()
            await self._send(json.dumps({"msg": item["msg"], "code": item["code"]}), (txn_id, index))
        if tracker.is_complete(txn_id):
            await self._advance_transaction()

    async def _advance_transaction(self) -> None:
        self._current_txn = None
        if self.config.think_time_ms:
            self._tick_later(self.config.think_time_ms)
        else:
            await self._start_next_transaction()

    # -- receiving -------------------------------------------------------

    def _record_inbound(self, event: SessionEvent) -> Optional[float]:
        message = event.data
        size = len(message) if isinstance(message, bytes) else len(str(message).encode("utf-8"))
        self.result.received += 1
        self.registry.counter(self.names.messages_received).add(1)
        self.registry.counter(self.names.bytes_received).add(size)

        tracker = self.tracker
        if isinstance(tracker, OrderedTransactionTracker):
            rtt = tracker.on_receive(message, received_at=event.at)
        else:
            key = ExactKeyTracker.key_from_response(self.user.user_id, message)
            rtt = tracker.on_receive(key, received_at=event.at)
        if rtt is None:
            self.registry.counter(self.names.protocol_errors).add(1)
            return None
        self.result.rtt_samples += 1
        self.registry.distribution(self.names.rtt).observe(rtt)
        return rtt

    async def _on_message(self, event: SessionEvent) -> None:
        if self._record_inbound(event) is None:
            return
        tracker = self.tracker
        if isinstance(tracker, OrderedTransactionTracker):
            if self._current_txn is not None and tracker.is_complete(self._current_txn):
                await self._advance_transaction()
        elif self.config.effective_pacing is Pacing.REQUEST_RESPONSE and self._budget_left():
            if self.config.think_time_ms:
                self._tick_later(self.config.think_time_ms)
            else:
                await self._send_next()

    async def _on_tick(self) -> None:
        if self.config.correlation is Correlation.ORDERED:
            if self._current_txn is None and not self._exhausted:
                await self._start_next_transaction()
            return
        if self._budget_left():
            await self._send_next()
