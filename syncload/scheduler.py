"""Spawn virtual users, enforce the run deadline, build the final summary."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .config import LoadConfig, RunConfig, SessionConfig
from .errors import ErrorKind
from .metrics import (
    METRIC_NAMES,
    MetricNames,
    MetricsRegistry,
    ThresholdResult,
    evaluate_thresholds,
)
from .session import Connector, Session, SessionResult, VirtualUser


@dataclass
class RunSummary:
    vus: int
    duration_ms: float
    metrics: Dict[str, Dict[str, Any]]
    results: List[SessionResult] = field(default_factory=list)
    thresholds: List[ThresholdResult] = field(default_factory=list)
    names: MetricNames = METRIC_NAMES

    @property
    def passed(self) -> bool:
        return all(t.passed for t in self.thresholds)

    def _values(self, name: str) -> Dict[str, Any]:
        return self.metrics.get(name, {}).get("values", {})

    def _count(self, name: str) -> int:
        return int(self._values(name).get("count", 0))

    def error_counts(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in ErrorKind}
        for result in self.results:
            if result.error_kind is not None:
                counts[result.error_kind.value] += 1
        counts[ErrorKind.PROTOCOL.value] = self._count(self.names.protocol_errors)
        return counts

    def as_dict(self) -> Dict[str, Any]:
        names = self.names
        seconds = self.duration_ms / 1000.0
        sent = self._count(names.messages_sent)
        received = self._count(names.messages_received)
        connecting = self._values(names.connecting)
        rtt = self._values(names.rtt)
        return {
            "totals": {
                "vus": self.vus,
                "duration": seconds,
                "iterations": self._count(names.iterations),
            },
            "connections": {
                "total": self._count(names.sessions),
                "connecting_time": {
                    "avg": connecting.get("avg", 0.0),
                    "min": connecting.get("min", 0.0),
                    "max": connecting.get("max", 0.0),
                    "p95": connecting.get("p(95)", 0.0),
                },
            },
            "messages": {
                "sent": sent,
                "received": received,
                "rate": {
                    "sent_per_second": sent / seconds if seconds else 0.0,
                    "received_per_second": received / seconds if seconds else 0.0,
                },
            },
            "rtt": {
                "avg": rtt.get("avg", 0.0),
                "min": rtt.get("min", 0.0),
                "max": rtt.get("max", 0.0),
                "median": rtt.get("med", 0.0),
                "p90": rtt.get("p(90)", 0.0),
                "p95": rtt.get("p(95)", 0.0),
            },
            "run": {
                "duration_ms": self.duration_ms,
                "bytes_received": self._count(names.bytes_received),
                "bytes_sent": self._count(names.bytes_sent),
            },
            "errors": self.error_counts(),
            "thresholds": [t.as_dict() for t in self.thresholds],
            "passed": self.passed,
        }


class Scheduler:
    def __init__(self,
                 config: RunConfig,
                 registry: Optional[MetricsRegistry] = None,
                 connector: Optional[Connector] = None,
                 names: MetricNames = METRIC_NAMES) -> None:
        self.config = config
        self.registry = registry or MetricsRegistry(max_samples=config.load.max_samples)
        self.connector = connector
        self.names = names
        self.users: List[VirtualUser] = []
        self.results: List[SessionResult] = []
        self._live: Dict[str, Session] = {}
        self._remaining_iterations: Optional[int] = None
        self._deadline: Optional[float] = None
        self._gate: Optional[asyncio.Semaphore] = None

    @property
    def live_sessions(self) -> List[Session]:
        return list(self._live.values())

    def _claim_iteration(self, loop: asyncio.AbstractEventLoop, first: bool) -> bool:
        if self._deadline is not None and loop.time() >= self._deadline:
            return False
        if self._remaining_iterations is not None:
            if self._remaining_iterations <= 0:
                return False
            self._remaining_iterations -= 1
            return True
        # with a deadline and no iteration budget, VUs loop until the deadline
        return first or self._deadline is not None

    async def _run_user(self, user: VirtualUser, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        loop = asyncio.get_running_loop()
        first = True
        while self._claim_iteration(loop, first):
            first = False
            session = Session(
                user,
                self.config.session,
                self.registry,
                connector=self.connector,
                names=self.names,
                handshake_gate=self._gate,
            )
            self._live[session.session_id] = session
            try:
                await session.run()
            finally:
                del self._live[session.session_id]
                self.results.append(session.result)

    def _register_metrics(self) -> None:
        names = self.names
        for name in (names.sessions, names.connection_failures, names.active,
                     names.messages_sent, names.messages_received, names.bytes_sent,
                     names.bytes_received, names.protocol_errors, names.transport_errors,
                     names.timeouts, names.iterations):
            self.registry.counter(name)
        self.registry.rate(names.connection_success)
        self.registry.distribution(names.connecting)
        self.registry.distribution(names.rtt)

    async def run(self) -> RunSummary:
        load = self.config.load
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        self._register_metrics()
        if load.duration_ms:
            self._deadline = loop.time() + load.duration_ms / 1000.0
        if load.iterations is not None:
            self._remaining_iterations = load.iterations
        if load.connect_concurrency > 0:
            self._gate = asyncio.Semaphore(load.connect_concurrency)

        self.users = [VirtualUser(str(load.start_index + offset)) for offset in range(load.vus)]
        ramp = load.ramp_interval_ms / 1000.0
        logging.info(
            "starting %d virtual users against %s (mode=%s, duration=%s, iterations=%s)",
            load.vus,
            self.config.session.target.url,
            self.config.session.mode.value,
            f"{load.duration_ms} ms" if load.duration_ms else "-",
            load.iterations if load.iterations is not None else "-",
        )
        tasks = [
            asyncio.create_task(self._run_user(user, index * ramp))
            for index, user in enumerate(self.users)
        ]

        timeout = None
        if self._deadline is not None:
            timeout = max(0.0, self._deadline - loop.time())
        try:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                await self._cancel_pending(pending)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                logging.error("virtual user crashed: %r", task.exception())

        duration_ms = (time.perf_counter() - started) * 1000.0
        thresholds = evaluate_thresholds(self.registry, load.thresholds)
        return RunSummary(
            vus=load.vus,
            duration_ms=duration_ms,
            metrics=self.registry.snapshot(),
            results=list(self.results),
            thresholds=thresholds,
            names=self.names,
        )

    async def _cancel_pending(self, pending: set) -> None:
        live = self.live_sessions
        logging.info("run deadline reached, stopping %d live sessions", len(live))
        for session in live:
            session.request_stop()
        grace = self.config.session.close_grace_ms / 1000.0
        _, still_running = await asyncio.wait(pending, timeout=grace)
        if still_running:
            logging.warning("forcing teardown of %d sessions after %d ms grace",
                            len(still_running), self.config.session.close_grace_ms)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)


async def run_load(vus: int,
                   session: SessionConfig,
                   duration_ms: Optional[int] = None,
                   iterations: Optional[int] = None,
                   connect_timeout_ms: Optional[int] = None,
                   load: Optional[LoadConfig] = None,
                   registry: Optional[MetricsRegistry] = None,
                   connector: Optional[Connector] = None) -> RunSummary:
    load = replace(load or LoadConfig(), vus=vus, duration_ms=duration_ms, iterations=iterations)
    if connect_timeout_ms is not None:
        session = replace(session, connect_timeout_ms=connect_timeout_ms)
    scheduler = Scheduler(RunConfig(load=load, session=session), registry=registry, connector=connector)
    return await scheduler.run()


def log_summary(summary: RunSummary) -> None:
    data = summary.as_dict()
    total = len(summary.results)
    ok = sum(1 for r in summary.results if r.ok)
    logging.info("completed sessions: total=%d ok=%d failed=%d", total, ok, total - ok)
    messages = data["messages"]
    logging.info("aggregate messages: sent=%d received=%d (%.1f/s sent, %.1f/s received)",
                 messages["sent"],
                 messages["received"],
                 messages["rate"]["sent_per_second"],
                 messages["rate"]["received_per_second"])
    rtt = data["rtt"]
    logging.info("rtt ms: avg=%.2f min=%.2f med=%.2f p90=%.2f p95=%.2f max=%.2f",
                 rtt["avg"], rtt["min"], rtt["median"], rtt["p90"], rtt["p95"], rtt["max"])
    logging.info("errors: %s", data["errors"])
    for result in summary.thresholds:
        logging.info("threshold %s %s: %s", result.metric, result.expression,
                     "pass" if result.passed else "FAIL")
