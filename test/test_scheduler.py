import asyncio
from dataclasses import replace

import pytest

from conftest import FakeConnector
from syncload.config import LoadConfig, RunConfig, SessionConfig, TargetConfig
from syncload.echo_server import running_echo_server
from syncload.metrics import parse_thresholds
from syncload.payload import PayloadMode
from syncload.scheduler import Scheduler, run_load
from syncload.session import SessionState


@pytest.mark.asyncio
class TestEndToEnd:
    async def test_five_request_response_pairs(self) -> None:
        async with running_echo_server(delay_ms=10) as server:
            session = SessionConfig(
                target=TargetConfig(url=server.url),
                mode=PayloadMode.SEQUENCE,
                message_count=5,
            )
            summary = await run_load(1, session, connect_timeout_ms=10000)

        data = summary.as_dict()
        assert data["messages"]["sent"] == 5
        assert data["messages"]["received"] == 5
        assert 0 <= data["rtt"]["min"] <= data["rtt"]["max"] < 1000
        assert data["errors"]["connection"] == 0
        assert data["connections"]["total"] == 1
        assert data["totals"]["vus"] == 1
        assert data["totals"]["iterations"] == 1
        assert summary.results[0].ok
        assert summary.passed

    async def test_structural_payloads_against_server(self) -> None:
        async with running_echo_server() as server:
            session = SessionConfig(
                target=TargetConfig(url=server.url),
                message_count=4,
                send_interval_ms=5,
            )
            summary = await run_load(3, session)
            assert server.connections == 3
            assert server.messages == 12
        data = summary.as_dict()
        assert data["messages"]["received"] == 12
        assert data["run"]["bytes_sent"] == data["run"]["bytes_received"]
        assert all(r.ok for r in summary.results)

    async def test_ordered_transactions_against_server(self) -> None:
        async with running_echo_server() as server:
            session = SessionConfig(
                target=TargetConfig(url=server.url),
                mode=PayloadMode.REQUEST,
                transactions=[
                    [{"msg": "hello", "code": 13}, {"msg": "test", "code": 42}],
                    [{"msg": "again", "code": 1}],
                ],
            )
            summary = await run_load(2, session)
        assert summary.as_dict()["messages"]["sent"] == 6
        assert summary.metrics["websocket_rtt"]["values"]["count"] == 6
        assert summary.error_counts()["protocol"] == 0


@pytest.mark.asyncio
class TestDeadline:
    async def test_deadline_terminates_every_session(self) -> None:
        config = RunConfig(
            load=LoadConfig(vus=10, duration_ms=1000),
            session=SessionConfig(
                target=TargetConfig(url="ws://fake.invalid/ws"),
                message_count=None,
                stall_timeout_ms=35000,
                close_grace_ms=200,
            ),
        )
        scheduler = Scheduler(config, connector=FakeConnector(behavior="silent"))
        summary = await asyncio.wait_for(scheduler.run(), timeout=10)

        assert len(summary.results) == 10
        assert {r.state for r in summary.results} <= {SessionState.CLOSED, SessionState.FAILED}
        assert scheduler.live_sessions == []
        assert summary.metrics["active_connections"]["values"]["count"] == 0
        assert 1000 <= summary.duration_ms < 5000

    async def test_hung_close_is_forced(self) -> None:
        config = RunConfig(
            load=LoadConfig(vus=3, duration_ms=200),
            session=SessionConfig(
                target=TargetConfig(url="ws://fake.invalid/ws"),
                message_count=None,
                close_grace_ms=100,
            ),
        )
        connector = FakeConnector(behavior="silent", close_hangs=True)
        summary = await asyncio.wait_for(Scheduler(config, connector=connector).run(), timeout=10)
        assert len(summary.results) == 3
        assert {r.state for r in summary.results} <= {SessionState.CLOSED, SessionState.FAILED}
        assert all(conn.transport.aborted for conn in connector.connections)

    async def test_hung_handshake_is_cancelled(self) -> None:
        config = RunConfig(
            load=LoadConfig(vus=2, duration_ms=200),
            session=SessionConfig(
                target=TargetConfig(url="ws://fake.invalid/ws"),
                close_grace_ms=50,
                connect_timeout_ms=60000,
            ),
        )
        summary = await Scheduler(config, connector=FakeConnector(hang=True)).run()
        assert [r.state for r in summary.results] == [SessionState.FAILED] * 2
        assert summary.error_counts()["cancelled"] == 2


@pytest.mark.asyncio
class TestIterations:
    async def test_shared_iteration_budget(self) -> None:
        config = RunConfig(
            load=LoadConfig(vus=2, iterations=5),
            session=SessionConfig(target=TargetConfig(url="ws://fake.invalid/ws"), message_count=1),
        )
        scheduler = Scheduler(config, connector=FakeConnector())
        summary = await scheduler.run()
        assert len(summary.results) == 5
        assert summary.as_dict()["totals"]["iterations"] == 5

    async def test_sequence_continues_across_sessions(self) -> None:
        config = RunConfig(
            load=LoadConfig(vus=1, iterations=2, start_index=100),
            session=SessionConfig(
                target=TargetConfig(url="ws://fake.invalid/ws"),
                mode=PayloadMode.SEQUENCE,
                message_count=3,
            ),
        )
        connector = FakeConnector()
        scheduler = Scheduler(config, connector=connector)
        await scheduler.run()
        assert scheduler.users[0].user_id == "100"
        assert scheduler.users[0].seq == 6
        assert [c.sent for c in connector.connections] == [["1", "2", "3"], ["4", "5", "6"]]

    async def test_duration_loops_sessions(self) -> None:
        config = RunConfig(
            load=LoadConfig(vus=1, duration_ms=300),
            session=SessionConfig(target=TargetConfig(url="ws://fake.invalid/ws"), message_count=1),
        )
        summary = await Scheduler(config, connector=FakeConnector()).run()
        assert len(summary.results) > 1

    async def test_connect_concurrency_bounds_handshakes(self) -> None:
        config = RunConfig(
            load=LoadConfig(vus=6, connect_concurrency=2),
            session=SessionConfig(target=TargetConfig(url="ws://fake.invalid/ws"), message_count=1),
        )
        connector = FakeConnector(handshake_delay=0.02)
        summary = await Scheduler(config, connector=connector).run()
        assert connector.max_in_flight == 2
        assert all(r.ok for r in summary.results)


@pytest.mark.asyncio
class TestThresholds:
    async def test_failed_connections_fail_the_run(self) -> None:
        config = RunConfig(
            load=LoadConfig(vus=3, thresholds=parse_thresholds({"connection_success": "rate>0.95"})),
            session=SessionConfig(target=TargetConfig(url="ws://fake.invalid/ws")),
        )
        connector = FakeConnector(error=ConnectionRefusedError("refused"))
        summary = await Scheduler(config, connector=connector).run()
        data = summary.as_dict()
        assert data["errors"]["connection"] == 3
        assert data["connections"]["total"] == 0
        assert data["thresholds"][0]["passed"] is False
        assert summary.passed is False

    async def test_passing_thresholds(self) -> None:
        thresholds = parse_thresholds({
            "connection_success": "rate>0.95",
            "websocket_rtt": "p(95)<1000",
            "protocol_errors": "count==0",
        })
        session = SessionConfig(target=TargetConfig(url="ws://fake.invalid/ws"), message_count=2)
        summary = await run_load(2, session, load=LoadConfig(thresholds=thresholds),
                                 connector=FakeConnector())
        assert [t.passed for t in summary.thresholds] == [True, True, True]
        assert summary.passed
