"""
Unit tests for the execution gateway.

``idle_gateway`` never starts the scheduler thread, so tests drive the
scheduler by hand; ``live_gateway`` runs real snippets end to end.
"""
import asyncio
import sys
import time
from unittest.mock import patch

import pytest

from sandpit.config.defaults import GatewayConfig, PoolConfig, QuotaConfig
from sandpit.config.service import ServiceConfig
from sandpit.core.gateway import ExecutionGateway
from sandpit.core.models import Outcome, RequestStatus
from sandpit.core.registry import RuntimeRegistry
from sandpit.core.scheduler.scheduler import Scheduler
from sandpit.exceptions import (
    BackpressureError,
    GatewayNotInitializedError,
    InvalidLanguageError,
    PayloadTooLargeError,
    RequestNotFoundError,
    SessionRejectedError,
    ThrottledError,
)
from sandpit.executor.sandbox import SandboxConfig, SandboxLevel

from helpers import FakeSubstrate, python_profile

RESULT_TIMEOUT = 15


def _config(tmp_path, gateway=None, pool=None, quota=None, profile=None):
    return ServiceConfig(
        registry=RuntimeRegistry([profile or python_profile()]),
        gateway=gateway or GatewayConfig(),
        pool=pool or PoolConfig(max_workers=2, warm_target=1),
        quota=quota or QuotaConfig(bucket_capacity=100, max_concurrent=10),
        sandbox=SandboxConfig(level=SandboxLevel.SUBPROCESS, workspace_root=str(tmp_path)),
    )


def _idle_gateway(config):
    with patch.object(Scheduler, "start", lambda self: self._message_bus.signal_ready()):
        gateway = ExecutionGateway(config, substrate_factory=FakeSubstrate)
        gateway.initialize()
    return gateway


def _deliver(gateway):
    """Run one scheduler pass and apply its messages to the gateway."""
    gateway._scheduler.run_once()
    for message in gateway._message_bus.drain_from_scheduler(timeout=0.01):
        gateway.handle_scheduler_message(message)


@pytest.fixture
def idle_gateway(tmp_path):
    gateway = _idle_gateway(_config(tmp_path))
    yield gateway
    gateway.cleanup()


@pytest.fixture
def live_gateway(tmp_path):
    gateway = ExecutionGateway(_config(tmp_path))
    gateway.initialize()
    yield gateway
    gateway.cleanup()


def _run(gateway, scenario):
    async def main():
        await gateway.start_monitor()
        try:
            return await scenario()
        finally:
            gateway.cleanup()

    return asyncio.run(main())


class TestSubmitValidation:
    def test_not_initialized(self, tmp_path):
        gateway = ExecutionGateway(_config(tmp_path))
        with pytest.raises(GatewayNotInitializedError):
            gateway.submit("python", "print(1)", "s1")

    def test_unknown_language(self, idle_gateway):
        with pytest.raises(InvalidLanguageError):
            idle_gateway.submit("ruby", "puts 1", "s1")

    def test_unregistered_language(self, idle_gateway):
        with pytest.raises(InvalidLanguageError):
            idle_gateway.submit("javascript", "console.log(1)", "s1")

    def test_source_too_large(self, tmp_path):
        gateway = _idle_gateway(_config(tmp_path, gateway=GatewayConfig(max_source_bytes=10)))
        try:
            with pytest.raises(PayloadTooLargeError) as exc_info:
                gateway.submit("python", "print('hello world')", "s1")
            assert exc_info.value.field == "source"
            assert gateway.quota.session_count == 0
        finally:
            gateway.cleanup()

    def test_stdin_too_large(self, tmp_path):
        gateway = _idle_gateway(_config(tmp_path, gateway=GatewayConfig(max_stdin_bytes=4)))
        try:
            with pytest.raises(PayloadTooLargeError) as exc_info:
                gateway.submit("python", "input()", "s1", stdin="too long")
            assert exc_info.value.field == "stdin"
        finally:
            gateway.cleanup()

    def test_accepted_request_is_queued(self, idle_gateway):
        handle = idle_gateway.submit("Python", "print(1)", "s1")
        assert handle.status == RequestStatus.QUEUED
        tracker = idle_gateway.aggregator.get(handle.request_id)
        assert tracker.request.language == "python"


class TestAdmission:
    def test_throttled(self, tmp_path):
        config = _config(tmp_path, quota=QuotaConfig(bucket_capacity=1, refill_rate=0.5, max_concurrent=5))
        gateway = _idle_gateway(config)
        try:
            gateway.submit("python", "print(1)", "s1")
            with pytest.raises(ThrottledError) as exc_info:
                gateway.submit("python", "print(2)", "s1")
            assert exc_info.value.retry_after == pytest.approx(2.0, abs=0.1)
            gateway.submit("python", "print(3)", "s2")
        finally:
            gateway.cleanup()

    def test_flagged_session_rejected(self, tmp_path):
        gateway = _idle_gateway(_config(tmp_path, quota=QuotaConfig(abuse_threshold=1)))
        try:
            gateway.quota.admit("s1")
            gateway.quota.release("s1", Outcome.RESOURCE_EXCEEDED)
            with pytest.raises(SessionRejectedError):
                gateway.submit("python", "print(1)", "s1")
        finally:
            gateway.cleanup()

    def test_backpressure_refunds_quota(self, tmp_path):
        gateway = _idle_gateway(_config(tmp_path, pool=PoolConfig(max_workers=1, max_pending_requests=1)))
        try:
            gateway.submit("python", "print(1)", "s1")
            with pytest.raises(BackpressureError):
                gateway.submit("python", "print(2)", "s2")
            assert gateway.quota.snapshot("s2")["in_flight"] == 0
            assert len(gateway.aggregator) == 1
        finally:
            gateway.cleanup()


class TestStatusAndCancel:
    def test_status_reports_queue_position(self, idle_gateway):
        first = idle_gateway.submit("python", "print(1)", "s1")
        second = idle_gateway.submit("python", "print(2)", "s1")
        idle_gateway._scheduler.run_once()

        page = idle_gateway.get_status(second.request_id)
        assert page.status == RequestStatus.QUEUED
        assert page.queue_position == 2
        assert idle_gateway.get_status(first.request_id).queue_position == 1

    def test_unknown_request(self, idle_gateway):
        with pytest.raises(RequestNotFoundError):
            idle_gateway.get_status("nope")
        with pytest.raises(RequestNotFoundError):
            idle_gateway.cancel("nope")
        with pytest.raises(RequestNotFoundError):
            idle_gateway.stream("nope")

    def test_cancel_queued_request(self, idle_gateway):
        handle = idle_gateway.submit("python", "print(1)", "s1")
        idle_gateway._scheduler.run_once()
        assert idle_gateway.cancel(handle.request_id) is True
        assert idle_gateway.aggregator.get(handle.request_id).status == RequestStatus.CANCELLED
        _deliver(idle_gateway)

        page = idle_gateway.get_status(handle.request_id)
        assert page.status == RequestStatus.CANCELLED
        assert page.result.outcome == Outcome.CANCELLED
        assert idle_gateway.quota.snapshot("s1")["in_flight"] == 0

    def test_polling_the_result_acknowledges_it(self, idle_gateway):
        handle = idle_gateway.submit("python", "print(1)", "s1")
        idle_gateway.cancel(handle.request_id)
        _deliver(idle_gateway)

        assert idle_gateway.get_status(handle.request_id).result is not None
        with pytest.raises(RequestNotFoundError):
            idle_gateway.get_status(handle.request_id)

    def test_cancel_after_finish_returns_false(self, idle_gateway):
        handle = idle_gateway.submit("python", "print(1)", "s1")
        idle_gateway.cancel(handle.request_id)
        _deliver(idle_gateway)
        assert idle_gateway.cancel(handle.request_id) is False


class TestSweep:
    def test_request_past_deadline_times_out(self, tmp_path):
        config = _config(
            tmp_path,
            gateway=GatewayConfig(queue_timeout=0.01, sweep_interval=0.01),
            profile=python_profile(wall_clock_limit=0.01),
        )
        gateway = _idle_gateway(config)
        try:
            handle = gateway.submit("python", "print(1)", "s1")
            time.sleep(0.1)
            assert gateway.sweep() == [handle.request_id]

            _deliver(gateway)
            tracker = gateway.aggregator.get(handle.request_id)
            assert tracker.result.outcome == Outcome.TIMED_OUT
            assert gateway.quota.snapshot("s1")["in_flight"] == 0
        finally:
            gateway.cleanup()


class TestServiceInfo:
    def test_list_runtimes(self, idle_gateway):
        assert idle_gateway.list_runtimes() == [python_profile().describe()]

    def test_service_status(self, idle_gateway):
        idle_gateway.submit("python", "print(1)", "s1")
        status = idle_gateway.get_service_status()
        assert status["sandbox_level"] == "subprocess"
        assert status["runtimes"] == ["python"]
        assert status["tracked_requests"] == 1
        assert status["sessions"] == 1
        assert status["scheduler"]["pending_request_count"] == 1
        assert status["pool"]["max_workers"] == 2

    def test_host_sandbox_level_warns_at_startup(self, tmp_path, caplog):
        with caplog.at_level("WARNING", logger="sandpit.core.gateway"):
            gateway = _idle_gateway(_config(tmp_path))
        gateway.cleanup()
        assert "shares the host filesystem" in caplog.text

    def test_docker_level_starts_quietly(self, tmp_path, caplog):
        config = _config(tmp_path)
        config.sandbox.level = SandboxLevel.DOCKER
        with caplog.at_level("WARNING", logger="sandpit.core.gateway"):
            gateway = _idle_gateway(config)
        gateway.cleanup()
        assert "shares the host filesystem" not in caplog.text


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups required")
class TestEndToEnd:
    def test_print_completes(self, live_gateway):
        async def scenario():
            handle = live_gateway.submit("python", "print(1+1)", "s1")
            result = await live_gateway.aggregator.wait_result(handle.request_id, timeout=RESULT_TIMEOUT)
            page = live_gateway.get_status(handle.request_id)
            return result, page

        result, page = _run(live_gateway, scenario)
        assert result.outcome == Outcome.COMPLETED
        assert result.stdout == "2\n"
        assert result.exit_code == 0
        assert page.events[-1]["type"] == "result"
        assert len(live_gateway.aggregator) == 0
        assert live_gateway.quota.snapshot("s1")["in_flight"] == 0

    def test_stream_events(self, live_gateway):
        async def scenario():
            handle = live_gateway.submit("python", "print('a')\nprint('b')\n", "s1")
            events = []
            async for event in live_gateway.stream(handle.request_id):
                events.append(event)
            return events

        events = _run(live_gateway, scenario)
        assert events[-1]["type"] == "result"
        assert events[-1]["outcome"] == "Completed"
        assert "".join(e["data"] for e in events if e["type"] == "stdout") == "a\nb\n"

    def test_cancel_running_request(self, live_gateway):
        async def scenario():
            handle = live_gateway.submit("python", "import time\ntime.sleep(30)\n", "s1")
            tracker = live_gateway.aggregator.get(handle.request_id)
            for _ in range(RESULT_TIMEOUT * 20):
                if tracker.status == RequestStatus.RUNNING:
                    break
                await asyncio.sleep(0.05)
            live_gateway.cancel(handle.request_id)
            return await live_gateway.aggregator.wait_result(handle.request_id, timeout=RESULT_TIMEOUT)

        result = _run(live_gateway, scenario)
        assert result.outcome == Outcome.CANCELLED

    def test_sessions_run_side_by_side(self, live_gateway):
        async def scenario():
            handles = [
                live_gateway.submit("python", f"print({i} * 2)", f"s{i}")
                for i in range(3)
            ]
            return await asyncio.gather(*[
                live_gateway.aggregator.wait_result(h.request_id, timeout=RESULT_TIMEOUT)
                for h in handles
            ])

        results = _run(live_gateway, scenario)
        assert [r.stdout for r in results] == ["0\n", "2\n", "4\n"]
