"""
HealthMonitor tests: status ladder, stability score, healing, retry
decisions and prompt adaptation.
"""
import asyncio
import json
import logging
from io import StringIO

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from logging_setup import JSONFormatter

from voice_agent.health import (
    DATE_CHECK_MODIFIER,
    PLAIN_TEXT_MODIFIER,
    SAFE_MODE_MODIFIER,
    HealthMonitor,
    LogLevel,
    ModuleName,
    ModuleStatus,
    compute_stability_score,
    resolve_module,
)


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


def ok_check(result=True):
    async def check():
        return result
    return check


@pytest.fixture
def info_logs():
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    saved = root.handlers, root.level
    root.handlers = [handler]
    root.setLevel(logging.INFO)

    yield buffer

    root.handlers, level = saved
    root.setLevel(level)


class TestStatusLadder:
    def test_error_count_drives_status(self):
        monitor = HealthMonitor()
        statuses = [monitor.module(ModuleName.NETWORK).status]

        for i in range(4):
            monitor.log_event(LogLevel.ERROR, "network", f"failure {i}")
            statuses.append(monitor.module(ModuleName.NETWORK).status)

        assert statuses == [
            ModuleStatus.HEALTHY,
            ModuleStatus.DEGRADED,
            ModuleStatus.DEGRADED,
            ModuleStatus.DEGRADED,
            ModuleStatus.CRITICAL,
        ]
        assert monitor.module(ModuleName.NETWORK).last_error == "failure 3"

    def test_errors_are_logged_with_module_field(self, info_logs):
        monitor = HealthMonitor()

        monitor.log_event(LogLevel.ERROR, "network", "socket reset")
        monitor.log_event(LogLevel.FATAL, "audio", "device gone")

        entries = [json.loads(line) for line in info_logs.getvalue().splitlines()]
        assert [(e["severity"], e["health_module"], e["error"]) for e in entries] == [
            ("warning", "network", "socket reset"),
            ("critical", "audio", "device gone"),
        ]
        assert monitor.module(ModuleName.NETWORK).error_count == 1

    def test_info_and_warn_leave_modules_alone(self):
        monitor = HealthMonitor()

        monitor.log_event(LogLevel.INFO, "network", "reconnected")
        monitor.log_event("warn", "network", "slow")

        assert monitor.module(ModuleName.NETWORK).status == ModuleStatus.HEALTHY
        assert monitor.stability_score == 100
        assert len(monitor.logs()) == 2

    def test_unknown_component_is_logged_only(self):
        monitor = HealthMonitor()

        monitor.log_event(LogLevel.ERROR, "billing", "boom")

        assert all(monitor.module(m).status == ModuleStatus.HEALTHY for m in ModuleName)
        assert monitor.stability_score == 98

    def test_logs_are_bounded(self):
        monitor = HealthMonitor(max_logs=3)

        for i in range(5):
            monitor.log_event(LogLevel.INFO, "ui", f"line {i}")

        assert [log.message for log in monitor.logs()] == ["line 2", "line 3", "line 4"]

    @pytest.mark.parametrize("component, expected", [
        ("database", ModuleName.PERSISTENCE),
        ("audio", ModuleName.AUDIO_SUBSYSTEM),
        ("AI_CORE", ModuleName.AI_CORE),
        (ModuleName.NETWORK, ModuleName.NETWORK),
        ("billing", None),
    ])
    def test_resolve_module(self, component, expected):
        assert resolve_module(component) == expected


class TestStabilityScore:
    def test_formula(self):
        assert compute_stability_score(0, 0) == 100
        assert compute_stability_score(3, 1) == 79

    def test_clamped(self):
        assert compute_stability_score(100, 5) == 0
        assert compute_stability_score(-10, 0) == 100

    def test_tracks_errors_and_unhealthy_modules(self):
        monitor = HealthMonitor()

        monitor.log_event(LogLevel.ERROR, "network", "a")
        assert monitor.stability_score == 83

        monitor.log_event(LogLevel.FATAL, "persistence", "b")
        assert monitor.stability_score == 66

    def test_old_errors_age_out(self):
        clock = FakeClock()
        monitor = HealthMonitor(now=clock)
        monitor.log_event(LogLevel.ERROR, "network", "a")

        clock.advance(25 * 60 * 60)
        monitor.log_event(LogLevel.INFO, "network", "tick")

        # the module is still degraded; only the error penalty expired
        assert monitor.stability_score == 85


class TestHealing:
    @pytest.mark.asyncio
    async def test_successful_heal_resets_module(self):
        monitor = HealthMonitor({ModuleName.NETWORK: ok_check(True)})
        monitor.log_event(LogLevel.ERROR, "network", "a")

        action = await monitor.attempt_heal(ModuleName.NETWORK)

        health = monitor.module(ModuleName.NETWORK)
        assert action.success is True
        assert action.action == "Flushing API cache and retrying connection"
        assert health.status == ModuleStatus.HEALTHY
        assert health.error_count == 0
        assert health.last_heal_timestamp is not None

    @pytest.mark.asyncio
    async def test_failed_heal_marks_critical(self):
        monitor = HealthMonitor({ModuleName.PERSISTENCE: ok_check(False)})

        action = await monitor.attempt_heal(ModuleName.PERSISTENCE)

        assert action.success is False
        assert action.result_message == "Manual intervention required"
        assert monitor.module(ModuleName.PERSISTENCE).status == ModuleStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_missing_check_counts_as_failure(self):
        monitor = HealthMonitor()

        action = await monitor.attempt_heal(ModuleName.USER_INTERFACE)

        assert action.success is False
        assert action.action == "General diagnostic restart"

    @pytest.mark.asyncio
    async def test_slow_check_times_out(self):
        async def hang():
            await asyncio.sleep(10)
            return True

        monitor = HealthMonitor({ModuleName.AUDIO_SUBSYSTEM: hang}, heal_timeout_s=0.01)

        action = await monitor.attempt_heal(ModuleName.AUDIO_SUBSYSTEM)

        assert action.success is False
        assert monitor.module(ModuleName.AUDIO_SUBSYSTEM).status == ModuleStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_raising_check_counts_as_failure(self):
        async def broken():
            raise RuntimeError("no device")

        monitor = HealthMonitor({ModuleName.AUDIO_SUBSYSTEM: broken})

        action = await monitor.attempt_heal(ModuleName.AUDIO_SUBSYSTEM)

        assert action.success is False

    @pytest.mark.asyncio
    async def test_second_error_schedules_heal(self):
        monitor = HealthMonitor({ModuleName.NETWORK: ok_check(True)})

        monitor.log_event(LogLevel.ERROR, "network", "first")
        assert monitor.healing_history() == []

        monitor.log_event(LogLevel.ERROR, "network", "second")
        await monitor.wait_for_heals()

        assert len(monitor.healing_history()) == 1
        assert monitor.module(ModuleName.NETWORK).status == ModuleStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_ai_core_heal_records_learning(self):
        monitor = HealthMonitor({ModuleName.AI_CORE: ok_check(True)})

        await monitor.attempt_heal(ModuleName.AI_CORE)

        metric = monitor.learning("ai_error_rate")
        assert metric.value == 1
        assert metric.threshold == 5

    @pytest.mark.asyncio
    async def test_heal_emits_event(self, capsys):
        monitor = HealthMonitor({ModuleName.NETWORK: ok_check(True)})

        await monitor.attempt_heal(ModuleName.NETWORK)

        assert '"event_type": "health.heal_attempted"' in capsys.readouterr().out


class TestRetryDecisions:
    def test_exponential_backoff_then_give_up(self):
        monitor = HealthMonitor()
        error = ConnectionResetError("reset by peer")

        decisions = [monitor.should_retry(error, attempt) for attempt in range(4)]

        assert [(d.retry, d.delay_ms) for d in decisions] == [
            (True, 1000), (True, 2000), (True, 4000), (False, 0),
        ]

    @pytest.mark.parametrize("error, expected", [
        ("Network error while streaming", True),
        ("Connection closed", True),
        ("upstream returned 503", True),
        ("fetch failed", True),
        ("Request aborted", True),
        ("received 1011 (internal error) Internal error encountered.", True),
        (ConnectionRefusedError(), True),
        ("invalid api key", False),
        ("status 404", False),
        (None, False),
    ])
    def test_retryable_classification(self, error, expected):
        assert HealthMonitor.is_retryable(error) is expected

    def test_abnormal_websocket_close_is_retried(self):
        error = ConnectionClosedError(Close(1011, "Internal error encountered."), None)

        decision = HealthMonitor().should_retry(error, 0)

        assert (decision.retry, decision.delay_ms) == (True, 1000)

    def test_non_retryable_never_retries(self):
        decision = HealthMonitor().should_retry(ValueError("bad request"), 0)

        assert decision.retry is False


class TestAdaptiveInstruction:
    def test_no_modifiers_when_healthy(self):
        assert HealthMonitor().adaptive_instruction("BASE") == "BASE"

    def test_safe_mode_below_seventy(self):
        monitor = HealthMonitor()
        monitor.log_event(LogLevel.ERROR, "network", "a")
        monitor.log_event(LogLevel.ERROR, "persistence", "b")

        assert monitor.adaptive_instruction("BASE") == "BASE" + SAFE_MODE_MODIFIER

    def test_learned_metrics(self):
        monitor = HealthMonitor()
        monitor.record_learning("ai_error_rate", 1, "Reduced prompt complexity")
        for _ in range(3):
            monitor.record_learning("user_date_corrections", 1, "Date check")

        assert monitor.adaptive_instruction("BASE") == "BASE" + PLAIN_TEXT_MODIFIER + DATE_CHECK_MODIFIER

    def test_two_date_corrections_are_tolerated(self):
        monitor = HealthMonitor()
        monitor.record_learning("user_date_corrections", 1, "Date check")
        monitor.record_learning("user_date_corrections", 1, "Date check")

        assert monitor.adaptive_instruction("BASE") == "BASE"


class TestReport:
    def test_healthy(self):
        report = HealthMonitor().report()

        assert report.status == "healthy"
        assert report.stability_score == 100
        assert report.issues == []
        assert {m["name"] for m in report.modules} == {m.value for m in ModuleName}

    def test_degraded(self):
        monitor = HealthMonitor()
        monitor.log_event(LogLevel.ERROR, "network", "a")
        monitor.log_event(LogLevel.ERROR, "persistence", "b")

        report = monitor.report()

        assert report.status == "degraded"
        assert report.issues == ["a", "b"]

    def test_critical(self):
        monitor = HealthMonitor()
        for component in ("network", "persistence", "audio", "ai_core"):
            monitor.log_event(LogLevel.ERROR, component, "down")

        report = monitor.report()

        assert report.status == "critical"
        assert report.to_dict()["stability_score"] == 32

    @pytest.mark.asyncio
    async def test_health_check_logs_failed_checks(self):
        async def broken_store():
            raise RuntimeError("disk gone")

        monitor = HealthMonitor()

        report = await monitor.run_health_check(ai_check=ok_check(False), persistence_check=broken_store)

        assert monitor.module(ModuleName.AI_CORE).last_error == "Ping failed"
        assert monitor.module(ModuleName.PERSISTENCE).last_error == "disk gone"
        assert set(report.issues) == {"Ping failed", "disk gone"}

    @pytest.mark.asyncio
    async def test_health_check_measures_ai_latency(self):
        clock = FakeClock()

        async def slow_ai():
            clock.advance(0.25)
            return True

        monitor = HealthMonitor(now=clock)

        report = await monitor.run_health_check(ai_check=slow_ai)

        assert monitor.module(ModuleName.AI_CORE).latency_ms == pytest.approx(250.0)
        assert report.status == "healthy"
