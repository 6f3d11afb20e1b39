"""
Process-wide health supervision.

Tracks per-module health, derives a stability score, attempts bounded
auto-remediation through pluggable checks, decides retry/backoff for
transport errors, and adapts the system prompt to what it has learned.

One HealthMonitor is built at the composition root and shared by every
session; its state outlives individual sessions.
"""

from __future__ import annotations

import asyncio
import re
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from websockets.exceptions import ConnectionClosedError

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity

logger = get_logger(LogComponent.HEALTH)


class ModuleName(str, Enum):
    AI_CORE = "ai_core"
    AUDIO_SUBSYSTEM = "audio_subsystem"
    NETWORK = "network"
    PERSISTENCE = "persistence"
    USER_INTERFACE = "user_interface"


class ModuleStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    HEALING = "healing"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


ERROR_LEVELS = (LogLevel.ERROR, LogLevel.FATAL)

# Aliases accepted for log components besides the enum values
_MODULE_ALIASES = {
    "database": ModuleName.PERSISTENCE,
    "audio": ModuleName.AUDIO_SUBSYSTEM,
    "ui": ModuleName.USER_INTERFACE,
}

HEAL_ACTIONS = {
    ModuleName.AUDIO_SUBSYSTEM: "Resetting audio streams",
    ModuleName.NETWORK: "Flushing API cache and retrying connection",
    ModuleName.PERSISTENCE: "Re-indexing reservation store",
    ModuleName.AI_CORE: "Simplifying system prompt (token reduction)",
}
DEFAULT_HEAL_ACTION = "General diagnostic restart"

SAFE_MODE_MODIFIER = "\n[SYSTEM MODE: SAFE] Keep responses extremely short. Confirm every step.\n"
PLAIN_TEXT_MODIFIER = "\n[ADAPTATION] Avoid complex JSON structures. Use plain text if possible.\n"
DATE_CHECK_MODIFIER = (
    "\n[ADAPTATION] When asking for dates, explicitly ask for the YEAR. Verify dates twice.\n"
)

SAFE_MODE_BELOW = 70
DATE_CORRECTIONS_ABOVE = 2
LEARNING_THRESHOLD = 5
RECENT_WINDOW_S = 24 * 60 * 60

_RETRYABLE = re.compile(
    r"network error|connection (?:reset|refused|lost|closed)|aborted|fetch failed|\b(?:5\d\d|1006|1011)\b",
    re.IGNORECASE,
)

HealthCheck = Callable[[], Awaitable[bool]]


@dataclass
class ModuleHealth:
    name: ModuleName
    status: ModuleStatus = ModuleStatus.HEALTHY
    error_count: int = 0
    latency_ms: float = 0.0
    last_error: Optional[str] = None
    last_heal_timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["name"] = self.name.value
        data["status"] = self.status.value
        return data


@dataclass
class HealingAction:
    module: ModuleName
    action: str
    timestamp: float
    success: bool
    result_message: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["module"] = self.module.value
        return data


@dataclass
class LearningMetric:
    metric: str
    value: float
    adaptation_applied: str
    threshold: float = LEARNING_THRESHOLD


@dataclass
class SystemLog:
    timestamp: float
    level: LogLevel
    component: str
    message: str
    resolved: bool = False


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int


@dataclass
class HealthReport:
    last_check: str
    status: str
    issues: List[str]
    stability_score: int
    modules: List[Dict[str, Any]]
    recent_heals: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_stability_score(recent_errors: int, unhealthy_modules: int) -> int:
    """100 minus 2 per recent error and 15 per unhealthy module, clamped to [0, 100]."""
    score = 100 - 2 * recent_errors - 15 * unhealthy_modules
    return max(0, min(100, score))


def resolve_module(component: Any) -> Optional[ModuleName]:
    if isinstance(component, ModuleName):
        return component
    key = str(component).strip().lower()
    try:
        return ModuleName(key)
    except ValueError:
        return _MODULE_ALIASES.get(key)


class HealthMonitor:
    """
    Health state machine per module.

    Mutations are serialized by a lock; heals run as tasks on the running
    event loop and only when one is running.
    """

    def __init__(
        self,
        checks: Optional[Mapping[ModuleName, HealthCheck]] = None,
        *,
        now: Callable[[], float] = time.time,
        heal_timeout_s: float = 5.0,
        max_logs: int = 100,
        max_heals: int = 50,
        max_attempts: int = 3,
    ):
        self._checks: Dict[ModuleName, HealthCheck] = dict(checks or {})
        self._now = now
        self._heal_timeout_s = heal_timeout_s
        self.max_attempts = max_attempts

        self._lock = threading.RLock()
        self._modules: Dict[ModuleName, ModuleHealth] = {
            name: ModuleHealth(name=name) for name in ModuleName
        }
        self._logs: deque[SystemLog] = deque(maxlen=max_logs)
        self._heals: deque[HealingAction] = deque(maxlen=max_heals)
        self._learning: Dict[str, LearningMetric] = {}
        self._stability_score = 100
        self._heal_tasks: Set[asyncio.Task] = set()

        self.emitter = EventEmitter(ObsComponent.HEALTH)

    # --- Read side ---

    @property
    def stability_score(self) -> int:
        with self._lock:
            return self._stability_score

    def module(self, name: ModuleName) -> ModuleHealth:
        with self._lock:
            return self._modules[name]

    def learning(self, metric: str) -> Optional[LearningMetric]:
        with self._lock:
            return self._learning.get(metric)

    def logs(self) -> List[SystemLog]:
        with self._lock:
            return list(self._logs)

    def healing_history(self) -> List[HealingAction]:
        with self._lock:
            return list(self._heals)

    def set_check(self, module: ModuleName, check: HealthCheck) -> None:
        self._checks[module] = check

    # --- Event logging ---

    def log_event(self, level: LogLevel | str, component: Any, message: str) -> None:
        """
        Record a system log line and update the matching module.

        A module that was already degraded or critical when the error
        arrived gets a heal attempt scheduled.
        """
        level = LogLevel(level)
        module = resolve_module(component)
        heal_needed = False

        with self._lock:
            self._logs.append(SystemLog(
                timestamp=self._now(),
                level=level,
                component=module.value if module else str(component),
                message=message,
            ))

            if module is not None and level in ERROR_LEVELS:
                health = self._modules[module]
                previous = health.status
                health.error_count += 1
                health.last_error = message
                if previous != ModuleStatus.HEALING:
                    health.status = (
                        ModuleStatus.CRITICAL if health.error_count > 3 else ModuleStatus.DEGRADED
                    )
                heal_needed = previous in (ModuleStatus.DEGRADED, ModuleStatus.CRITICAL)

            self._recompute_score()

        if level == LogLevel.FATAL:
            logger.critical("Fatal system event", health_module=str(component), error=message)
        elif level == LogLevel.ERROR:
            logger.warning("System error recorded", health_module=str(component), error=message)

        if heal_needed:
            self._schedule_heal(module)

    def _recompute_score(self) -> None:
        cutoff = self._now() - RECENT_WINDOW_S
        recent_errors = sum(
            1 for log in self._logs if log.level in ERROR_LEVELS and log.timestamp >= cutoff
        )
        unhealthy = sum(1 for m in self._modules.values() if m.status != ModuleStatus.HEALTHY)
        self._stability_score = compute_stability_score(recent_errors, unhealthy)

    def _schedule_heal(self, module: ModuleName) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.attempt_heal(module))
        self._heal_tasks.add(task)
        task.add_done_callback(self._heal_tasks.discard)

    # --- Auto-healing ---

    async def attempt_heal(self, module: ModuleName) -> Optional[HealingAction]:
        """Run the module's check; recover on success, mark critical on failure."""
        with self._lock:
            health = self._modules[module]
            if health.status == ModuleStatus.HEALING:
                return None
            health.status = ModuleStatus.HEALING
            self._recompute_score()

        if module == ModuleName.AI_CORE:
            self.record_learning("ai_error_rate", 1, "Reduced prompt complexity")

        action_text = HEAL_ACTIONS.get(module, DEFAULT_HEAL_ACTION)
        success = await self._run_check(module)

        action = HealingAction(
            module=module,
            action=action_text,
            timestamp=self._now(),
            success=success,
            result_message="Module recovered" if success else "Manual intervention required",
        )
        with self._lock:
            self._heals.append(action)
            if success:
                health.status = ModuleStatus.HEALTHY
                health.error_count = 0
                health.last_heal_timestamp = action.timestamp
            else:
                health.status = ModuleStatus.CRITICAL
            self._recompute_score()

        self.emitter.emit(
            "health.heal_attempted",
            session_id="system",
            severity=Severity.INFO if success else Severity.WARN,
            module=module.value,
            action=action_text,
            success=success,
        )
        logger.info("Heal attempted", health_module=module.value, action=action_text, success=success)
        return action

    async def _run_check(self, module: ModuleName) -> bool:
        check = self._checks.get(module)
        if check is None:
            return False
        try:
            return bool(await asyncio.wait_for(check(), timeout=self._heal_timeout_s))
        except asyncio.TimeoutError:
            logger.warning("Heal check timed out", health_module=module.value, timeout_s=self._heal_timeout_s)
            return False
        except Exception as e:
            logger.warning("Heal check failed", health_module=module.value, error=str(e))
            return False

    async def wait_for_heals(self) -> None:
        """Wait for all scheduled heal attempts to finish."""
        while self._heal_tasks:
            await asyncio.gather(*list(self._heal_tasks), return_exceptions=True)

    # --- Retry decisions ---

    def should_retry(self, error: BaseException | str | None, attempt: int) -> RetryDecision:
        """
        Exponential backoff for transient transport errors.

        Delays are 1s, 2s, 4s for attempts 0, 1, 2; nothing after that.
        """
        if attempt < self.max_attempts and self.is_retryable(error):
            return RetryDecision(retry=True, delay_ms=1000 * 2 ** attempt)
        return RetryDecision(retry=False, delay_ms=0)

    @staticmethod
    def is_retryable(error: BaseException | str | None) -> bool:
        if error is None:
            return False
        # abnormal websocket close of the live session
        if isinstance(error, (ConnectionError, ConnectionClosedError)):
            return True
        return bool(_RETRYABLE.search(str(error)))

    # --- Learning ---

    def record_learning(self, metric: str, value: float, adaptation: str) -> None:
        with self._lock:
            existing = self._learning.get(metric)
            if existing:
                existing.value += value
                existing.adaptation_applied = adaptation
            else:
                self._learning[metric] = LearningMetric(
                    metric=metric, value=value, adaptation_applied=adaptation
                )
        logger.debug("Learning recorded", metric=metric, value=value)

    def adaptive_instruction(self, base: str) -> str:
        """Append prompt modifiers derived from stability and learned metrics."""
        with self._lock:
            modifiers = ""
            if self._stability_score < SAFE_MODE_BELOW:
                modifiers += SAFE_MODE_MODIFIER
            ai_errors = self._learning.get("ai_error_rate")
            if ai_errors and ai_errors.value > 0:
                modifiers += PLAIN_TEXT_MODIFIER
            corrections = self._learning.get("user_date_corrections")
            if corrections and corrections.value > DATE_CORRECTIONS_ABOVE:
                modifiers += DATE_CHECK_MODIFIER
        return base + modifiers

    # --- Reporting ---

    async def run_health_check(
        self,
        ai_check: Optional[HealthCheck] = None,
        persistence_check: Optional[HealthCheck] = None,
    ) -> HealthReport:
        """Check the AI backend and the store, log failures, and report."""
        if ai_check is not None:
            started = self._now()
            error = await self._check_once(ai_check)
            with self._lock:
                self._modules[ModuleName.AI_CORE].latency_ms = (self._now() - started) * 1000.0
            if error:
                self.log_event(LogLevel.ERROR, ModuleName.AI_CORE, error)

        if persistence_check is not None:
            error = await self._check_once(persistence_check)
            if error:
                self.log_event(LogLevel.ERROR, ModuleName.PERSISTENCE, error)

        return self.report()

    async def _check_once(self, check: HealthCheck) -> Optional[str]:
        try:
            ok = await asyncio.wait_for(check(), timeout=self._heal_timeout_s)
        except asyncio.TimeoutError:
            return "Ping timed out"
        except Exception as e:
            return str(e) or type(e).__name__
        return None if ok else "Ping failed"

    def report(self) -> HealthReport:
        with self._lock:
            score = self._stability_score
            if score > 80:
                status = "healthy"
            elif score > 50:
                status = "degraded"
            else:
                status = "critical"
            return HealthReport(
                last_check=datetime.now(timezone.utc).isoformat(),
                status=status,
                issues=[
                    log.message for log in self._logs
                    if log.level == LogLevel.ERROR and not log.resolved
                ],
                stability_score=score,
                modules=[m.to_dict() for m in self._modules.values()],
                recent_heals=[h.to_dict() for h in list(self._heals)[-5:]],
            )
