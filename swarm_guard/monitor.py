"""
Trend Monitor
=============
Rolling per-agent token statistics and system-wide context tracking.

Feeds on token-usage and context-percentage samples and answers three kinds
of question:

* statistics -- cross-agent token variance, context overflow prediction
* alerts     -- variance outliers, runaway acceleration, stagnation
* summaries  -- loop/intervention/failure rates over the last hour

Each agent-keyed map has its own lock, so agents reporting concurrently only
contend on the map they touch. A :class:`ResourceManager` rides along for the
budget control loop; :meth:`TrendMonitor.forget_agent` removes an agent from
both in one step.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import numpy as np

from .budget import ResourceManager

logger = logging.getLogger(__name__)


@dataclass
class TokenHistoryEntry:
    tokens: int
    timestamp: float


@dataclass
class ContextPercentageEntry:
    percentage: float
    timestamp: float


@dataclass
class LoopDetectionEvent:
    timestamp: float


@dataclass
class InterventionEvent:
    success: bool
    timestamp: float


@dataclass
class ScopeAdjustmentEvent:
    timestamp: float


@dataclass
class CompactionEvent:
    timestamp: float


@dataclass
class AgentFailureEvent:
    error_type: str
    timestamp: float


@dataclass
class TokenVariance:
    mean: float
    variance: float
    std_dev: float
    max: int
    min: int
    range: int


@dataclass
class PredictedOverflow:
    current_percentage: float
    rate_per_minute: float
    time_to_threshold_seconds: float
    time_to_threshold_minutes: float
    predicted_overflow_time: float


@dataclass
class Alert:
    alert_type: str
    agent_id: Optional[str]
    message: str
    timestamp: str
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MetricsSummary:
    timestamp: str
    token_usage: Optional[TokenVariance]
    loop_detection_rates: Dict[str, int]
    intervention_success_rates: Dict[str, float]
    agent_failures: Dict[str, Dict[str, int]]
    scope_adjustments_last_hour: Dict[str, int]
    context_percentage: float
    compactions_last_hour: int


@dataclass
class MonitorConfig:
    token_history_size: int = 100
    context_history_size: int = 1000
    rate_window: int = 10
    context_threshold: float = 70.0           # percent of the context window
    overflow_min_samples: int = 5
    overflow_window: int = 10
    variance_threshold: float = 2.0           # standard deviations
    acceleration_threshold: float = 1000.0    # tokens / s^2
    acceleration_window: int = 5
    stagnation_seconds: float = 120.0
    stagnation_token_delta: int = 100
    metrics_window_seconds: float = 3600.0
    event_history_size: int = 1000           # per agent and per event kind

    def __post_init__(self) -> None:
        if self.rate_window < 2 or self.overflow_window < 2:
            raise ValueError("rate and overflow windows need at least 2 samples")
        if self.acceleration_window < 3:
            raise ValueError("acceleration_window needs at least 3 samples")
        if self.token_history_size < self.acceleration_window:
            raise ValueError("token_history_size must cover acceleration_window")
        if self.event_history_size < 1:
            raise ValueError("event_history_size must be at least 1")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class TrendMonitor:
    """
    Per-agent token trends, context pressure and alerting.

    Usage::

        monitor = TrendMonitor()
        monitor.record_token_usage("agent-1", 1200)
        monitor.record_context_percentage(42.0)
        for alert in monitor.get_all_alerts():
            print(alert.message)
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        resources: Optional[ResourceManager] = None,
    ) -> None:
        self.config = config or MonitorConfig()
        self.resources = resources or ResourceManager()

        self._token_lock = threading.Lock()
        self._token_history: Dict[str, Deque[TokenHistoryEntry]] = {}
        self._token_rates: Dict[str, float] = {}

        self._context_lock = threading.Lock()
        self._context_history: Deque[ContextPercentageEntry] = deque(
            maxlen=self.config.context_history_size
        )
        self._compactions: Deque[CompactionEvent] = deque(
            maxlen=self.config.event_history_size
        )

        self._loop_lock = threading.Lock()
        self._loop_events: Dict[str, Deque[LoopDetectionEvent]] = {}

        self._intervention_lock = threading.Lock()
        self._interventions: Dict[str, Deque[InterventionEvent]] = {}

        self._scope_lock = threading.Lock()
        self._scope_adjustments: Dict[str, Deque[ScopeAdjustmentEvent]] = {}

        self._failure_lock = threading.Lock()
        self._failures: Dict[str, Deque[AgentFailureEvent]] = {}

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record_token_usage(
        self, agent_id: str, tokens: int, timestamp: Optional[float] = None
    ) -> None:
        ts = time.time() if timestamp is None else float(timestamp)
        with self._token_lock:
            history = self._token_history.get(agent_id)
            if history is None:
                history = self._token_history[agent_id] = deque(
                    maxlen=self.config.token_history_size
                )
            history.append(TokenHistoryEntry(tokens=int(tokens), timestamp=ts))

            recent = list(history)[-self.config.rate_window:]
            if len(recent) >= 2:
                span = recent[-1].timestamp - recent[0].timestamp
                if span > 0:
                    rate = (recent[-1].tokens - recent[0].tokens) / span
                    self._token_rates[agent_id] = rate
                    logger.debug("Token rate for agent %s: %.2f tokens/s", agent_id, rate)

    def record_context_percentage(
        self, percentage: float, timestamp: Optional[float] = None
    ) -> None:
        ts = time.time() if timestamp is None else float(timestamp)
        with self._context_lock:
            self._context_history.append(
                ContextPercentageEntry(percentage=float(percentage), timestamp=ts)
            )

    def record_loop_detection(self, agent_id: str, timestamp: Optional[float] = None) -> None:
        self._append_event(
            self._loop_lock, self._loop_events, agent_id, LoopDetectionEvent(self._ts(timestamp))
        )

    def record_intervention(
        self, agent_id: str, success: bool, timestamp: Optional[float] = None
    ) -> None:
        self._append_event(
            self._intervention_lock,
            self._interventions,
            agent_id,
            InterventionEvent(success=bool(success), timestamp=self._ts(timestamp)),
        )

    def record_scope_adjustment(self, agent_id: str, timestamp: Optional[float] = None) -> None:
        self._append_event(
            self._scope_lock,
            self._scope_adjustments,
            agent_id,
            ScopeAdjustmentEvent(self._ts(timestamp)),
        )

    def record_compaction(self, timestamp: Optional[float] = None) -> None:
        with self._context_lock:
            self._compactions.append(CompactionEvent(self._ts(timestamp)))

    def record_agent_failure(
        self, agent_id: str, error_type: str, timestamp: Optional[float] = None
    ) -> None:
        self._append_event(
            self._failure_lock,
            self._failures,
            agent_id,
            AgentFailureEvent(error_type=error_type, timestamp=self._ts(timestamp)),
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def token_rate(self, agent_id: str) -> Optional[float]:
        with self._token_lock:
            return self._token_rates.get(agent_id)

    def token_history(self, agent_id: str) -> List[TokenHistoryEntry]:
        with self._token_lock:
            return list(self._token_history.get(agent_id, ()))

    def tracked_agents(self) -> List[str]:
        with self._token_lock:
            return list(self._token_history)

    def get_token_variance(self) -> Optional[TokenVariance]:
        """Spread of every agent's latest sample; None below two agents."""
        latest = self._latest_tokens()
        if len(latest) < 2:
            return None
        values = np.asarray(list(latest.values()), dtype=float)
        variance = float(values.var())
        high = int(values.max())
        low = int(values.min())
        return TokenVariance(
            mean=float(values.mean()),
            variance=variance,
            std_dev=float(np.sqrt(variance)),
            max=high,
            min=low,
            range=high - low,
        )

    def predict_context_overflow(self) -> Optional[PredictedOverflow]:
        """
        Extrapolate context usage linearly to ``context_threshold``.

        Fits a least-squares line through the last ``overflow_window``
        samples. Returns None with fewer than ``overflow_min_samples``
        samples, a flat or falling trend, or usage already past the
        threshold.
        """
        cfg = self.config
        with self._context_lock:
            if len(self._context_history) < cfg.overflow_min_samples:
                return None
            recent = list(self._context_history)[-cfg.overflow_window:]

        timestamps = np.asarray([e.timestamp for e in recent], dtype=float)
        percentages = np.asarray([e.percentage for e in recent], dtype=float)
        if timestamps[-1] - timestamps[0] <= 0:
            return None

        # least-squares slope over centred samples; a flat series gives exactly 0
        dt = timestamps - timestamps.mean()
        dp = percentages - percentages.mean()
        rate = float(np.dot(dt, dp) / np.dot(dt, dt))
        if rate <= 0:
            return None

        current = float(percentages[-1])
        time_to_threshold = (cfg.context_threshold - current) / rate
        if time_to_threshold <= 0:
            return None

        return PredictedOverflow(
            current_percentage=current,
            rate_per_minute=rate * 60.0,
            time_to_threshold_seconds=time_to_threshold,
            time_to_threshold_minutes=time_to_threshold / 60.0,
            predicted_overflow_time=float(timestamps[-1]) + time_to_threshold,
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def check_token_variance_alert(self) -> Optional[Alert]:
        variance = self.get_token_variance()
        if variance is None or variance.std_dev <= 0:
            return None
        for agent_id, tokens in self._latest_tokens().items():
            deviations = abs(tokens - variance.mean) / variance.std_dev
            if deviations > self.config.variance_threshold:
                return self._alert(
                    "high_token_variance",
                    agent_id,
                    f"Unusual token variance detected for agent {agent_id}: {tokens} tokens "
                    f"vs mean {variance.mean:.1f} ({deviations:.1f} std devs)",
                    current_tokens=tokens,
                    mean_tokens=variance.mean,
                    std_dev=variance.std_dev,
                    deviations_from_mean=deviations,
                )
        return None

    def check_acceleration_alert(self) -> Optional[Alert]:
        window = self.config.acceleration_window
        for agent_id, history in self._token_snapshot().items():
            if len(history) < window:
                continue
            recent = history[-window:]
            acceleration = _mean_acceleration(recent)
            if acceleration is None or abs(acceleration) <= self.config.acceleration_threshold:
                continue
            return self._alert(
                "token_acceleration",
                agent_id,
                f"Token usage accelerating for agent {agent_id}: acceleration "
                f"{acceleration:.1f} tokens/s^2 indicates potential loop",
                acceleration=acceleration,
                current_tokens=recent[-1].tokens,
            )
        return None

    def check_stagnation_alert(self) -> Optional[Alert]:
        cfg = self.config
        for agent_id, history in self._token_snapshot().items():
            if len(history) < 2:
                continue
            previous, latest = history[-2], history[-1]
            elapsed = latest.timestamp - previous.timestamp
            delta = abs(latest.tokens - previous.tokens)
            if elapsed > cfg.stagnation_seconds and delta < cfg.stagnation_token_delta:
                return self._alert(
                    "agent_stagnation",
                    agent_id,
                    f"Agent {agent_id} stagnant for {elapsed:.0f}s with only {delta} "
                    "token change - suggest guidance",
                    time_stagnant=elapsed,
                    token_change=delta,
                )
        return None

    def get_all_alerts(self) -> List[Alert]:
        checks = (
            self.check_token_variance_alert,
            self.check_acceleration_alert,
            self.check_stagnation_alert,
        )
        return [alert for alert in (check() for check in checks) if alert is not None]

    # ------------------------------------------------------------------
    # Summaries and lifecycle
    # ------------------------------------------------------------------

    def get_metrics_summary(self, now: Optional[float] = None) -> MetricsSummary:
        now = time.time() if now is None else now
        horizon = now - self.config.metrics_window_seconds

        with self._loop_lock:
            loop_rates = {
                agent_id: sum(1 for e in events if e.timestamp >= horizon)
                for agent_id, events in self._loop_events.items()
            }
        with self._intervention_lock:
            success_rates = {
                agent_id: 100.0 * sum(1 for e in events if e.success) / len(events)
                for agent_id, events in self._interventions.items()
                if events
            }
        with self._scope_lock:
            scope_rates = {
                agent_id: sum(1 for e in events if e.timestamp >= horizon)
                for agent_id, events in self._scope_adjustments.items()
            }
        with self._failure_lock:
            failures = {
                agent_id: dict(Counter(e.error_type for e in events))
                for agent_id, events in self._failures.items()
            }
        with self._context_lock:
            current = self._context_history[-1].percentage if self._context_history else 0.0
            compactions = sum(1 for e in self._compactions if e.timestamp >= horizon)

        return MetricsSummary(
            timestamp=_now_iso(),
            token_usage=self.get_token_variance(),
            loop_detection_rates=loop_rates,
            intervention_success_rates=success_rates,
            agent_failures=failures,
            scope_adjustments_last_hour=scope_rates,
            context_percentage=current,
            compactions_last_hour=compactions,
        )

    def forget_agent(self, agent_id: str) -> bool:
        """
        Drop every per-agent record for ``agent_id``.

        All map locks are held together (in a fixed order) so no reader sees
        the agent half-removed. Returns True if anything was removed.
        """
        locks = (
            self._token_lock,
            self._loop_lock,
            self._intervention_lock,
            self._scope_lock,
            self._failure_lock,
        )
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            removed = [
                self._token_history.pop(agent_id, None) is not None,
                self._token_rates.pop(agent_id, None) is not None,
                self._loop_events.pop(agent_id, None) is not None,
                self._interventions.pop(agent_id, None) is not None,
                self._scope_adjustments.pop(agent_id, None) is not None,
                self._failures.pop(agent_id, None) is not None,
                self.resources.forget_agent(agent_id),
            ]
        if any(removed):
            logger.info("Forgot all monitor state for agent %s", agent_id)
        return any(removed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _ts(timestamp: Optional[float]) -> float:
        return time.time() if timestamp is None else float(timestamp)

    def _append_event(
        self, lock: threading.Lock, events: Dict[str, Deque], agent_id: str, event
    ) -> None:
        with lock:
            history = events.get(agent_id)
            if history is None:
                history = events[agent_id] = deque(maxlen=self.config.event_history_size)
            history.append(event)

    def _latest_tokens(self) -> Dict[str, int]:
        with self._token_lock:
            return {
                agent_id: history[-1].tokens
                for agent_id, history in self._token_history.items()
                if history
            }

    def _token_snapshot(self) -> Dict[str, List[TokenHistoryEntry]]:
        with self._token_lock:
            return {agent_id: list(history) for agent_id, history in self._token_history.items()}

    def _alert(self, alert_type: str, agent_id: Optional[str], message: str, **detail) -> Alert:
        logger.warning("%s", message)
        return Alert(
            alert_type=alert_type,
            agent_id=agent_id,
            message=message,
            timestamp=_now_iso(),
            detail=detail,
        )


def _mean_acceleration(samples: List[TokenHistoryEntry]) -> Optional[float]:
    """
    Mean second difference of token counts over time.

    Each velocity is stamped at the end of its interval; intervals with a
    non-positive duration are skipped.
    """
    velocities = []
    for prev, cur in zip(samples, samples[1:]):
        dt = cur.timestamp - prev.timestamp
        if dt > 0:
            velocities.append(((cur.tokens - prev.tokens) / dt, cur.timestamp))
    if len(velocities) < 2:
        return None

    accelerations = []
    for (v_prev, t_prev), (v_cur, t_cur) in zip(velocities, velocities[1:]):
        dt = t_cur - t_prev
        if dt > 0:
            accelerations.append((v_cur - v_prev) / dt)
    if not accelerations:
        return None
    return float(np.mean(accelerations))
