"""
SwarmGuard -- Unified Facade
============================
Single entry-point that wires together LoopDetector, TrendMonitor (with its
ResourceManager) and TrajectoryCompressor, and evaluates them once per agent
turn. It classifies and quantifies; what to do about a finding is left to
the caller.

Typical integration::

    from swarm_guard import SwarmGuard

    guard = SwarmGuard()

    for turn in agent_turns:
        report = guard.observe_turn(
            agent_id=turn.agent_id,
            prompt=turn.prompt,
            state=turn.state,
            tokens_used=turn.tokens,
            contribution=turn.contribution,
            context_percentage=swarm.context_percentage(),
            trajectory=turn.trajectory,
        )
        for line in report.messages:
            notify(line)

        if report.loop_detection is not None:
            # pause the agent, shrink its context, ...
            ...
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .budget import BudgetAllocation, BudgetConfig, ResourceManager
from .compressor import (
    CompressedTrajectory,
    CompressorConfig,
    TrajectoryCompressor,
    TrajectoryEntry,
    TrajectoryLog,
)
from .detector import LoopDetection, LoopDetector, LoopDetectorConfig
from .monitor import Alert, MonitorConfig, PredictedOverflow, TrendMonitor
from .similarity import SimilarityProvider
from .store import JsonStateStore

logger = logging.getLogger(__name__)


@dataclass
class SwarmGuardConfig:
    detector: LoopDetectorConfig = field(default_factory=LoopDetectorConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    compressor: CompressorConfig = field(default_factory=CompressorConfig)
    state_dir: str = ".swarm-guard"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]] = None) -> "SwarmGuardConfig":
        """
        Build a config from a nested mapping (e.g. parsed JSON or TOML).

        Unknown keys are ignored; anything missing keeps its default.
        """
        data = data or {}
        sections = {
            "detector": LoopDetectorConfig,
            "monitor": MonitorConfig,
            "budget": BudgetConfig,
            "compressor": CompressorConfig,
        }
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key in sections:
                kwargs[key] = _section(sections[key], value, key)
            elif key == "state_dir":
                kwargs[key] = str(value)
            else:
                logger.debug("Ignoring unknown config key %r", key)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _section(section_cls, value: Any, name: str):
    if not isinstance(value, Mapping):
        logger.debug("Config section %r is not a mapping; using defaults", name)
        return section_cls()
    known = {f.name for f in fields(section_cls)}
    for key in value:
        if key not in known:
            logger.debug("Ignoring unknown config key %r in section %r", key, name)
    return section_cls(**{k: v for k, v in value.items() if k in known})


@dataclass
class TurnReport:
    agent_id: str
    loop_detection: Optional[LoopDetection] = None
    alerts: List[Alert] = field(default_factory=list)
    overflow: Optional[PredictedOverflow] = None
    imbalanced: bool = False
    pruning_advice: Optional[str] = None
    compressed: Optional[CompressedTrajectory] = None
    messages: List[str] = field(default_factory=list)

    @property
    def needs_attention(self) -> bool:
        return bool(
            self.loop_detection
            or self.alerts
            or self.overflow
            or self.pruning_advice
            or self.compressed
        )


def render_detection(detection: LoopDetection) -> str:
    """Human-readable intervention text for a loop detection."""
    return (
        f"Loop detected: {detection.detection_type.value} for agent {detection.agent_id} "
        f"(count={detection.loop_count}) - {detection.message}"
    )


class SwarmGuard:
    """
    Unified facade for loop detection, trend monitoring, budgeting and
    trajectory compression.

    Parameters
    ----------
    config : SwarmGuardConfig, optional
        Consolidated configuration for all subsystems.
    store : JsonStateStore, optional
        Persistence for loop-detector history; defaults to
        ``JsonStateStore(config.state_dir)``.
    similarity : SimilarityProvider, optional
        Backend for the semantic loop check; defaults to word overlap.
    """

    def __init__(
        self,
        config: Optional[SwarmGuardConfig] = None,
        store: Optional[JsonStateStore] = None,
        similarity: Optional[SimilarityProvider] = None,
    ) -> None:
        cfg = config or SwarmGuardConfig()
        self.config = cfg
        self._store = store or JsonStateStore(cfg.state_dir)
        self._detector = LoopDetector(cfg.detector, store=self._store, similarity=similarity)
        self._resources = ResourceManager(cfg.budget)
        self._monitor = TrendMonitor(cfg.monitor, resources=self._resources)
        self._compressor = TrajectoryCompressor(cfg.compressor)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def observe_turn(
        self,
        agent_id: str,
        prompt: str,
        state: str,
        tokens_used: int,
        contribution: float = 0.0,
        tasks_completed: int = 0,
        context_percentage: Optional[float] = None,
        trajectory: Optional[Union[TrajectoryLog, Sequence[TrajectoryEntry]]] = None,
        timestamp: Optional[float] = None,
    ) -> TurnReport:
        """
        Evaluate one agent turn across every subsystem.

        ``context_percentage`` is in percent (0-100). A persistence failure
        in the loop detector propagates as ``StateStoreError`` before any
        other subsystem records the turn.
        """
        report = TurnReport(agent_id=agent_id)

        detection = self._detector.check_all_loops(agent_id, prompt, state)

        self._monitor.record_token_usage(agent_id, tokens_used, timestamp)
        self._resources.track_usage(agent_id, tokens_used, contribution, tasks_completed)
        if context_percentage is not None:
            self._monitor.record_context_percentage(context_percentage, timestamp)

        if detection is not None:
            report.loop_detection = detection
            self._monitor.record_loop_detection(agent_id, timestamp)
            report.messages.append(render_detection(detection))

        report.alerts = self._monitor.get_all_alerts()
        report.messages.extend(alert.message for alert in report.alerts)

        report.overflow = self._monitor.predict_context_overflow()
        if report.overflow is not None:
            report.messages.append(
                f"Context overflow predicted in {report.overflow.time_to_threshold_minutes:.1f} "
                f"min (at {report.overflow.current_percentage:.1f}%, "
                f"+{report.overflow.rate_per_minute:.2f}%/min)"
            )

        report.imbalanced = self._resources.check_imbalance()
        report.pruning_advice = self._resources.check_pruning_candidate(agent_id)
        if report.pruning_advice:
            report.messages.append(report.pruning_advice)

        if trajectory is not None and context_percentage is not None:
            log = trajectory if isinstance(trajectory, TrajectoryLog) else TrajectoryLog(list(trajectory))
            if self._compressor.should_compress(
                context_percentage / 100.0, len(log.entries), log.tokens_used
            ):
                report.compressed = self._compressor.compress_trajectory(log)
                self._monitor.record_compaction(timestamp)
                report.messages.append(
                    f"Trajectory compressed for agent {agent_id}: "
                    f"{len(report.compressed.preserved)} preserved, "
                    f"{len(report.compressed.summarized)} summarized, "
                    f"ratio {report.compressed.compression_ratio:.2f}"
                )

        return report

    def reallocate_budget(self, total: Optional[int] = None) -> BudgetAllocation:
        return self._resources.reallocate_budget(total)

    def load_trajectory(self, agent_id: str) -> Optional[TrajectoryLog]:
        """Trajectory log persisted for ``agent_id``, if any."""
        document = self._store.load(agent_id, "trajectory", {})
        if not document:
            return None
        return TrajectoryLog.from_dict(document)

    def forget_agent(self, agent_id: str) -> None:
        """Remove the agent from every monitor map and its persisted loop state."""
        self._monitor.forget_agent(agent_id)
        self._detector.reset(agent_id)
        logger.info("SwarmGuard forgot agent %s", agent_id)

    def detection_counts(self) -> Dict[str, int]:
        return {t.value: n for t, n in self._detector.detection_counts().items()}

    def close(self) -> None:
        """Release the similarity provider (embedding worker threads)."""
        self._detector.similarity.close()

    def __enter__(self) -> "SwarmGuard":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Accessors (for observability / testing)
    # ------------------------------------------------------------------

    @property
    def detector(self) -> LoopDetector:
        return self._detector

    @property
    def monitor(self) -> TrendMonitor:
        return self._monitor

    @property
    def resources(self) -> ResourceManager:
        return self._resources

    @property
    def compressor(self) -> TrajectoryCompressor:
        return self._compressor


