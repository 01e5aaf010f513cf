"""
Resource Manager
================
Budget control loop for a swarm: records per-turn contribution and token
usage, detects contribution imbalance, and redistributes a shared token
budget. Pruning is advisory only; no agent is ever removed from here.

Control loop::

    TRACKING --imbalance--> IMBALANCED --reallocate--> REALLOCATED --track--> TRACKING
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, List, Mapping, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class BudgetPhase(Enum):
    TRACKING = "tracking"
    IMBALANCED = "imbalanced"
    REALLOCATED = "reallocated"


class BudgetEvent(Enum):
    USAGE_TRACKED = "usage_tracked"
    IMBALANCE_DETECTED = "imbalance_detected"
    BALANCED = "balanced"
    REALLOCATED = "reallocated"


_TRANSITIONS = {
    (BudgetPhase.TRACKING, BudgetEvent.IMBALANCE_DETECTED): BudgetPhase.IMBALANCED,
    (BudgetPhase.IMBALANCED, BudgetEvent.BALANCED): BudgetPhase.TRACKING,
    (BudgetPhase.TRACKING, BudgetEvent.REALLOCATED): BudgetPhase.REALLOCATED,
    (BudgetPhase.IMBALANCED, BudgetEvent.REALLOCATED): BudgetPhase.REALLOCATED,
    (BudgetPhase.REALLOCATED, BudgetEvent.REALLOCATED): BudgetPhase.REALLOCATED,
    (BudgetPhase.REALLOCATED, BudgetEvent.USAGE_TRACKED): BudgetPhase.TRACKING,
}


def next_budget_phase(phase: BudgetPhase, event: BudgetEvent) -> BudgetPhase:
    """Pure transition function; events with no edge leave the phase as is."""
    return _TRANSITIONS.get((phase, event), phase)


@dataclass
class TurnStats:
    turn_number: int
    contribution: float
    tokens_used: int
    tasks_completed: int


@dataclass(frozen=True)
class SwarmBudget:
    total_budget: int
    allocated: Mapping[str, int]
    safety_reserve: int
    min_per_agent: int


@dataclass
class BudgetAllocation:
    timestamp: str
    per_agent: int
    adjustments: List[str]
    safety_reserve: int
    allocated: Dict[str, int] = field(default_factory=dict)


@dataclass
class BudgetConfig:
    total_budget: int = 200_000
    safety_reserve_ratio: float = 0.15
    min_per_agent: int = 10_000
    usage_history_size: int = 10
    imbalance_threshold: float = 0.20          # coefficient of variation
    pruning_contribution_threshold: float = 0.3
    high_contribution_threshold: float = 0.7
    auto_reduce_low_contrib: bool = False
    low_contrib_reduction_percent: float = 20.0
    pruning_window: int = 5                    # turns needed for a prune advisory
    pruning_usage_threshold: float = 0.2       # avg tokens / total budget

    def __post_init__(self) -> None:
        if not 0.0 <= self.safety_reserve_ratio < 1.0:
            raise ValueError("safety_reserve_ratio must be within [0, 1)")
        if not 0.0 <= self.low_contrib_reduction_percent <= 100.0:
            raise ValueError("low_contrib_reduction_percent must be within [0, 100]")
        if self.total_budget < 0 or self.min_per_agent < 0:
            raise ValueError("budgets must not be negative")
        if self.usage_history_size < 1 or self.pruning_window < 1:
            raise ValueError("history sizes must be at least 1")

    def safety_reserve_for(self, total: int) -> int:
        # strip float noise before the ceiling
        return int(math.ceil(round(self.safety_reserve_ratio * total, 6)))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class ResourceManager:
    """
    Tracks contribution per agent and redistributes the token budget.

    Usage::

        manager = ResourceManager(BudgetConfig(total_budget=100_000))
        manager.track_usage("agent-1", tokens_used=800, contribution=0.9)
        if manager.check_imbalance():
            allocation = manager.reallocate_budget(100_000)
    """

    def __init__(self, config: Optional[BudgetConfig] = None) -> None:
        self.config = config or BudgetConfig()
        self._lock = threading.Lock()
        self._usage: Dict[str, Deque[TurnStats]] = {}
        self._turn_counter = 0
        self._phase = BudgetPhase.TRACKING
        self._budget = SwarmBudget(
            total_budget=self.config.total_budget,
            allocated={},
            safety_reserve=self.config.safety_reserve_for(self.config.total_budget),
            min_per_agent=self.config.min_per_agent,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def track_usage(
        self,
        agent_id: str,
        tokens_used: int,
        contribution: float,
        tasks_completed: int = 0,
    ) -> TurnStats:
        with self._lock:
            turn = TurnStats(
                turn_number=self._turn_counter,
                contribution=float(contribution),
                tokens_used=int(tokens_used),
                tasks_completed=int(tasks_completed),
            )
            history = self._usage.get(agent_id)
            if history is None:
                history = self._usage[agent_id] = deque(
                    maxlen=self.config.usage_history_size
                )
            history.append(turn)
            self._turn_counter += 1
            self._phase = next_budget_phase(self._phase, BudgetEvent.USAGE_TRACKED)
        return turn

    def check_imbalance(self) -> bool:
        """True when the spread of the latest contributions is too wide."""
        with self._lock:
            latest = [turns[-1].contribution for turns in self._usage.values() if turns]
        imbalanced = False
        if len(latest) >= 2:
            values = np.asarray(latest, dtype=float)
            mean = float(values.mean())
            if mean > 0:
                cv = float(values.std()) / mean
                imbalanced = cv > self.config.imbalance_threshold
                logger.debug("Contribution coefficient of variation: %.3f", cv)
        with self._lock:
            self._phase = next_budget_phase(
                self._phase,
                BudgetEvent.IMBALANCE_DETECTED if imbalanced else BudgetEvent.BALANCED,
            )
        return imbalanced

    def reallocate_budget(self, total: Optional[int] = None) -> BudgetAllocation:
        """
        Split ``total`` across tracked agents and replace the current budget.

        A safety reserve is withheld, the remainder split evenly, and agents
        below the pruning threshold are either reduced (auto-reduction on) or
        flagged as potential prunes. All notes are advisory strings.
        """
        cfg = self.config
        total = cfg.total_budget if total is None else int(total)
        safety_reserve = cfg.safety_reserve_for(total)
        available = max(total - safety_reserve, 0)

        contributions = self._mean_contributions()
        adjustments: List[str] = []

        if contributions:
            per_agent = available // len(contributions)
        else:
            per_agent = 0
            adjustments.append("No tracked agents: nothing to allocate")

        floor_needed = cfg.min_per_agent * len(contributions) + safety_reserve
        if contributions and total < floor_needed:
            note = (
                f"Budget below floor: total {total} < {floor_needed} "
                f"({len(contributions)} agents x {cfg.min_per_agent} + reserve {safety_reserve})"
            )
            adjustments.append(note)
            logger.warning(note)

        reduced_share = int(per_agent * (1.0 - cfg.low_contrib_reduction_percent / 100.0))
        allocated: Dict[str, int] = {}
        for agent_id, contribution in contributions:
            share = per_agent
            if contribution < cfg.pruning_contribution_threshold:
                if cfg.auto_reduce_low_contrib:
                    share = max(reduced_share, cfg.min_per_agent)
                    adjustments.append(
                        f"Reduced budget: Agent {agent_id} (contribution: {contribution:.2f}, "
                        f"reduced by {cfg.low_contrib_reduction_percent:.0f}%)"
                    )
                else:
                    adjustments.append(
                        f"Potential prune: Agent {agent_id} "
                        f"(contribution: {contribution:.2f}, low usage)"
                    )
            elif contribution > cfg.high_contribution_threshold:
                adjustments.append(
                    f"High contributor: Agent {agent_id} (contribution: {contribution:.2f})"
                )
            allocated[agent_id] = share

        with self._lock:
            self._budget = SwarmBudget(
                total_budget=total,
                allocated=dict(allocated),
                safety_reserve=safety_reserve,
                min_per_agent=cfg.min_per_agent,
            )
            self._phase = next_budget_phase(self._phase, BudgetEvent.REALLOCATED)

        logger.info(
            "Budget reallocated: total=%d reserve=%d per_agent=%d agents=%d",
            total,
            safety_reserve,
            per_agent,
            len(allocated),
        )
        return BudgetAllocation(
            timestamp=_now_iso(),
            per_agent=per_agent,
            adjustments=adjustments,
            safety_reserve=safety_reserve,
            allocated=allocated,
        )

    def check_pruning_candidate(self, agent_id: str) -> Optional[str]:
        """
        Advise pruning only for agents that are both low-value and cheap.

        Requires ``pruning_window`` recorded turns.
        """
        cfg = self.config
        with self._lock:
            turns = list(self._usage.get(agent_id, ()))
            total_budget = self._budget.total_budget
        if len(turns) < cfg.pruning_window:
            return None

        recent = turns[-cfg.pruning_window:]
        avg_contribution = float(np.mean([t.contribution for t in recent]))
        if avg_contribution >= cfg.pruning_contribution_threshold:
            return None

        avg_usage = float(np.mean([t.tokens_used for t in recent]))
        usage_rate = avg_usage / total_budget if total_budget > 0 else 0.0
        if usage_rate >= cfg.pruning_usage_threshold:
            return None

        return (
            f"Potential topology change: Agent {agent_id} (contribution: "
            f"{avg_contribution:.2f} over {cfg.pruning_window} turns, usage: {usage_rate:.2f})"
        )

    def forget_agent(self, agent_id: str) -> bool:
        with self._lock:
            return self._usage.pop(agent_id, None) is not None

    def usage_history(self, agent_id: str) -> List[TurnStats]:
        with self._lock:
            return list(self._usage.get(agent_id, ()))

    def tracked_agents(self) -> List[str]:
        with self._lock:
            return list(self._usage)

    @property
    def budget(self) -> SwarmBudget:
        return self._budget

    @property
    def phase(self) -> BudgetPhase:
        return self._phase

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mean_contributions(self) -> List[Tuple[str, float]]:
        with self._lock:
            snapshot = {agent_id: list(turns) for agent_id, turns in self._usage.items()}
        contributions = [
            (agent_id, float(np.mean([t.contribution for t in turns])) if turns else 0.5)
            for agent_id, turns in snapshot.items()
        ]
        contributions.sort(key=lambda item: item[1], reverse=True)
        return contributions
