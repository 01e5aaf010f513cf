"""
Trajectory Compressor
=====================
Shrinks an agent's action log so it fits a bounded context window.

High-impact and successful entries are preserved verbatim. Low-impact
failures are grouped by action into summaries; noise (status filler,
explicitly superseded results, one-off failures) is dropped. Every input
entry ends up in exactly one of ``preserved``, a summary group's ``members``
or ``dropped``.

Compression is advisory and never raises on odd entries.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_SUPERSEDED_MARKERS = (
    "updated",
    "replaced",
    "superseded",
    "revised",
    "corrected",
    "overridden",
)

DEFAULT_REDUNDANT_PATTERNS = (
    r"status:?\s*(working|in progress|proceeding)",
    r"still\s+(working|processing)",
    r"no\s+(change|updates|new info)",
    r"continuing\s+as\s+before",
    r"same\s+as\s+(before|previous)",
)


@dataclass(frozen=True)
class TrajectoryEntry:
    timestamp: str
    action: str
    outcome: str
    is_repeat: bool = False
    impact_score: float = 0.0
    succeeded: bool = False
    tokens_used: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrajectoryEntry":
        outcome = data.get("outcome")
        return cls(
            timestamp=str(data.get("timestamp", "")),
            action=str(data.get("action", "")),
            outcome=outcome if isinstance(outcome, str) else "",
            is_repeat=bool(data.get("is_repeat", False)),
            impact_score=float(data.get("impact_score", 0.0) or 0.0),
            succeeded=bool(data.get("succeeded", False)),
            tokens_used=int(data.get("tokens_used", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrajectoryLog:
    entries: List[TrajectoryEntry] = field(default_factory=list)
    tokens_used: Optional[int] = None

    def __post_init__(self) -> None:
        if self.tokens_used is None:
            self.tokens_used = sum(e.tokens_used for e in self.entries)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrajectoryLog":
        entries = [
            TrajectoryEntry.from_dict(item)
            for item in data.get("entries", [])
            if isinstance(item, Mapping)
        ]
        tokens = data.get("tokens_used")
        return cls(entries=entries, tokens_used=None if tokens is None else int(tokens))


@dataclass
class SummaryGroup:
    pattern: str
    count: int
    consolidated_description: str
    tokens_saved: int
    members: List[TrajectoryEntry] = field(default_factory=list, repr=False)


@dataclass
class CompressedTrajectory:
    preserved: List[TrajectoryEntry]
    summarized: List[SummaryGroup]
    compression_ratio: float
    dropped: List[TrajectoryEntry] = field(default_factory=list)


@dataclass
class CompressionStats:
    preserved: int = 0
    summarized: int = 0
    dropped: int = 0

    @property
    def total(self) -> int:
        return self.preserved + self.summarized + self.dropped

    @property
    def preservation_rate(self) -> float:
        return self.preserved / self.total if self.total else 0.0


class CompressionDecision(Enum):
    NO_PRESSURE = "no_pressure"
    PRESSURE_SHORT_LOG = "pressure_short_log"
    COMPRESS = "compress"


@dataclass
class CompressorConfig:
    preserve_threshold: float = 0.7
    context_threshold: float = 0.80           # fraction of the context window
    min_steps: int = 18
    min_tokens: int = 25_000
    max_summaries: int = 10
    summary_cost_divisor: float = 3.0         # a summary costs ~1/3 of its entries
    redundant_keep_impact: float = 0.5
    superseded_markers: List[str] = field(
        default_factory=lambda: list(DEFAULT_SUPERSEDED_MARKERS)
    )
    redundant_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_REDUNDANT_PATTERNS)
    )

    def __post_init__(self) -> None:
        if not 0.0 <= self.preserve_threshold <= 1.0:
            raise ValueError("preserve_threshold must be within [0, 1]")
        if self.summary_cost_divisor <= 0:
            raise ValueError("summary_cost_divisor must be positive")
        if self.max_summaries < 0:
            raise ValueError("max_summaries must not be negative")


def compression_decision(
    context_pct: float, steps: int, tokens: int, config: Optional[CompressorConfig] = None
) -> CompressionDecision:
    """Context pressure gates compression; log length alone never triggers it."""
    cfg = config or CompressorConfig()
    if not context_pct > cfg.context_threshold:
        return CompressionDecision.NO_PRESSURE
    if steps >= cfg.min_steps or tokens >= cfg.min_tokens:
        return CompressionDecision.COMPRESS
    return CompressionDecision.PRESSURE_SHORT_LOG


def _outcome_text(entry: TrajectoryEntry) -> str:
    outcome = entry.outcome
    return outcome.lower() if isinstance(outcome, str) else ""


class TrajectoryCompressor:
    """
    Impact-ranked retention and summarization of an agent's action log.

    Usage::

        compressor = TrajectoryCompressor()
        if compressor.should_compress(0.85, len(log.entries), log.tokens_used):
            compressed = compressor.compress_trajectory(log)
    """

    def __init__(self, config: Optional[CompressorConfig] = None) -> None:
        self.config = config or CompressorConfig()
        self._markers = [m.lower() for m in self.config.superseded_markers]
        self._redundant: List[re.Pattern] = []
        for pattern in self.config.redundant_patterns:
            try:
                self._redundant.append(re.compile(pattern, re.IGNORECASE))
            except re.error as exc:
                logger.warning("Ignoring invalid redundancy pattern %r: %s", pattern, exc)
        self._stats = CompressionStats()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def should_compress(self, context_pct: float, steps: int, tokens: int) -> bool:
        decision = compression_decision(context_pct, steps, tokens, self.config)
        return decision is CompressionDecision.COMPRESS

    def compress_trajectory(
        self, log: Union[TrajectoryLog, Sequence[TrajectoryEntry]]
    ) -> CompressedTrajectory:
        """
        Partition ``log`` into preserved entries, summary groups and drops.

        ``compression_ratio`` is ``(preserved_tokens + tokens_saved / divisor)
        / original_tokens``; 0.0 for an empty log.
        """
        if not isinstance(log, TrajectoryLog):
            log = TrajectoryLog(entries=list(log))
        cfg = self.config

        preserved: List[TrajectoryEntry] = []
        dropped: List[TrajectoryEntry] = []
        candidates: Dict[str, List[TrajectoryEntry]] = {}
        for entry in log.entries:
            if entry.impact_score >= cfg.preserve_threshold or entry.succeeded:
                preserved.append(entry)
            elif self.is_superseded(entry) or self.is_redundant(entry):
                dropped.append(entry)
            else:
                candidates.setdefault(entry.action, []).append(entry)

        groups = [
            self._summarize(action, members)
            for action, members in candidates.items()
            if len(members) >= 2
        ]
        # stable sort keeps first-seen order among equal counts
        groups.sort(key=lambda g: g.count, reverse=True)
        summarized = groups[: cfg.max_summaries]
        for group in groups[cfg.max_summaries:]:
            dropped.extend(group.members)
        for members in candidates.values():
            if len(members) == 1:
                dropped.extend(members)

        original_tokens = log.tokens_used or 0
        preserved_tokens = sum(e.tokens_used for e in preserved)
        summarized_tokens = sum(g.tokens_saved for g in summarized)
        if original_tokens > 0:
            ratio = (preserved_tokens + summarized_tokens / cfg.summary_cost_divisor) / original_tokens
        else:
            ratio = 0.0

        self._stats.preserved += len(preserved)
        self._stats.summarized += sum(g.count for g in summarized)
        self._stats.dropped += len(dropped)
        logger.info(
            "Trajectory compressed: %d entries -> %d preserved, %d groups, %d dropped "
            "(ratio %.2f)",
            len(log.entries),
            len(preserved),
            len(summarized),
            len(dropped),
            ratio,
        )
        return CompressedTrajectory(
            preserved=preserved,
            summarized=summarized,
            compression_ratio=ratio,
            dropped=dropped,
        )

    def filter_expired_info(self, entries: Iterable[TrajectoryEntry]) -> List[TrajectoryEntry]:
        """
        Drop superseded and redundant entries; keep one best result per action.

        Returns the survivors by descending impact (a priority-ordered
        reading list, not chronological).
        """
        entries = list(entries)
        discarded = set()
        best_by_action: Dict[str, int] = {}

        for index, entry in enumerate(entries):
            if self.is_superseded(entry):
                discarded.add(index)
                continue
            if self.is_redundant(entry) and entry.impact_score < self.config.redundant_keep_impact:
                discarded.add(index)
                continue
            if not entry.succeeded:
                continue

            current = best_by_action.get(entry.action)
            if current is None:
                best_by_action[entry.action] = index
                continue
            best = entries[current]
            # later entries win ties on both impact and tokens
            if (entry.impact_score, entry.tokens_used) >= (best.impact_score, best.tokens_used):
                discarded.add(current)
                best_by_action[entry.action] = index
            else:
                discarded.add(index)

        survivors = [e for i, e in enumerate(entries) if i not in discarded]
        survivors.sort(key=lambda e: e.impact_score, reverse=True)
        return survivors

    def is_superseded(self, entry: TrajectoryEntry) -> bool:
        text = _outcome_text(entry)
        return any(marker in text for marker in self._markers)

    def is_redundant(self, entry: TrajectoryEntry) -> bool:
        text = _outcome_text(entry)
        return any(pattern.search(text) for pattern in self._redundant)

    def reset_stats(self) -> None:
        self._stats = CompressionStats()

    @property
    def stats(self) -> CompressionStats:
        return CompressionStats(
            preserved=self._stats.preserved,
            summarized=self._stats.summarized,
            dropped=self._stats.dropped,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _summarize(action: str, members: List[TrajectoryEntry]) -> SummaryGroup:
        count = len(members)
        avg_tokens = sum(e.tokens_used for e in members) // count
        first_outcome = members[0].outcome if isinstance(members[0].outcome, str) else ""
        description = f"{count}x {action} -> consolidated"
        if first_outcome:
            description = f"{description} (first outcome: {first_outcome})"
        return SummaryGroup(
            pattern=action,
            count=count,
            consolidated_description=description,
            tokens_saved=avg_tokens * (count - 1) // 2,
            members=list(members),
        )
