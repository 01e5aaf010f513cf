"""
Loop Detector
=============
Detects when an agent is stuck repeating itself. Three checks run in a fixed
order over a persisted per-agent history; the first one to fire wins:

1. exact loop        -- the same prompt (by sha256) seen ``exact_loop_threshold`` times
2. semantic loop     -- the prompt is near-identical to the recent prompts
3. state oscillation -- the state label strictly alternates A, B, A, B, ...

History survives process restarts through a :class:`JsonStateStore`.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter, deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Sequence

from .similarity import JaccardSimilarity, SimilarityProvider
from .store import AgentLocks, JsonStateStore, StateStoreError

logger = logging.getLogger(__name__)


class LoopType(Enum):
    EXACT_LOOP = "ExactLoop"
    SEMANTIC_LOOP = "SemanticLoop"
    STATE_OSCILLATION = "StateOscillation"


class OscillationState(Enum):
    INSUFFICIENT_HISTORY = "insufficient_history"
    PROGRESSING = "progressing"
    OSCILLATING = "oscillating"


@dataclass(frozen=True)
class LoopDetection:
    detection_type: LoopType
    agent_id: str
    loop_count: int
    content_hash: str
    timestamp: str

    @property
    def message(self) -> str:
        if self.detection_type is LoopType.EXACT_LOOP:
            return (
                f"Agent {self.agent_id} repeated an identical prompt "
                f"{self.loop_count} times"
            )
        if self.detection_type is LoopType.SEMANTIC_LOOP:
            return (
                f"Agent {self.agent_id} issued {self.loop_count} near-identical "
                "prompts in a row"
            )
        return (
            f"Agent {self.agent_id} is alternating between two states "
            f"({self.loop_count} cycles) without progress"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["detection_type"] = self.detection_type.value
        data["message"] = self.message
        return data


@dataclass
class LoopDetectorConfig:
    exact_loop_threshold: int = 3
    semantic_loop_threshold: int = 5          # prompts compared, and matches needed
    state_oscillation_threshold: int = 3      # A/B cycles needed
    semantic_similarity_threshold: float = 0.85
    prompt_history_size: int = 50
    state_history_size: int = 20
    event_log_size: int = 1000                # detections kept in memory

    def __post_init__(self) -> None:
        for name in (
            "exact_loop_threshold",
            "semantic_loop_threshold",
            "state_oscillation_threshold",
            "prompt_history_size",
            "state_history_size",
            "event_log_size",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if not 0.0 <= self.semantic_similarity_threshold <= 1.0:
            raise ValueError("semantic_similarity_threshold must be within [0, 1]")
        if self.state_history_size < 2 * self.state_oscillation_threshold:
            raise ValueError(
                "state_history_size must hold 2 * state_oscillation_threshold states"
            )


def hash_prompt(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()


def classify_states(states: Sequence[str], threshold: int) -> OscillationState:
    """
    Classify the tail of a state history.

    The most recent ``2 * threshold`` labels are split into even- and
    odd-indexed sub-sequences; the agent oscillates only when each
    sub-sequence is constant and the two constants differ.
    """
    window = 2 * threshold
    if len(states) < window:
        return OscillationState.INSUFFICIENT_HISTORY
    recent = list(states[-window:])
    evens = set(recent[0::2])
    odds = set(recent[1::2])
    if len(evens) == 1 and len(odds) == 1 and evens != odds:
        return OscillationState.OSCILLATING
    return OscillationState.PROGRESSING


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class LoopDetector:
    """
    Detects repetition loops per agent over persisted history.

    Usage::

        detector = LoopDetector(store=JsonStateStore(".swarm-guard"))
        detection = detector.check_all_loops("agent-1", prompt, "analyzing")
        if detection is not None:
            ...

    Calls for the same agent are serialised by a per-agent lock; calls for
    different agents never wait on each other.
    """

    def __init__(
        self,
        config: Optional[LoopDetectorConfig] = None,
        store: Optional[JsonStateStore] = None,
        similarity: Optional[SimilarityProvider] = None,
    ) -> None:
        self.config = config or LoopDetectorConfig()
        self.store = store or JsonStateStore()
        self.similarity = similarity or JaccardSimilarity()
        self._locks = AgentLocks()
        self._loop_events: Deque[LoopDetection] = deque(
            maxlen=self.config.event_log_size
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check_exact_loop(self, agent_id: str, prompt: str) -> Optional[LoopDetection]:
        with self._locks.get(agent_id):
            hashes = self._load_hashes(agent_id)
            detection = self._exact(agent_id, prompt, hashes)
            self._persist(agent_id, detection, hashes=hashes)
        return self._emit(detection)

    def check_semantic_loop(self, agent_id: str, prompt: str) -> Optional[LoopDetection]:
        """Compare ``prompt`` with the recorded history; does not record it."""
        with self._locks.get(agent_id):
            history = self._load_history(agent_id)
        return self._emit(self._semantic(agent_id, prompt, history))

    def check_state_oscillation(self, agent_id: str, state: str) -> Optional[LoopDetection]:
        with self._locks.get(agent_id):
            states = self._load_states(agent_id)
            self._append(states, state, self.config.state_history_size)
            detection = self._oscillation(agent_id, states)
            self._persist(agent_id, detection, states=states)
        return self._emit(detection)

    def check_all_loops(
        self, agent_id: str, prompt: str, state: str
    ) -> Optional[LoopDetection]:
        """
        Run exact, semantic and oscillation checks for one agent turn.

        Every call records the prompt, its hash and the state, whether or not
        a loop fires, so replaying the same calls reproduces the same
        detections.

        Raises
        ------
        StateStoreError
            Persisted history could not be read (turn not evaluated) or
            written (``exc.detection`` holds this turn's decision).
        """
        with self._locks.get(agent_id):
            hashes = self._load_hashes(agent_id)
            history = self._load_history(agent_id)
            states = self._load_states(agent_id)

            detection = self._exact(agent_id, prompt, hashes)
            if detection is None:
                detection = self._semantic(agent_id, prompt, history)

            self._append(history, prompt, self.config.prompt_history_size)
            self._append(states, state, self.config.state_history_size)
            if detection is None:
                detection = self._oscillation(agent_id, states)

            self._persist(
                agent_id, detection, hashes=hashes, history=history, states=states
            )
        return self._emit(detection)

    def reset(self, agent_id: str) -> None:
        """Forget the agent's persisted loop memory."""
        with self._locks.get(agent_id):
            self.store.delete_agent(agent_id)
        logger.info("LoopDetector state reset for agent %s", agent_id)

    def detection_counts(self) -> Dict[LoopType, int]:
        counts = Counter(event.detection_type for event in self._loop_events)
        return {loop_type: counts.get(loop_type, 0) for loop_type in LoopType}

    @property
    def loop_events(self) -> List[LoopDetection]:
        return list(self._loop_events)

    # ------------------------------------------------------------------
    # Checks (pure over the loaded documents)
    # ------------------------------------------------------------------

    def _exact(
        self, agent_id: str, prompt: str, hashes: Dict[str, int]
    ) -> Optional[LoopDetection]:
        digest = hash_prompt(prompt)
        count = int(hashes.get(digest, 0)) + 1
        hashes[digest] = count
        if count != self.config.exact_loop_threshold:
            return None
        return LoopDetection(
            detection_type=LoopType.EXACT_LOOP,
            agent_id=agent_id,
            loop_count=count,
            content_hash=digest,
            timestamp=_now_iso(),
        )

    def _semantic(
        self, agent_id: str, prompt: str, history: List[str]
    ) -> Optional[LoopDetection]:
        needed = self.config.semantic_loop_threshold
        recent = history[-needed:]
        matches = sum(
            1
            for previous in reversed(recent)
            if self.similarity.similarity(prompt, previous)
            > self.config.semantic_similarity_threshold
        )
        logger.debug(
            "Semantic check for agent %s: %d/%d similar prompts", agent_id, matches, needed
        )
        if matches < needed:
            return None
        return LoopDetection(
            detection_type=LoopType.SEMANTIC_LOOP,
            agent_id=agent_id,
            loop_count=matches,
            content_hash=hash_prompt(prompt),
            timestamp=_now_iso(),
        )

    def _oscillation(self, agent_id: str, states: List[str]) -> Optional[LoopDetection]:
        threshold = self.config.state_oscillation_threshold
        if classify_states(states, threshold) is not OscillationState.OSCILLATING:
            return None
        return LoopDetection(
            detection_type=LoopType.STATE_OSCILLATION,
            agent_id=agent_id,
            loop_count=threshold,
            content_hash="",
            timestamp=_now_iso(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _append(items: List[str], item: str, cap: int) -> None:
        items.append(item)
        del items[:-cap]

    def _load_hashes(self, agent_id: str) -> Dict[str, int]:
        return self.store.load(agent_id, "hashes", {})

    def _load_history(self, agent_id: str) -> List[str]:
        return self.store.load(agent_id, "history", [])

    def _load_states(self, agent_id: str) -> List[str]:
        return self.store.load(agent_id, "state", [])

    def _persist(
        self,
        agent_id: str,
        detection: Optional[LoopDetection],
        hashes: Optional[Dict[str, int]] = None,
        history: Optional[List[str]] = None,
        states: Optional[List[str]] = None,
    ) -> None:
        try:
            if hashes is not None:
                self.store.save(agent_id, "hashes", hashes)
            if history is not None:
                self.store.save(agent_id, "history", history)
            if states is not None:
                self.store.save(agent_id, "state", states)
        except StateStoreError as exc:
            exc.detection = detection
            exc.evaluated = True
            if detection is not None:
                self._loop_events.append(detection)
            raise

    def _emit(self, detection: Optional[LoopDetection]) -> Optional[LoopDetection]:
        if detection is not None:
            self._loop_events.append(detection)
            logger.warning(
                "Loop detected for agent %s: %s (count=%d)",
                detection.agent_id,
                detection.detection_type.value,
                detection.loop_count,
            )
        return detection
