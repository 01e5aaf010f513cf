"""Tests for LoopDetector."""
import logging
import threading

import pytest
from swarm_guard.detector import (
    LoopDetector,
    LoopDetectorConfig,
    LoopType,
    OscillationState,
    classify_states,
    hash_prompt,
)
from swarm_guard.similarity import SimilarityProvider
from swarm_guard.store import JsonStateStore, StateStoreError


class ConstantSimilarity(SimilarityProvider):
    def __init__(self, score):
        self.score = score

    def similarity(self, text1, text2):
        return self.score


def make_detector(tmp_path, similarity=None, **overrides):
    return LoopDetector(
        LoopDetectorConfig(**overrides),
        store=JsonStateStore(tmp_path),
        similarity=similarity,
    )


def test_no_loop_on_unique_prompts(tmp_path):
    d = make_detector(tmp_path)
    prompts = ["search flights", "compare hotel prices", "draft itinerary", "book taxi"]
    states = ["searching", "comparing", "writing", "booking"]
    for prompt, state in zip(prompts, states):
        assert d.check_all_loops("agent-1", prompt, state) is None
    assert d.loop_events == []


def test_exact_loop_fires_once_at_threshold(tmp_path):
    d = make_detector(tmp_path)
    results = [d.check_all_loops("agent-1", "list open tasks", "querying") for _ in range(5)]

    assert results[0] is None
    assert results[1] is None
    assert results[2] is not None
    assert results[2].detection_type is LoopType.EXACT_LOOP
    assert results[2].loop_count == 3
    assert results[2].content_hash == hash_prompt("list open tasks")
    assert results[3] is None
    assert results[4] is None


def test_exact_loop_is_per_agent(tmp_path):
    d = make_detector(tmp_path)
    for _ in range(2):
        d.check_exact_loop("agent-1", "ping")
    assert d.check_exact_loop("agent-2", "ping") is None
    assert d.check_exact_loop("agent-1", "ping").agent_id == "agent-1"


def test_semantic_loop_needs_full_window_of_similar_prompts(tmp_path):
    d = make_detector(tmp_path, similarity=ConstantSimilarity(0.9))
    for i in range(5):
        assert d.check_all_loops("agent-1", f"rephrased request {i}", "working") is None

    detection = d.check_all_loops("agent-1", "rephrased request 5", "working")
    assert detection.detection_type is LoopType.SEMANTIC_LOOP
    assert detection.loop_count == 5


def test_semantic_threshold_is_strict(tmp_path):
    d = make_detector(tmp_path, similarity=ConstantSimilarity(0.85))
    for i in range(8):
        assert d.check_all_loops("agent-1", f"request {i}", "working") is None


def test_check_semantic_loop_does_not_record_prompt(tmp_path):
    d = make_detector(tmp_path, similarity=ConstantSimilarity(1.0))
    d.check_all_loops("agent-1", "first", "s")
    d.check_semantic_loop("agent-1", "second")
    assert d.store.load("agent-1", "history", []) == ["first"]


def test_state_oscillation_detected(tmp_path):
    d = make_detector(tmp_path)
    states = ["analyzing", "writing"] * 3
    results = [
        d.check_all_loops("agent-1", f"step {i} with fresh wording number {i * 7}", state)
        for i, state in enumerate(states)
    ]
    assert results[:5] == [None] * 5
    assert results[5].detection_type is LoopType.STATE_OSCILLATION
    assert results[5].loop_count == 3
    assert results[5].content_hash == ""


def test_three_state_cycle_is_not_oscillation(tmp_path):
    d = make_detector(tmp_path)
    for i, state in enumerate(["A", "B", "C"] * 3):
        assert d.check_all_loops("agent-1", f"distinct prompt {i} token{i}", state) is None


def test_check_state_oscillation_records_state(tmp_path):
    d = make_detector(tmp_path)
    for state in ["A", "B", "A", "B", "A"]:
        assert d.check_state_oscillation("agent-1", state) is None
    assert d.check_state_oscillation("agent-1", "B").detection_type is LoopType.STATE_OSCILLATION
    assert d.store.load("agent-1", "state", []) == ["A", "B"] * 3


@pytest.mark.parametrize(
    "states,expected",
    [
        (["A", "B", "A", "B", "A"], OscillationState.INSUFFICIENT_HISTORY),
        (["A", "B", "A", "B", "A", "B"], OscillationState.OSCILLATING),
        (["X", "A", "B", "A", "B", "A", "B"], OscillationState.OSCILLATING),
        (["A", "A", "A", "A", "A", "A"], OscillationState.PROGRESSING),
        (["A", "B", "C", "A", "B", "C"], OscillationState.PROGRESSING),
        (["A", "B", "A", "B", "A", "C"], OscillationState.PROGRESSING),
    ],
)
def test_classify_states(states, expected):
    assert classify_states(states, 3) is expected


def test_history_survives_new_instance(tmp_path):
    first = make_detector(tmp_path)
    first.check_all_loops("agent-1", "retry deploy", "deploying")
    first.check_all_loops("agent-1", "retry deploy", "deploying")

    second = make_detector(tmp_path)
    detection = second.check_all_loops("agent-1", "retry deploy", "deploying")
    assert detection is not None
    assert detection.detection_type is LoopType.EXACT_LOOP


def test_history_is_bounded(tmp_path):
    d = make_detector(tmp_path, prompt_history_size=4, state_history_size=6)
    for i in range(10):
        d.check_all_loops("agent-1", f"prompt {i}", f"state-{i}")
    assert d.store.load("agent-1", "history", []) == [f"prompt {i}" for i in range(6, 10)]
    assert len(d.store.load("agent-1", "state", [])) == 6


def test_save_failure_carries_detection(tmp_path, monkeypatch):
    d = make_detector(tmp_path)
    d.check_all_loops("agent-1", "same", "s")
    d.check_all_loops("agent-1", "same", "s")

    def refuse(agent_id, kind, document):
        raise StateStoreError("disk full", agent_id=agent_id)

    monkeypatch.setattr(d.store, "save", refuse)
    with pytest.raises(StateStoreError) as info:
        d.check_all_loops("agent-1", "same", "s")

    assert info.value.evaluated is True
    assert info.value.detection.detection_type is LoopType.EXACT_LOOP
    assert d.loop_events[-1] is info.value.detection


def test_save_failure_without_loop(tmp_path, monkeypatch):
    d = make_detector(tmp_path)

    def refuse(agent_id, kind, document):
        raise StateStoreError("read-only", agent_id=agent_id)

    monkeypatch.setattr(d.store, "save", refuse)
    with pytest.raises(StateStoreError) as info:
        d.check_all_loops("agent-1", "hello", "s")
    assert info.value.evaluated is True
    assert info.value.detection is None


def test_reset_clears_persisted_state(tmp_path):
    d = make_detector(tmp_path)
    d.check_all_loops("agent-1", "same", "s")
    d.check_all_loops("agent-1", "same", "s")
    d.reset("agent-1")

    assert d.store.agents() == []
    assert d.check_all_loops("agent-1", "same", "s") is None


def test_detection_counts_and_messages(tmp_path):
    d = make_detector(tmp_path)
    for _ in range(3):
        detection = d.check_all_loops("agent-1", "same", "s")

    counts = d.detection_counts()
    assert counts[LoopType.EXACT_LOOP] == 1
    assert counts[LoopType.SEMANTIC_LOOP] == 0
    assert counts[LoopType.STATE_OSCILLATION] == 0
    assert "repeated an identical prompt 3 times" in detection.message
    assert detection.to_dict()["detection_type"] == "ExactLoop"


def test_config_validation():
    with pytest.raises(ValueError):
        LoopDetectorConfig(exact_loop_threshold=0)
    with pytest.raises(ValueError):
        LoopDetectorConfig(semantic_similarity_threshold=1.5)
    with pytest.raises(ValueError):
        LoopDetectorConfig(state_oscillation_threshold=3, state_history_size=5)


def test_malformed_hash_count_resets_with_warning(tmp_path, caplog):
    store = JsonStateStore(tmp_path)
    store.save("agent-1", "hashes", {hash_prompt("same"): None})
    d = LoopDetector(store=store)

    with caplog.at_level(logging.WARNING, logger="swarm_guard.store"):
        assert d.check_all_loops("agent-1", "same", "s") is None
    assert "Corrupted hashes state for agent agent-1" in caplog.text
    assert d.store.load("agent-1", "hashes", {}) == {hash_prompt("same"): 1}


def test_malformed_history_and_states_reset(tmp_path, caplog):
    store = JsonStateStore(tmp_path)
    store.save("agent-1", "history", ["ok", 42, None])
    store.save("agent-1", "state", [{"label": "A"}])
    d = LoopDetector(store=store)

    with caplog.at_level(logging.WARNING, logger="swarm_guard.store"):
        assert d.check_all_loops("agent-1", "fresh prompt", "A") is None
    assert "Corrupted history state" in caplog.text
    assert "Corrupted state state" in caplog.text
    assert d.store.load("agent-1", "history", []) == ["fresh prompt"]
    assert d.store.load("agent-1", "state", []) == ["A"]


def test_reset_keeps_the_agent_lock(tmp_path):
    d = make_detector(tmp_path)
    lock = d._locks.get("agent-1")
    d.check_all_loops("agent-1", "same", "s")
    d.reset("agent-1")
    assert d._locks.get("agent-1") is lock


def test_concurrent_calls_for_one_agent_lose_no_updates(tmp_path):
    d = make_detector(tmp_path)
    threads_count, calls_per_thread = 8, 25
    barrier = threading.Barrier(threads_count)
    errors = []

    def worker():
        barrier.wait()
        try:
            for _ in range(calls_per_thread):
                d.check_all_loops("agent-1", "same prompt", "working")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    hashes = d.store.load("agent-1", "hashes", {})
    assert hashes == {hash_prompt("same prompt"): threads_count * calls_per_thread}
    assert d.detection_counts()[LoopType.EXACT_LOOP] == 1


def test_other_agents_do_not_wait_on_a_busy_agent(tmp_path):
    d = make_detector(tmp_path)
    results = []

    with d._locks.get("busy"):
        t = threading.Thread(target=lambda: results.append(d.check_all_loops("idle", "hello", "s")))
        t.start()
        t.join(timeout=5)
        assert not t.is_alive()

    assert results == [None]
    assert d.check_all_loops("busy", "hello", "s") is None


def test_loop_event_log_is_bounded(tmp_path):
    d = make_detector(tmp_path, exact_loop_threshold=1, event_log_size=2)
    for i in range(5):
        assert d.check_all_loops("agent-1", f"prompt {i}", f"s{i}") is not None

    events = d.loop_events
    assert len(events) == 2
    assert events[-1].content_hash == hash_prompt("prompt 4")
