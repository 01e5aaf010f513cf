#!/usr/bin/env python3
"""Deterministic three-agent swarm walkthrough for SwarmGuard.

Drives a looping agent, an oscillating agent and a healthy agent through the
facade, then reallocates the shared budget and compresses the healthy
agent's trajectory under context pressure. Output markers are stable so the
run can be checked from tests.
"""

from __future__ import annotations

import sys
import tempfile
from pathlib import Path

# Make script runnable from repo root without requiring package install.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from swarm_guard import SwarmGuard, SwarmGuardConfig, TrajectoryEntry, TrajectoryLog

START = 1_000.0
TURNS = 6

WORKER_PROMPTS = [
    "parse the config file",
    "write unit tests for parser",
    "refactor storage layer",
    "add retry to http client",
    "document public api",
    "benchmark hot path",
]
WORKER_STATES = ["planning", "coding", "testing", "coding", "reviewing", "done"]


def turn_inputs(turn: int):
    """(agent_id, prompt, state, tokens, contribution) for every agent in a turn."""
    i = turn - 1
    return [
        ("looper", "list open tasks", "querying", 1000 * turn, 0.1),
        ("pinger", f"draft section {turn} of the report", ("analyzing", "writing")[i % 2], 800 * turn, 0.2),
        ("worker", WORKER_PROMPTS[i], WORKER_STATES[i], 600 * turn, 0.9),
    ]


def run_turns(guard: SwarmGuard) -> None:
    print("=== TURNS ===")
    for turn in range(1, TURNS + 1):
        timestamp = START + turn * 10
        for agent_id, prompt, state, tokens, contribution in turn_inputs(turn):
            report = guard.observe_turn(
                agent_id=agent_id,
                prompt=prompt,
                state=state,
                tokens_used=tokens,
                contribution=contribution,
                context_percentage=40.0 + 5 * turn if agent_id == "worker" else None,
                timestamp=timestamp,
            )
            loop = report.loop_detection.detection_type.value if report.loop_detection else None
            print(
                f"turn={turn} agent={agent_id} state={state} loop={loop} "
                f"alerts={len(report.alerts)} pruning={report.pruning_advice is not None}"
            )
            for line in report.messages:
                print(f"  note: {line}")


def run_budget(guard: SwarmGuard) -> None:
    print("\n=== BUDGET ===")
    print(f"imbalanced {guard.resources.check_imbalance()}")
    allocation = guard.reallocate_budget(100_000)
    print(f"safety_reserve {allocation.safety_reserve}")
    print(f"per_agent {allocation.per_agent}")
    for agent_id, share in sorted(allocation.allocated.items()):
        print(f"allocated {agent_id}={share}")
    for note in allocation.adjustments:
        print(f"adjustment: {note}")


def build_trajectory() -> TrajectoryLog:
    entries = []
    for i in range(6):
        entries.append(
            TrajectoryEntry(f"t{i:02d}", "extract_data", f"parsed batch {i}", impact_score=0.9, succeeded=True, tokens_used=1500)
        )
    for i in range(8):
        entries.append(
            TrajectoryEntry(f"q{i:02d}", "run_query", "Connection timeout", impact_score=0.2, tokens_used=1200)
        )
    for i in range(4):
        entries.append(
            TrajectoryEntry(f"p{i:02d}", "poll", "status: in progress", impact_score=0.1, tokens_used=200)
        )
    for i in range(2):
        entries.append(
            TrajectoryEntry(f"l{i:02d}", "lookup_rate", "rate corrected upstream", impact_score=0.3, tokens_used=400)
        )
    return TrajectoryLog(entries)


def run_compression(guard: SwarmGuard) -> None:
    print("\n=== COMPRESSION ===")
    log = build_trajectory()
    report = guard.observe_turn(
        agent_id="worker",
        prompt="hand over results to reviewer",
        state="done",
        tokens_used=600 * (TURNS + 1),
        contribution=0.9,
        context_percentage=85.0,
        trajectory=log,
        timestamp=START + (TURNS + 1) * 10,
    )
    compressed = report.compressed
    print(f"entries {len(log.entries)} tokens {log.tokens_used}")
    print(f"compressed {compressed is not None}")
    if compressed is None:
        return
    print(f"preserved {len(compressed.preserved)}")
    for group in compressed.summarized:
        print(f"summary: {group.consolidated_description} (saved {group.tokens_saved})")
    print(f"dropped {len(compressed.dropped)}")
    print(f"ratio {compressed.compression_ratio:.2f}")


def main() -> int:
    with tempfile.TemporaryDirectory(prefix="swarm-guard-") as state_dir:
        guard = SwarmGuard(SwarmGuardConfig(state_dir=state_dir))
        run_turns(guard)
        run_budget(guard)
        run_compression(guard)

        print("\n=== SUMMARY ===")
        print(f"loop_count {len(guard.detector.loop_events)}")
        print(f"detection_counts {guard.detection_counts()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
