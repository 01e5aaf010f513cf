"""
Per-agent State Store
=====================
Plain key -> JSON document store backing the loop detector. One file per
(agent, kind) pair under ``<base_dir>/loop-detector/``::

    {agent}_hashes.json    prompt hash -> occurrence count
    {agent}_history.json   recent prompts, oldest first
    {agent}_state.json     recent state labels, oldest first

A missing file is a first observation and yields the caller's default. A file
that fails to parse yields the default too, with a warning, so one corrupted
agent record never halts the rest of the swarm. Real I/O failures raise
:class:`StateStoreError`.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

STATE_KINDS = ("hashes", "history", "state", "trajectory")


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _counts_ok(document: Any) -> bool:
    return isinstance(document, dict) and all(
        isinstance(k, str) and _is_count(v) for k, v in document.items()
    )


def _strings_ok(document: Any) -> bool:
    return isinstance(document, list) and all(isinstance(item, str) for item in document)


# element checks applied after the top-level type check
_ELEMENT_CHECKS = {
    "hashes": _counts_ok,
    "history": _strings_ok,
    "state": _strings_ok,
}


class StateStoreError(RuntimeError):
    """Persisted per-agent state could not be read or written.

    ``detection`` holds the decision computed for the turn when the failure
    happened while saving it; ``None`` means either no loop was found or the
    turn was never evaluated (read failure, ``evaluated`` is False then).
    """

    def __init__(
        self,
        message: str,
        agent_id: str = "",
        path: Optional[Path] = None,
        detection: Any = None,
        evaluated: bool = False,
    ) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.path = path
        self.detection = detection
        self.evaluated = evaluated


class AgentLocks:
    """Lazily created mutex per agent id.

    Locks are never removed once created: a thread may already be waiting on
    one, and a replacement would let a second caller in beside it.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, agent_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(agent_id)
            if lock is None:
                lock = self._locks[agent_id] = threading.Lock()
            return lock


class JsonStateStore:
    """
    File-backed per-agent document store.

    Usage::

        store = JsonStateStore(".swarm-guard")
        counts = store.load("agent-1", "hashes", {})
        counts[digest] = counts.get(digest, 0) + 1
        store.save("agent-1", "hashes", counts)
    """

    def __init__(self, base_dir: Union[str, Path] = ".swarm-guard") -> None:
        self.base_dir = Path(base_dir)
        self.directory = self.base_dir / "loop-detector"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def path_for(self, agent_id: str, kind: str) -> Path:
        if kind not in STATE_KINDS:
            raise ValueError(f"unknown state kind: {kind!r}")
        return self.directory / f"{agent_id}_{kind}.json"

    def load(self, agent_id: str, kind: str, default: Any) -> Any:
        """
        Return the stored document, or ``default`` when there is none.

        The default is also returned (and a warning logged) when the file
        holds invalid JSON, a document of a different top-level type than
        ``default``, or (for the loop-detector kinds) elements of the wrong
        type: hash counts must be integers, prompts and states strings.
        """
        path = self.path_for(agent_id, kind)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
        except FileNotFoundError:
            return default
        except OSError as exc:
            raise StateStoreError(
                f"cannot read {kind} state for agent {agent_id}: {exc}",
                agent_id=agent_id,
                path=path,
            ) from exc

        try:
            document = json.loads(content)
        except ValueError as exc:
            logger.warning(
                "Corrupted %s state for agent %s at %s (%s); resetting to empty",
                kind,
                agent_id,
                path,
                exc,
            )
            return default

        if default is not None and not isinstance(document, type(default)):
            logger.warning(
                "Unexpected %s document type %s for agent %s; resetting to empty",
                kind,
                type(document).__name__,
                agent_id,
            )
            return default

        check = _ELEMENT_CHECKS.get(kind)
        if check is not None and not check(document):
            logger.warning(
                "Corrupted %s state for agent %s at %s (unexpected element types); "
                "resetting to empty",
                kind,
                agent_id,
                path,
            )
            return default
        return document

    def save(self, agent_id: str, kind: str, document: Any) -> None:
        """Write ``document`` atomically, creating directories as needed."""
        path = self.path_for(agent_id, kind)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(document, fh, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise StateStoreError(
                f"cannot write {kind} state for agent {agent_id}: {exc}",
                agent_id=agent_id,
                path=path,
            ) from exc

    def delete_agent(self, agent_id: str) -> int:
        """Remove every document stored for ``agent_id``; returns the count."""
        removed = 0
        for kind in STATE_KINDS:
            path = self.path_for(agent_id, kind)
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StateStoreError(
                    f"cannot delete {kind} state for agent {agent_id}: {exc}",
                    agent_id=agent_id,
                    path=path,
                ) from exc
        return removed

    def agents(self) -> List[str]:
        """Agent ids with at least one persisted document."""
        if not self.directory.is_dir():
            return []
        found = set()
        for path in self.directory.glob("*.json"):
            stem = path.stem
            for kind in STATE_KINDS:
                suffix = f"_{kind}"
                if stem.endswith(suffix):
                    found.add(stem[: -len(suffix)])
                    break
        return sorted(found)
