from __future__ import annotations

"""Persisted, append-only record of card signatures already spent per goal."""

import fcntl
import json
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .models import GoalKind


NULLIFIER_SCHEMA_VERSION = "0.1"


def _empty_document() -> dict[str, Any]:
    return {"state_schema_version": NULLIFIER_SCHEMA_VERSION, "quests": {}, "powers": {}}


def _normalize_group(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        return {}
    group: dict[str, list[str]] = {}
    for goal_id, signatures in raw.items():
        if not isinstance(signatures, list):
            continue
        group[str(goal_id)] = sorted({sig for sig in signatures if isinstance(sig, str) and sig})
    return group


def normalize_document(raw: Any) -> dict[str, Any]:
    """Coerce a stored document (including the unversioned legacy layout) to the current shape."""

    if not isinstance(raw, dict):
        return _empty_document()
    return {
        "state_schema_version": NULLIFIER_SCHEMA_VERSION,
        "quests": _normalize_group(raw.get("quests")),
        "powers": _normalize_group(raw.get("powers")),
    }


class NullifierBackend(Protocol):
    def locked(self) -> Any: ...

    def read(self) -> dict[str, Any]: ...

    def write(self, document: dict[str, Any]) -> None: ...


class MemoryNullifierBackend:
    """In-process backend; `writes` counts full-document writes."""

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self._document = normalize_document(document) if document is not None else _empty_document()
        self._lock = threading.RLock()
        self.writes = 0

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def read(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._document))

    def write(self, document: dict[str, Any]) -> None:
        self._document = json.loads(json.dumps(document))
        self.writes += 1


class JsonFileNullifierBackend:
    """JSON document on disk guarded by an advisory lock file shared across processes."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.parent / f".{path.name}.lock"
        self._thread_lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._thread_lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock_path.open("a", encoding="utf-8") as handle:
                fcntl.flock(handle, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle, fcntl.LOCK_UN)

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return _empty_document()
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Nullifier state is not valid JSON: {self.path}") from exc
        return normalize_document(payload)

    def write(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.parent / f".{self.path.name}.tmp"
        payload = json.dumps(document, indent=2, sort_keys=True)
        for attempt in range(5):
            temp_path.write_text(payload, encoding="utf-8")
            try:
                temp_path.replace(self.path)
                return
            except PermissionError:
                if attempt == 4:
                    raise
                time.sleep(0.02 * (attempt + 1))


@dataclass(frozen=True)
class NullifierSet:
    quests: dict[str, frozenset[str]] = field(default_factory=dict)
    powers: dict[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "NullifierSet":
        normalized = normalize_document(document)
        return cls(
            quests={key: frozenset(value) for key, value in normalized["quests"].items()},
            powers={key: frozenset(value) for key, value in normalized["powers"].items()},
        )

    def for_goal(self, kind: GoalKind, goal_id: str) -> frozenset[str]:
        group = self.quests if kind is GoalKind.QUEST else self.powers
        return group.get(str(goal_id), frozenset())

    def to_dict(self) -> dict[str, Any]:
        return {
            "quests": {key: sorted(value) for key, value in sorted(self.quests.items())},
            "powers": {key: sorted(value) for key, value in sorted(self.powers.items())},
        }


class NullifierStore:
    """Monotonic per-goal signature sets; `merge` is the only mutation."""

    def __init__(self, backend: NullifierBackend) -> None:
        self.backend = backend

    @classmethod
    def at_path(cls, path: Path) -> "NullifierStore":
        return cls(JsonFileNullifierBackend(path))

    @classmethod
    def in_memory(cls, document: dict[str, Any] | None = None) -> "NullifierStore":
        return cls(MemoryNullifierBackend(document))

    def load(self) -> NullifierSet:
        return NullifierSet.from_document(self.backend.read())

    def query(self, kind: GoalKind, goal_id: str) -> frozenset[str]:
        return self.load().for_goal(kind, goal_id)

    def merge(self, kind: GoalKind, goal_id: str, signatures: Iterable[str]) -> frozenset[str]:
        """Union `signatures` into the goal's set and return the ones newly added."""

        incoming = {sig for sig in signatures if isinstance(sig, str) and sig}
        key = str(goal_id)
        with self.backend.locked():
            document = self.backend.read()
            group = document.setdefault(kind.group, {})
            existing = set(group.get(key, []))
            added = incoming - existing
            if not added:
                return frozenset()
            group[key] = sorted(existing | added)
            self.backend.write(document)
        return frozenset(added)
