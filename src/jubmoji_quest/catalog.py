from __future__ import annotations

"""YAML goal catalog: quests with their powers, loaded and validated into `Goal` objects."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .models import Goal, GoalKind, parse_policy, parse_timestamp
from .paths import configured_catalog_dir
from .telemetry import TelemetryLogger


def _schema_path(catalog_root: Path) -> Path:
    return catalog_root / "schema" / "goal.schema.json"


def _load_schema(catalog_root: Path) -> dict[str, Any]:
    path = _schema_path(catalog_root)
    if not path.exists():
        raise ValueError(f"Goal schema file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Goal schema is not valid JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Goal schema must be a JSON object: {path}")
    return payload


def _indices(raw: Any) -> frozenset[int]:
    if not isinstance(raw, list):
        return frozenset()
    return frozenset(int(value) for value in raw)


def _build_goal(
    raw: dict[str, Any],
    kind: GoalKind,
    *,
    source: Path,
    powers: tuple[Goal, ...] = (),
    quest_id: str | None = None,
) -> Goal:
    goal_id = str(raw["id"])
    try:
        policy = parse_policy(raw.get("proof_type"), raw.get("proof_params"))
        start_time = parse_timestamp(raw.get("start_time"))
        end_time = parse_timestamp(raw.get("end_time"))
    except ValueError as exc:
        raise ValueError(f"Invalid {kind.value} {goal_id} in {source}: {exc}") from exc
    collection = _indices(raw.get("collection_cards"))
    prerequisites = _indices(raw.get("prerequisite_cards"))
    if collection & prerequisites:
        raise ValueError(f"{kind.value} {goal_id} in {source} lists the same card as collection and prerequisite")
    return Goal(
        kind=kind,
        id=goal_id,
        name=str(raw["name"]),
        description=str(raw.get("description") or ""),
        image_link=raw.get("image_link"),
        policy=policy,
        proof_type=str(raw.get("proof_type") or "IN_COLLECTION").upper(),
        collection_card_indices=collection,
        prerequisite_card_indices=prerequisites,
        start_time=start_time,
        end_time=end_time,
        powers=powers,
        qr_codes=tuple(str(code) for code in raw.get("qr_codes", []) or []),
        quest_id=quest_id,
    )


@dataclass
class GoalCatalog:
    catalog_root: Path
    telemetry: TelemetryLogger | None = None

    @classmethod
    def from_repo_root(cls, repo_root: Path, telemetry: TelemetryLogger | None = None) -> "GoalCatalog":
        configured = configured_catalog_dir()
        if configured is not None:
            return cls(catalog_root=configured, telemetry=telemetry)
        return cls(catalog_root=(repo_root / "catalog").resolve(), telemetry=telemetry)

    def _goal_files(self) -> list[Path]:
        goals_dir = self.catalog_root / "goals"
        if not goals_dir.exists():
            return []
        return sorted(goals_dir.rglob("*.quest.yaml"), key=lambda p: str(p))

    def load_all(self) -> dict[str, Goal]:
        """Load every quest file; raises `ValueError` on the first invalid definition."""

        validator = Draft202012Validator(_load_schema(self.catalog_root))
        quests: dict[str, Goal] = {}
        power_ids: set[str] = set()
        for file_path in self._goal_files():
            payload = yaml.safe_load(file_path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError(f"Quest file must be a mapping: {file_path}")
            errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
            if errors:
                first = errors[0]
                where = ".".join(str(part) for part in first.path) or "<root>"
                raise ValueError(f"Quest schema validation failed for {file_path} at {where}: {first.message}")

            quest_raw = payload["quest"]
            quest_id = str(quest_raw["id"])
            if quest_id in quests:
                raise ValueError(f"Duplicate quest id detected: {quest_id}")
            powers: list[Goal] = []
            for power_raw in payload.get("powers", []) or []:
                power = _build_goal(power_raw, GoalKind.POWER, source=file_path, quest_id=quest_id)
                if power.id in power_ids:
                    raise ValueError(f"Duplicate power id detected: {power.id}")
                power_ids.add(power.id)
                powers.append(power)
            quests[quest_id] = _build_goal(quest_raw, GoalKind.QUEST, source=file_path, powers=tuple(powers))
        return quests

    def _fetch_failed(self, operation: str, exc: Exception) -> None:
        if self.telemetry is not None:
            self.telemetry.log_event(
                "catalog.fetch_failed",
                data={"operation": operation, "error_type": exc.__class__.__name__, "detail": str(exc)},
            )

    def fetch_goal_list(self) -> list[Goal]:
        """All quests, or an empty list when the catalog cannot be read."""

        try:
            quests = self.load_all()
        except (OSError, ValueError, yaml.YAMLError) as exc:
            self._fetch_failed("fetch_goal_list", exc)
            return []
        return [quests[key] for key in sorted(quests, key=_sort_key)]

    def fetch_goal(self, kind: GoalKind, goal_id: str | int) -> Goal | None:
        wanted = str(goal_id)
        try:
            quests = self.load_all()
        except (OSError, ValueError, yaml.YAMLError) as exc:
            self._fetch_failed("fetch_goal", exc)
            return None
        if kind is GoalKind.QUEST:
            return quests.get(wanted)
        for quest in quests.values():
            for power in quest.powers:
                if power.id == wanted:
                    return power
        return None

    def resolve_qr(self, scan_id: str) -> dict[str, Any] | None:
        """Map an onboarding QR code id to its power and parent quest summary."""

        for quest in self.fetch_goal_list():
            for power in quest.powers:
                if scan_id in power.qr_codes:
                    binding = power.summary()
                    binding["quest"] = {
                        **quest.summary(),
                        "policy": quest.policy.to_dict(),
                        "collection_card_indices": sorted(quest.collection_card_indices),
                    }
                    return {"uuid": scan_id, "power": binding}
        return None


def _sort_key(goal_id: str) -> tuple[int, str]:
    # Numeric ids sort numerically ahead of free-form ids.
    if goal_id.isdigit():
        return (0, goal_id.zfill(20))
    return (1, goal_id)
