from __future__ import annotations

"""Service facade wiring the goal catalog, card registry, nullifier store, and proof sessions."""

import asyncio
import hashlib
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .catalog import GoalCatalog
from .inventory import eligible_for, prerequisite_records
from .models import CardRecord, Goal, GoalKind, parse_card_records
from .nullifiers import NullifierStore
from .orchestrator import FailureReason, ProofOrchestrator, SessionResult, SessionState, failure_message
from .paths import ensure_home_dirs, jubmoji_home
from .proving import ProgressListener, ProofGenerator
from .registry import CardRegistry, collection_glyphs
from .submission import DEFAULT_SUBMIT_TIMEOUT_SECONDS, HttpLeaderboardSubmitter, LeaderboardSubmitter
from .telemetry import TelemetryLogger
from .unlock import count_unlocked_powers, evaluate_goal


DEFAULT_TRACE_ID_PREFIX = "engine"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _env_float(name: str, fallback: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    if value <= 0:
        return fallback
    return value


def _new_trace_id(prefix: str = DEFAULT_TRACE_ID_PREFIX) -> str:
    return f"{prefix}:{uuid.uuid4()}"


def submitter_from_env() -> LeaderboardSubmitter | None:
    url = os.environ.get("JUBMOJI_SUBMIT_URL", "").strip()
    if not url:
        return None
    timeout = _env_float("JUBMOJI_SUBMIT_TIMEOUT_SECONDS", DEFAULT_SUBMIT_TIMEOUT_SECONDS)
    return HttpLeaderboardSubmitter(url, timeout=timeout)


def parse_goal_kind(value: str | GoalKind) -> GoalKind:
    if isinstance(value, GoalKind):
        return value
    normalized = str(value).strip().lower().rstrip("s")
    try:
        return GoalKind(normalized)
    except ValueError as exc:
        raise ValueError("goal kind must be quest or power") from exc


@dataclass
class QuestService:
    """Local engine host: read paths for goals and one live proof session per goal."""

    repo_root: Path
    home: Path
    dirs: dict[str, Path]
    telemetry: TelemetryLogger
    catalog: GoalCatalog
    registry: CardRegistry
    nullifiers: NullifierStore
    generator: ProofGenerator | None = None
    submitter: LeaderboardSubmitter | None = None
    clock: Callable[[], datetime] = field(default=_utc_now)
    _in_flight: set[tuple[GoalKind, str]] = field(default_factory=set, init=False, repr=False)

    @classmethod
    def create(
        cls,
        repo_root: Path,
        *,
        generator: ProofGenerator | None = None,
        submitter: LeaderboardSubmitter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "QuestService":
        """Instantiate a service from `JUBMOJI_HOME` and the repository catalog."""

        home = jubmoji_home()
        dirs = ensure_home_dirs(home)
        telemetry = TelemetryLogger(events_path=dirs["telemetry"] / "events.jsonl")
        catalog = GoalCatalog.from_repo_root(repo_root, telemetry=telemetry)
        registry = CardRegistry.load(catalog.catalog_root / "cards.yaml")
        service = cls(
            repo_root=repo_root,
            home=home,
            dirs=dirs,
            telemetry=telemetry,
            catalog=catalog,
            registry=registry,
            nullifiers=NullifierStore.at_path(dirs["state"] / "nullifiers.json"),
            generator=generator,
            submitter=submitter if submitter is not None else submitter_from_env(),
            clock=clock or _utc_now,
        )
        service.telemetry.log_event(
            "service.started",
            data={
                "home_path_hash": hashlib.sha256(str(home).encode("utf-8")).hexdigest(),
                "card_count": len(registry),
            },
        )
        return service

    def _require_goal(self, kind: GoalKind | str, goal_id: str | int) -> Goal:
        resolved_kind = parse_goal_kind(kind)
        goal = self.catalog.fetch_goal(resolved_kind, goal_id)
        if goal is None:
            raise KeyError(f"Unknown {resolved_kind.value}: {goal_id}")
        return goal

    def list_goals(self) -> list[dict[str, Any]]:
        return [quest.to_dict() for quest in self.catalog.fetch_goal_list()]

    def get_goal(self, kind: GoalKind | str, goal_id: str | int) -> dict[str, Any]:
        return self._require_goal(kind, goal_id).to_dict()

    def _status_payload(self, goal: Goal, owned: list[CardRecord]) -> dict[str, Any]:
        payload = goal.summary()
        payload["status"] = evaluate_goal(goal, owned).to_dict()
        payload["end_date_label"] = goal.end_date_label(self.clock())
        return payload

    def goal_status(self, kind: GoalKind | str, goal_id: str | int, cards: Any) -> dict[str, Any]:
        """Lock status and progress counts of one goal for the supplied card records."""

        goal = self._require_goal(kind, goal_id)
        owned = parse_card_records(cards)
        payload = self._status_payload(goal, owned)
        payload["collection"] = collection_glyphs(goal, owned, self.registry)
        return payload

    def quest_overview(self, quest_id: str | int, cards: Any) -> dict[str, Any]:
        quest = self._require_goal(GoalKind.QUEST, quest_id)
        owned = parse_card_records(cards)
        spent = self.nullifiers.query(GoalKind.QUEST, quest.id)
        payload = self._status_payload(quest, owned)
        payload.update(
            {
                "shows_leaderboard": quest.shows_leaderboard,
                "collection": collection_glyphs(quest, owned, self.registry),
                "num_powers_completed": count_unlocked_powers(quest, owned),
                "num_powers_total": len(quest.powers),
                "powers": [self._status_payload(power, owned) for power in quest.powers],
                "has_prerequisite": bool(prerequisite_records(quest, owned)) or not quest.prerequisite_card_indices,
                "unsubmitted_count": len(eligible_for(quest, owned, spent)),
            }
        )
        return payload

    def get_card(self, index: int) -> dict[str, Any]:
        card = self.registry.get(index)
        if card is None:
            raise KeyError(f"Unknown card index: {index}")
        return card.to_dict()

    def resolve_qr(self, scan_id: str) -> dict[str, Any]:
        binding = self.catalog.resolve_qr(scan_id)
        if binding is None:
            raise KeyError("QR Code not found")
        return binding

    def get_nullifiers(self, kind: GoalKind | str | None = None, goal_id: str | None = None) -> dict[str, Any]:
        """Spent signature counts per goal; signatures themselves stay local to the store."""

        if goal_id is not None and kind is None:
            raise ValueError("goal_id requires kind")
        loaded = self.nullifiers.load()
        groups = {
            GoalKind.QUEST: {key: len(value) for key, value in sorted(loaded.quests.items())},
            GoalKind.POWER: {key: len(value) for key, value in sorted(loaded.powers.items())},
        }
        if kind is None:
            return {resolved.group: counts for resolved, counts in groups.items()}
        resolved = parse_goal_kind(kind)
        if goal_id is None:
            return {resolved.group: groups[resolved]}
        return {"kind": resolved.value, "goal_id": str(goal_id), "count": len(loaded.for_goal(resolved, goal_id))}

    def orchestrator(self) -> ProofOrchestrator:
        if self.generator is None:
            raise RuntimeError("No proof generator configured.")
        if self.submitter is None:
            raise RuntimeError("No leaderboard submitter configured; set JUBMOJI_SUBMIT_URL.")
        return ProofOrchestrator(
            store=self.nullifiers,
            generator=self.generator,
            submitter=self.submitter,
            telemetry=self.telemetry,
            clock=self.clock,
        )

    async def run_session(
        self,
        kind: GoalKind | str,
        goal_id: str | int,
        cards: Any,
        *,
        progress: ProgressListener | None = None,
        source: str = "engine",
        trace_id: str | None = None,
    ) -> SessionResult:
        """Run one proof session, refusing a second concurrent session for the same goal."""

        resolved_kind = parse_goal_kind(kind)
        label = resolved_kind.value.capitalize()
        orchestrator = self.orchestrator()
        goal = await asyncio.to_thread(self.catalog.fetch_goal, resolved_kind, goal_id)
        if goal is None:
            return SessionResult(
                state=SessionState.FAILED,
                reason=FailureReason.NOT_FOUND,
                message=failure_message(FailureReason.NOT_FOUND, label),
            )
        key = (goal.kind, goal.id)
        if key in self._in_flight:
            return SessionResult(
                state=SessionState.FAILED,
                reason=FailureReason.SESSION_IN_PROGRESS,
                message=failure_message(FailureReason.SESSION_IN_PROGRESS, label),
            )
        self._in_flight.add(key)
        try:
            return await orchestrator.run(
                goal,
                parse_card_records(cards),
                progress=progress,
                source=source,
                trace_id=trace_id or _new_trace_id(source),
            )
        finally:
            self._in_flight.discard(key)

    def telemetry_export(self, range_value: str, out_path: Path | None = None) -> dict[str, Any]:
        return self.telemetry.export_summary(range_value=range_value, out_path=out_path)
