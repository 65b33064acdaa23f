from __future__ import annotations

import asyncio
import json
from pathlib import Path

from jubmoji_quest.models import AtLeastOne, CardRecord, Goal, GoalKind
from jubmoji_quest.nullifiers import NullifierStore
from jubmoji_quest.orchestrator import ProofOrchestrator
from jubmoji_quest.proving import OwnershipProof
from jubmoji_quest.telemetry import TelemetryLogger, sanitize_event_data, signature_digest


SIG = "30450221009f3c2a1b4d5e6f708192a3b4c5d6e7f8091a2b3c4d5e6f708192a3b4c5d6e7f80"


def _read_jsonl(path: Path) -> list[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


class _Prover:
    async def prove(self, record: CardRecord, *, bound_signature: str) -> OwnershipProof:
        return OwnershipProof(pub_key_index=record.pub_key_index, signature=bound_signature)


class _Board:
    async def submit(self, bundle, goal_id: str) -> int:  # type: ignore[no-untyped-def]
        return 5


def test_sanitize_redacts_signature_like_values() -> None:
    payload = {"sig": SIG, "nested": {"note": "z" * 250, "ok": "fine"}}
    sanitized, stats = sanitize_event_data(payload)
    assert sanitized["sig"] == "[redacted]"
    assert sanitized["nested"]["note"].endswith("...[truncated]")
    assert sanitized["nested"]["ok"] == "fine"
    assert stats.redacted_fields == 1
    assert stats.truncated_fields == 1


def test_event_logger_appends_valid_jsonl(tmp_path: Path) -> None:
    events_path = tmp_path / "telemetry" / "events.jsonl"
    logger = TelemetryLogger(events_path=events_path)
    logger.log_event("service.started", source="cli", data={"card_count": 3}, trace_id="cli:1")
    events = _read_jsonl(events_path)
    assert len(events) == 1
    assert events[0]["event_type"] == "service.started"
    assert events[0]["source"] == "cli"
    assert events[0]["trace_id"] == "cli:1"
    assert events[0]["data"] == {"card_count": 3}
    assert "engine_version" in events[0]["build"]


def test_unknown_event_type_is_flagged(tmp_path: Path) -> None:
    events_path = tmp_path / "events.jsonl"
    TelemetryLogger(events_path=events_path).log_event("quest.hacked", data={"x": 1})
    events = _read_jsonl(events_path)
    assert events[0]["event_type"] == "risk.flagged"
    assert events[0]["data"]["reason"] == "invalid_event_type"


def test_sanitized_event_emits_risk_flag(tmp_path: Path) -> None:
    events_path = tmp_path / "events.jsonl"
    TelemetryLogger(events_path=events_path).log_event("session.started", data={"leak": SIG})
    events = _read_jsonl(events_path)
    assert [event["event_type"] for event in events] == ["session.started", "risk.flagged"]
    assert events[1]["data"]["fields_redacted_count"] == 1


def test_session_events_never_contain_raw_signatures(tmp_path: Path) -> None:
    events_path = tmp_path / "events.jsonl"
    telemetry = TelemetryLogger(events_path=events_path)
    orchestrator = ProofOrchestrator(
        store=NullifierStore.in_memory(),
        generator=_Prover(),
        submitter=_Board(),
        telemetry=telemetry,
    )
    goal = Goal(kind=GoalKind.QUEST, id="1", name="q", policy=AtLeastOne(), collection_card_indices=frozenset({3}))
    result = asyncio.run(orchestrator.run(goal, [CardRecord(3, SIG)], trace_id="engine:t"))
    assert result.ok

    raw = events_path.read_text(encoding="utf-8")
    assert SIG not in raw
    events = _read_jsonl(events_path)
    types = [event["event_type"] for event in events]
    assert types == ["session.started", "proof.generated", "session.submitted", "nullifiers.merged", "session.committed"]
    assert events[1]["data"]["signature_digest"] == signature_digest(SIG)
    assert all(event["trace_id"] == "engine:t" for event in events)

    summary = telemetry.export_summary(range_value="1d")
    assert summary["sessions_started"] == 1
    assert summary["sessions_committed"] == 1
    assert summary["signatures_nullified"] == 1
    assert summary["score_added"] == 5
    assert summary["commits_by_goal"] == {"quest:1": 1}
    assert summary["session_success_rate"] == 1.0


def test_failed_session_summary_groups_by_reason(tmp_path: Path) -> None:
    telemetry = TelemetryLogger(events_path=tmp_path / "events.jsonl")
    orchestrator = ProofOrchestrator(
        store=NullifierStore.in_memory(),
        generator=_Prover(),
        submitter=_Board(),
        telemetry=telemetry,
    )
    goal = Goal(kind=GoalKind.QUEST, id="1", name="q", policy=AtLeastOne(), collection_card_indices=frozenset({3}))
    asyncio.run(orchestrator.run(goal, []))
    summary = telemetry.export_summary(range_value="24h", out_path=tmp_path / "out" / "summary.json")
    assert summary["failures_by_reason"] == {"no_cards": 1}
    assert (tmp_path / "out" / "summary.json").exists()
