from __future__ import annotations

"""JSONL session telemetry: signature-safe event payloads and windowed session summaries."""

import hashlib
import json
import platform
import re
import sys
import unicodedata
import uuid
from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any


SCHEMA_VERSION = "0.1"
EVENT_TYPES = frozenset(
    {
        "service.started",
        "session.started",
        "session.failed",
        "proof.generated",
        "session.submitted",
        "session.committed",
        "nullifiers.merged",
        "catalog.fetch_failed",
        "risk.flagged",
    }
)
SOURCES = frozenset({"cli", "api", "engine"})
MAX_TEXT_LENGTH = 200
REDACTED = "[redacted]"
TRUNCATED_SUFFIX = "...[truncated]"
_WINDOW = re.compile(r"^(?P<amount>\d+)(?P<unit>[dh])$")

# Card signatures and proof material must never land in telemetry verbatim.
SIGNATURE_LIKE_PATTERNS = (
    re.compile(r"\b(?:0x)?[0-9a-fA-F]{32,}\b"),
    re.compile(
        r"\b(?=[A-Za-z0-9+/=]{40,}\b)(?=[A-Za-z0-9+/=]*[A-Z])(?=[A-Za-z0-9+/=]*[a-z])(?=[A-Za-z0-9+/=]*\d)[A-Za-z0-9+/=]{40,}\b"
    ),
)


def _rfc3339(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _event_time(event: dict[str, Any]) -> datetime | None:
    raw = event.get("ts")
    if not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed


def is_signature_like_text(text: str) -> bool:
    return any(pattern.search(text) for pattern in SIGNATURE_LIKE_PATTERNS)


def signature_digest(signature: str) -> str:
    """Short SHA-256 digest used to correlate signatures across events without exposing them."""

    return hashlib.sha256(signature.encode("utf-8")).hexdigest()[:16]


def signature_digests(signatures: Iterable[str]) -> list[str]:
    return sorted(signature_digest(sig) for sig in signatures)


def _engine_build() -> dict[str, str]:
    try:
        engine_version = package_version("jubmoji-quest")
    except PackageNotFoundError:
        engine_version = "0.1.0"
    return {
        "engine_version": engine_version,
        "python_version": platform.python_version(),
        "platform": platform.platform(),
    }


@dataclass
class SanitizeStats:
    redacted_fields: int = 0
    truncated_fields: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.redacted_fields or self.truncated_fields)


class _Sanitizer:
    def __init__(self) -> None:
        self.stats = SanitizeStats()

    def text(self, value: str) -> str:
        cleaned = "".join(ch for ch in value if not unicodedata.category(ch).startswith("C")).strip()
        if is_signature_like_text(cleaned):
            self.stats.redacted_fields += 1
            return REDACTED
        if len(cleaned) > MAX_TEXT_LENGTH:
            self.stats.truncated_fields += 1
            return cleaned[:MAX_TEXT_LENGTH] + TRUNCATED_SUFFIX
        return cleaned

    def value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(self.value(key)): self.value(item) for key, item in value.items()}
        if isinstance(value, (list, tuple, set, frozenset)):
            return [self.value(item) for item in value]
        if value is None or isinstance(value, (bool, int, float)):
            return value
        return self.text(str(value))


def sanitize_event_data(data: Any) -> tuple[Any, SanitizeStats]:
    """Strip control characters, redact signature-like strings, and truncate long text."""

    sanitizer = _Sanitizer()
    return sanitizer.value(data), sanitizer.stats


def parse_range(range_value: str) -> timedelta:
    """Parse a summary window such as `7d` or `24h`."""

    match = _WINDOW.match(range_value.strip().lower())
    if match is None:
        raise ValueError("range must be like 7d or 24h")
    amount = int(match.group("amount"))
    if amount <= 0:
        raise ValueError("range amount must be > 0")
    return timedelta(days=amount) if match.group("unit") == "d" else timedelta(hours=amount)


class TelemetryLogger:
    """Appends one JSON object per line to `events_path`; failures never reach the caller."""

    def __init__(self, events_path: Path) -> None:
        self.events_path = events_path
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        self.build = _engine_build()

    def _envelope(self, event_type: str, source: str, trace_id: str | None, data: Any) -> dict[str, Any]:
        if event_type not in EVENT_TYPES:
            data = {
                "reason": "invalid_event_type",
                "invalid_event_type_hash": hashlib.sha256(event_type.encode("utf-8")).hexdigest(),
            }
            event_type = "risk.flagged"
        return {
            "schema_version": SCHEMA_VERSION,
            "event_id": str(uuid.uuid4()),
            "ts": _rfc3339(datetime.now(tz=UTC)),
            "event_type": event_type,
            "source": source if source in SOURCES else "engine",
            "trace_id": trace_id,
            "build": self.build,
            "data": data if isinstance(data, dict) else {"value": data},
        }

    def _append(self, event: dict[str, Any]) -> None:
        line = json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(line + "\n")

    def log_event(
        self,
        event_type: str,
        *,
        source: str = "engine",
        data: dict[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Write one sanitized event, followed by a `risk.flagged` event if anything was scrubbed."""

        try:
            sanitized, stats = sanitize_event_data(data or {})
            self._append(self._envelope(event_type, source, trace_id, sanitized))
            if stats.changed:
                flag = {
                    "reason": "telemetry_sanitized",
                    "trigger_event_type": event_type,
                    "fields_redacted_count": stats.redacted_fields,
                    "fields_truncated_count": stats.truncated_fields,
                }
                self._append(self._envelope("risk.flagged", source, trace_id, flag))
        except Exception as exc:  # noqa: BLE001
            print(f"[telemetry] failed to append event: {exc}", file=sys.stderr)

    def iter_events(self) -> Iterator[dict[str, Any]]:
        if not self.events_path.exists():
            return
        with self.events_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(event, dict):
                    yield event

    def export_summary(self, *, range_value: str, out_path: Path | None = None) -> dict[str, Any]:
        """Session outcomes, proof counts, and score totals for events inside the window."""

        end = datetime.now(tz=UTC)
        start = end - parse_range(range_value)
        counts: Counter[str] = Counter()
        failures_by_reason: Counter[str] = Counter()
        commits_by_goal: Counter[str] = Counter()
        signatures_nullified = 0
        score_added = 0
        considered = 0
        for event in self.iter_events():
            moment = _event_time(event)
            if moment is None or not start <= moment <= end:
                continue
            considered += 1
            event_type = str(event.get("event_type"))
            data = event.get("data") or {}
            counts[event_type] += 1
            if event_type == "session.failed":
                failures_by_reason[str(data.get("reason", "unknown"))] += 1
            elif event_type == "session.committed":
                commits_by_goal[f"{data.get('goal_kind', '?')}:{data.get('goal_id', '?')}"] += 1
                score_added += int(data.get("score_delta", 0))
            elif event_type == "nullifiers.merged":
                signatures_nullified += int(data.get("added_count", 0))

        started = counts["session.started"]
        committed = counts["session.committed"]
        summary = {
            "schema_version": SCHEMA_VERSION,
            "generated_at": _rfc3339(end),
            "range": range_value,
            "window_start": _rfc3339(start),
            "window_end": _rfc3339(end),
            "events_considered": considered,
            "sessions_started": started,
            "sessions_committed": committed,
            "sessions_failed": counts["session.failed"],
            "proofs_generated": counts["proof.generated"],
            "signatures_nullified": signatures_nullified,
            "score_added": score_added,
            "failures_by_reason": dict(sorted(failures_by_reason.items())),
            "commits_by_goal": dict(sorted(commits_by_goal.items())),
            "session_success_rate": round(committed / started, 4) if started else 0.0,
        }
        if out_path is not None:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        return summary
