from __future__ import annotations

"""Card records, proof policies, goals, and transient proving state."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


PROOF_TYPE_IN_COLLECTION = "IN_COLLECTION"
PROOF_TYPE_N_UNIQUE_IN_COLLECTION = "N_UNIQUE_IN_COLLECTION"
PROOF_TYPE_TEAM_LEADERBOARD = "TEAM_LEADERBOARD"
VALID_PROOF_TYPES = {
    PROOF_TYPE_IN_COLLECTION,
    PROOF_TYPE_N_UNIQUE_IN_COLLECTION,
    PROOF_TYPE_TEAM_LEADERBOARD,
}


class PolicyError(ValueError):
    """Raised when a goal's proof type or parameters cannot form a policy."""


class GoalKind(str, Enum):
    QUEST = "quest"
    POWER = "power"

    @property
    def group(self) -> str:
        # Top-level key used by persisted nullifier documents.
        return f"{self.value}s"


@dataclass(frozen=True)
class CardRecord:
    """One owned card proof, tied to the signature of a single card scan."""

    pub_key_index: int
    signature: str
    raw_proof_material: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CardRecord":
        if not isinstance(payload, dict):
            raise ValueError("card record must be a mapping")
        raw_index = payload.get("pubKeyIndex", payload.get("pub_key_index"))
        signature = payload.get("sig", payload.get("signature"))
        if isinstance(raw_index, bool) or not isinstance(raw_index, int) or raw_index < 0:
            raise ValueError("card record requires a non-negative integer pubKeyIndex")
        if not isinstance(signature, str) or not signature.strip():
            raise ValueError("card record requires a non-empty signature")
        material = {
            key: value
            for key, value in payload.items()
            if key not in {"pubKeyIndex", "pub_key_index", "sig", "signature"}
        }
        return cls(pub_key_index=raw_index, signature=signature.strip(), raw_proof_material=material)

    def to_dict(self) -> dict[str, Any]:
        return {"pubKeyIndex": self.pub_key_index, "sig": self.signature, **self.raw_proof_material}


def parse_card_records(items: Any) -> list[CardRecord]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError("card records must be a list")
    return [item if isinstance(item, CardRecord) else CardRecord.from_dict(item) for item in items]


@dataclass(frozen=True)
class AtLeastOne:
    """Unlocked once any matching record is owned."""

    kind = "at_least_one"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class NUniqueInCollection:
    """Unlocked once the number of matching records reaches `n`."""

    n: int
    kind = "n_unique_in_collection"

    def __post_init__(self) -> None:
        if isinstance(self.n, bool) or not isinstance(self.n, int) or self.n <= 0:
            raise PolicyError(f"N must be a positive integer, got {self.n!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "n": self.n}


ProofPolicy = AtLeastOne | NUniqueInCollection


def parse_policy(proof_type: str | None, proof_params: Any = None) -> ProofPolicy:
    """Build a validated policy from a goal's loosely-typed proof fields."""

    normalized = (proof_type or PROOF_TYPE_IN_COLLECTION).strip().upper()
    if normalized not in VALID_PROOF_TYPES:
        raise PolicyError(f"Unknown proof type: {proof_type}")
    if normalized != PROOF_TYPE_N_UNIQUE_IN_COLLECTION:
        return AtLeastOne()
    if not isinstance(proof_params, dict) or "N" not in proof_params:
        raise PolicyError("N_UNIQUE_IN_COLLECTION requires proof_params.N")
    return NUniqueInCollection(proof_params["N"])


@dataclass(frozen=True)
class Goal:
    """A quest or power unlocked by a card collection under a proof policy."""

    kind: GoalKind
    id: str
    name: str
    policy: ProofPolicy
    collection_card_indices: frozenset[int] = frozenset()
    prerequisite_card_indices: frozenset[int] = frozenset()
    proof_type: str = PROOF_TYPE_IN_COLLECTION
    description: str = ""
    image_link: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    powers: tuple["Goal", ...] = ()
    qr_codes: tuple[str, ...] = ()
    quest_id: str | None = None

    @property
    def shows_leaderboard(self) -> bool:
        return self.kind is GoalKind.QUEST and self.proof_type == PROOF_TYPE_TEAM_LEADERBOARD

    def has_ended(self, now: datetime) -> bool:
        return self.end_time is not None and now > self.end_time

    def has_started(self, now: datetime) -> bool:
        return self.start_time is None or now >= self.start_time

    def end_date_label(self, now: datetime) -> str | None:
        if self.end_time is None:
            return None
        end = self.end_time
        formatted = f"{end:%B} {end.day}, {end.year} at {end.strftime('%I:%M:%S %p').lstrip('0')} UTC"
        if end < now:
            return f"Ended on {formatted}"
        return f"Ends on {formatted}"

    def summary(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "proof_type": self.proof_type,
            "start_time": _iso_or_none(self.start_time),
            "end_time": _iso_or_none(self.end_time),
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.summary()
        payload.update(
            {
                "policy": self.policy.to_dict(),
                "image_link": self.image_link,
                "collection_card_indices": sorted(self.collection_card_indices),
                "prerequisite_card_indices": sorted(self.prerequisite_card_indices),
                "shows_leaderboard": self.shows_leaderboard,
            }
        )
        if self.kind is GoalKind.QUEST:
            payload["powers"] = [power.to_dict() for power in self.powers]
        else:
            payload["quest_id"] = self.quest_id
        return payload


@dataclass
class ProvingState:
    """Per-session proof progress; never persisted."""

    num_proofs_completed: int
    num_proofs_total: int

    def to_dict(self) -> dict[str, int]:
        return {"num_proofs_completed": self.num_proofs_completed, "num_proofs_total": self.num_proofs_total}


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {value}") from exc
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _iso_or_none(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")
