from __future__ import annotations

"""Ownership-proof primitives, proof bundles, and progress display helpers."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .models import CardRecord, GoalKind, ProvingState


class ProofGenerationFailed(RuntimeError):
    """Raised by a proof generator when it cannot produce a proof."""


@dataclass(frozen=True)
class OwnershipProof:
    """Opaque zero-knowledge proof of owning one card, bound to one signature."""

    pub_key_index: int
    signature: str
    payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict[str, Any]:
        return {"pubKeyIndex": self.pub_key_index, "sig": self.signature, "proof": self.payload}


@dataclass(frozen=True)
class ProofBundle:
    goal_kind: GoalKind
    goal_id: str
    proofs: tuple[OwnershipProof, ...]

    @property
    def signatures(self) -> list[str]:
        return [proof.signature for proof in self.proofs]

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal_kind": self.goal_kind.value,
            "goal_id": self.goal_id,
            "proofs": [proof.to_dict() for proof in self.proofs],
        }


class ProofGenerator(Protocol):
    async def prove(self, record: CardRecord, *, bound_signature: str) -> OwnershipProof: ...


ProgressListener = Callable[[ProvingState], None]


def progress_percentage(state: ProvingState | None) -> float:
    if state is None:
        return 0.0
    return state.num_proofs_completed / (state.num_proofs_total or 1) * 100


def describe_progress(state: ProvingState | None) -> str:
    """Human-readable status line for a leaderboard proving session."""

    if state is None:
        return ""
    if state.num_proofs_completed == 0:
        return "Proving ownership of a team card Jubmoji..."
    if state.num_proofs_completed == state.num_proofs_total:
        return "Submitting proof to leaderboard..."
    # The team card proof is the first slot and is not numbered.
    return (
        f"Proving ownership of Jubmoji {state.num_proofs_completed} "
        f"of {state.num_proofs_total - 1}..."
    )
