from __future__ import annotations

"""Proof session state machine: validate, prove card by card, submit, then commit nullifiers.

A session moves through

    IDLE -> VALIDATING -> PROVING(0..total) -> SUBMITTING -> COMMITTED | FAILED

and writes to the nullifier store only on the way into COMMITTED. Validation,
proving, submission, and cancellation failures all end in FAILED with a
`FailureReason` and leave stored nullifiers untouched, so a failed session can
be retried as a whole. A store that cannot be read or written ends the session
in FAILED with `STORAGE_ERROR`; when that happens after the leaderboard accepted
the bundle, the result still carries the score delta.
"""

import asyncio
import dataclasses
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .inventory import eligible_for, prerequisite_records
from .models import CardRecord, Goal, ProvingState
from .nullifiers import NullifierStore
from .proving import OwnershipProof, ProgressListener, ProofBundle, ProofGenerator
from .submission import LeaderboardSubmitter
from .telemetry import TelemetryLogger, signature_digest, signature_digests


class SessionState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    PROVING = "proving"
    SUBMITTING = "submitting"
    COMMITTED = "committed"
    FAILED = "failed"


class FailureReason(str, Enum):
    NO_CARDS = "no_cards"
    EXPIRED = "expired"
    NOT_STARTED = "not_started"
    MISSING_PREREQUISITE = "missing_prerequisite"
    ALREADY_SUBMITTED = "already_submitted"
    PROOF_GENERATION_ERROR = "proof_generation_error"
    SUBMISSION_ERROR = "submission_error"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    SESSION_IN_PROGRESS = "session_in_progress"
    STORAGE_ERROR = "storage_error"


FAILURE_MESSAGES = {
    FailureReason.NO_CARDS: "Please collect some Jubmojis to participate in this leaderboard!",
    FailureReason.EXPIRED: "{kind} has ended!",
    FailureReason.NOT_STARTED: "{kind} has not started yet!",
    FailureReason.MISSING_PREREQUISITE: "You must collect a team card Jubmoji to participate in this leaderboard!",
    FailureReason.ALREADY_SUBMITTED: "All of your Jubmojis have already been submitted to the leaderboard!",
    FailureReason.PROOF_GENERATION_ERROR: "Could not prove ownership of one of your Jubmojis.",
    FailureReason.SUBMISSION_ERROR: "Could not submit your proof to the leaderboard.",
    FailureReason.CANCELLED: "Proof generation was cancelled.",
    FailureReason.NOT_FOUND: "{kind} not found",
    FailureReason.SESSION_IN_PROGRESS: "A proof for this {kind_lower} is already in progress.",
    FailureReason.STORAGE_ERROR: "Could not read or update your submitted Jubmojis.",
}


def failure_message(reason: FailureReason, kind: str = "Quest") -> str:
    return FAILURE_MESSAGES[reason].format(kind=kind, kind_lower=kind.lower())


class SessionError(Exception):
    """Structured session failure converted to a `SessionResult` at the session boundary."""

    def __init__(self, code: FailureReason, message: str, *, hint: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class SessionResult:
    state: SessionState
    message: str
    reason: FailureReason | None = None
    score_delta: int | None = None
    nullified: frozenset[str] = frozenset()
    num_proofs_completed: int = 0
    num_proofs_total: int = 0

    @property
    def ok(self) -> bool:
        return self.state is SessionState.COMMITTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "ok": self.ok,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "score_delta": self.score_delta,
            "nullified_count": len(self.nullified),
            "num_proofs_completed": self.num_proofs_completed,
            "num_proofs_total": self.num_proofs_total,
        }


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ProofSession:
    """One proving attempt for one goal; not reusable once run."""

    def __init__(
        self,
        goal: Goal,
        owned: Iterable[CardRecord],
        *,
        store: NullifierStore,
        generator: ProofGenerator,
        submitter: LeaderboardSubmitter,
        progress: ProgressListener | None = None,
        telemetry: TelemetryLogger | None = None,
        clock: Callable[[], datetime] = _utc_now,
        source: str = "engine",
        trace_id: str | None = None,
    ) -> None:
        self.goal = goal
        self.owned = list(owned)
        self.store = store
        self.generator = generator
        self.submitter = submitter
        self.progress = progress
        self.telemetry = telemetry
        self.clock = clock
        self.source = source
        self.trace_id = trace_id

        self.state = SessionState.IDLE
        self.proving_index: int | None = None
        self.transitions: list[tuple[SessionState, int | None]] = [(SessionState.IDLE, None)]
        self.prerequisite_records: list[CardRecord] = []
        self.collection_records: list[CardRecord] = []
        self.result: SessionResult | None = None
        self._proving_state: ProvingState | None = None
        self._cancel_requested = False

    @property
    def kind_label(self) -> str:
        return self.goal.kind.value.capitalize()

    @property
    def eligible_records(self) -> list[CardRecord]:
        return [*self.prerequisite_records, *self.collection_records]

    @property
    def proving_state(self) -> ProvingState | None:
        if self._proving_state is None:
            return None
        return dataclasses.replace(self._proving_state)

    @property
    def is_live(self) -> bool:
        return self.state in {SessionState.VALIDATING, SessionState.PROVING, SessionState.SUBMITTING}

    def cancel(self) -> None:
        """Request cancellation; honored before the next proof or before submission."""

        self._cancel_requested = True

    def _emit(self, event_type: str, **data: Any) -> None:
        if self.telemetry is None:
            return
        payload = {"goal_kind": self.goal.kind.value, "goal_id": self.goal.id, **data}
        self.telemetry.log_event(event_type, source=self.source, data=payload, trace_id=self.trace_id)

    def _transition(self, state: SessionState, index: int | None = None) -> None:
        self.state = state
        self.proving_index = index
        self.transitions.append((state, index))

    def _error(self, reason: FailureReason, **context: Any) -> SessionError:
        return SessionError(reason, failure_message(reason, self.kind_label), **context)

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise self._error(FailureReason.CANCELLED)

    async def _validate(self) -> None:
        if not self.owned:
            raise self._error(FailureReason.NO_CARDS)
        now = self.clock()
        if self.goal.has_ended(now):
            raise self._error(FailureReason.EXPIRED)
        if not self.goal.has_started(now):
            raise self._error(FailureReason.NOT_STARTED)

        prerequisites = prerequisite_records(self.goal, self.owned)
        if self.goal.prerequisite_card_indices and not prerequisites:
            raise self._error(FailureReason.MISSING_PREREQUISITE)

        spent = await self._store_call(self.store.query, self.goal.kind, self.goal.id)
        collection = eligible_for(self.goal, self.owned, spent)
        if not collection:
            raise self._error(FailureReason.ALREADY_SUBMITTED)

        self.prerequisite_records = prerequisites
        self.collection_records = collection

    def _notify(self) -> None:
        if self.progress is None or self._proving_state is None:
            return
        try:
            self.progress(dataclasses.replace(self._proving_state))
        except Exception as exc:  # noqa: BLE001
            # Display errors in the host never abort proving.
            self._emit("risk.flagged", reason="progress_listener_error", error_type=exc.__class__.__name__)

    async def _prove_one(self, index: int, record: CardRecord) -> OwnershipProof:
        try:
            proof = await self.generator.prove(record, bound_signature=record.signature)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._error(
                FailureReason.PROOF_GENERATION_ERROR,
                index=index,
                error_type=exc.__class__.__name__,
            ) from exc
        if not isinstance(proof, OwnershipProof) or proof.signature != record.signature:
            raise self._error(FailureReason.PROOF_GENERATION_ERROR, index=index, error_type="binding_mismatch")
        return proof

    async def _prove_all(self) -> ProofBundle:
        records = self.eligible_records
        self._proving_state = ProvingState(num_proofs_completed=0, num_proofs_total=len(records))
        proofs: list[OwnershipProof] = []
        for index, record in enumerate(records):
            self._check_cancelled()
            self._transition(SessionState.PROVING, index)
            proofs.append(await self._prove_one(index, record))
            self._proving_state.num_proofs_completed += 1
            self._emit(
                "proof.generated",
                index=index,
                pub_key_index=record.pub_key_index,
                signature_digest=signature_digest(record.signature),
                num_proofs_completed=self._proving_state.num_proofs_completed,
                num_proofs_total=self._proving_state.num_proofs_total,
            )
            self._notify()
        return ProofBundle(goal_kind=self.goal.kind, goal_id=self.goal.id, proofs=tuple(proofs))

    async def _submit(self, bundle: ProofBundle) -> int:
        self._check_cancelled()
        self._transition(SessionState.SUBMITTING)
        try:
            score_delta = await self.submitter.submit(bundle, self.goal.id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._error(FailureReason.SUBMISSION_ERROR, error_type=exc.__class__.__name__) from exc
        self._emit("session.submitted", proof_count=len(bundle.proofs), score_delta=score_delta)
        return score_delta

    async def _store_call(self, operation: Callable[..., Any], *args: Any, **context: Any) -> Any:
        # Store I/O may block on the cross-process file lock, so it runs off the event loop.
        try:
            return await asyncio.to_thread(operation, *args)
        except (OSError, ValueError) as exc:
            raise self._error(FailureReason.STORAGE_ERROR, error_type=exc.__class__.__name__, **context) from exc

    async def _commit(self, score_delta: int) -> SessionResult:
        used = [record.signature for record in self.collection_records]
        added = await self._store_call(self.store.merge, self.goal.kind, self.goal.id, used, score_delta=score_delta)
        self._emit("nullifiers.merged", added_count=len(added), signature_digests=signature_digests(added))
        completed = self._proving_state.num_proofs_completed if self._proving_state else 0
        total = self._proving_state.num_proofs_total if self._proving_state else 0
        self._proving_state = None
        self._transition(SessionState.COMMITTED)
        self._emit("session.committed", score_delta=score_delta, num_proofs_total=total)
        return SessionResult(
            state=SessionState.COMMITTED,
            message=f"Added {score_delta} points to your team's score!",
            score_delta=score_delta,
            nullified=frozenset(used),
            num_proofs_completed=completed,
            num_proofs_total=total,
        )

    def _fail(self, error: SessionError) -> SessionResult:
        failed_in = self.state
        completed = self._proving_state.num_proofs_completed if self._proving_state else 0
        total = self._proving_state.num_proofs_total if self._proving_state else 0
        self._proving_state = None
        self._transition(SessionState.FAILED)
        self._emit("session.failed", reason=error.code.value, failed_in=failed_in.value, **error.context)
        return SessionResult(
            state=SessionState.FAILED,
            message=error.message,
            reason=error.code,
            # Set only when the leaderboard accepted the bundle but the nullifier write failed.
            score_delta=error.context.get("score_delta"),
            num_proofs_completed=completed,
            num_proofs_total=total,
        )

    async def run(self) -> SessionResult:
        """Drive the session to COMMITTED or FAILED and return the outcome."""

        if self.state is not SessionState.IDLE:
            raise RuntimeError("A proof session can only be run once.")
        self._transition(SessionState.VALIDATING)
        self._emit("session.started", owned_count=len(self.owned))
        try:
            await self._validate()
            bundle = await self._prove_all()
            score_delta = await self._submit(bundle)
            self.result = await self._commit(score_delta)
        except SessionError as exc:
            self.result = self._fail(exc)
        except asyncio.CancelledError:
            self.result = self._fail(self._error(FailureReason.CANCELLED))
            raise
        return self.result


@dataclass
class ProofOrchestrator:
    """Builds proof sessions wired to one nullifier store, prover, and leaderboard."""

    store: NullifierStore
    generator: ProofGenerator
    submitter: LeaderboardSubmitter
    telemetry: TelemetryLogger | None = None
    clock: Callable[[], datetime] = field(default=_utc_now)

    def session(
        self,
        goal: Goal,
        owned: Iterable[CardRecord],
        *,
        progress: ProgressListener | None = None,
        source: str = "engine",
        trace_id: str | None = None,
    ) -> ProofSession:
        return ProofSession(
            goal,
            owned,
            store=self.store,
            generator=self.generator,
            submitter=self.submitter,
            progress=progress,
            telemetry=self.telemetry,
            clock=self.clock,
            source=source,
            trace_id=trace_id,
        )

    async def run(
        self,
        goal: Goal,
        owned: Iterable[CardRecord],
        *,
        progress: ProgressListener | None = None,
        source: str = "engine",
        trace_id: str | None = None,
    ) -> SessionResult:
        return await self.session(goal, owned, progress=progress, source=source, trace_id=trace_id).run()
