"""Finite state machine describing a single upload run.

Every function here is pure: it receives the current snapshot and returns a
new one. The pipeline owns the only mutable reference and publishes each
new snapshot to its subscribers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from wardrobe.upload.errors import InvalidTransitionError
from wardrobe.upload.models import (
    ClassificationOutcome,
    Phase,
    PipelineProgress,
    UploadFailure,
    needs,
    plural,
)


class PipelineState(str, Enum):
    """Stages of an upload run."""

    IDLE = "idle"
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    PENDING_MANUAL = "pending_manual"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = frozenset({PipelineState.COMPLETE, PipelineState.FAILED})

_ALLOWED: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.UPLOADING, PipelineState.FAILED}),
    PipelineState.UPLOADING: frozenset({PipelineState.UPLOADING, PipelineState.ANALYZING, PipelineState.FAILED}),
    PipelineState.ANALYZING: frozenset(
        {PipelineState.ANALYZING, PipelineState.PENDING_MANUAL, PipelineState.COMPLETE, PipelineState.FAILED},
    ),
    PipelineState.PENDING_MANUAL: frozenset({PipelineState.ANALYZING, PipelineState.FAILED}),
    PipelineState.COMPLETE: frozenset(),
    PipelineState.FAILED: frozenset(),
}


@dataclass(slots=True, frozen=True)
class PipelineSnapshot:
    """Read-only view of a run handed to observers."""

    state: PipelineState = PipelineState.IDLE
    progress: PipelineProgress = field(default_factory=PipelineProgress)
    pending_urls: tuple[str, ...] = ()
    failures: tuple[UploadFailure, ...] = ()
    item_ids: tuple[int, ...] = ()
    error: str | None = None

    @property
    def awaiting_manual(self) -> bool:
        return self.state is PipelineState.PENDING_MANUAL

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(slots=True, frozen=True)
class PipelineEvent:
    """Message published on every state change."""

    previous: PipelineState
    snapshot: PipelineSnapshot

    @property
    def state(self) -> PipelineState:
        return self.snapshot.state

    @property
    def progress(self) -> PipelineProgress:
        return self.snapshot.progress


def baseline() -> PipelineSnapshot:
    """Return the pre-run snapshot."""

    return PipelineSnapshot()


def can_transition(current: PipelineState, target: PipelineState) -> bool:
    return target in _ALLOWED[current]


def transition(snapshot: PipelineSnapshot, target: PipelineState, **changes) -> PipelineSnapshot:
    """Move ``snapshot`` to ``target`` applying ``changes``."""

    if not can_transition(snapshot.state, target):
        raise InvalidTransitionError(
            f"cannot move from {snapshot.state.value} to {target.value}",
        )
    return replace(snapshot, state=target, **changes)


def start_upload(snapshot: PipelineSnapshot, total: int) -> PipelineSnapshot:
    return transition(
        snapshot,
        PipelineState.UPLOADING,
        progress=PipelineProgress(
            phase=Phase.UPLOADING,
            current=0,
            total=total,
            message=f"Uploading {plural(total, 'image')}...",
        ),
    )


def record_upload(
    snapshot: PipelineSnapshot,
    attempted: int,
    total: int,
    failures: list[UploadFailure],
) -> PipelineSnapshot:
    succeeded = attempted - len(failures)
    if failures:
        message = f"{succeeded} uploaded, {len(failures)} failed"
    else:
        message = f"Uploaded {attempted} of {total}"
    return transition(
        snapshot,
        PipelineState.UPLOADING,
        progress=PipelineProgress(phase=Phase.UPLOADING, current=attempted, total=total, message=message),
        failures=tuple(failures),
    )


def start_analysis(snapshot: PipelineSnapshot, submitted: int) -> PipelineSnapshot:
    return transition(
        snapshot,
        PipelineState.ANALYZING,
        progress=PipelineProgress(
            phase=Phase.ANALYZING,
            current=0,
            total=submitted,
            message="Automatically classifying items...",
        ),
    )


def resolve_classification(
    snapshot: PipelineSnapshot,
    outcome: ClassificationOutcome,
    submitted: int,
) -> PipelineSnapshot:
    """Route a classification outcome to ``Complete`` or ``PendingManual``."""

    if outcome.fully_accepted:
        return complete(snapshot, added=outcome.accepted_count, total=submitted, item_ids=outcome.item_ids)

    pending = len(outcome.rejected)
    return transition(
        snapshot,
        PipelineState.PENDING_MANUAL,
        progress=PipelineProgress(
            phase=Phase.ANALYZING,
            current=outcome.accepted_count,
            total=submitted,
            message=(
                f"{plural(outcome.accepted_count, 'item')} added. "
                f"{pending} {needs(pending)} manual category selection"
            ),
        ),
        pending_urls=tuple(outcome.rejected_urls),
        item_ids=outcome.item_ids,
    )


def start_manual(snapshot: PipelineSnapshot, count: int) -> PipelineSnapshot:
    return transition(
        snapshot,
        PipelineState.ANALYZING,
        progress=PipelineProgress(
            phase=Phase.ANALYZING,
            current=0,
            total=count,
            message="Adding items with selected categories...",
        ),
    )


def complete(
    snapshot: PipelineSnapshot,
    *,
    added: int,
    total: int,
    item_ids: tuple[int, ...] = (),
) -> PipelineSnapshot:
    return transition(
        snapshot,
        PipelineState.COMPLETE,
        progress=PipelineProgress(
            phase=Phase.COMPLETE,
            current=added,
            total=total,
            message=f"Successfully added {plural(added, 'item')}!",
        ),
        pending_urls=(),
        item_ids=item_ids,
    )


def fail(snapshot: PipelineSnapshot, error: Exception) -> PipelineSnapshot:
    message = str(error) or error.__class__.__name__
    return transition(
        snapshot,
        PipelineState.FAILED,
        progress=PipelineProgress(
            phase=Phase.FAILED,
            current=snapshot.progress.current,
            total=snapshot.progress.total,
            message=message,
        ),
        pending_urls=(),
        error=message,
    )
