"""Apply executor.

Executes a ChangeSet against a remote control plane and records results in
a StateStore.

Per change:
    Pending -> Ready -> Applying -> Applied | Failed
    Pending -> Skipped            (a dependency Failed or was Skipped, or the
                                   run was cancelled before it started)

A failure is isolated to the failed change's dependents; independent
branches keep going and the caller always gets a full ApplyReport. Failed and
skipped changes are picked up by the next plan/apply cycle, which diffs
against the partially updated state.

Every state mutation for an identity happens while holding that identity's
lock from a shared ResourceLocks registry, so provisioning and autoscaling
never modify the same resource at the same time. Writes are compare-and-swap
on the generation the change was planned against.
"""

import logging
import threading
import time
from collections.abc import Callable, Generator, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from strata.errors import (
    ConcurrentModification,
    PermanentError,
    RemoteTimeout,
    TransientError,
    UnresolvedReference,
)
from strata.plan_engine import Change, ChangeKind, ChangeSet
from strata.remote import ControlPlaneAdapter
from strata.resource_model import OpaqueBlob, Reference, ResourceId
from strata.retry_config import RetryConfig, get_retry_config
from strata.retry_handler import call_with_retry, safe_error_message
from strata.state_store import ObservedRecord, StateStore

logger = logging.getLogger(__name__)


class ChangeState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({ChangeState.APPLIED, ChangeState.FAILED, ChangeState.SKIPPED})


class FailureReason(str, Enum):
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    PERMANENT = "permanent"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"


# Reasons where a fresh plan/apply cycle may succeed without operator action
RETRYABLE_REASONS = frozenset(
    {
        FailureReason.TRANSIENT,
        FailureReason.TIMEOUT,
        FailureReason.CONCURRENT_MODIFICATION,
        FailureReason.DEPENDENCY_FAILED,
        FailureReason.CANCELLED,
    }
)


@dataclass
class ChangeOutcome:
    """Final (or in-flight) state of one change within an apply run."""

    change: Change
    state: ChangeState = ChangeState.PENDING
    attempts: int = 0
    reason: FailureReason | None = None
    error: str | None = None
    record: ObservedRecord | None = None
    duration: float = 0.0

    @property
    def identity(self) -> ResourceId:
        return self.change.identity

    @property
    def retryable(self) -> bool:
        return self.reason in RETRYABLE_REASONS

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": str(self.identity),
            "kind": self.change.kind.value,
            "state": self.state.value,
            "attempts": self.attempts,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "remote_id": self.record.remote_id if self.record else self.change.remote_id,
            "duration": round(self.duration, 3),
        }


@dataclass(frozen=True)
class ApplyReport:
    """Per-change results of one apply run, in change set order."""

    outcomes: tuple[ChangeOutcome, ...] = ()
    cancelled: bool = False

    def get(self, identity: ResourceId) -> ChangeOutcome | None:
        for outcome in self.outcomes:
            if outcome.identity == identity:
                return outcome
        return None

    def in_state(self, state: ChangeState) -> tuple[ChangeOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if outcome.state == state)

    @property
    def applied(self) -> tuple[ChangeOutcome, ...]:
        return self.in_state(ChangeState.APPLIED)

    @property
    def failed(self) -> tuple[ChangeOutcome, ...]:
        return self.in_state(ChangeState.FAILED)

    @property
    def skipped(self) -> tuple[ChangeOutcome, ...]:
        return self.in_state(ChangeState.SKIPPED)

    @property
    def succeeded(self) -> bool:
        return all(outcome.state == ChangeState.APPLIED for outcome in self.outcomes)

    @property
    def retryable(self) -> bool:
        """True when every non-applied change may succeed on a later run."""
        return all(
            outcome.retryable
            for outcome in self.outcomes
            if outcome.state != ChangeState.APPLIED
        )

    def summary(self) -> dict[str, int]:
        counts = {state.value: 0 for state in TERMINAL_STATES}
        for outcome in self.outcomes:
            counts[outcome.state.value] = counts.get(outcome.state.value, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "cancelled": self.cancelled,
            "summary": self.summary(),
            "changes": [outcome.to_dict() for outcome in self.outcomes],
        }


class ResourceLocks:
    """Per-identity mutual exclusion shared by every writer."""

    def __init__(self):
        self._locks: dict[ResourceId, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, identity: ResourceId) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(identity, threading.Lock())

    @contextmanager
    def hold(self, identity: ResourceId) -> Generator[None, None, None]:
        lock = self._lock_for(identity)
        with lock:
            yield

    def is_held(self, identity: ResourceId) -> bool:
        return self._lock_for(identity).locked()


class CancellationToken:
    """Stops an apply between changes. A started change always finishes."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ApplyExecutor:
    """Applies ChangeSets with retry and partial-failure isolation.

    Args:
        adapter: Remote control plane
        store: Observed state store (single source of truth)
        retry_config: Backoff settings (default: from environment)
        max_workers: Independent branches applied in parallel when > 1
        locks: Registry shared with other writers (e.g. the autoscaler)
        sleep: Sleep function used between retries
    """

    def __init__(
        self,
        adapter: ControlPlaneAdapter,
        store: StateStore,
        retry_config: RetryConfig | None = None,
        max_workers: int = 1,
        locks: ResourceLocks | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.adapter = adapter
        self.store = store
        self.retry_config = retry_config or get_retry_config()
        self.max_workers = max(1, max_workers)
        self.locks = locks or ResourceLocks()
        self.sleep = sleep

    def apply(
        self, change_set: ChangeSet, cancel_token: CancellationToken | None = None
    ) -> ApplyReport:
        """Execute change_set and return a report covering every change."""
        outcomes = {change.identity: ChangeOutcome(change) for change in change_set}
        logger.info(f"Applying {len(change_set)} changes (max_workers={self.max_workers})")

        if self.max_workers == 1:
            cancelled = self._run_sequential(change_set, outcomes, cancel_token)
        else:
            cancelled = self._run_parallel(change_set, outcomes, cancel_token)

        report = ApplyReport(tuple(outcomes[c.identity] for c in change_set), cancelled)
        summary = ", ".join(f"{count} {state}" for state, count in sorted(report.summary().items()))
        if report.succeeded:
            logger.info(f"Apply finished: {summary}")
        else:
            logger.warning(f"Apply finished with failures: {summary}")
        return report

    def _run_sequential(
        self,
        change_set: ChangeSet,
        outcomes: dict[ResourceId, ChangeOutcome],
        cancel_token: CancellationToken | None,
    ) -> bool:
        for change in change_set:
            outcome = outcomes[change.identity]
            if cancel_token is not None and cancel_token.cancelled:
                self._cancel_remaining(outcomes)
                return True
            if self._skip_if_blocked(outcome, outcomes):
                continue
            outcome.state = ChangeState.READY
            self._execute(outcome)
        return False

    def _run_parallel(
        self,
        change_set: ChangeSet,
        outcomes: dict[ResourceId, ChangeOutcome],
        cancel_token: CancellationToken | None,
    ) -> bool:
        pending = list(change_set)
        running: dict[Future, ChangeOutcome] = {}
        cancelled = False

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while pending or running:
                if not cancelled and cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                    for change in pending:
                        self._mark_cancelled(outcomes[change.identity])
                    pending = []

                creations_done = all(
                    outcomes[c.identity].state in TERMINAL_STATES
                    for c in change_set
                    if c.kind != ChangeKind.DELETE
                )
                still_pending = []
                for change in pending:
                    outcome = outcomes[change.identity]
                    if self._skip_if_blocked(outcome, outcomes):
                        continue
                    deps_applied = all(
                        outcomes[dep].state == ChangeState.APPLIED
                        for dep in change.depends_on
                        if dep in outcomes
                    )
                    if deps_applied and (change.kind != ChangeKind.DELETE or creations_done):
                        outcome.state = ChangeState.READY
                        running[pool.submit(self._execute, outcome)] = outcome
                    else:
                        still_pending.append(change)
                pending = still_pending

                if not running:
                    if pending and not creations_done and all(
                        outcomes[c.identity].state in TERMINAL_STATES
                        for c in change_set
                        if c.kind != ChangeKind.DELETE
                    ):
                        # Creations all settled during this pass; release the deletes.
                        continue
                    for change in pending:
                        outcome = outcomes[change.identity]
                        outcome.state = ChangeState.SKIPPED
                        outcome.reason = FailureReason.DEPENDENCY_FAILED
                        outcome.error = "dependencies can never be satisfied"
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
                    future.result()

        return cancelled

    def _skip_if_blocked(
        self, outcome: ChangeOutcome, outcomes: Mapping[ResourceId, ChangeOutcome]
    ) -> bool:
        for dep in sorted(outcome.change.depends_on):
            dep_outcome = outcomes.get(dep)
            if dep_outcome is not None and dep_outcome.state in (
                ChangeState.FAILED,
                ChangeState.SKIPPED,
            ):
                outcome.state = ChangeState.SKIPPED
                outcome.reason = FailureReason.DEPENDENCY_FAILED
                outcome.error = f"dependency {dep} {dep_outcome.state.value}"
                logger.warning(f"Skipping {outcome.identity}: {outcome.error}")
                return True
        return False

    def _cancel_remaining(self, outcomes: Mapping[ResourceId, ChangeOutcome]) -> None:
        for outcome in outcomes.values():
            if outcome.state == ChangeState.PENDING:
                self._mark_cancelled(outcome)

    @staticmethod
    def _mark_cancelled(outcome: ChangeOutcome) -> None:
        outcome.state = ChangeState.SKIPPED
        outcome.reason = FailureReason.CANCELLED
        outcome.error = "apply cancelled before this change started"

    def _execute(self, outcome: ChangeOutcome) -> None:
        """Run one change to a terminal state. Never raises."""
        change = outcome.change
        if change.kind == ChangeKind.NOOP:
            outcome.state = ChangeState.APPLIED
            return

        started = time.monotonic()
        with self.locks.hold(change.identity):
            outcome.state = ChangeState.APPLYING
            logger.debug(f"Applying {change.kind.value} {change.identity}")
            try:
                outcome.record = self._apply_change(change, outcome)
                outcome.state = ChangeState.APPLIED
                logger.info(f"{change.kind.value} {change.identity}: applied")
            except ConcurrentModification as e:
                self._fail(outcome, FailureReason.CONCURRENT_MODIFICATION, e)
            except UnresolvedReference as e:
                self._fail(outcome, FailureReason.UNRESOLVED_REFERENCE, e)
            except RemoteTimeout as e:
                self._fail(outcome, FailureReason.TIMEOUT, e)
            except TransientError as e:
                self._fail(outcome, FailureReason.TRANSIENT, e)
            except PermanentError as e:
                self._fail(outcome, FailureReason.PERMANENT, e)
            except Exception as e:
                # Unexpected adapter errors are not retried
                self._fail(outcome, FailureReason.PERMANENT, e)
            finally:
                outcome.duration = time.monotonic() - started

    @staticmethod
    def _fail(outcome: ChangeOutcome, reason: FailureReason, error: Exception) -> None:
        outcome.state = ChangeState.FAILED
        outcome.reason = reason
        outcome.error = safe_error_message(error)
        logger.error(
            f"{outcome.change.kind.value} {outcome.identity} failed ({reason.value}): {outcome.error}"
        )

    def _apply_change(self, change: Change, outcome: ChangeOutcome) -> ObservedRecord | None:
        current = self.store.get(change.identity)
        actual = current.generation if current is not None else None
        if actual != change.observed_generation:
            raise ConcurrentModification(change.identity, change.observed_generation, actual)

        def count_attempt(attempt: int) -> None:
            outcome.attempts = attempt

        description = f"{change.kind.value} {change.identity}"

        if change.kind == ChangeKind.CREATE:
            attrs = self.resolve_attributes(change.desired_attrs)
            remote_id, outputs = call_with_retry(
                lambda: self.adapter.create(change.identity.kind, attrs),
                self.retry_config,
                sleep=self.sleep,
                on_attempt=count_attempt,
                description=description,
            )
            record = ObservedRecord(
                change.identity, remote_id, attrs, outputs, change.resource_dependencies
            )
            return self.store.write(record, change.observed_generation)

        if change.kind == ChangeKind.UPDATE:
            attrs = self.resolve_attributes(change.desired_attrs)
            remote_id = current.remote_id
            outputs = call_with_retry(
                lambda: self.adapter.update(remote_id, attrs),
                self.retry_config,
                sleep=self.sleep,
                on_attempt=count_attempt,
                description=description,
            )
            record = ObservedRecord(
                change.identity, remote_id, attrs, outputs, change.resource_dependencies
            )
            return self.store.write(record, change.observed_generation)

        if change.kind == ChangeKind.DELETE:
            remote_id = current.remote_id
            call_with_retry(
                lambda: self.adapter.delete(remote_id),
                self.retry_config,
                sleep=self.sleep,
                on_attempt=count_attempt,
                description=description,
            )
            self.store.delete(change.identity, change.observed_generation)
            return None

        raise ValueError(f"Unsupported change kind: {change.kind}")

    def resolve_attributes(self, attrs: Mapping[str, Any]) -> dict[str, Any]:
        """Replace references with values from the current observed state.

        Raises:
            UnresolvedReference: If a target or its attribute is not recorded
        """
        return {name: self._resolve(value) for name, value in attrs.items()}

    def _resolve(self, value: Any) -> Any:
        if isinstance(value, Reference):
            record = self.store.get(value.target)
            if record is None:
                raise UnresolvedReference(f"{value}: {value.target} has not been applied")
            try:
                return record.output(value.attribute)
            except KeyError:
                raise UnresolvedReference(
                    f"{value}: {value.target} has no attribute {value.attribute!r}"
                ) from None
        if isinstance(value, OpaqueBlob):
            return value
        if isinstance(value, Mapping):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve(v) for v in value]
        return value


__all__ = [
    "ApplyExecutor",
    "ApplyReport",
    "CancellationToken",
    "ChangeOutcome",
    "ChangeState",
    "FailureReason",
    "ResourceLocks",
]
