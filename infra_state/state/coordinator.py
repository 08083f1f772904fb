"""
State coordinator running lock / read / plan / write / release cycles.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple
import logging

from .lock_table import BaseLockTable
from .models import CoordinatorPhase, CycleResult, LockRecord, StateSnapshot
from .object_store import BaseObjectStore
from ..auth.session import default_holder
from ..core.exceptions import (
    ConflictError, InfraStateError, PlanningError, ReleaseFailedError, StateNotFoundError
)
from ..descriptors.models import ResourceDescriptor
from ..planning.models import Plan, PlanOutcome


logger = logging.getLogger(__name__)


class StateCoordinator:
    """Runs one mutation cycle at a time against a shared state snapshot.

    Every cycle follows the same protocol:

    1. acquire the lock for the state id (``LockedError`` if held),
    2. read the latest snapshot and its version (none on the first run),
    3. ask the planner for the new payload,
    4. write it conditioned on the version read (``ConflictError`` on mismatch),
    5. release the lock on every exit path (``ReleaseFailedError`` if that fails).

    Nothing is retried here. Callers layer retry or backoff on top.
    """

    def __init__(
        self,
        lock_table: BaseLockTable,
        object_store: BaseObjectStore,
        holder: Optional[str] = None,
    ):
        """Initialize the coordinator.

        Args:
            lock_table: Lock table client
            object_store: Object store client
            holder: Identity recorded in lock records. Defaults to user@host:pid
        """
        self.lock_table = lock_table
        self.object_store = object_store
        self.holder = holder or default_holder()
        self.phase = CoordinatorPhase.IDLE
        self.phases: List[CoordinatorPhase] = []

    @contextmanager
    def lock(
        self,
        state_id: str,
        operation: Optional[str] = None,
        info: Optional[str] = None,
    ) -> Iterator[LockRecord]:
        """Hold the lock for ``state_id`` for the duration of the block.

        The release runs on every exit path, including KeyboardInterrupt.
        A failed acquire never attempts a release.

        Raises:
            LockedError: If another holder has the lock
            ReleaseFailedError: If the lock could not be cleared afterwards
        """
        self._enter(CoordinatorPhase.LOCKING)
        try:
            record = self.lock_table.acquire(state_id, self.holder, operation=operation, info=info)
        except BaseException:
            self._enter(CoordinatorPhase.FAILED)
            self._enter(CoordinatorPhase.IDLE)
            raise
        self._enter(CoordinatorPhase.LOCKED)

        error = None
        try:
            yield record
        except BaseException as e:
            error = e
            self._enter(CoordinatorPhase.FAILED)
            raise
        finally:
            self._release(state_id, error)

    def run_cycle(
        self,
        state_id: str,
        planner,
        descriptors: Sequence[ResourceDescriptor] = (),
        operation: str = 'apply',
    ) -> CycleResult:
        """Run one full coordination cycle.

        Args:
            state_id: State identifier, also used as the lock id
            planner: Object with ``plan(current, descriptors)`` returning the
                new payload as bytes or a PlanOutcome
            descriptors: Resource descriptors handed to the planner untouched
            operation: Label stored in the lock record

        Returns:
            Result with the snapshot that was written

        Raises:
            LockedError, ConflictError, PlanningError, ReleaseFailedError
        """
        started_at = datetime.now(timezone.utc)
        self.phases = []

        with self.lock(state_id, operation=operation):
            self._enter(CoordinatorPhase.READING)
            current = self._read_or_none(state_id)
            previous_version = current.version if current else None

            self._enter(CoordinatorPhase.PLANNING)
            payload, plan = self._plan(state_id, planner, current, descriptors)

            self._enter(CoordinatorPhase.WRITING)
            snapshot = self._write(state_id, payload, previous_version)

        logger.info(
            f"Cycle on {state_id} by {self.holder} complete: "
            f"version {previous_version} -> {snapshot.version}"
        )
        return CycleResult(
            state_id=state_id,
            holder=self.holder,
            snapshot=snapshot,
            previous_version=previous_version,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            phases=list(self.phases),
            plan=plan,
        )

    def rollback(self, state_id: str, version_id: str) -> CycleResult:
        """Restore a retained version by writing its payload as a new version.

        Runs under the lock like any other mutation.

        Raises:
            StateNotFoundError: If ``version_id`` does not exist
        """
        started_at = datetime.now(timezone.utc)
        self.phases = []

        with self.lock(state_id, operation='rollback', info=f"restore {version_id}"):
            self._enter(CoordinatorPhase.READING)
            current = self._read_or_none(state_id)
            previous_version = current.version if current else None
            target = self.object_store.read_version(state_id, version_id)

            self._enter(CoordinatorPhase.WRITING)
            snapshot = self._write(state_id, target.payload, previous_version)

        logger.warning(
            f"Rolled back {state_id} to object version {version_id} "
            f"(serial {target.version}) as version {snapshot.version}"
        )
        return CycleResult(
            state_id=state_id,
            holder=self.holder,
            snapshot=snapshot,
            previous_version=previous_version,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            phases=list(self.phases),
        )

    def preview(
        self,
        state_id: str,
        planner,
        descriptors: Sequence[ResourceDescriptor] = (),
    ) -> PlanOutcome:
        """Dry run: read the latest snapshot and plan, without locking or writing."""
        current = self.read(state_id)
        payload, plan = self._plan(state_id, planner, current, descriptors)
        return PlanOutcome(payload=payload, plan=plan)

    def read(self, state_id: str) -> Optional[StateSnapshot]:
        """Lock-free read of the latest snapshot, or None before the first write."""
        try:
            return self.object_store.read_latest(state_id)
        except StateNotFoundError:
            return None

    def _read_or_none(self, state_id: str) -> Optional[StateSnapshot]:
        try:
            return self.object_store.read_latest(state_id)
        except StateNotFoundError:
            logger.info(f"No snapshot for {state_id} yet, initializing")
            return None

    def _plan(
        self,
        state_id: str,
        planner,
        current: Optional[StateSnapshot],
        descriptors: Sequence[ResourceDescriptor],
    ) -> Tuple[bytes, Optional[Plan]]:
        try:
            result = planner.plan(current, descriptors)
        except InfraStateError:
            raise
        except Exception as e:
            raise PlanningError(f"Planning failed for '{state_id}': {e}", state_id=state_id, details=str(e)) from e

        if isinstance(result, PlanOutcome):
            return result.payload, result.plan
        if isinstance(result, (bytes, bytearray)):
            return bytes(result), None
        raise PlanningError(
            f"Planner returned {type(result).__name__} for '{state_id}', expected bytes",
            state_id=state_id
        )

    def _write(self, state_id: str, payload: bytes, expected_version: Optional[int]) -> StateSnapshot:
        try:
            return self.object_store.write_if_version_matches(state_id, payload, expected_version)
        except ConflictError as e:
            logger.error(
                f"Version conflict on {state_id} while holding the lock as {self.holder}: "
                f"expected {e.expected_version}, found {e.actual_version}. "
                "Another writer bypassed the lock."
            )
            raise

    def _release(self, state_id: str, error: Optional[BaseException]) -> None:
        self._enter(CoordinatorPhase.RELEASING)
        try:
            self.lock_table.release(state_id, self.holder)
        except Exception as e:
            logger.error(
                f"Lock {state_id} held by {self.holder} could not be released and is now abandoned: {e}. "
                "Clear it manually with `infra-state unlock --force` once no operation is running."
            )
            raise ReleaseFailedError(state_id, self.holder, reason=str(e), original_error=error) from (error or e)
        finally:
            self._enter(CoordinatorPhase.IDLE)

    def _enter(self, phase: CoordinatorPhase) -> None:
        self.phase = phase
        self.phases.append(phase)
        logger.debug(f"Coordinator phase: {phase.value}")
