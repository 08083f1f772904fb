"""
Data models for shared state snapshots and locks.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..planning.models import Plan


@dataclass
class StateSnapshot:
    """One stored version of the state for a state identifier."""
    state_id: str                 # Logical identifier, also the lock id
    version: int                  # Serial, strictly increasing per write
    payload: bytes                # Opaque serialized state document
    encrypted: bool               # Server-side encryption applied at rest
    version_id: Optional[str] = None      # S3 object version
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None


@dataclass
class StateVersion:
    """A retained historical version of a snapshot."""
    version_id: str
    version: Optional[int]
    last_modified: datetime
    is_latest: bool
    size: int


@dataclass
class LockRecord:
    """Who holds exclusive rights to mutate a snapshot."""
    lock_id: str
    holder: str
    acquired_at: datetime
    operation: Optional[str] = None       # 'apply', 'rollback', 'manual', ...
    info: Optional[str] = None


class CoordinatorPhase(Enum):
    """Phases of a coordination cycle."""
    IDLE = "idle"
    LOCKING = "locking"
    LOCKED = "locked"
    READING = "reading"
    PLANNING = "planning"
    WRITING = "writing"
    RELEASING = "releasing"
    FAILED = "failed"


@dataclass
class CycleResult:
    """Outcome of a successful coordination cycle."""
    state_id: str
    holder: str
    snapshot: StateSnapshot
    previous_version: Optional[int]       # None on the first-ever run
    started_at: datetime
    finished_at: datetime
    phases: List[CoordinatorPhase] = field(default_factory=list)
    plan: Optional[Plan] = None

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()
