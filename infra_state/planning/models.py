"""
Plan models produced by the planning engine.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ChangeAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass
class ResourceChange:
    """Planned change for one resource address."""
    address: str                            # 'kind.name'
    action: ChangeAction
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None


@dataclass
class Plan:
    """Ordered set of changes between the current snapshot and the descriptors."""
    changes: List[ResourceChange] = field(default_factory=list)

    def by_action(self, action: ChangeAction) -> List[ResourceChange]:
        return [c for c in self.changes if c.action == action]

    @property
    def has_changes(self) -> bool:
        return any(c.action != ChangeAction.NO_OP for c in self.changes)

    def summary(self) -> Dict[str, int]:
        """Count of changes per action, e.g. {'create': 3, 'update': 0, ...}."""
        counts = {action.value: 0 for action in ChangeAction}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts


@dataclass
class PlanOutcome:
    """New snapshot payload together with the plan that produced it."""
    payload: bytes
    plan: Optional[Plan] = None
