"""Planning engine interface and the default descriptor planner."""

from .models import Plan, PlanOutcome, ResourceChange, ChangeAction
from .planner import Planner, DescriptorPlanner

__all__ = ['Plan', 'PlanOutcome', 'ResourceChange', 'ChangeAction', 'Planner', 'DescriptorPlanner']
