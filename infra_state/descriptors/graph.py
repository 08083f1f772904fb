"""
Dependency graph over resource descriptors.
"""
from typing import Dict, Iterable, List, Set
import logging

from .models import ResourceDescriptor
from ..core.exceptions import ValidationError


logger = logging.getLogger(__name__)


class DescriptorGraph:
    """Directed acyclic graph of descriptors, edges pointing at dependencies."""

    def __init__(self, descriptors: Iterable[ResourceDescriptor]):
        """Build the graph.

        Raises:
            ValidationError: On duplicate addresses or references to unknown descriptors
        """
        self.descriptors: Dict[str, ResourceDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.address in self.descriptors:
                raise ValidationError(f"Duplicate resource descriptor: {descriptor.address}")
            self.descriptors[descriptor.address] = descriptor

        self.edges: Dict[str, Set[str]] = {
            address: descriptor.references()
            for address, descriptor in self.descriptors.items()
        }

        for address, deps in self.edges.items():
            missing = sorted(d for d in deps if d not in self.descriptors)
            if missing:
                raise ValidationError(
                    f"{address} references unknown resources: {', '.join(missing)}"
                )

    def __len__(self) -> int:
        return len(self.descriptors)

    def dependencies(self, address: str) -> Set[str]:
        """Direct dependencies of ``address``."""
        return set(self.edges[address])

    def dependents(self, address: str) -> Set[str]:
        """Descriptors that directly depend on ``address``."""
        return {a for a, deps in self.edges.items() if address in deps}

    def topological_order(self) -> List[ResourceDescriptor]:
        """Dependencies first; ties broken by address so the order is stable.

        Raises:
            ValidationError: If the references form a cycle
        """
        remaining = {address: set(deps) for address, deps in self.edges.items()}
        ordered = []

        ready = sorted(a for a, deps in remaining.items() if not deps)
        while ready:
            address = ready.pop(0)
            ordered.append(self.descriptors[address])
            del remaining[address]
            for other, deps in remaining.items():
                if address in deps:
                    deps.discard(address)
                    if not deps:
                        ready.append(other)
            ready.sort()

        if remaining:
            cycle = ', '.join(sorted(remaining))
            raise ValidationError(f"Dependency cycle between resources: {cycle}")

        logger.debug(f"Resolved order for {len(ordered)} descriptors")
        return ordered
