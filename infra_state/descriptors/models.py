"""
Resource descriptor model.
"""
from dataclasses import dataclass, field
import re
from typing import Any, Dict, Mapping, Set, Tuple


# Matches "${kind.name}" and "${kind.name.attribute}" inside string values.
REFERENCE_PATTERN = re.compile(r'\$\{([a-z0-9_]+\.[A-Za-z0-9_-]+)(?:\.[A-Za-z0-9_]+)*\}')


def ref(address: str, attribute: str = None) -> str:
    """Build a reference to another descriptor, e.g. ``ref('lb.app', 'arn')``."""
    return f"${{{address}.{attribute}}}" if attribute else f"${{{address}}}"


@dataclass(frozen=True)
class ResourceDescriptor:
    """Declarative description of one external cloud resource.

    Dependencies come from ``depends_on`` plus every ``${kind.name...}``
    reference found in the attribute values.
    """
    kind: str                                   # 'ecr_repository', 'ecs_service', ...
    name: str                                   # Local name, unique per kind
    attributes: Mapping[str, Any] = field(default_factory=dict, hash=False)
    depends_on: Tuple[str, ...] = ()            # Explicit addresses

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def references(self) -> Set[str]:
        """Addresses this descriptor depends on."""
        found = set(self.depends_on)
        _collect_references(self.attributes, found)
        found.discard(self.address)
        return found

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'name': self.name,
            'attributes': _plain(self.attributes),
            'depends_on': list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResourceDescriptor':
        return cls(
            kind=data['kind'],
            name=data['name'],
            attributes=data.get('attributes', {}),
            depends_on=tuple(data.get('depends_on', ())),
        )


def _collect_references(value: Any, found: Set[str]) -> None:
    if isinstance(value, str):
        found.update(REFERENCE_PATTERN.findall(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect_references(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_references(item, found)


def _plain(value: Any) -> Any:
    """Copy into plain dicts and lists so the result is JSON-serialisable."""
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value
