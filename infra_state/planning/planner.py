"""
Planning engine interface and the default descriptor planner.
"""
from datetime import datetime, timezone
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Sequence, Union
import uuid

from .models import ChangeAction, Plan, PlanOutcome, ResourceChange
from ..core.exceptions import PlanningError
from ..descriptors.graph import DescriptorGraph
from ..descriptors.models import ResourceDescriptor

if TYPE_CHECKING:
    from ..state.models import StateSnapshot


logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class Planner(Protocol):
    """Computes the next snapshot payload from the current one and the descriptors.

    The coordinator treats this as an opaque call. Returning a PlanOutcome
    instead of raw bytes lets the coordinator report the plan as well.
    """

    def plan(
        self,
        current: Optional['StateSnapshot'],
        descriptors: Sequence[ResourceDescriptor],
    ) -> Union[bytes, PlanOutcome]:
        ...


class DescriptorPlanner:
    """Records the desired descriptor graph as the new state document.

    The document is JSON::

        {
          "format_version": 1,
          "serial": 4,
          "lineage": "<uuid kept for the life of the state>",
          "generated_at": "2024-01-05T14:30:22+00:00",
          "resources": [{"address": ..., "kind": ..., "name": ...,
                         "attributes": {...}, "depends_on": [...]}, ...]
        }

    Resources are stored in dependency order. No cloud API is called.
    """

    def decode(self, snapshot: Optional['StateSnapshot']) -> Dict[str, Any]:
        """Parse a snapshot payload, or return an empty document for None.

        Raises:
            PlanningError: If the payload is not a state document
        """
        if snapshot is None or not snapshot.payload:
            return {'format_version': FORMAT_VERSION, 'serial': 0, 'lineage': None, 'resources': []}

        try:
            document = json.loads(snapshot.payload.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PlanningError(
                f"Snapshot for '{snapshot.state_id}' is not a JSON state document: {e}",
                state_id=snapshot.state_id
            )

        if not isinstance(document, dict) or not isinstance(document.get('resources', []), list):
            raise PlanningError(
                f"Snapshot for '{snapshot.state_id}' has an unexpected layout",
                state_id=snapshot.state_id
            )

        version = document.get('format_version', FORMAT_VERSION)
        if version > FORMAT_VERSION:
            raise PlanningError(
                f"Snapshot for '{snapshot.state_id}' uses format {version}, "
                f"newer than supported format {FORMAT_VERSION}",
                state_id=snapshot.state_id
            )
        return document

    def diff(
        self,
        current: Optional['StateSnapshot'],
        descriptors: Sequence[ResourceDescriptor],
    ) -> Plan:
        """Compare the resources in ``current`` with the desired descriptors.

        Creates and updates come in dependency order, deletes afterwards in
        reverse of their recorded order.
        """
        before = {r['address']: r for r in self.decode(current).get('resources', [])}
        ordered = DescriptorGraph(descriptors).topological_order()

        changes = []
        for descriptor in ordered:
            after = descriptor.to_dict()
            previous = before.get(descriptor.address)
            if previous is None:
                action = ChangeAction.CREATE
            elif _comparable(previous) != _comparable(after):
                action = ChangeAction.UPDATE
            else:
                action = ChangeAction.NO_OP
            changes.append(ResourceChange(
                address=descriptor.address,
                action=action,
                before=previous,
                after=after,
            ))

        desired = {d.address for d in ordered}
        for address in reversed(list(before)):
            if address not in desired:
                changes.append(ResourceChange(
                    address=address,
                    action=ChangeAction.DELETE,
                    before=before[address],
                ))

        return Plan(changes=changes)

    def plan(
        self,
        current: Optional['StateSnapshot'],
        descriptors: Sequence[ResourceDescriptor],
    ) -> PlanOutcome:
        document = self.decode(current)
        plan = self.diff(current, descriptors)

        resources = [
            dict(change.after, address=change.address)
            for change in plan.changes
            if change.action != ChangeAction.DELETE
        ]
        serial = (current.version if current else 0) + 1
        new_document = {
            'format_version': FORMAT_VERSION,
            'serial': serial,
            'lineage': document.get('lineage') or str(uuid.uuid4()),
            'generated_at': datetime.now(timezone.utc).isoformat(),
            'resources': resources,
        }

        summary = plan.summary()
        logger.info(
            f"Plan: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['delete']} to delete"
        )
        payload = json.dumps(new_document, indent=2, sort_keys=True).encode('utf-8')
        return PlanOutcome(payload=payload, plan=plan)


def _comparable(resource: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'attributes': resource.get('attributes', {}),
        'depends_on': sorted(resource.get('depends_on', [])),
    }
