"""
Legal status transitions for every entity of the allocation workflow.

Each entity gets a :class:`StateMachine` built from an explicit table of
edges.  Organ and receiver lifecycles are forward-only chains: a status
may move to any later status of its chain, never back.  Self-transitions
are never legal.
"""
from __future__ import annotations

from typing import Iterable, Mapping

from allocation.exceptions import InvalidTransition, ValidationError
from allocation.models import (
    CompatibilityStatus,
    OrganStatus,
    ProcedureStatus,
    ReceiverStatus,
    TransportStatus,
)


class StateMachine:
    def __init__(self, entity: str, choices, edges: Mapping[str, Iterable[str]]):
        self.entity = entity
        self.statuses = frozenset(str(v) for v in choices.values)
        edges = {str(k): v for k, v in edges.items()}
        self.edges = {s: frozenset(str(t) for t in edges.get(s, ())) for s in self.statuses}
        unknown = set().union(*self.edges.values()) - self.statuses
        if unknown:
            raise ValueError(f'{entity}: transitions to unknown statuses {sorted(unknown)}')

    def targets(self, current: str) -> frozenset[str]:
        return self.edges.get(current, frozenset())

    def is_terminal(self, status: str) -> bool:
        return not self.targets(status)

    def can_transition(self, current: str, new: str) -> bool:
        """Return True if the entity may move from ``current`` to ``new``."""
        return new in self.targets(current)

    def validate_status(self, value) -> str:
        """Reject anything that is not one of this entity's statuses."""
        if not isinstance(value, str) or value not in self.statuses:
            raise ValidationError(f'Unknown {self.entity} status: {value!r}', field='status')
        return str(value)

    def check(self, current: str, new: str) -> None:
        self.validate_status(new)
        if not self.can_transition(current, new):
            raise InvalidTransition(self.entity, current, new)


def _forward_chain(chain: list[str]) -> dict[str, set[str]]:
    return {status: set(chain[i + 1:]) for i, status in enumerate(chain)}


def _organ_edges() -> dict[str, set[str]]:
    edges = _forward_chain([
        OrganStatus.AVAILABLE,
        OrganStatus.MATCHED,
        OrganStatus.IN_TRANSIT,
        OrganStatus.DELIVERED,
        OrganStatus.TRANSPLANTED,
    ])
    for status, targets in edges.items():
        if status != OrganStatus.TRANSPLANTED:
            targets.add(OrganStatus.EXPIRED)
    return edges


def _receiver_edges() -> dict[str, set[str]]:
    edges = _forward_chain([
        ReceiverStatus.WAITING,
        ReceiverStatus.MATCHED,
        ReceiverStatus.TRANSPLANTED,
    ])
    edges[ReceiverStatus.WAITING].add(ReceiverStatus.INACTIVE)
    edges[ReceiverStatus.INACTIVE] = set()
    for status, targets in edges.items():
        targets.add(ReceiverStatus.DECEASED)
    return edges


ORGAN = StateMachine('Organ', OrganStatus, _organ_edges())

RECEIVER = StateMachine('Receiver', ReceiverStatus, _receiver_edges())

COMPATIBILITY = StateMachine('Compatibility', CompatibilityStatus, {
    CompatibilityStatus.POTENTIAL: [CompatibilityStatus.CONFIRMED, CompatibilityStatus.REJECTED],
    CompatibilityStatus.CONFIRMED: [CompatibilityStatus.COMPLETED],
})

TRANSPORTATION = StateMachine('Transportation', TransportStatus, {
    TransportStatus.SCHEDULED: [TransportStatus.IN_TRANSIT, TransportStatus.CANCELLED],
    TransportStatus.IN_TRANSIT: [TransportStatus.DELIVERED, TransportStatus.DELAYED, TransportStatus.CANCELLED],
    TransportStatus.DELAYED: [TransportStatus.DELIVERED, TransportStatus.CANCELLED],
})

PROCEDURE = StateMachine('TransplantProcedure', ProcedureStatus, {
    ProcedureStatus.SCHEDULED: [ProcedureStatus.IN_PROGRESS, ProcedureStatus.CANCELLED],
    ProcedureStatus.IN_PROGRESS: [ProcedureStatus.COMPLETED, ProcedureStatus.CANCELLED],
})
