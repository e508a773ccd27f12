"""
Allocation workflow coordinator.

Every operation that changes more than one entity runs inside a single
gateway transaction and either applies its whole cascade or nothing.
Rows are locked in a fixed order (organ, compatibility, receiver, then
transportation or procedure) so that concurrent operations on the same
organ serialise on the organ row instead of deadlocking.  Events are
registered with the transaction and published only after it commits.
"""
from __future__ import annotations

import decimal
import functools
import logging
import numbers
from typing import Optional

import bleach
from django.utils import timezone

from allocation.exceptions import AllocationError, Conflict, InvalidState, ValidationError
from allocation.models import (
    CompatibilityStatus,
    OrganStatus,
    ProcedureOutcome,
    ProcedureStatus,
    ReceiverStatus,
    TransportMethod,
    TransportStatus,
)
from allocation.serializers.events import event_payload
from allocation.services import events, transitions
from allocation.services.blood import compatible_receiver_types
from allocation.services.events import EventPublisher, default_publisher
from allocation.services.gateway import DjangoPersistenceGateway
from allocation.services.scoring import score_breakdown

logger = logging.getLogger(__name__)

ENTITY_KINDS = {
    transitions.ORGAN: 'organ',
    transitions.RECEIVER: 'receiver',
    transitions.COMPATIBILITY: 'compatibility',
    transitions.TRANSPORTATION: 'transportation',
    transitions.PROCEDURE: 'procedure',
}


def _clean_text(value) -> str:
    return bleach.clean((value or '').strip(), tags=set(), strip=True)


def _operation(fn):
    """Log the outcome of a coordinator operation; errors are re-raised untouched."""
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            result = fn(self, *args, **kwargs)
        except AllocationError as exc:
            logger.warning('%s%r rejected: %s (%s)', fn.__name__, args, exc.detail, exc.default_code)
            raise
        logger.info('%s%r applied', fn.__name__, args)
        return result
    return wrapper


class AllocationCoordinator:
    def __init__(self, gateway: Optional[DjangoPersistenceGateway] = None,
                 publisher: Optional[EventPublisher] = None):
        self.gateway = gateway or DjangoPersistenceGateway()
        self.publisher = publisher or default_publisher()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _transition(self, instance, machine, new_status: str, reason: str = '', fields=()) -> str:
        """Apply one legal status change and record it; the instance is untouched if illegal."""
        current = instance.status
        machine.check(current, new_status)
        instance.status = new_status
        self.gateway.save(instance, fields=['status', *fields])
        self.gateway.record_transition(ENTITY_KINDS[machine], instance.pk, current, new_status, reason)
        return current

    def _emit(self, event_name: str, **payload) -> None:
        data = event_payload(**payload)
        self.gateway.on_commit(functools.partial(self._publish, event_name, data))

    def _publish(self, event_name: str, payload: dict) -> None:
        try:
            self.publisher.publish(event_name, payload)
        except Exception:
            logger.exception('Publishing %s failed; state change is kept', event_name)

    @staticmethod
    def _validate_score(value) -> float:
        if isinstance(value, bool) or not isinstance(value, (numbers.Real, decimal.Decimal)):
            raise ValidationError('compatibility score must be a number', field='compatibility_score')
        value = float(value)
        if not 0 <= value <= 100:
            raise ValidationError('compatibility score must be between 0 and 100', field='compatibility_score')
        return value

    def _reject_open_compatibilities(self, reason: str, **lookup) -> list[int]:
        rejected = []
        open_matches = self.gateway.compatibilities.filter(
            status=CompatibilityStatus.POTENTIAL, **lookup
        ).select_for_update().order_by('pk')
        for compatibility in open_matches:
            self._transition(compatibility, transitions.COMPATIBILITY, CompatibilityStatus.REJECTED, reason)
            rejected.append(compatibility.pk)
        return rejected

    # ------------------------------------------------------------------
    # compatibility
    # ------------------------------------------------------------------

    @_operation
    def create_compatibility(self, organ_id, receiver_id, score=None, notes: str = ''):
        """Create a ``potential`` pairing, scoring it unless ``score`` is given."""
        if score is not None:
            score = self._validate_score(score)
        notes = _clean_text(notes)

        with self.gateway.atomic():
            organ = self.gateway.organs.get(organ_id, for_update=True)
            receiver = self.gateway.receivers.get(receiver_id, for_update=True)
            if organ.status != OrganStatus.AVAILABLE:
                raise InvalidState(f'Organ with ID {organ.pk} is not available for matching')
            if receiver.status != ReceiverStatus.WAITING:
                raise InvalidState(f'Receiver with ID {receiver.pk} is not on the waiting list')

            existing = self.gateway.compatibilities.filter(organ=organ, receiver=receiver).exclude(
                status=CompatibilityStatus.REJECTED
            ).first()
            if existing is not None:
                raise Conflict(
                    f'Compatibility {existing.pk} already exists for organ {organ.pk} and receiver {receiver.pk}'
                )

            if score is None:
                breakdown = score_breakdown(organ.donor, receiver)
                logger.debug('organ=%s receiver=%s score terms %s', organ.pk, receiver.pk, breakdown.as_dict())
                score = breakdown.total

            compatibility = self.gateway.compatibilities.create(
                organ=organ,
                receiver=receiver,
                compatibility_score=score,
                status=CompatibilityStatus.POTENTIAL,
                match_date=timezone.now(),
                notes=notes,
            )
            self.gateway.record_transition(
                'compatibility', compatibility.pk, None, CompatibilityStatus.POTENTIAL, 'created'
            )
            self._emit(events.COMPATIBILITY_FOUND, compatibility=compatibility)
        return compatibility

    @_operation
    def confirm(self, compatibility_id):
        """
        Confirm a potential pairing and match its organ and receiver.

        The organ row is locked before anything is checked, so of two
        concurrent confirmations for the same organ exactly one wins and
        the other fails with :class:`Conflict`.
        """
        with self.gateway.atomic():
            snapshot = self.gateway.compatibilities.get(compatibility_id)
            organ = self.gateway.organs.get(snapshot.organ_id, for_update=True)
            compatibility = self.gateway.compatibilities.get(compatibility_id, for_update=True)
            receiver = self.gateway.receivers.get(compatibility.receiver_id, for_update=True)

            if compatibility.status != CompatibilityStatus.POTENTIAL:
                raise InvalidState(
                    f'Compatibility with ID {compatibility.pk} is {compatibility.status}, not potential'
                )

            rival = self.gateway.compatibilities.filter(
                organ=organ, status=CompatibilityStatus.CONFIRMED
            ).exclude(pk=compatibility.pk).first()
            if rival is not None:
                raise Conflict(f'Organ {organ.pk} is already matched through compatibility {rival.pk}')
            if organ.status == OrganStatus.MATCHED:
                raise Conflict(f'Organ {organ.pk} is already matched')
            if organ.status != OrganStatus.AVAILABLE:
                raise InvalidState(f'Organ with ID {organ.pk} is {organ.status}, not available')

            if receiver.status == ReceiverStatus.MATCHED:
                raise Conflict(f'Receiver {receiver.pk} is already matched to another organ')
            if receiver.status != ReceiverStatus.WAITING:
                raise InvalidState(f'Receiver with ID {receiver.pk} is {receiver.status}, not waiting')

            reason = f'compatibility {compatibility.pk} confirmed'
            self._transition(compatibility, transitions.COMPATIBILITY, CompatibilityStatus.CONFIRMED, 'confirmed')
            self._transition(organ, transitions.ORGAN, OrganStatus.MATCHED, reason)
            self._transition(receiver, transitions.RECEIVER, ReceiverStatus.MATCHED, reason)
            self._emit(events.MATCH_CONFIRMED, compatibility=compatibility, organ=organ, receiver=receiver)
        return compatibility

    @_operation
    def reject(self, compatibility_id, reason: str = ''):
        with self.gateway.atomic():
            compatibility = self.gateway.compatibilities.get(compatibility_id, for_update=True)
            self._transition(
                compatibility, transitions.COMPATIBILITY, CompatibilityStatus.REJECTED, _clean_text(reason)
            )
            self._emit(events.COMPATIBILITY_REJECTED, compatibility=compatibility)
        return compatibility

    # ------------------------------------------------------------------
    # transportation
    # ------------------------------------------------------------------

    @_operation
    def schedule_transport(self, organ_id, origin_institution_id, destination_institution_id,
                           departure_time, estimated_arrival_time, transport_method,
                           transport_company: str = '', tracking_number: str = ''):
        if transport_method not in TransportMethod.values:
            raise ValidationError(f'Unknown transport method: {transport_method!r}', field='transport_method')
        if departure_time is None:
            raise ValidationError('departure time is required', field='departure_time')
        if estimated_arrival_time is None:
            raise ValidationError('estimated arrival time is required', field='estimated_arrival_time')
        if estimated_arrival_time < departure_time:
            raise ValidationError('estimated arrival precedes departure', field='estimated_arrival_time')
        if origin_institution_id == destination_institution_id:
            raise ValidationError('origin and destination must differ', field='destination_institution')

        with self.gateway.atomic():
            organ = self.gateway.organs.get(organ_id, for_update=True)
            if organ.status not in (OrganStatus.AVAILABLE, OrganStatus.MATCHED):
                raise InvalidState(f'Organ with ID {organ.pk} is not ready for transport')
            origin = self.gateway.institutions.get(origin_institution_id)
            destination = self.gateway.institutions.get(destination_institution_id)

            transport = self.gateway.transports.create(
                organ=organ,
                origin_institution=origin,
                destination_institution=destination,
                departure_time=departure_time,
                estimated_arrival_time=estimated_arrival_time,
                transport_method=transport_method,
                transport_company=_clean_text(transport_company),
                tracking_number=_clean_text(tracking_number),
                status=TransportStatus.SCHEDULED,
            )
            self.gateway.record_transition('transportation', transport.pk, None, TransportStatus.SCHEDULED, 'created')
            self._emit(events.TRANSPORT_SCHEDULED, transport=transport, organ=organ)
        return transport

    @_operation
    def advance_transport(self, transport_id, new_status, departure_time=None, actual_arrival_time=None):
        """
        Move a transport along its lifecycle and cascade to the organ.

        ``in-transit`` moves the organ to ``in-transit``; ``delivered``
        moves it to ``delivered`` and stamps the arrival time if unset.
        """
        transitions.TRANSPORTATION.validate_status(new_status)
        if departure_time is not None and new_status != TransportStatus.IN_TRANSIT:
            raise ValidationError('departure time can only be set when leaving', field='departure_time')
        if actual_arrival_time is not None and new_status != TransportStatus.DELIVERED:
            raise ValidationError('arrival time can only be set on delivery', field='actual_arrival_time')

        with self.gateway.atomic():
            snapshot = self.gateway.transports.get(transport_id)
            organ = self.gateway.organs.get(snapshot.organ_id, for_update=True)
            transport = self.gateway.transports.get(transport_id, for_update=True)
            transitions.TRANSPORTATION.check(transport.status, new_status)

            fields = []
            if new_status == TransportStatus.IN_TRANSIT and departure_time is not None:
                transport.departure_time = departure_time
                fields.append('departure_time')
            if new_status == TransportStatus.DELIVERED and transport.actual_arrival_time is None:
                transport.actual_arrival_time = actual_arrival_time or timezone.now()
                fields.append('actual_arrival_time')
            old_status = self._transition(transport, transitions.TRANSPORTATION, new_status, fields=fields)

            reason = f'transport {transport.pk} {new_status}'
            if new_status == TransportStatus.IN_TRANSIT and organ.status != OrganStatus.IN_TRANSIT:
                self._transition(organ, transitions.ORGAN, OrganStatus.IN_TRANSIT, reason)
            elif new_status == TransportStatus.DELIVERED and organ.status != OrganStatus.DELIVERED:
                self._transition(organ, transitions.ORGAN, OrganStatus.DELIVERED, reason)

            self._emit(events.TRANSPORT_STATUS_CHANGED, transport=transport, organ=organ, oldStatus=old_status)
        return transport

    # ------------------------------------------------------------------
    # transplant procedures
    # ------------------------------------------------------------------

    @_operation
    def schedule_procedure(self, compatibility_id, scheduled_date, institution_id=None, notes: str = ''):
        if scheduled_date is None:
            raise ValidationError('scheduled date is required', field='scheduled_date')

        with self.gateway.atomic():
            snapshot = self.gateway.compatibilities.get(compatibility_id)
            self.gateway.organs.get(snapshot.organ_id, for_update=True)
            compatibility = self.gateway.compatibilities.get(compatibility_id, for_update=True)
            if compatibility.status != CompatibilityStatus.CONFIRMED:
                raise InvalidState('Compatibility must be confirmed before scheduling a procedure')
            if self.gateway.procedures.filter(compatibility=compatibility).exists():
                raise Conflict(f'Compatibility {compatibility.pk} already has a transplant procedure')
            institution = None
            if institution_id is not None:
                institution = self.gateway.institutions.get(institution_id)

            procedure = self.gateway.procedures.create(
                compatibility=compatibility,
                organ_id=compatibility.organ_id,
                receiver_id=compatibility.receiver_id,
                institution=institution,
                status=ProcedureStatus.SCHEDULED,
                scheduled_date=scheduled_date,
                notes=_clean_text(notes),
            )
            self.gateway.record_transition('procedure', procedure.pk, None, ProcedureStatus.SCHEDULED, 'created')
            self._emit(events.PROCEDURE_SCHEDULED, procedure=procedure)
        return procedure

    @_operation
    def start_procedure(self, procedure_id, actual_date=None):
        with self.gateway.atomic():
            procedure = self.gateway.procedures.get(procedure_id, for_update=True)
            transitions.PROCEDURE.check(procedure.status, ProcedureStatus.IN_PROGRESS)
            procedure.actual_date = actual_date or timezone.now()
            self._transition(procedure, transitions.PROCEDURE, ProcedureStatus.IN_PROGRESS, 'started',
                             fields=['actual_date'])
            self._emit(events.PROCEDURE_STARTED, procedure=procedure)
        return procedure

    @_operation
    def complete_procedure(self, procedure_id, outcome=None, actual_date=None, duration_minutes=None):
        """
        Complete a procedure and close out the organ, receiver and pairing.

        A scheduled procedure passes through ``in-progress`` first.  The
        outcome is mandatory.
        """
        if not outcome:
            raise ValidationError('Outcome is required when completing a procedure', field='outcome')
        if outcome not in ProcedureOutcome.values:
            raise ValidationError(f'Unknown procedure outcome: {outcome!r}', field='outcome')
        if duration_minutes is not None:
            if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes < 0:
                raise ValidationError('duration must be a non-negative number of minutes', field='duration_minutes')

        with self.gateway.atomic():
            snapshot = self.gateway.procedures.get(procedure_id)
            organ = self.gateway.organs.get(snapshot.organ_id, for_update=True)
            compatibility = self.gateway.compatibilities.get(snapshot.compatibility_id, for_update=True)
            receiver = self.gateway.receivers.get(snapshot.receiver_id, for_update=True)
            procedure = self.gateway.procedures.get(procedure_id, for_update=True)

            if procedure.status == ProcedureStatus.SCHEDULED:
                self._transition(procedure, transitions.PROCEDURE, ProcedureStatus.IN_PROGRESS,
                                 'started on completion')
            transitions.PROCEDURE.check(procedure.status, ProcedureStatus.COMPLETED)

            procedure.outcome = outcome
            procedure.actual_date = actual_date or procedure.actual_date or timezone.now()
            fields = ['outcome', 'actual_date']
            if duration_minutes is not None:
                procedure.duration_minutes = duration_minutes
                fields.append('duration_minutes')
            self._transition(procedure, transitions.PROCEDURE, ProcedureStatus.COMPLETED, outcome, fields=fields)

            reason = f'procedure {procedure.pk} completed'
            self._transition(organ, transitions.ORGAN, OrganStatus.TRANSPLANTED, reason)
            self._transition(receiver, transitions.RECEIVER, ReceiverStatus.TRANSPLANTED, reason)
            self._transition(compatibility, transitions.COMPATIBILITY, CompatibilityStatus.COMPLETED, reason)
            self._emit(
                events.PROCEDURE_COMPLETED,
                procedure=procedure, compatibility=compatibility, organ=organ, receiver=receiver,
            )
        return procedure

    @_operation
    def cancel_procedure(self, procedure_id, reason: str = ''):
        with self.gateway.atomic():
            procedure = self.gateway.procedures.get(procedure_id, for_update=True)
            self._transition(procedure, transitions.PROCEDURE, ProcedureStatus.CANCELLED, _clean_text(reason))
            self._emit(events.PROCEDURE_CANCELLED, procedure=procedure)
        return procedure

    # ------------------------------------------------------------------
    # organ and receiver lifecycle
    # ------------------------------------------------------------------

    @_operation
    def expire_organ(self, organ_id, reason: str = ''):
        """Expire an organ and reject every pairing still open for it."""
        reason = _clean_text(reason) or 'expired'
        with self.gateway.atomic():
            organ = self.gateway.organs.get(organ_id, for_update=True)
            self._transition(organ, transitions.ORGAN, OrganStatus.EXPIRED, reason)
            rejected = self._reject_open_compatibilities(f'organ {organ.pk} expired', organ=organ)
            self._emit(events.ORGAN_EXPIRED, organ=organ, rejectedCompatibilityIds=rejected)
        return organ

    @_operation
    def update_receiver_status(self, receiver_id, new_status, reason: str = ''):
        """Take a receiver off the waiting list (``inactive`` or ``deceased``)."""
        transitions.RECEIVER.validate_status(new_status)
        if new_status not in (ReceiverStatus.INACTIVE, ReceiverStatus.DECEASED):
            raise ValidationError(
                'only inactive or deceased can be set directly; other statuses follow the workflow',
                field='status',
            )
        reason = _clean_text(reason) or new_status
        with self.gateway.atomic():
            # pairings before the receiver, matching the lock order of confirm
            rejected = self._reject_open_compatibilities(
                f'receiver {receiver_id} {new_status}', receiver_id=receiver_id
            )
            receiver = self.gateway.receivers.get(receiver_id, for_update=True)
            old_status = self._transition(receiver, transitions.RECEIVER, new_status, reason)
            self._emit(
                events.RECEIVER_STATUS_CHANGED,
                receiver=receiver, oldStatus=old_status, rejectedCompatibilityIds=rejected,
            )
        return receiver

    # ------------------------------------------------------------------
    # ranking
    # ------------------------------------------------------------------

    def rank_candidates(self, organ_id, limit: Optional[int] = None, today=None):
        """
        Score every blood-compatible waiting receiver not yet paired with the organ.

        Returns ``(receiver, score)`` tuples, best first; ties go to the
        more urgent, then the earlier registered receiver.
        """
        organ = self.gateway.organs.get(organ_id)
        if organ.status != OrganStatus.AVAILABLE:
            raise InvalidState(f'Organ with ID {organ.pk} is not available for matching')
        donor = organ.donor
        paired = self.gateway.compatibilities.filter(organ=organ).exclude(
            status=CompatibilityStatus.REJECTED
        ).values_list('receiver_id', flat=True)
        candidates = self.gateway.receivers.filter(
            status=ReceiverStatus.WAITING,
            blood_type__in=compatible_receiver_types(donor.blood_type),
        ).exclude(pk__in=paired)

        ranked = [(receiver, score_breakdown(donor, receiver, today=today).total) for receiver in candidates]
        ranked.sort(key=lambda pair: (-pair[1], pair[0].urgency_status, pair[0].registration_date, pair[0].pk))
        return ranked[:limit] if limit else ranked


def get_coordinator() -> AllocationCoordinator:
    """Coordinator wired to the default database and the configured publisher."""
    return AllocationCoordinator(DjangoPersistenceGateway(), default_publisher())
