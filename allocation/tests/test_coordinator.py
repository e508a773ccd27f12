import datetime
import threading
from decimal import Decimal
from unittest import mock

import pytest
from django.db import IntegrityError, OperationalError, connection
from django.utils import timezone

from allocation.exceptions import (
    Conflict,
    InvalidState,
    InvalidTransition,
    NotFound,
    TransientPersistenceError,
    ValidationError,
)
from allocation.models import Compatibility, Organ, StatusTransition
from allocation.services import events
from allocation.services.coordinator import AllocationCoordinator

pytestmark = pytest.mark.django_db

TODAY = datetime.date(2024, 6, 1)


def refresh(*objs):
    for obj in objs:
        obj.refresh_from_db()


# ---------------------------------------------------------------------------
# create_compatibility
# ---------------------------------------------------------------------------

def test_create_compatibility_scores_the_pair(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    assert compat.status == 'potential'
    # O- to O+, no HLA, urgency 2, ages two years apart
    assert compat.compatibility_score == 62
    assert compat.match_date is not None
    assert StatusTransition.objects.filter(
        entity='compatibility', entity_id=compat.pk, from_status=None, to_status='potential'
    ).exists()


def test_create_compatibility_with_explicit_score_and_notes(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk, score=0, notes='<b>urgent</b> case')
    assert compat.compatibility_score == 0
    assert compat.notes == 'urgent case'


def test_create_compatibility_accepts_decimal_score(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk, score=Decimal('87.5'))
    assert compat.compatibility_score == 87.5


@pytest.mark.parametrize('bad_score', [-1, 100.5, 'high', True, Decimal('100.01'), Decimal('NaN')])
def test_create_compatibility_rejects_bad_scores(coordinator, organ, receiver, bad_score):
    with pytest.raises(ValidationError):
        coordinator.create_compatibility(organ.pk, receiver.pk, score=bad_score)
    assert not Compatibility.objects.exists()


def test_create_compatibility_unknown_records(coordinator, organ, receiver):
    with pytest.raises(NotFound):
        coordinator.create_compatibility(organ.pk + 1000, receiver.pk)
    with pytest.raises(NotFound) as excinfo:
        coordinator.create_compatibility(organ.pk, receiver.pk + 1000)
    assert excinfo.value.status_code == 404


def test_create_compatibility_requires_available_organ_and_waiting_receiver(
        coordinator, make_organ, make_receiver):
    expired = make_organ(status='expired')
    inactive = make_receiver(status='inactive')
    with pytest.raises(InvalidState):
        coordinator.create_compatibility(expired.pk, make_receiver().pk)
    with pytest.raises(InvalidState):
        coordinator.create_compatibility(make_organ().pk, inactive.pk)


def test_duplicate_open_pairing_is_a_conflict(coordinator, organ, receiver):
    first = coordinator.create_compatibility(organ.pk, receiver.pk)
    with pytest.raises(Conflict):
        coordinator.create_compatibility(organ.pk, receiver.pk)
    coordinator.reject(first.pk)
    again = coordinator.create_compatibility(organ.pk, receiver.pk)
    assert again.pk != first.pk


def test_integrity_error_is_reported_as_conflict(coordinator, organ, receiver, monkeypatch):
    def fail(**fields):
        raise IntegrityError('duplicate key value violates unique constraint "unique_open_pairing"')

    monkeypatch.setattr(coordinator.gateway.compatibilities, 'create', fail)
    with pytest.raises(Conflict) as excinfo:
        coordinator.create_compatibility(organ.pk, receiver.pk)
    assert excinfo.value.retryable is False


def test_operational_error_is_transient_and_retryable(coordinator, organ, receiver, monkeypatch):
    def fail(pk, for_update=False):
        raise OperationalError('Lock wait timeout exceeded')

    monkeypatch.setattr(coordinator.gateway.receivers, 'get', fail)
    with pytest.raises(TransientPersistenceError) as excinfo:
        coordinator.create_compatibility(organ.pk, receiver.pk)
    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 503


# ---------------------------------------------------------------------------
# confirm / reject
# ---------------------------------------------------------------------------

def test_confirm_matches_organ_and_receiver(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    coordinator.confirm(compat.pk)
    refresh(compat, organ, receiver)
    assert (compat.status, organ.status, receiver.status) == ('confirmed', 'matched', 'matched')
    recorded = set(StatusTransition.objects.filter(to_status__in=['confirmed', 'matched'])
                   .values_list('entity', 'from_status', 'to_status'))
    assert recorded == {
        ('compatibility', 'potential', 'confirmed'),
        ('organ', 'available', 'matched'),
        ('receiver', 'waiting', 'matched'),
    }


def test_second_confirm_for_same_organ_is_a_conflict(coordinator, organ, make_receiver):
    first = coordinator.create_compatibility(organ.pk, make_receiver().pk)
    second = coordinator.create_compatibility(organ.pk, make_receiver(blood_type='AB+').pk)
    coordinator.confirm(first.pk)
    with pytest.raises(Conflict):
        coordinator.confirm(second.pk)
    refresh(first, second, organ)
    assert organ.status == 'matched'
    assert first.status == 'confirmed'
    assert second.status == 'potential'
    assert list(organ.compatibilities.filter(status='confirmed')) == [first]


def test_confirm_for_already_matched_receiver_is_a_conflict(coordinator, make_organ, receiver):
    first = coordinator.create_compatibility(make_organ().pk, receiver.pk)
    second = coordinator.create_compatibility(make_organ().pk, receiver.pk)
    coordinator.confirm(first.pk)
    with pytest.raises(Conflict):
        coordinator.confirm(second.pk)
    refresh(second)
    assert second.status == 'potential'
    assert second.organ.status == 'available'


def test_confirm_requires_potential_compatibility(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    coordinator.reject(compat.pk, reason='crossmatch positive')
    with pytest.raises(InvalidState):
        coordinator.confirm(compat.pk)
    refresh(organ, receiver)
    assert organ.status == 'available'
    assert receiver.status == 'waiting'


def test_confirm_after_organ_expired(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    Organ.objects.filter(pk=organ.pk).update(status='expired')
    with pytest.raises(InvalidState):
        coordinator.confirm(compat.pk)
    refresh(compat, receiver)
    assert compat.status == 'potential'
    assert receiver.status == 'waiting'


def test_reject_is_terminal(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    coordinator.reject(compat.pk)
    with pytest.raises(InvalidTransition):
        coordinator.reject(compat.pk)


@pytest.mark.django_db(transaction=True)
def test_concurrent_confirms_have_one_winner(organ, make_receiver, publisher):
    coordinator = AllocationCoordinator(publisher=publisher)
    ids = [
        coordinator.create_compatibility(organ.pk, make_receiver().pk).pk,
        coordinator.create_compatibility(organ.pk, make_receiver(blood_type='A+').pk).pk,
    ]
    barrier = threading.Barrier(len(ids))
    outcomes = {}

    def run(pk):
        try:
            barrier.wait()
            coordinator.confirm(pk)
            outcomes[pk] = 'ok'
        except Conflict:
            outcomes[pk] = 'conflict'
        except TransientPersistenceError:
            outcomes[pk] = 'transient'
        finally:
            connection.close()

    threads = [threading.Thread(target=run, args=(pk,)) for pk in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes.values()) == ['conflict', 'ok']
    winner = next(pk for pk, result in outcomes.items() if result == 'ok')
    organ.refresh_from_db()
    assert organ.status == 'matched'
    assert list(organ.compatibilities.filter(status='confirmed').values_list('pk', flat=True)) == [winner]


# ---------------------------------------------------------------------------
# events
# ---------------------------------------------------------------------------

def test_events_are_published_after_commit(coordinator, publisher, organ, receiver,
                                           django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True) as callbacks:
        compat = coordinator.create_compatibility(organ.pk, receiver.pk)
        coordinator.confirm(compat.pk)
    assert len(callbacks) == 2
    assert publisher.names == [events.COMPATIBILITY_FOUND, events.MATCH_CONFIRMED]
    payload = publisher.events[1][1]
    assert payload['compatibility']['id'] == compat.pk
    assert payload['compatibility']['status'] == 'confirmed'
    assert payload['organ']['status'] == 'matched'
    assert payload['receiver']['status'] == 'matched'


def test_events_wait_for_the_transaction(coordinator, publisher, organ, receiver,
                                         django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks() as callbacks:
        coordinator.create_compatibility(organ.pk, receiver.pk)
        assert publisher.events == []
    assert len(callbacks) == 1


def test_no_events_for_rolled_back_operations(coordinator, publisher, organ, make_receiver,
                                              django_capture_on_commit_callbacks):
    first = coordinator.create_compatibility(organ.pk, make_receiver().pk)
    second = coordinator.create_compatibility(organ.pk, make_receiver().pk)
    coordinator.confirm(first.pk)
    with django_capture_on_commit_callbacks(execute=True) as callbacks:
        with pytest.raises(Conflict):
            coordinator.confirm(second.pk)
    assert callbacks == []
    assert publisher.events == []


def test_publish_failure_keeps_the_state_change(organ, receiver, caplog,
                                                django_capture_on_commit_callbacks):
    publisher = mock.Mock(spec=events.EventPublisher)
    publisher.publish.side_effect = RuntimeError('channel layer down')
    coordinator = AllocationCoordinator(publisher=publisher)
    with django_capture_on_commit_callbacks(execute=True):
        compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    publisher.publish.assert_called_once()
    assert Compatibility.objects.get(pk=compat.pk).status == 'potential'
    assert 'Publishing compatibility.found failed' in caplog.text


# ---------------------------------------------------------------------------
# transportation
# ---------------------------------------------------------------------------

@pytest.fixture
def transport_args(institutions):
    origin, destination = institutions
    departure = timezone.now()
    return {
        'origin_institution_id': origin.pk,
        'destination_institution_id': destination.pk,
        'departure_time': departure,
        'estimated_arrival_time': departure + datetime.timedelta(hours=3),
        'transport_method': 'helicopter',
    }


def test_transport_lifecycle_moves_the_organ(coordinator, publisher, organ, receiver, transport_args,
                                             django_capture_on_commit_callbacks):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    coordinator.confirm(compat.pk)
    transport = coordinator.schedule_transport(organ.pk, tracking_number='TRK-1', **transport_args)
    assert transport.status == 'scheduled'

    coordinator.advance_transport(transport.pk, 'in-transit')
    refresh(organ)
    assert organ.status == 'in-transit'

    coordinator.advance_transport(transport.pk, 'delayed')
    refresh(organ)
    assert organ.status == 'in-transit'

    with django_capture_on_commit_callbacks(execute=True):
        coordinator.advance_transport(transport.pk, 'delivered')
    refresh(organ, transport)
    assert organ.status == 'delivered'
    assert transport.status == 'delivered'
    assert transport.actual_arrival_time is not None
    name, payload = publisher.events[-1]
    assert name == events.TRANSPORT_STATUS_CHANGED
    assert payload['oldStatus'] == 'delayed'
    assert payload['transport']['status'] == 'delivered'


def test_delivery_keeps_a_given_arrival_time(coordinator, organ, transport_args):
    transport = coordinator.schedule_transport(organ.pk, **transport_args)
    coordinator.advance_transport(transport.pk, 'in-transit')
    arrived = transport_args['departure_time'] + datetime.timedelta(hours=2)
    coordinator.advance_transport(transport.pk, 'delivered', actual_arrival_time=arrived)
    refresh(transport)
    assert transport.actual_arrival_time == arrived


def test_illegal_transport_transition_changes_nothing(coordinator, organ, transport_args):
    transport = coordinator.schedule_transport(organ.pk, **transport_args)
    with pytest.raises(InvalidTransition):
        coordinator.advance_transport(transport.pk, 'delivered')
    with pytest.raises(ValidationError):
        coordinator.advance_transport(transport.pk, 'teleported')
    refresh(transport, organ)
    assert transport.status == 'scheduled'
    assert organ.status == 'available'


def test_cancelled_transport_leaves_the_organ(coordinator, organ, transport_args):
    transport = coordinator.schedule_transport(organ.pk, **transport_args)
    coordinator.advance_transport(transport.pk, 'cancelled')
    refresh(organ)
    assert organ.status == 'available'


@pytest.mark.parametrize('override', [
    {'transport_method': 'submarine'},
    {'departure_time': None},
    {'estimated_arrival_time': timezone.now() - datetime.timedelta(days=1)},
])
def test_schedule_transport_validation(coordinator, organ, transport_args, override):
    transport_args.update(override)
    with pytest.raises(ValidationError):
        coordinator.schedule_transport(organ.pk, **transport_args)


def test_schedule_transport_needs_two_institutions(coordinator, organ, transport_args):
    transport_args['destination_institution_id'] = transport_args['origin_institution_id']
    with pytest.raises(ValidationError):
        coordinator.schedule_transport(organ.pk, **transport_args)
    transport_args['destination_institution_id'] = 987654
    with pytest.raises(NotFound):
        coordinator.schedule_transport(organ.pk, **transport_args)


def test_schedule_transport_for_expired_organ(coordinator, make_organ, transport_args):
    organ = make_organ(status='expired')
    with pytest.raises(InvalidState):
        coordinator.schedule_transport(organ.pk, **transport_args)


def test_times_must_match_the_target_status(coordinator, organ, transport_args):
    transport = coordinator.schedule_transport(organ.pk, **transport_args)
    with pytest.raises(ValidationError):
        coordinator.advance_transport(transport.pk, 'in-transit', actual_arrival_time=timezone.now())
    with pytest.raises(ValidationError):
        coordinator.advance_transport(transport.pk, 'cancelled', departure_time=timezone.now())


# ---------------------------------------------------------------------------
# transplant procedures
# ---------------------------------------------------------------------------

@pytest.fixture
def confirmed(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    return coordinator.confirm(compat.pk)


def test_procedure_needs_confirmed_compatibility(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    with pytest.raises(InvalidState):
        coordinator.schedule_procedure(compat.pk, timezone.now())


def test_one_procedure_per_compatibility(coordinator, confirmed, institutions):
    procedure = coordinator.schedule_procedure(confirmed.pk, timezone.now(), institution_id=institutions[1].pk)
    assert procedure.organ_id == confirmed.organ_id
    assert procedure.receiver_id == confirmed.receiver_id
    assert procedure.institution == institutions[1]
    with pytest.raises(Conflict):
        coordinator.schedule_procedure(confirmed.pk, timezone.now())


def test_complete_procedure_closes_out_the_match(coordinator, confirmed, organ, receiver):
    procedure = coordinator.schedule_procedure(confirmed.pk, timezone.now())
    coordinator.start_procedure(procedure.pk)
    coordinator.complete_procedure(procedure.pk, outcome='successful', duration_minutes=210)
    refresh(procedure, confirmed, organ, receiver)
    assert (procedure.status, procedure.outcome, procedure.duration_minutes) == ('completed', 'successful', 210)
    assert procedure.actual_date is not None
    assert organ.status == 'transplanted'
    assert receiver.status == 'transplanted'
    assert confirmed.status == 'completed'


def test_complete_scheduled_procedure_passes_through_in_progress(coordinator, confirmed):
    procedure = coordinator.schedule_procedure(confirmed.pk, timezone.now())
    coordinator.complete_procedure(procedure.pk, outcome='complications')
    steps = list(StatusTransition.objects.filter(entity='procedure', entity_id=procedure.pk)
                 .order_by('pk').values_list('from_status', 'to_status'))
    assert steps == [(None, 'scheduled'), ('scheduled', 'in-progress'), ('in-progress', 'completed')]


@pytest.mark.parametrize('kwargs', [
    {},
    {'outcome': ''},
    {'outcome': 'cured'},
    {'outcome': 'successful', 'duration_minutes': -5},
])
def test_complete_procedure_validation(coordinator, confirmed, kwargs):
    procedure = coordinator.schedule_procedure(confirmed.pk, timezone.now())
    with pytest.raises(ValidationError):
        coordinator.complete_procedure(procedure.pk, **kwargs)
    refresh(procedure)
    assert procedure.status == 'scheduled'


def test_failed_cascade_rolls_everything_back(coordinator, confirmed, organ, receiver):
    procedure = coordinator.schedule_procedure(confirmed.pk, timezone.now())
    coordinator.update_receiver_status(receiver.pk, 'deceased')
    transitions_before = StatusTransition.objects.count()

    with pytest.raises(InvalidTransition):
        coordinator.complete_procedure(procedure.pk, outcome='failed')

    refresh(procedure, confirmed, organ, receiver)
    assert procedure.status == 'scheduled'
    assert procedure.outcome is None
    assert organ.status == 'matched'
    assert confirmed.status == 'confirmed'
    assert receiver.status == 'deceased'
    assert StatusTransition.objects.count() == transitions_before


def test_cancel_procedure(coordinator, confirmed):
    procedure = coordinator.schedule_procedure(confirmed.pk, timezone.now())
    coordinator.start_procedure(procedure.pk)
    coordinator.cancel_procedure(procedure.pk, reason='donor organ damaged')
    refresh(procedure)
    assert procedure.status == 'cancelled'
    with pytest.raises(InvalidTransition):
        coordinator.complete_procedure(procedure.pk, outcome='successful')
    with pytest.raises(NotFound):
        coordinator.cancel_procedure(procedure.pk + 1000)


# ---------------------------------------------------------------------------
# organ and receiver lifecycle
# ---------------------------------------------------------------------------

def test_expire_organ_rejects_open_pairings(coordinator, publisher, organ, make_receiver,
                                            django_capture_on_commit_callbacks):
    open_ids = [coordinator.create_compatibility(organ.pk, make_receiver().pk).pk for _ in range(2)]
    with django_capture_on_commit_callbacks(execute=True):
        coordinator.expire_organ(organ.pk)
    refresh(organ)
    assert organ.status == 'expired'
    assert set(Compatibility.objects.filter(pk__in=open_ids).values_list('status', flat=True)) == {'rejected'}
    name, payload = publisher.events[-1]
    assert name == events.ORGAN_EXPIRED
    assert payload['rejectedCompatibilityIds'] == sorted(open_ids)


def test_expire_matched_organ_keeps_the_confirmed_pairing(coordinator, confirmed, organ):
    coordinator.expire_organ(organ.pk)
    refresh(confirmed)
    assert confirmed.status == 'confirmed'


def test_transplanted_organ_cannot_expire(coordinator, make_organ):
    organ = make_organ(status='transplanted')
    with pytest.raises(InvalidTransition):
        coordinator.expire_organ(organ.pk)


def test_receiver_leaving_the_list_rejects_open_pairings(coordinator, make_organ, receiver):
    compat = coordinator.create_compatibility(make_organ().pk, receiver.pk)
    coordinator.update_receiver_status(receiver.pk, 'inactive', reason='moved abroad')
    refresh(receiver, compat)
    assert receiver.status == 'inactive'
    assert compat.status == 'rejected'
    coordinator.update_receiver_status(receiver.pk, 'deceased')
    with pytest.raises(InvalidTransition):
        coordinator.update_receiver_status(receiver.pk, 'inactive')


@pytest.mark.parametrize('status', ['matched', 'transplanted', 'waiting', 'gone', None])
def test_workflow_statuses_cannot_be_set_directly(coordinator, receiver, status):
    with pytest.raises(ValidationError):
        coordinator.update_receiver_status(receiver.pk, status)
    refresh(receiver)
    assert receiver.status == 'waiting'


# ---------------------------------------------------------------------------
# ranking
# ---------------------------------------------------------------------------

def test_rank_candidates(coordinator, organ, make_receiver):
    # donor born 1980-05-01
    close_age = make_receiver(blood_type='O+', urgency_status=2, date_of_birth=datetime.date(1982, 3, 1))
    most_urgent = make_receiver(blood_type='A-', urgency_status=1, date_of_birth=datetime.date(1950, 1, 1))
    least_urgent = make_receiver(blood_type='AB+', urgency_status=5, date_of_birth=datetime.date(1980, 1, 1))
    make_receiver(status='inactive')
    paired = make_receiver()
    coordinator.create_compatibility(organ.pk, paired.pk)

    ranked = coordinator.rank_candidates(organ.pk, today=TODAY)
    assert [(r.pk, s) for r, s in ranked] == [
        (most_urgent.pk, 62), (close_age.pk, 62), (least_urgent.pk, 50),
    ]
    assert [r.pk for r, _ in coordinator.rank_candidates(organ.pk, limit=1, today=TODAY)] == [most_urgent.pk]


def test_rank_candidates_needs_available_organ(coordinator, make_organ):
    with pytest.raises(InvalidState):
        coordinator.rank_candidates(make_organ(status='matched').pk)


def test_rank_candidates_skips_blood_incompatible_receivers(coordinator, make_donor, make_organ, make_receiver):
    organ = make_organ(donor=make_donor(blood_type='AB+'))
    make_receiver(blood_type='O-', urgency_status=1)
    make_receiver(blood_type='O+', urgency_status=1)
    assert coordinator.rank_candidates(organ.pk, today=TODAY) == []

    ab = make_receiver(blood_type='AB+', urgency_status=4)
    assert [r.pk for r, _ in coordinator.rank_candidates(organ.pk, today=TODAY)] == [ab.pk]


def test_free_text_is_stored_as_plain_text(coordinator, organ, receiver):
    compat = coordinator.create_compatibility(organ.pk, receiver.pk)
    coordinator.reject(compat.pk, reason='<i>crossmatch</i> <a href="http://x">positive</a>')
    row = StatusTransition.objects.get(entity='compatibility', entity_id=compat.pk, to_status='rejected')
    assert row.reason == 'crossmatch positive'
