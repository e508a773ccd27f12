import datetime

import pytest
from django.utils import timezone

from allocation.models import Donor, Institution, Organ, Receiver
from allocation.services.coordinator import AllocationCoordinator
from allocation.services.events import EventPublisher


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events = []

    def publish(self, event_name, payload):
        self.events.append((event_name, payload))

    @property
    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def coordinator(publisher):
    return AllocationCoordinator(publisher=publisher)


@pytest.fixture
def make_donor(db):
    def make(**kwargs):
        fields = {
            'first_name': 'Dana',
            'last_name': 'Donor',
            'date_of_birth': datetime.date(1980, 5, 1),
            'blood_type': 'O-',
            'consent_status': True,
        }
        fields.update(kwargs)
        return Donor.objects.create(**fields)
    return make


@pytest.fixture
def make_organ(make_donor):
    def make(donor=None, **kwargs):
        fields = {
            'donor': donor or make_donor(),
            'type': 'kidney',
            'condition': 'good',
            'retrieval_date': timezone.now(),
            'expiration_date': timezone.now() + datetime.timedelta(hours=24),
        }
        fields.update(kwargs)
        return Organ.objects.create(**fields)
    return make


@pytest.fixture
def make_receiver(db):
    def make(**kwargs):
        fields = {
            'first_name': 'Ravi',
            'last_name': 'Receiver',
            'date_of_birth': datetime.date(1982, 3, 1),
            'blood_type': 'O+',
            'urgency_status': 2,
        }
        fields.update(kwargs)
        return Receiver.objects.create(**fields)
    return make


@pytest.fixture
def organ(make_organ):
    return make_organ()


@pytest.fixture
def receiver(make_receiver):
    return make_receiver()


@pytest.fixture
def institutions(db):
    origin = Institution.objects.create(name='City Procurement Centre')
    destination = Institution.objects.create(name='General Hospital')
    return origin, destination
