from rest_framework import serializers

from allocation.models import Compatibility, Organ, Receiver, TransplantProcedure, Transportation


class OrganEventSerializer(serializers.ModelSerializer):
    donorId = serializers.IntegerField(source='donor_id', read_only=True)
    expirationDate = serializers.DateTimeField(source='expiration_date', read_only=True)

    class Meta:
        model = Organ
        fields = ['id', 'type', 'condition', 'status', 'donorId', 'expirationDate']


class ReceiverEventSerializer(serializers.ModelSerializer):
    bloodType = serializers.CharField(source='blood_type', read_only=True)
    urgencyStatus = serializers.IntegerField(source='urgency_status', read_only=True)

    class Meta:
        model = Receiver
        fields = ['id', 'status', 'bloodType', 'urgencyStatus']


class CompatibilityEventSerializer(serializers.ModelSerializer):
    organId = serializers.IntegerField(source='organ_id', read_only=True)
    receiverId = serializers.IntegerField(source='receiver_id', read_only=True)
    compatibilityScore = serializers.FloatField(source='compatibility_score', read_only=True)
    matchDate = serializers.DateTimeField(source='match_date', read_only=True)

    class Meta:
        model = Compatibility
        fields = ['id', 'organId', 'receiverId', 'compatibilityScore', 'status', 'matchDate']


class TransportationEventSerializer(serializers.ModelSerializer):
    organId = serializers.IntegerField(source='organ_id', read_only=True)
    originInstitutionId = serializers.IntegerField(source='origin_institution_id', read_only=True)
    destinationInstitutionId = serializers.IntegerField(source='destination_institution_id', read_only=True)
    departureTime = serializers.DateTimeField(source='departure_time', read_only=True)
    estimatedArrivalTime = serializers.DateTimeField(source='estimated_arrival_time', read_only=True)
    actualArrivalTime = serializers.DateTimeField(source='actual_arrival_time', read_only=True)
    transportMethod = serializers.CharField(source='transport_method', read_only=True)

    class Meta:
        model = Transportation
        fields = [
            'id', 'organId', 'originInstitutionId', 'destinationInstitutionId', 'status',
            'departureTime', 'estimatedArrivalTime', 'actualArrivalTime', 'transportMethod',
        ]


class ProcedureEventSerializer(serializers.ModelSerializer):
    compatibilityId = serializers.IntegerField(source='compatibility_id', read_only=True)
    organId = serializers.IntegerField(source='organ_id', read_only=True)
    receiverId = serializers.IntegerField(source='receiver_id', read_only=True)
    institutionId = serializers.IntegerField(source='institution_id', read_only=True, allow_null=True)
    scheduledDate = serializers.DateTimeField(source='scheduled_date', read_only=True)
    actualDate = serializers.DateTimeField(source='actual_date', read_only=True)
    durationMinutes = serializers.IntegerField(source='duration_minutes', read_only=True, allow_null=True)

    class Meta:
        model = TransplantProcedure
        fields = [
            'id', 'compatibilityId', 'organId', 'receiverId', 'institutionId', 'status', 'outcome',
            'scheduledDate', 'actualDate', 'durationMinutes',
        ]


EVENT_SERIALIZERS = {
    Organ: OrganEventSerializer,
    Receiver: ReceiverEventSerializer,
    Compatibility: CompatibilityEventSerializer,
    Transportation: TransportationEventSerializer,
    TransplantProcedure: ProcedureEventSerializer,
}


def event_payload(**extra) -> dict:
    """Build a JSON-safe event payload; model instances are serialized, other values kept."""
    payload = {}
    for key, value in extra.items():
        serializer_class = EVENT_SERIALIZERS.get(type(value))
        payload[key] = dict(serializer_class(value).data) if serializer_class else value
    return payload
