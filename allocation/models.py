"""
Database models for the allocation engine.

The models capture donors, the organs retrieved from them, receivers on
the waiting list and the three workflow records that connect them:
compatibilities, transportations and transplant procedures.  Status
fields are closed enumerations; they are changed exclusively by
:class:`allocation.services.coordinator.AllocationCoordinator`, which
also writes a :class:`StatusTransition` row for every change.
"""
from __future__ import annotations

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q


class BloodType(models.TextChoices):
    O_NEG = 'O-', 'O-'
    O_POS = 'O+', 'O+'
    A_NEG = 'A-', 'A-'
    A_POS = 'A+', 'A+'
    B_NEG = 'B-', 'B-'
    B_POS = 'B+', 'B+'
    AB_NEG = 'AB-', 'AB-'
    AB_POS = 'AB+', 'AB+'


class OrganType(models.TextChoices):
    HEART = 'heart', 'Heart'
    LIVER = 'liver', 'Liver'
    KIDNEY = 'kidney', 'Kidney'
    LUNG = 'lung', 'Lung'
    PANCREAS = 'pancreas', 'Pancreas'
    INTESTINE = 'intestine', 'Intestine'


class OrganCondition(models.TextChoices):
    EXCELLENT = 'excellent', 'Excellent'
    GOOD = 'good', 'Good'
    FAIR = 'fair', 'Fair'
    POOR = 'poor', 'Poor'


class OrganStatus(models.TextChoices):
    AVAILABLE = 'available', 'Available'
    MATCHED = 'matched', 'Matched'
    IN_TRANSIT = 'in-transit', 'In transit'
    DELIVERED = 'delivered', 'Delivered'
    TRANSPLANTED = 'transplanted', 'Transplanted'
    EXPIRED = 'expired', 'Expired'


class ReceiverStatus(models.TextChoices):
    WAITING = 'waiting', 'Waiting'
    MATCHED = 'matched', 'Matched'
    TRANSPLANTED = 'transplanted', 'Transplanted'
    INACTIVE = 'inactive', 'Inactive'
    DECEASED = 'deceased', 'Deceased'


class CompatibilityStatus(models.TextChoices):
    POTENTIAL = 'potential', 'Potential'
    CONFIRMED = 'confirmed', 'Confirmed'
    REJECTED = 'rejected', 'Rejected'
    COMPLETED = 'completed', 'Completed'


class TransportStatus(models.TextChoices):
    SCHEDULED = 'scheduled', 'Scheduled'
    IN_TRANSIT = 'in-transit', 'In transit'
    DELIVERED = 'delivered', 'Delivered'
    DELAYED = 'delayed', 'Delayed'
    CANCELLED = 'cancelled', 'Cancelled'


class TransportMethod(models.TextChoices):
    GROUND = 'ground', 'Ground'
    AIR = 'air', 'Air'
    HELICOPTER = 'helicopter', 'Helicopter'
    AMBULANCE = 'ambulance', 'Ambulance'


class ProcedureStatus(models.TextChoices):
    SCHEDULED = 'scheduled', 'Scheduled'
    IN_PROGRESS = 'in-progress', 'In progress'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


class ProcedureOutcome(models.TextChoices):
    SUCCESSFUL = 'successful', 'Successful'
    FAILED = 'failed', 'Failed'
    COMPLICATIONS = 'complications', 'Complications'


class Institution(models.Model):
    """A hospital or procurement centre that sends or receives organs."""
    name = models.CharField(max_length=255)
    address = models.TextField(blank=True)
    phone = models.CharField(max_length=32, blank=True)
    email = models.EmailField(blank=True)
    license_number = models.CharField(max_length=100, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return self.name


class Donor(models.Model):
    """Holds the donor attributes used when scoring the donor's organs."""
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    date_of_birth = models.DateField()
    blood_type = models.CharField(max_length=3, choices=BloodType.choices)
    # Comma separated HLA markers, e.g. "A1,A2,B7,B8,DR15"
    hla_type = models.CharField(max_length=255, blank=True, null=True)
    consent_status = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.first_name} {self.last_name} ({self.blood_type})"


class Organ(models.Model):
    donor = models.ForeignKey(Donor, on_delete=models.PROTECT, related_name='organs')
    type = models.CharField(max_length=16, choices=OrganType.choices, db_index=True)
    condition = models.CharField(max_length=16, choices=OrganCondition.choices, default=OrganCondition.GOOD)
    # The organ row is the serialization point for every cascade.
    status = models.CharField(
        max_length=16, choices=OrganStatus.choices, default=OrganStatus.AVAILABLE, db_index=True
    )
    retrieval_date = models.DateTimeField(null=True, blank=True)
    expiration_date = models.DateTimeField(null=True, blank=True, db_index=True)
    storage_location = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"{self.get_type_display()} #{self.pk} ({self.status})"


class Receiver(models.Model):
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    date_of_birth = models.DateField()
    blood_type = models.CharField(max_length=3, choices=BloodType.choices)
    hla_type = models.CharField(max_length=255, blank=True, null=True)
    # 1 is the most urgent, 5 the least
    urgency_status = models.PositiveSmallIntegerField(
        default=3, validators=[MinValueValidator(1), MaxValueValidator(5)]
    )
    status = models.CharField(
        max_length=16, choices=ReceiverStatus.choices, default=ReceiverStatus.WAITING, db_index=True
    )
    registration_date = models.DateField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(urgency_status__gte=1) & Q(urgency_status__lte=5),
                name='receiver_urgency_range',
            ),
        ]

    def __str__(self) -> str:
        return f"{self.first_name} {self.last_name} ({self.blood_type}, urgency {self.urgency_status})"


class Compatibility(models.Model):
    """A scored candidate pairing between one organ and one receiver."""
    organ = models.ForeignKey(Organ, on_delete=models.PROTECT, related_name='compatibilities')
    receiver = models.ForeignKey(Receiver, on_delete=models.PROTECT, related_name='compatibilities')
    compatibility_score = models.FloatField(
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    status = models.CharField(
        max_length=16, choices=CompatibilityStatus.choices,
        default=CompatibilityStatus.POTENTIAL, db_index=True,
    )
    match_date = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = 'compatibilities'
        constraints = [
            models.UniqueConstraint(
                fields=['organ', 'receiver'],
                condition=~Q(status='rejected'),
                name='unique_open_pairing',
            ),
            models.UniqueConstraint(
                fields=['organ'],
                condition=Q(status='confirmed'),
                name='single_confirmed_match_per_organ',
            ),
        ]
        indexes = [
            models.Index(fields=['organ', 'status']),
            models.Index(fields=['receiver', 'status']),
        ]

    def __str__(self) -> str:
        return f"organ={self.organ_id} receiver={self.receiver_id} score={self.compatibility_score} ({self.status})"


class Transportation(models.Model):
    organ = models.ForeignKey(Organ, on_delete=models.PROTECT, related_name='transportations')
    origin_institution = models.ForeignKey(
        Institution, on_delete=models.PROTECT, related_name='outgoing_transports'
    )
    destination_institution = models.ForeignKey(
        Institution, on_delete=models.PROTECT, related_name='incoming_transports'
    )
    departure_time = models.DateTimeField()
    estimated_arrival_time = models.DateTimeField()
    actual_arrival_time = models.DateTimeField(null=True, blank=True)
    transport_method = models.CharField(max_length=16, choices=TransportMethod.choices)
    transport_company = models.CharField(max_length=255, blank=True)
    tracking_number = models.CharField(max_length=100, blank=True)
    status = models.CharField(
        max_length=16, choices=TransportStatus.choices, default=TransportStatus.SCHEDULED, db_index=True
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"transport #{self.pk} organ={self.organ_id} ({self.status})"


class TransplantProcedure(models.Model):
    compatibility = models.OneToOneField(
        Compatibility, on_delete=models.PROTECT, related_name='transplant_procedure'
    )
    organ = models.ForeignKey(Organ, on_delete=models.PROTECT, related_name='procedures')
    receiver = models.ForeignKey(Receiver, on_delete=models.PROTECT, related_name='procedures')
    institution = models.ForeignKey(
        Institution, null=True, blank=True, on_delete=models.SET_NULL, related_name='procedures'
    )
    status = models.CharField(
        max_length=16, choices=ProcedureStatus.choices, default=ProcedureStatus.SCHEDULED, db_index=True
    )
    outcome = models.CharField(max_length=16, choices=ProcedureOutcome.choices, blank=True, null=True)
    scheduled_date = models.DateTimeField()
    actual_date = models.DateTimeField(null=True, blank=True)
    duration_minutes = models.PositiveIntegerField(null=True, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=~Q(status='completed') | Q(outcome__isnull=False),
                name='completed_procedure_has_outcome',
            ),
        ]

    def __str__(self) -> str:
        return f"procedure #{self.pk} compatibility={self.compatibility_id} ({self.status})"


class StatusTransition(models.Model):
    """Records a status change applied by the coordinator, cascades included."""
    ENTITY_CHOICES = [
        ('organ', 'Organ'),
        ('receiver', 'Receiver'),
        ('compatibility', 'Compatibility'),
        ('transportation', 'Transportation'),
        ('procedure', 'Transplant procedure'),
    ]
    entity = models.CharField(max_length=20, choices=ENTITY_CHOICES)
    entity_id = models.BigIntegerField()
    from_status = models.CharField(max_length=16, null=True, blank=True)
    to_status = models.CharField(max_length=16)
    reason = models.CharField(max_length=255, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['entity', 'entity_id', 'timestamp']),
        ]

    def __str__(self) -> str:
        return f"{self.entity}:{self.entity_id}: {self.from_status} → {self.to_status}"
