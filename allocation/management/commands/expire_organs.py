from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand
from django.utils import timezone

from allocation.exceptions import AllocationError
from allocation.models import Organ, OrganStatus
from allocation.services.coordinator import get_coordinator


class Command(BaseCommand):
    help = "Expire available or matched organs past their expiration date."

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help="List the organs without changing them.")

    def handle(self, *args, **options):
        cutoff = timezone.now() - timedelta(minutes=settings.ORGAN_EXPIRY_GRACE_MINUTES)
        due = list(
            Organ.objects.filter(
                status__in=[OrganStatus.AVAILABLE, OrganStatus.MATCHED],
                expiration_date__lt=cutoff,
            ).order_by('expiration_date', 'pk').values_list('pk', flat=True)
        )
        if options['dry_run']:
            for pk in due:
                self.stdout.write(f"would expire organ {pk}")
            self.stdout.write(self.style.SUCCESS(f"{len(due)} organs due for expiry"))
            return

        coordinator = get_coordinator()
        expired = 0
        for pk in due:
            try:
                coordinator.expire_organ(pk, reason='expiration date passed')
            except AllocationError as exc:
                # moved on since the scan, e.g. already in transit
                self.stderr.write(f"skipped organ {pk}: {exc.detail}")
                continue
            expired += 1
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} of {len(due)} organs at {timezone.now()}"))
