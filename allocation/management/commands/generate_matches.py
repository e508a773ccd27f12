from django.core.management.base import BaseCommand, CommandError

from allocation.exceptions import AllocationError
from allocation.services.coordinator import get_coordinator


class Command(BaseCommand):
    help = "Rank waiting receivers for an organ and record the best candidates as potential matches."

    def add_arguments(self, parser):
        parser.add_argument('organ_id', type=int)
        parser.add_argument('--limit', type=int, default=5)
        parser.add_argument('--min-score', type=float, default=0.0)

    def handle(self, *args, **options):
        coordinator = get_coordinator()
        organ_id = options['organ_id']
        try:
            ranked = coordinator.rank_candidates(organ_id)
        except AllocationError as exc:
            raise CommandError(str(exc.detail)) from exc

        created = 0
        for receiver, score in ranked:
            if created >= options['limit']:
                break
            if score < options['min_score']:
                break
            try:
                compatibility = coordinator.create_compatibility(organ_id, receiver.pk, score=score)
            except AllocationError as exc:
                self.stderr.write(f"skipped receiver {receiver.pk}: {exc.detail}")
                continue
            created += 1
            self.stdout.write(f"compatibility {compatibility.pk}: receiver {receiver.pk} score {score}")
        self.stdout.write(self.style.SUCCESS(f"Created {created} potential matches for organ {organ_id}"))
