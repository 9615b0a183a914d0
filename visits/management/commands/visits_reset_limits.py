from django.core.management.base import BaseCommand, CommandError

from visits.jobs import reset_limits
from visits.reconciliation import RESET_PERIODS


class Command(BaseCommand):
    help = "Reactivates visitors suspended for reaching their monthly or yearly visit limit."

    def add_arguments(self, parser):
        parser.add_argument("--period", required=True, choices=RESET_PERIODS)

    def handle(self, *args, **options):
        period = options["period"]
        summary = reset_limits(period)

        total = 0
        failed = []
        for category, result in summary.items():
            if "error" in result:
                failed.append(category)
                self.stdout.write(self.style.ERROR(f"Error processing {category}: {result['error']}"))
                continue
            total += result["reactivated"]
            if result["reactivated"]:
                self.stdout.write(self.style.SUCCESS(f"{category}: reactivated {result['reactivated']} visitors"))

        if failed:
            raise CommandError(f"{period.capitalize()} reset failed for: {', '.join(failed)}")
        self.stdout.write(self.style.SUCCESS(f"{period.capitalize()} reset complete. Total reactivated: {total}"))
