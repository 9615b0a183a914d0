from datetime import datetime

from django.core.management.base import BaseCommand, CommandError

from visits.jobs import run_daily_rollover


class Command(BaseCommand):
    help = "Signs out visits left open on the previous day and reconciles all active visitors."

    def add_arguments(self, parser):
        parser.add_argument(
            "--date",
            dest="today",
            help="Operational date to roll over to (YYYY-MM-DD). Defaults to today.",
        )

    def handle(self, *args, **options):
        today = None
        if options.get("today"):
            try:
                today = datetime.strptime(options["today"], "%Y-%m-%d").date()
            except ValueError:
                raise CommandError(f"Invalid --date value: {options['today']}")

        self.stdout.write("Starting daily visit rollover...")
        summary = run_daily_rollover(today)

        failed = []
        for category, result in summary.items():
            if "error" in result:
                failed.append(category)
                self.stdout.write(self.style.ERROR(f"Error processing {category}: {result['error']}"))
                continue
            self.stdout.write(
                self.style.SUCCESS(
                    f"{category}: signed out {result['signed_out']} visits, reconciled {result['reconciled']} visitors"
                )
            )

        if failed:
            raise CommandError(f"Daily rollover failed for: {', '.join(failed)}")
        self.stdout.write(self.style.SUCCESS("Daily rollover complete."))
