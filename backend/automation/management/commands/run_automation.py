from django.core.management.base import BaseCommand

from automation.jobs import JOBS
from automation.scheduler import run_automation_tick


class Command(BaseCommand):
    help = "Run the automation scan jobs once (document expiry, reminders, summaries, re-engagement)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--job",
            action="append",
            choices=[name for name, _ in JOBS],
            help="Only run this job (may be repeated).",
        )

    def handle(self, *args, **options):
        summary = run_automation_tick(only=options["job"])

        if summary["skipped"]:
            self.stdout.write(self.style.WARNING("Another automation tick is running; nothing done."))
            return

        for name, counters in summary["jobs"].items():
            if "error" in counters:
                self.stdout.write(self.style.ERROR(f"{name}: failed ({counters['error']})"))
            else:
                self.stdout.write(
                    self.style.SUCCESS(
                        f"{name}: checked {counters['checked']}, sent {counters['sent']}, "
                        f"skipped {counters['skipped']}, failed {counters['failed']}"
                    )
                )
