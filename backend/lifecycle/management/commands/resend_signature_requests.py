from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from lifecycle.workflow import resend_stale_signature_requests


class Command(BaseCommand):
    help = "Re-send signature requests for prescriptions that were sent but never signed."

    def add_arguments(self, parser):
        parser.add_argument(
            '--days', type=int, default=settings.SIGNATURE_RESEND_DAYS,
            help="Only prescriptions created at least this many days ago (default: %(default)s)",
        )

    def handle(self, *args, **options):
        days = options['days']
        if days < 0:
            raise CommandError("--days cannot be negative")

        outcome = resend_stale_signature_requests(days)

        self.stdout.write(f"Process completed: {outcome['resent']} resent, {outcome['errors']} errors")
        if outcome['errors']:
            raise CommandError(f"{outcome['errors']} prescription(s) failed; see logs")
