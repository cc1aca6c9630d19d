from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from lifecycle.exceptions import GatewayError
from lifecycle.sweep import SOURCE_GATEWAY, SOURCE_LOCAL, run_renewal_sweep


class Command(BaseCommand):
    help = "Validate upcoming subscription renewals against their prescriptions and act on the result."

    def add_arguments(self, parser):
        parser.add_argument(
            '--days', type=int, default=settings.RENEWAL_SWEEP_DAYS,
            help="Look-ahead window in days (default: %(default)s)",
        )
        parser.add_argument(
            '--use-api', action='store_true',
            help="Read upcoming renewals from the billing provider instead of the local mirror",
        )

    def handle(self, *args, **options):
        days = options['days']
        if days < 1:
            raise CommandError("--days must be at least 1")
        source = SOURCE_GATEWAY if options['use_api'] else SOURCE_LOCAL

        self.stdout.write(f"Validating renewals due in the next {days} day(s) from {source} data...")
        try:
            result = run_renewal_sweep(window_days=days, source=source)
        except GatewayError as exc:
            raise CommandError(f"Could not list renewals from the billing provider: {exc.message}")

        for key, value in result.as_dict().items():
            self.stdout.write(f"  {key}: {value}")
        if result.errors:
            self.stdout.write(self.style.WARNING(f"{result.errors} subscription(s) failed; see logs"))
        else:
            self.stdout.write(self.style.SUCCESS("Renewal validation complete"))
