from django.core.management.base import BaseCommand, CommandError

from payments.apps import get_gateway
from payments.exceptions import MpesaError


class Command(BaseCommand):
    """
    Register the C2B confirmation and validation URLs with Safaricom.

    Usage:
        python manage.py register_c2b_urls
        python manage.py register_c2b_urls --confirmation-url https://... --validation-url https://...
    """

    help = "Register C2B confirmation/validation URLs for the configured shortcode"

    def add_arguments(self, parser):
        parser.add_argument("--confirmation-url", default=None)
        parser.add_argument("--validation-url", default=None)

    def handle(self, *args, **options):
        client = get_gateway().client
        try:
            response = client.register_c2b_urls(
                validation_url=options["validation_url"],
                confirmation_url=options["confirmation_url"],
            )
        except MpesaError as exc:
            raise CommandError(exc.message) from exc

        if response.is_rejected:
            raise CommandError(f"{response.error_code}: {response.error_message}")
        self.stdout.write(self.style.SUCCESS(f"C2B URLs registered: {response.result_desc or 'OK'}"))
