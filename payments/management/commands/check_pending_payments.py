from datetime import timedelta

from django.core.management.base import BaseCommand

from payments.apps import get_gateway
from payments.exceptions import MpesaError


class Command(BaseCommand):
    """
    Query Safaricom for STK payments whose callback never arrived.

    Usage:
        python manage.py check_pending_payments
        python manage.py check_pending_payments --minutes 5
    """

    help = "Poll the STK query API for pending M-Pesa payments"

    def add_arguments(self, parser):
        parser.add_argument(
            "--minutes",
            type=int,
            default=2,
            help="Only check payments pending for at least this many minutes",
        )

    def handle(self, *args, **options):
        gateway = get_gateway()
        pending = gateway.store.pending_payments(older_than=timedelta(minutes=options["minutes"]))

        checked = 0
        for payment in pending:
            try:
                status = gateway.checkout.check_status(payment)
            except MpesaError as exc:
                self.stderr.write(f"{payment.merchant_request_id}: {exc.message}")
                continue
            checked += 1
            self.stdout.write(f"{payment.merchant_request_id}: {status}")

        self.stdout.write(self.style.SUCCESS(f"Checked {checked} pending payment(s)"))
