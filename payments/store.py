import logging
from abc import ABC, abstractmethod

from django.db import IntegrityError, transaction
from django.utils import timezone

from .constants import PARTIAL_TRANSACTIONS_KEY
from .models import Order, OrderNote, PendingPayment

logger = logging.getLogger(__name__)


class PaymentRecordStore(ABC):
    """Persisted order and payment state the callback path reads and mutates.

    Every transition method returns True only for the caller that actually
    moved the record, so concurrent deliveries of one callback resolve to a
    single winner.
    """

    @abstractmethod
    def get_order(self, reference):
        raise NotImplementedError

    @abstractmethod
    def find_pending_by_merchant_request(self, merchant_request_id):
        raise NotImplementedError

    @abstractmethod
    def pending_payments(self, older_than=None):
        raise NotImplementedError

    @abstractmethod
    def create_pending_payment(self, order, merchant_request_id, checkout_request_id, phone, amount):
        raise NotImplementedError

    @abstractmethod
    def complete_payment(self, payment, transaction_id, order_status, note, raw_callback=None):
        """Completes the payment. False unless the order was also settled by it."""
        raise NotImplementedError

    @abstractmethod
    def fail_payment(self, payment, result_code, result_desc, note, raw_callback=None):
        raise NotImplementedError

    @abstractmethod
    def mark_partial(self, payment, transaction_id, note, raw_callback=None):
        raise NotImplementedError

    @abstractmethod
    def settle_order(self, order, transaction_id, order_status, note):
        raise NotImplementedError

    @abstractmethod
    def hold_order(self, order, transaction_id, note):
        raise NotImplementedError

    @abstractmethod
    def add_note(self, order, note):
        raise NotImplementedError

    @abstractmethod
    def update_meta(self, order, values):
        raise NotImplementedError


class DjangoPaymentRecordStore(PaymentRecordStore):

    def get_order(self, reference):
        try:
            return Order.objects.get(pk=int(str(reference).strip()))
        except (ValueError, Order.DoesNotExist):
            return None

    def find_pending_by_merchant_request(self, merchant_request_id):
        if not merchant_request_id:
            return None
        return (
            PendingPayment.objects.select_related('order')
            .filter(merchant_request_id=merchant_request_id)
            .first()
        )

    def pending_payments(self, older_than=None):
        qs = PendingPayment.objects.select_related('order').filter(status=PendingPayment.Status.PENDING)
        if older_than is not None:
            qs = qs.filter(created_at__lte=timezone.now() - older_than)
        return qs.order_by('created_at')

    def create_pending_payment(self, order, merchant_request_id, checkout_request_id, phone, amount):
        return PendingPayment.objects.create(
            order=order,
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id or '',
            phone_number=phone,
            amount=amount,
        )

    def complete_payment(self, payment, transaction_id, order_status, note, raw_callback=None):
        now = timezone.now()
        try:
            with transaction.atomic():
                won = PendingPayment.objects.filter(
                    pk=payment.pk, status=PendingPayment.Status.PENDING,
                ).update(
                    status=PendingPayment.Status.COMPLETED,
                    transaction_id=transaction_id,
                    result_code='0',
                    result_desc='Success',
                    raw_callback=raw_callback,
                    updated_at=now,
                )
                if not won:
                    return False
                settled = Order.objects.filter(pk=payment.order_id, paid_at__isnull=True).update(
                    status=order_status,
                    transaction_id=transaction_id,
                    paid_at=now,
                    updated_at=now,
                )
                if not settled:
                    # The first receipt stays on the order
                    first = Order.objects.filter(pk=payment.order_id).values_list('transaction_id', flat=True).first()
                    logger.warning(
                        "Transaction %s paid order %s which was already paid by %s",
                        transaction_id, payment.order_id, first,
                    )
                    note = (
                        f"Second M-Pesa payment received for an already paid order. "
                        f"Transaction ID: {transaction_id}, first payment: {first}. Possible double charge."
                    )
                OrderNote.objects.create(order_id=payment.order_id, note=note)
        except IntegrityError:
            logger.info("Transaction %s already recorded for order %s", transaction_id, payment.order_id)
            return False
        payment.refresh_from_db()
        return bool(settled)

    def fail_payment(self, payment, result_code, result_desc, note, raw_callback=None):
        now = timezone.now()
        with transaction.atomic():
            won = PendingPayment.objects.filter(
                pk=payment.pk, status=PendingPayment.Status.PENDING,
            ).update(
                status=PendingPayment.Status.FAILED,
                result_code=str(result_code),
                result_desc=(result_desc or '')[:256],
                raw_callback=raw_callback,
                updated_at=now,
            )
            if not won:
                return False
            Order.objects.filter(pk=payment.order_id).update(status=Order.Status.FAILED, updated_at=now)
            OrderNote.objects.create(order_id=payment.order_id, note=note)
        payment.refresh_from_db()
        return True

    def mark_partial(self, payment, transaction_id, note, raw_callback=None):
        now = timezone.now()
        try:
            with transaction.atomic():
                won = PendingPayment.objects.filter(
                    pk=payment.pk, status=PendingPayment.Status.PENDING,
                ).update(
                    status=PendingPayment.Status.PARTIALLY_PAID,
                    transaction_id=transaction_id,
                    raw_callback=raw_callback,
                    updated_at=now,
                )
                if not won:
                    return False
                Order.objects.filter(pk=payment.order_id).update(status=Order.Status.ON_HOLD, updated_at=now)
                OrderNote.objects.create(order_id=payment.order_id, note=note)
        except IntegrityError:
            return False
        payment.refresh_from_db()
        return True

    def settle_order(self, order, transaction_id, order_status, note):
        now = timezone.now()
        with transaction.atomic():
            won = Order.objects.filter(pk=order.pk, paid_at__isnull=True).update(
                status=order_status,
                transaction_id=transaction_id,
                paid_at=now,
                updated_at=now,
            )
            if won:
                OrderNote.objects.create(order=order, note=note)
        order.refresh_from_db()
        return bool(won)

    def hold_order(self, order, transaction_id, note):
        with transaction.atomic():
            locked = Order.objects.select_for_update().get(pk=order.pk)
            meta = dict(locked.meta or {})
            seen = list(meta.get(PARTIAL_TRANSACTIONS_KEY, []))
            if transaction_id:
                if transaction_id in seen:
                    return False
                meta[PARTIAL_TRANSACTIONS_KEY] = seen + [transaction_id]
            locked.meta = meta
            locked.status = Order.Status.ON_HOLD
            locked.save(update_fields=['meta', 'status', 'updated_at'])
            OrderNote.objects.create(order=locked, note=note)
        order.refresh_from_db()
        return True

    def add_note(self, order, note):
        return OrderNote.objects.create(order=order, note=note)

    def update_meta(self, order, values):
        order.meta = {**(order.meta or {}), **values}
        order.save(update_fields=['meta', 'updated_at'])
