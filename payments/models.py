from django.db import models


class Order(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending payment'
        PROCESSING = 'processing', 'Processing'
        ON_HOLD = 'on-hold', 'On hold'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'
        CANCELLED = 'cancelled', 'Cancelled'
        REFUNDED = 'refunded', 'Refunded'

    total = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default='KES')
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    billing_phone = models.CharField(max_length=20, blank=True, default='')

    # Set once the order is paid; M-Pesa receipt number
    transaction_id = models.CharField(max_length=64, blank=True, null=True)
    paid_at = models.DateTimeField(blank=True, null=True)

    # Conversion details and other gateway bookkeeping
    meta = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Order #{self.pk} {self.total} {self.currency} - {self.status}"

    @property
    def reference(self):
        return str(self.pk)

    @property
    def is_paid(self):
        return self.paid_at is not None


class OrderNote(models.Model):
    order = models.ForeignKey(Order, related_name='notes', on_delete=models.CASCADE)
    note = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"Order #{self.order_id}: {self.note[:60]}"


class PendingPayment(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'
        PARTIALLY_PAID = 'partially_paid', 'Partially paid'

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED)

    order = models.ForeignKey(Order, related_name='mpesa_payments', on_delete=models.CASCADE)
    merchant_request_id = models.CharField(max_length=128, unique=True)
    checkout_request_id = models.CharField(max_length=128, blank=True, default='')
    phone_number = models.CharField(max_length=20)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    transaction_id = models.CharField(max_length=64, blank=True, null=True)

    result_code = models.CharField(max_length=16, blank=True, null=True)
    result_desc = models.CharField(max_length=256, blank=True, null=True)
    raw_callback = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['order', 'transaction_id'],
                name='unique_order_transaction_id',
            ),
        ]

    def __str__(self):
        return f"{self.merchant_request_id} {self.amount} KES - {self.status}"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES
