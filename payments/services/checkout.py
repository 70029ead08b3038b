import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..constants import FAILED_QUERY_CODES, describe_result_code
from ..exceptions import (
    AuthFailure,
    CurrencyConversionError,
    FeatureDisabled,
    MpesaError,
    TransportFailure,
)
from ..models import PendingPayment
from ..utils import format_phone_number, mask_phone, validate_phone
from .mpesa import charge_amount

logger = logging.getLogger(__name__)

PROVIDER_UNAVAILABLE = "Unable to reach M-Pesa at the moment. Please try again."


@dataclass(frozen=True)
class InitiationResult:
    accepted: bool
    message: str
    payment: Optional[PendingPayment] = None
    response: Dict[str, Any] = field(default_factory=dict)


class MpesaCheckout:
    """Drives a payment forward from our side: STK push, status polling, reversal."""

    def __init__(self, client, converter, store, enable_reversal=False):
        self.client = client
        self.converter = converter
        self.store = store
        self.enable_reversal = enable_reversal

    def initiate(self, order, phone):
        if not phone:
            return InitiationResult(False, "M-Pesa phone number is required.")
        if not validate_phone(phone):
            return InitiationResult(False, "Please enter a valid M-Pesa phone number (e.g. 254712345678).")

        try:
            conversion = self.converter.get_conversion_info(order.total, order.currency)
        except CurrencyConversionError as exc:
            logger.error("Currency conversion failed for order %s: %s", order.pk, exc.message)
            return InitiationResult(False, exc.message)

        if conversion.was_converted:
            self.store.update_meta(order, {
                'mpesa_original_amount': str(conversion.original_amount),
                'mpesa_original_currency': conversion.currency,
                'mpesa_kes_amount': str(conversion.settlement_amount),
                'mpesa_exchange_rate': str(conversion.rate),
            })
            self.store.add_note(order, (
                f"Currency converted: {conversion.original_amount:,.2f} {conversion.currency} -> "
                f"KES {conversion.settlement_amount:,.2f} (Rate: {conversion.rate:,.4f})"
            ))

        amount = conversion.settlement_amount
        logger.info("Payment attempt initiated: order %s, phone %s, amount %s",
                    order.pk, mask_phone(format_phone_number(phone)), amount)

        try:
            response = self.client.initiate_payment(phone, amount, order.reference, f"Order #{order.pk}")
        except (TransportFailure, AuthFailure) as exc:
            logger.error("Payment failed: order %s, reason %s", order.pk, exc.message)
            return InitiationResult(False, PROVIDER_UNAVAILABLE)

        if response.is_rejected:
            message = f"{response.error_code}: {response.error_message}"
            logger.error("Payment failed: order %s, reason %s", order.pk, message)
            return InitiationResult(False, message, response=response.data)

        if not response.merchant_request_id:
            logger.error("Payment failed: order %s, no MerchantRequestID in response", order.pk)
            return InitiationResult(False, "Failed to initiate payment.", response=response.data)

        formatted = format_phone_number(phone)
        payment = self.store.create_pending_payment(
            order,
            merchant_request_id=response.merchant_request_id,
            checkout_request_id=response.checkout_request_id,
            phone=formatted,
            amount=charge_amount(amount),
        )
        self.store.add_note(order, (
            f"M-Pesa STK push sent to {formatted}. Merchant Request ID: {response.merchant_request_id}"
        ))
        return InitiationResult(
            True,
            "STK Push sent. Enter your M-PESA PIN on your phone to authorize.",
            payment=payment,
            response=response.data,
        )

    def check_status(self, payment):
        """Poll the provider for a payment whose callback never arrived.

        Only a definitive failure is applied here; a successful query carries no
        receipt number, so completion is left to the callback.
        """
        if payment.status != PendingPayment.Status.PENDING or not payment.checkout_request_id:
            return payment.status

        response = self.client.query_status(payment.checkout_request_id)
        code = response.result_code
        if code in FAILED_QUERY_CODES:
            desc = response.result_desc or describe_result_code(int(code))
            note = f"M-Pesa payment failed. Code: {code}, Message: {desc}"
            if self.store.fail_payment(payment, code, desc, note):
                logger.info("Payment %s marked failed by status query (code %s)", payment.merchant_request_id, code)
        elif code == '0':
            logger.info("Payment %s confirmed by status query, awaiting callback", payment.merchant_request_id)
        else:
            logger.info("Payment %s still pending (query code %s)", payment.merchant_request_id, code)
        return payment.status

    def reverse(self, order, remarks=''):
        if not self.enable_reversal:
            raise FeatureDisabled("M-Pesa reversals are disabled")
        if not order.transaction_id:
            raise MpesaError("Order has no M-Pesa transaction to reverse")

        amount = order.meta.get('mpesa_kes_amount', order.total)
        response = self.client.reverse_transaction(order.transaction_id, amount, remarks)
        if response.is_rejected:
            logger.error("Reversal rejected for order %s: %s", order.pk, response.error_message)
        else:
            self.store.add_note(order, f"M-Pesa reversal requested for transaction {order.transaction_id}")
        return response
