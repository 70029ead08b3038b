"""
Inbound M-Pesa webhook processing.

Every handler takes the decoded JSON body and returns the acknowledgement to
send back. ``ResultCode=0`` tells Safaricom to stop redelivering, so it is
returned for anything we have dealt with, including callbacks we decided to
ignore (unknown merchant request, duplicate delivery). Only a body missing
the structure we need gets a non-zero code, which makes the provider retry.

State transitions go through the record store's compare-and-swap methods:
a repeated or concurrent delivery of the same callback loses the swap and is
logged as a duplicate.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..constants import describe_result_code
from ..events import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    REVERSAL_RESULT,
    REVERSAL_TIMEOUT,
    PaymentEvent,
)
from ..exceptions import MalformedCallback
from .currency import to_decimal

logger = logging.getLogger(__name__)

AMOUNT_EPSILON = Decimal('0.01')


@dataclass(frozen=True)
class CallbackAck:
    result_code: int = 0
    result_desc: str = 'Success'
    http_status: int = 200

    @property
    def accepted(self):
        return self.result_code == 0

    def as_dict(self):
        return {'ResultCode': self.result_code, 'ResultDesc': self.result_desc}


ACK_SUCCESS = CallbackAck()


@dataclass(frozen=True)
class STKResult:
    merchant_request_id: str
    checkout_request_id: str
    result_code: int
    result_desc: Optional[str]
    metadata_items: Optional[List[Dict[str, Any]]]

    @classmethod
    def parse(cls, payload):
        body = payload.get('Body') if isinstance(payload, dict) else None
        callback = body.get('stkCallback') if isinstance(body, dict) else None
        if not isinstance(callback, dict):
            raise MalformedCallback("Invalid callback data")

        try:
            result_code = int(callback.get('ResultCode', 1))
        except (TypeError, ValueError):
            result_code = 1

        metadata = callback.get('CallbackMetadata')
        items = None
        if isinstance(metadata, dict):
            items = [item for item in metadata.get('Item') or [] if isinstance(item, dict)]

        return cls(
            merchant_request_id=str(callback.get('MerchantRequestID') or ''),
            checkout_request_id=str(callback.get('CheckoutRequestID') or ''),
            result_code=result_code,
            result_desc=callback.get('ResultDesc'),
            metadata_items=items,
        )

    @property
    def metadata(self):
        return {item.get('Name'): item.get('Value', '') for item in self.metadata_items or []}


@dataclass(frozen=True)
class C2BNotification:
    transaction_id: str
    amount: Decimal
    phone: str
    bill_reference: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def parse(cls, payload):
        if not payload or not isinstance(payload, dict):
            raise MalformedCallback("Invalid data")
        amount = to_decimal(payload.get('TransAmount'))
        if amount is None:
            raise MalformedCallback("Invalid amount")
        return cls(
            transaction_id=str(payload.get('TransID') or ''),
            amount=amount,
            phone=str(payload.get('MSISDN') or ''),
            bill_reference=str(payload.get('BillRefNumber') or '').strip(),
            raw=payload,
        )


def accept_all(payload):
    return CallbackAck(0, 'Accepted')


class CallbackProcessor:
    def __init__(self, store, events, completion_status='completed', c2b_validator=None,
                 epsilon=AMOUNT_EPSILON):
        self.store = store
        self.events = events
        self.completion_status = completion_status
        self.c2b_validator = c2b_validator or accept_all
        self.epsilon = epsilon

    # STK push

    def handle_reconciliation(self, payload):
        logger.info("STK reconciliation callback received")
        try:
            result = STKResult.parse(payload)
        except MalformedCallback as exc:
            logger.warning("Malformed STK callback: %s", exc.message)
            return CallbackAck(1, exc.message, http_status=400)

        payment = self.store.find_pending_by_merchant_request(result.merchant_request_id)
        if payment is None:
            logger.warning("Order not found for merchant request %s", result.merchant_request_id)
            return ACK_SUCCESS

        if result.result_code == 0 and result.metadata_items is not None:
            self._process_success(payment, result, payload)
        else:
            self._process_failure(payment, result, payload)
        return ACK_SUCCESS

    def _process_success(self, payment, result, payload):
        data = result.metadata
        transaction_id = str(data.get('MpesaReceiptNumber') or '')
        phone = str(data.get('PhoneNumber') or '')
        amount = to_decimal(data.get('Amount'))

        if not transaction_id:
            logger.error("Transaction ID missing in callback for merchant request %s", result.merchant_request_id)
            return

        if payment.transaction_id == transaction_id or payment.is_terminal:
            logger.info("Payment already processed: transaction %s, order %s", transaction_id, payment.order_id)
            return

        if amount is not None and payment.amount - amount >= self.epsilon:
            note = (
                f"Partial M-Pesa payment received. Expected: {payment.amount}, Received: {amount}, "
                f"Shortage: {payment.amount - amount}. Transaction ID: {transaction_id}"
            )
            if self.store.mark_partial(payment, transaction_id, note, raw_callback=payload):
                logger.warning("Partial payment on order %s: %s of %s", payment.order_id, amount, payment.amount)
            else:
                logger.info("Duplicate partial payment callback for transaction %s", transaction_id)
            return

        note = f"M-Pesa payment completed. Transaction ID: {transaction_id}, Amount: {amount}, Phone: {phone}"
        if not self.store.complete_payment(payment, transaction_id, self.completion_status, note,
                                           raw_callback=payload):
            logger.info("Order %s not settled by transaction %s", payment.order_id, transaction_id)
            return

        logger.info("Payment successful: order %s, transaction %s", payment.order_id, transaction_id)
        self.events.emit(PaymentEvent(
            kind=PAYMENT_COMPLETED,
            order_reference=str(payment.order_id),
            data={
                'channel': 'stk',
                'transaction_id': transaction_id,
                'phone': phone,
                'amount': amount,
                'merchant_request_id': result.merchant_request_id,
                'metadata': data,
            },
        ), sender=self)

    def _process_failure(self, payment, result, payload):
        result_desc = result.result_desc or describe_result_code(result.result_code)
        note = f"M-Pesa payment failed. Code: {result.result_code}, Message: {result_desc}"
        if not self.store.fail_payment(payment, result.result_code, result_desc, note, raw_callback=payload):
            logger.info("Ignoring failure callback for settled merchant request %s", result.merchant_request_id)
            return

        logger.error("Payment failed: order %s, reason %s", payment.order_id, result_desc)
        self.events.emit(PaymentEvent(
            kind=PAYMENT_FAILED,
            order_reference=str(payment.order_id),
            data={
                'result_code': result.result_code,
                'result_desc': result_desc,
                'merchant_request_id': result.merchant_request_id,
            },
        ), sender=self)

    # C2B

    def handle_c2b_confirmation(self, payload):
        logger.info("C2B confirmation callback received")
        try:
            notification = C2BNotification.parse(payload)
        except MalformedCallback as exc:
            logger.warning("Malformed C2B confirmation: %s", exc.message)
            return CallbackAck(1, exc.message)

        order = self.store.get_order(notification.bill_reference)
        if order is None:
            logger.warning("Order not found for C2B payment, reference %r", notification.bill_reference)
            return ACK_SUCCESS

        if notification.transaction_id and order.transaction_id == notification.transaction_id:
            logger.info("C2B payment already processed: transaction %s", notification.transaction_id)
            return ACK_SUCCESS

        total = Decimal(order.total)
        received = notification.amount
        difference = total - received

        if abs(difference) < self.epsilon:
            note = (
                f"M-Pesa payment received. Transaction ID: {notification.transaction_id}, "
                f"Phone: {notification.phone}"
            )
            self._settle_c2b(order, notification, note, excess=Decimal('0'))
        elif difference > 0:
            held = self.store.hold_order(order, notification.transaction_id, (
                f"Partial M-Pesa payment received. Expected: {total}, Received: {received}, "
                f"Shortage: {difference}. Transaction ID: {notification.transaction_id}"
            ))
            if held:
                logger.warning("C2B underpayment on order %s: shortage %s", order.pk, difference)
            else:
                logger.info("C2B partial payment already processed: transaction %s", notification.transaction_id)
        else:
            note = (
                f"M-Pesa payment received with overpayment. Expected: {total}, Received: {received}, "
                f"Excess: {abs(difference)}. Transaction ID: {notification.transaction_id}"
            )
            self._settle_c2b(order, notification, note, excess=abs(difference))

        return ACK_SUCCESS

    def _settle_c2b(self, order, notification, note, excess):
        if not self.store.settle_order(order, notification.transaction_id, self.completion_status, note):
            if order.transaction_id == notification.transaction_id:
                logger.info("C2B payment already processed: transaction %s", notification.transaction_id)
                return
            self.store.add_note(order, (
                f"Additional M-Pesa payment received for a paid order. "
                f"Transaction ID: {notification.transaction_id}, Amount: {notification.amount}"
            ))
            logger.warning("C2B payment %s received for already paid order %s", notification.transaction_id, order.pk)
            return

        logger.info("Payment successful: order %s, transaction %s", order.pk, notification.transaction_id)
        self.events.emit(PaymentEvent(
            kind=PAYMENT_COMPLETED,
            order_reference=str(order.pk),
            data={
                'channel': 'c2b',
                'transaction_id': notification.transaction_id,
                'phone': notification.phone,
                'amount': notification.amount,
                'excess': excess,
            },
        ), sender=self)

    def handle_c2b_validation(self, payload):
        logger.info("C2B validation callback received")
        return self.c2b_validator(payload)

    # Reversal

    def handle_reversal_result(self, payload):
        return self._forward(REVERSAL_RESULT, payload)

    def handle_reversal_timeout(self, payload):
        return self._forward(REVERSAL_TIMEOUT, payload)

    def _forward(self, kind, payload):
        result = payload.get('Result') if isinstance(payload, dict) else None
        reference = ''
        if isinstance(result, dict):
            reference = str(result.get('TransactionID') or result.get('OriginatorConversationID') or '')
        logger.info("%s callback received for %s", kind, reference or 'unknown transaction')
        self.events.emit(PaymentEvent(kind=kind, order_reference=reference, data=payload or {}), sender=self)
        return ACK_SUCCESS
