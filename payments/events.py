"""
Payment lifecycle events.

Downstream code (fulfilment, e-mail, accounting) subscribes to the events a
``PaymentEvents`` instance emits instead of reaching into the callback
processor. Each instance owns its own Django signals, so the object built by
the composition root is the only place subscribers attach to.

Event kinds and payloads:

- ``payment.completed``: order reference plus transaction id, phone, amount
  and the flattened callback metadata
- ``payment.failed``: order reference plus provider result code and description
- ``reversal.result`` / ``reversal.timeout``: raw reversal callback body
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from django.dispatch import Signal

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED = 'payment.completed'
PAYMENT_FAILED = 'payment.failed'
REVERSAL_RESULT = 'reversal.result'
REVERSAL_TIMEOUT = 'reversal.timeout'

EVENT_KINDS = (PAYMENT_COMPLETED, PAYMENT_FAILED, REVERSAL_RESULT, REVERSAL_TIMEOUT)


@dataclass(frozen=True)
class PaymentEvent:
    kind: str
    order_reference: str
    data: Dict[str, Any] = field(default_factory=dict)


class PaymentEvents:
    def __init__(self) -> None:
        self._signals = {kind: Signal() for kind in EVENT_KINDS}

    def subscribe(self, kind: str, handler: Callable[[PaymentEvent], Any]) -> None:
        signal = self._signal(kind)

        def receiver(sender, event, **kwargs):
            return handler(event)

        # weak=False keeps the closure alive for the lifetime of this object
        signal.connect(receiver, weak=False, dispatch_uid=(kind, id(handler)))

    def unsubscribe(self, kind: str, handler: Callable[[PaymentEvent], Any]) -> None:
        self._signal(kind).disconnect(dispatch_uid=(kind, id(handler)))

    def emit(self, event: PaymentEvent, sender: Any = None) -> None:
        responses = self._signal(event.kind).send_robust(sender=sender, event=event)
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    "Subscriber failed handling %s for order %s: %r",
                    event.kind, event.order_reference, response,
                )

    def _signal(self, kind: str) -> Signal:
        try:
            return self._signals[kind]
        except KeyError:
            raise ValueError(f"Unknown payment event kind: {kind}") from None
