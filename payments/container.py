"""Builds the payments object graph once at process start."""

from dataclasses import dataclass

from django.urls import reverse
from django.utils.module_loading import import_string

from .conf import MpesaSettings
from .events import PaymentEvents
from .services.callbacks import CallbackProcessor
from .services.checkout import MpesaCheckout
from .services.currency import (
    CurrencyConverter,
    IntegrationRateSource,
    LiveRateSource,
    OverrideRateSource,
    StaticRateTable,
)
from .services.mpesa import MpesaDarajaClient
from .store import DjangoPaymentRecordStore


@dataclass
class PaymentGateway:
    config: MpesaSettings
    events: PaymentEvents
    store: DjangoPaymentRecordStore
    client: MpesaDarajaClient
    converter: CurrencyConverter
    processor: CallbackProcessor
    checkout: MpesaCheckout


def build_rate_sources(config, cache=None):
    sources = []
    if config.exchange_rate_override:
        sources.append(OverrideRateSource(import_string(config.exchange_rate_override)))
    if config.rate_providers:
        sources.append(IntegrationRateSource(import_string(path) for path in config.rate_providers))
    if config.auto_exchange_rates:
        sources.append(LiveRateSource(cache=cache, timeout=config.rate_timeout))
    sources.append(StaticRateTable(config.exchange_rates))
    return sources


def webhook_url(config):
    return config.callback_base_url.rstrip('/') + reverse('mpesa_webhook')


def build_gateway(config=None, cache=None, c2b_validator=None):
    config = config or MpesaSettings.from_django()
    events = PaymentEvents()
    store = DjangoPaymentRecordStore()
    client = MpesaDarajaClient(config, webhook_url=webhook_url(config), cache=cache)
    converter = CurrencyConverter(build_rate_sources(config, cache=cache))
    processor = CallbackProcessor(
        store,
        events,
        completion_status=config.completion_status,
        c2b_validator=c2b_validator,
    )
    checkout = MpesaCheckout(client, converter, store, enable_reversal=config.enable_reversal)
    return PaymentGateway(
        config=config,
        events=events,
        store=store,
        client=client,
        converter=converter,
        processor=processor,
        checkout=checkout,
    )
