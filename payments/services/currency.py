"""
Currency conversion into the settlement currency (KES).

M-Pesa only settles in Kenyan shillings, so an order priced in another
currency is converted before the STK push. A rate is resolved from an
ordered chain of sources; the first one that answers wins:

1. an explicit override hook
2. multi-currency integrations (whatever the store uses to price in foreign currencies)
3. a live rate API, cached for six hours
4. the manually configured ``CUR=RATE`` table

The live source treats any error as a miss so the chain falls through to the
manual table instead of failing the checkout.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import requests
from django.core.cache import cache as default_cache

from ..constants import RATE_API_URL, RATE_CACHE_KEY, RATE_CACHE_TTL, SETTLEMENT_CURRENCY
from ..exceptions import InvalidAmount, InvalidRate, NoRateAvailable

logger = logging.getLogger(__name__)

CURRENCY_CODE = re.compile(r'^[A-Z]{3}$')


def to_decimal(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def positive(rate):
    rate = to_decimal(rate)
    return rate if rate is not None and rate > 0 else None


@dataclass(frozen=True)
class ConversionInfo:
    original_amount: Decimal
    currency: str
    settlement_amount: Decimal
    rate: Decimal
    was_converted: bool


class RateSource:
    name = 'rate source'

    def get_rate(self, currency):
        raise NotImplementedError


class OverrideRateSource(RateSource):
    """Site-specific hook. A non-None answer is final, even if unusable."""

    name = 'override'
    authoritative = True

    def __init__(self, hook):
        self.hook = hook

    def get_rate(self, currency):
        rate = self.hook(currency)
        if rate is None:
            return None
        value = to_decimal(rate)
        return value if value is not None else Decimal('0')


class IntegrationRateSource(RateSource):
    name = 'multi-currency integration'

    def __init__(self, providers):
        self.providers = list(providers)

    def get_rate(self, currency):
        for provider in self.providers:
            rate = positive(provider(currency, SETTLEMENT_CURRENCY))
            if rate is not None:
                return rate
        return None


class LiveRateSource(RateSource):
    name = 'live API'

    def __init__(self, cache=None, timeout=10, url=RATE_API_URL):
        self.cache = cache if cache is not None else default_cache
        self.timeout = timeout
        self.url = url

    def get_rate(self, currency):
        cache_key = RATE_CACHE_KEY.format(currency=currency.lower())
        cached = self.cache.get(cache_key)
        if cached is not None:
            return Decimal(cached)

        try:
            response = requests.get(self.url.format(currency=currency.upper()), timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Exchange rate API failed for %s: %s", currency, exc)
            return None

        rates = body.get('rates') if isinstance(body, dict) else None
        rate = positive(rates.get(SETTLEMENT_CURRENCY)) if isinstance(rates, dict) else None
        if rate is None:
            logger.warning("Exchange rate API returned no %s rate for %s", SETTLEMENT_CURRENCY, currency)
            return None

        self.cache.set(cache_key, str(rate), RATE_CACHE_TTL)
        logger.info("Fetched exchange rate from API: %s -> %s = %s", currency, SETTLEMENT_CURRENCY, rate)
        return rate


class StaticRateTable(RateSource):
    name = 'manual table'

    def __init__(self, text=''):
        self.rates = parse_rate_table(text)

    def get_rate(self, currency):
        return self.rates.get(currency)


def parse_rate_table(text):
    """Parse ``CUR=RATE`` lines. Blank lines and ``#``/``//`` comments are skipped."""
    rates = {}
    for raw_line in (text or '').splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#') or line.startswith('//'):
            continue
        if '=' not in line:
            logger.warning("Invalid exchange rate entry: %r", line)
            continue
        currency, rate = line.split('=', 1)
        currency = currency.strip().upper()
        value = positive(rate)
        if CURRENCY_CODE.match(currency) and value is not None:
            rates[currency] = value
        else:
            logger.warning("Invalid exchange rate entry: %r", line)
    return rates


class CurrencyConverter:
    def __init__(self, sources, settlement_currency=SETTLEMENT_CURRENCY, amount_hook=None):
        self.sources = list(sources)
        self.settlement_currency = settlement_currency
        self.amount_hook = amount_hook

    def get_exchange_rate(self, currency):
        currency = currency.upper()
        for source in self.sources:
            rate = source.get_rate(currency)
            if rate is None:
                continue
            if getattr(source, 'authoritative', False) or rate > 0:
                logger.debug("Rate %s -> %s = %s from %s", currency, self.settlement_currency, rate, source.name)
                return rate
        raise NoRateAvailable(
            f"No exchange rate found for {currency} to {self.settlement_currency}. "
            "Please configure exchange rates in M-Pesa settings.",
            currency=currency,
        )

    def convert(self, amount, from_currency):
        amount = Decimal(str(amount))
        from_currency = from_currency.upper()
        if from_currency == self.settlement_currency:
            return amount

        rate = self.get_exchange_rate(from_currency)
        if rate <= 0:
            raise InvalidRate(
                f"Invalid exchange rate for {from_currency} to {self.settlement_currency}",
                currency=from_currency,
            )

        converted = amount * rate
        if self.amount_hook is not None:
            converted = Decimal(str(self.amount_hook(converted, amount, from_currency, rate)))
        return converted

    def get_conversion_info(self, amount, from_currency):
        amount = to_decimal(amount)
        if amount is None or amount <= 0:
            raise InvalidAmount("Invalid amount for currency conversion", currency=from_currency)

        from_currency = from_currency.upper()
        if from_currency == self.settlement_currency:
            return ConversionInfo(amount, from_currency, amount, Decimal('1'), False)

        settlement_amount = self.convert(amount, from_currency)
        return ConversionInfo(
            original_amount=amount,
            currency=from_currency,
            settlement_amount=settlement_amount,
            rate=settlement_amount / amount,
            was_converted=True,
        )
