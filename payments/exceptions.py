"""
M-Pesa integration exceptions.

Failures that the caller has to branch on are raised as one of the classes
below. Provider-side business rejections (insufficient funds, invalid
shortcode, ...) are not exceptions: they come back as data on
``ProviderResponse`` so the provider text can be shown to the payer.
"""

from typing import Any, Dict, Optional


class MpesaError(Exception):
    """
    Base class for every error raised by the payments package.

    Attributes:
        message (str): Human-readable error message
        status_code (Optional[int]): HTTP status code if applicable
        details (Dict[str, Any]): Additional context, never credentials
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'status_code': self.status_code,
            'details': self.details,
            'exception_type': self.__class__.__name__,
        }


class TransportFailure(MpesaError):
    """Network or HTTP-layer failure talking to the provider."""


class MalformedResponse(TransportFailure):
    """The provider answered with a body that is not JSON."""


class AuthFailure(MpesaError):
    """The token endpoint answered but gave no usable access token."""


class SecurityCredentialError(MpesaError):
    """The reversal security credential could not be produced."""


class FeatureDisabled(MpesaError):
    """An optional provider feature was used while switched off."""


class CurrencyConversionError(MpesaError):
    """Base class for conversion failures on the initiation path."""

    def __init__(self, message: str, currency: Optional[str] = None) -> None:
        self.currency = currency
        details = {'currency': currency} if currency else None
        super().__init__(message, details=details)


class NoRateAvailable(CurrencyConversionError):
    pass


class InvalidRate(CurrencyConversionError):
    pass


class InvalidAmount(CurrencyConversionError):
    pass


class MalformedCallback(MpesaError):
    """An inbound webhook body is missing the structure we need."""
