from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ProviderResponse:
    """Decoded provider answer. A business rejection is data, not an error."""

    endpoint: str
    status_code: int
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_rejected(self) -> bool:
        return 'errorCode' in self.data

    @property
    def error_code(self) -> Optional[str]:
        return self.data.get('errorCode')

    @property
    def error_message(self) -> str:
        return self.data.get('errorMessage') or 'Unknown error'

    @property
    def merchant_request_id(self) -> Optional[str]:
        return self.data.get('MerchantRequestID')

    @property
    def checkout_request_id(self) -> Optional[str]:
        return self.data.get('CheckoutRequestID')

    @property
    def result_code(self) -> Optional[str]:
        code = self.data.get('ResultCode', self.data.get('ResponseCode'))
        return None if code is None else str(code)

    @property
    def result_desc(self) -> Optional[str]:
        return self.data.get('ResultDesc') or self.data.get('ResponseDescription')


class PaymentProvider(ABC):
    @abstractmethod
    def initiate_payment(self, phone, amount, reference, description=''):
        raise NotImplementedError

    @abstractmethod
    def query_status(self, checkout_request_id):
        raise NotImplementedError

    @abstractmethod
    def reverse_transaction(self, transaction_id, amount, remarks=''):
        raise NotImplementedError

    @abstractmethod
    def validate_callback(self, payload, signature):
        raise NotImplementedError
