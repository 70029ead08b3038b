from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from django.conf import settings

from .constants import BASE_URLS, TRANSACTION_TYPES


@dataclass(frozen=True)
class MpesaSettings:
    env: str = 'sandbox'
    shortcode: str = ''
    consumer_key: str = ''
    consumer_secret: str = ''
    passkey: str = ''
    initiator: str = ''
    initiator_password: str = ''
    signature_secret: str = ''
    require_signature: bool = False
    business_type: str = 'paybill'
    completion_status: str = 'completed'
    enable_c2b: bool = False
    enable_reversal: bool = False
    auto_exchange_rates: bool = True
    exchange_rates: str = ''
    rate_providers: List[str] = field(default_factory=list)
    exchange_rate_override: Optional[str] = None
    callback_base_url: str = ''
    certificate_dir: str = ''
    allow_plain_credential: bool = False
    timeout: int = 30
    rate_timeout: int = 10

    @classmethod
    def from_django(cls):
        return cls(
            env=getattr(settings, 'MPESA_ENV', 'sandbox'),
            shortcode=str(getattr(settings, 'MPESA_SHORTCODE', '')),
            consumer_key=getattr(settings, 'MPESA_CONSUMER_KEY', ''),
            consumer_secret=getattr(settings, 'MPESA_CONSUMER_SECRET', ''),
            passkey=getattr(settings, 'MPESA_PASSKEY', ''),
            initiator=getattr(settings, 'MPESA_INITIATOR', ''),
            initiator_password=getattr(settings, 'MPESA_INITIATOR_PASSWORD', ''),
            signature_secret=getattr(settings, 'MPESA_SIGNATURE_SECRET', ''),
            require_signature=getattr(settings, 'MPESA_REQUIRE_SIGNATURE', False),
            business_type=getattr(settings, 'MPESA_BUSINESS_TYPE', 'paybill'),
            completion_status=getattr(settings, 'MPESA_COMPLETION_STATUS', 'completed'),
            enable_c2b=getattr(settings, 'MPESA_ENABLE_C2B', False),
            enable_reversal=getattr(settings, 'MPESA_ENABLE_REVERSAL', False),
            auto_exchange_rates=getattr(settings, 'MPESA_AUTO_EXCHANGE_RATES', True),
            exchange_rates=getattr(settings, 'MPESA_EXCHANGE_RATES', ''),
            rate_providers=list(getattr(settings, 'MPESA_RATE_PROVIDERS', [])),
            exchange_rate_override=getattr(settings, 'MPESA_EXCHANGE_RATE_OVERRIDE', None),
            callback_base_url=getattr(settings, 'MPESA_CALLBACK_BASE_URL', ''),
            certificate_dir=str(getattr(settings, 'MPESA_CERTIFICATE_DIR', '')),
            allow_plain_credential=getattr(settings, 'MPESA_ALLOW_PLAIN_CREDENTIAL', False),
            timeout=getattr(settings, 'MPESA_TIMEOUT', 30),
            rate_timeout=getattr(settings, 'MPESA_RATE_TIMEOUT', 10),
        )

    @property
    def base_url(self):
        return BASE_URLS.get(self.env, BASE_URLS['sandbox'])

    @property
    def is_till(self):
        return self.business_type == 'till'

    @property
    def identifier_type(self):
        return TRANSACTION_TYPES['till'] if self.is_till else TRANSACTION_TYPES['paybill']

    @property
    def certificate_path(self):
        return Path(self.certificate_dir) / self.env / 'cert.cer'
