import base64
import hashlib
import hmac
import logging
import threading
from decimal import ROUND_CEILING, Decimal
from urllib.parse import urlencode

import requests
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import padding
from django.core.cache import cache as default_cache
from requests.auth import HTTPBasicAuth

from ..constants import (
    ENDPOINTS,
    TOKEN_CACHE_KEY,
    TOKEN_DEFAULT_EXPIRY,
    TOKEN_SAFETY_MARGIN,
)
from ..exceptions import (
    AuthFailure,
    FeatureDisabled,
    MalformedResponse,
    SecurityCredentialError,
    TransportFailure,
)
from ..utils import canonical_json, format_phone_number, redact, stk_password, timestamp
from .base import PaymentProvider, ProviderResponse

logger = logging.getLogger(__name__)


def charge_amount(amount):
    """M-Pesa only takes whole shillings; round up so the order is covered."""
    return int(Decimal(str(amount)).to_integral_value(rounding=ROUND_CEILING))


class MpesaDarajaClient(PaymentProvider):
    """Outbound calls to the Safaricom Daraja API.

    Transport errors and undecodable bodies are raised as typed errors;
    provider rejections come back inside ``ProviderResponse``. Nothing is
    retried here.
    """

    def __init__(self, config, webhook_url='', cache=None):
        self.config = config
        self.webhook_url = webhook_url
        self.cache = cache if cache is not None else default_cache
        self.base_url = config.base_url
        self.timeout = config.timeout
        self._token_lock = threading.Lock()

    # Auth

    def get_access_token(self):
        token = self.cache.get(TOKEN_CACHE_KEY)
        if token:
            return token
        # Concurrent misses wait here and pick up the token the first caller cached
        with self._token_lock:
            token = self.cache.get(TOKEN_CACHE_KEY)
            if token:
                return token
            return self._fetch_access_token()

    def _fetch_access_token(self):
        url = f"{self.base_url}{ENDPOINTS['oauth']}"
        try:
            response = requests.get(
                url,
                auth=HTTPBasicAuth(self.config.consumer_key, self.config.consumer_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("API Error at oauth: %s", exc)
            raise AuthFailure("Failed to reach M-Pesa OAuth endpoint", details={'error': str(exc)}) from exc

        if response.status_code != 200:
            logger.error("API Error at oauth: status=%s", response.status_code)
            raise AuthFailure("M-Pesa OAuth request was refused", status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise AuthFailure("M-Pesa OAuth returned a non-JSON body", status_code=response.status_code) from exc

        token = data.get('access_token') if isinstance(data, dict) else None
        if not token:
            logger.error("API Error at oauth: response carried no access_token")
            raise AuthFailure("Failed to retrieve access token", status_code=response.status_code)

        try:
            expires_in = int(data.get('expires_in', TOKEN_DEFAULT_EXPIRY))
        except (TypeError, ValueError):
            expires_in = TOKEN_DEFAULT_EXPIRY
        ttl = max(expires_in - TOKEN_SAFETY_MARGIN, 1)
        self.cache.set(TOKEN_CACHE_KEY, token, ttl)
        logger.debug("M-Pesa access token refreshed, cached for %ss", ttl)
        return token

    # Requests

    def _post(self, endpoint, payload):
        token = self.get_access_token()
        url = f"{self.base_url}{ENDPOINTS[endpoint]}"
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

        logger.info("API Request to %s: %s", endpoint, redact(payload))
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("API Error at %s: %s", endpoint, exc)
            raise TransportFailure(
                f"Failed to reach M-Pesa {endpoint} API", details={'endpoint': endpoint, 'error': str(exc)}
            ) from exc

        # Do not raise for status to capture error payloads from API
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("API Error at %s: non-JSON body (status=%s)", endpoint, response.status_code)
            raise MalformedResponse(
                f"M-Pesa {endpoint} API returned a non-JSON body",
                status_code=response.status_code,
                details={'endpoint': endpoint},
            ) from exc
        if not isinstance(data, dict):
            raise MalformedResponse(
                f"M-Pesa {endpoint} API returned an unexpected body",
                status_code=response.status_code,
                details={'endpoint': endpoint},
            )

        logger.info("API Response from %s: %s", endpoint, redact(data))
        return ProviderResponse(endpoint=endpoint, status_code=response.status_code, data=data)

    def callback_url(self, action, **params):
        query = urlencode({'action': action, **params})
        return f"{self.webhook_url}?{query}"

    def initiate_payment(self, phone, amount, reference, description=''):
        ts = timestamp()
        phone = format_phone_number(phone)
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": stk_password(self.config.shortcode, self.config.passkey, ts),
            "Timestamp": ts,
            "TransactionType": "CustomerBuyGoodsOnline" if self.config.is_till else "CustomerPayBillOnline",
            "Amount": charge_amount(amount),
            "PartyA": phone,
            "PartyB": self.config.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url('reconcile', order=reference),
            "AccountReference": str(reference),
            "TransactionDesc": description or f"Payment for order {reference}",
        }
        return self._post('stk_push', payload)

    def query_status(self, checkout_request_id):
        ts = timestamp()
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": stk_password(self.config.shortcode, self.config.passkey, ts),
            "Timestamp": ts,
            "CheckoutRequestID": checkout_request_id,
        }
        return self._post('stk_query', payload)

    def register_c2b_urls(self, validation_url=None, confirmation_url=None):
        if not self.config.enable_c2b:
            raise FeatureDisabled("C2B payments are disabled")
        payload = {
            "ShortCode": self.config.shortcode,
            "ResponseType": "Completed",
            "ConfirmationURL": confirmation_url or self.callback_url('confirm'),
            "ValidationURL": validation_url or self.callback_url('validate'),
        }
        return self._post('c2b_register', payload)

    def reverse_transaction(self, transaction_id, amount, remarks=''):
        payload = {
            "Initiator": self.config.initiator,
            "SecurityCredential": self.security_credential(),
            "CommandID": "TransactionReversal",
            "TransactionID": transaction_id,
            "Amount": charge_amount(amount),
            "ReceiverParty": self.config.shortcode,
            "RecieverIdentifierType": self.config.identifier_type,
            "ResultURL": self.callback_url('reversal_result'),
            "QueueTimeOutURL": self.callback_url('reversal_timeout'),
            "Remarks": remarks or "Transaction reversal",
            "Occasion": "",
        }
        return self._post('reversal', payload)

    # Signing

    def security_credential(self):
        password = self.config.initiator_password.encode('utf-8')
        path = self.config.certificate_path
        try:
            certificate_data = path.read_bytes()
        except OSError:
            if not self.config.allow_plain_credential:
                raise SecurityCredentialError(
                    "M-Pesa certificate not found", details={'path': str(path)}
                ) from None
            logger.warning("Certificate file not found at %s, sending unencrypted credential", path)
            return base64.b64encode(password).decode('utf-8')

        public_key = _load_certificate(certificate_data).public_key()
        encrypted = public_key.encrypt(password, padding.PKCS1v15())
        return base64.b64encode(encrypted).decode('utf-8')

    def validate_callback(self, payload, signature):
        secret = self.config.signature_secret
        if not secret or not signature:
            return False
        expected = hmac.new(
            secret.encode('utf-8'),
            canonical_json(payload).encode('utf-8'),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected.encode('utf-8'), str(signature).encode('utf-8'))


def _load_certificate(data):
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        try:
            return x509.load_der_x509_certificate(data)
        except ValueError as exc:
            raise SecurityCredentialError("M-Pesa certificate could not be parsed") from exc
