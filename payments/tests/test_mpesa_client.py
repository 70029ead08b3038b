import base64
import datetime
import hashlib
import hmac
import tempfile
import threading
import time
from pathlib import Path
from unittest import mock

import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from django.core.cache import cache
from django.test import SimpleTestCase

from payments.constants import TOKEN_CACHE_KEY
from payments.exceptions import (
    AuthFailure,
    FeatureDisabled,
    MalformedResponse,
    SecurityCredentialError,
    TransportFailure,
)
from payments.services.mpesa import MpesaDarajaClient
from payments.utils import canonical_json

from .factories import http_response, mpesa_settings, token_response

WEBHOOK_URL = 'https://shop.example.com/payments/mpesa/webhook/'


def write_certificate(directory, env='sandbox'):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'apisandbox.safaricom.et')])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    path = Path(directory) / env
    path.mkdir(parents=True, exist_ok=True)
    (path / 'cert.cer').write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    return key


class ClientTestCase(SimpleTestCase):
    def setUp(self):
        cache.clear()
        self.client_ = MpesaDarajaClient(mpesa_settings(), webhook_url=WEBHOOK_URL, cache=cache)

    def tearDown(self):
        cache.clear()


class AccessTokenTests(ClientTestCase):
    @mock.patch('payments.services.mpesa.requests.get')
    def test_token_fetched_once_then_served_from_cache(self, mock_get):
        mock_get.return_value = token_response('tok-1')

        first = self.client_.get_access_token()
        second = self.client_.get_access_token()

        self.assertEqual(first, 'tok-1')
        self.assertEqual(second, 'tok-1')
        self.assertEqual(mock_get.call_count, 1)
        _, kwargs = mock_get.call_args
        self.assertEqual(kwargs['timeout'], 30)
        self.assertIsInstance(kwargs['auth'], requests.auth.HTTPBasicAuth)
        self.assertEqual(kwargs['auth'].username, 'test_consumer_key')

    @mock.patch('payments.services.mpesa.requests.get')
    def test_concurrent_misses_fetch_token_once(self, mock_get):
        fetching = threading.Event()
        release = threading.Event()

        def slow_token(*args, **kwargs):
            fetching.set()
            release.wait(5)
            return token_response('tok-1')

        mock_get.side_effect = slow_token
        tokens = []
        workers = [threading.Thread(target=lambda: tokens.append(self.client_.get_access_token())) for _ in range(2)]

        workers[0].start()
        self.assertTrue(fetching.wait(5))
        workers[1].start()
        # Let the second caller reach the lock before the first one finishes
        time.sleep(0.05)
        release.set()
        for worker in workers:
            worker.join(5)

        self.assertEqual(tokens, ['tok-1', 'tok-1'])
        self.assertEqual(mock_get.call_count, 1)

    @mock.patch('payments.services.mpesa.requests.get')
    def test_token_refetched_after_ttl_expiry(self, mock_get):
        mock_get.side_effect = [token_response('tok-1'), token_response('tok-2')]
        start = 1_700_000_000.0

        with mock.patch('time.time', return_value=start):
            self.assertEqual(self.client_.get_access_token(), 'tok-1')
        # 3599s expiry minus the 300s safety margin
        with mock.patch('time.time', return_value=start + 3298):
            self.assertEqual(self.client_.get_access_token(), 'tok-1')
        self.assertEqual(mock_get.call_count, 1)

        with mock.patch('time.time', return_value=start + 3300):
            self.assertEqual(self.client_.get_access_token(), 'tok-2')
        self.assertEqual(mock_get.call_count, 2)

    @mock.patch('payments.services.mpesa.requests.get')
    def test_token_ttl_leaves_safety_margin(self, mock_get):
        fake_cache = mock.Mock()
        fake_cache.get.return_value = None
        client = MpesaDarajaClient(mpesa_settings(), cache=fake_cache)

        mock_get.return_value = http_response({'access_token': 'tok'})
        client.get_access_token()
        fake_cache.set.assert_called_once_with(TOKEN_CACHE_KEY, 'tok', 3300)

    @mock.patch('payments.services.mpesa.requests.get')
    def test_missing_access_token_is_auth_failure_and_not_cached(self, mock_get):
        mock_get.return_value = http_response({'errorMessage': 'Invalid credentials'})
        with self.assertRaises(AuthFailure):
            self.client_.get_access_token()
        self.assertIsNone(cache.get(TOKEN_CACHE_KEY))

    @mock.patch('payments.services.mpesa.requests.get')
    def test_http_error_is_auth_failure(self, mock_get):
        mock_get.return_value = http_response({}, status_code=401)
        with self.assertRaises(AuthFailure) as ctx:
            self.client_.get_access_token()
        self.assertEqual(ctx.exception.status_code, 401)

    @mock.patch('payments.services.mpesa.requests.get')
    def test_network_error_is_auth_failure(self, mock_get):
        mock_get.side_effect = requests.ConnectionError('boom')
        with self.assertRaises(AuthFailure):
            self.client_.get_access_token()
        self.assertIsNone(cache.get(TOKEN_CACHE_KEY))


@mock.patch('payments.services.mpesa.requests.get', return_value=token_response())
@mock.patch('payments.services.mpesa.requests.post')
class StkPushTests(ClientTestCase):
    def test_payload_is_signed_and_normalised(self, mock_post, mock_get):
        mock_post.return_value = http_response({
            'MerchantRequestID': '29115-34620561-1',
            'CheckoutRequestID': 'ws_CO_191220191020363925',
            'ResponseCode': '0',
        })

        response = self.client_.initiate_payment('0712345678', '100.20', '42', 'Order #42')

        self.assertFalse(response.is_rejected)
        self.assertEqual(response.merchant_request_id, '29115-34620561-1')
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], 'https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest')
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer daraja_tok_abc')
        self.assertEqual(kwargs['timeout'], 30)
        payload = kwargs['json']
        self.assertEqual(payload['Amount'], 101)
        self.assertEqual(payload['PartyA'], '254712345678')
        self.assertEqual(payload['PhoneNumber'], '254712345678')
        self.assertEqual(payload['TransactionType'], 'CustomerPayBillOnline')
        self.assertEqual(payload['AccountReference'], '42')
        self.assertEqual(payload['CallBackURL'], WEBHOOK_URL + '?action=reconcile&order=42')
        self.assertEqual(len(payload['Timestamp']), 14)
        decoded = base64.b64decode(payload['Password']).decode()
        self.assertEqual(decoded, '174379' + 'test_passkey' + payload['Timestamp'])

    def test_till_uses_buy_goods(self, mock_post, mock_get):
        client = MpesaDarajaClient(mpesa_settings(business_type='till'), webhook_url=WEBHOOK_URL, cache=cache)
        mock_post.return_value = http_response({'MerchantRequestID': 'm-1'})
        client.initiate_payment('254712345678', 10, '7')
        self.assertEqual(mock_post.call_args.kwargs['json']['TransactionType'], 'CustomerBuyGoodsOnline')

    def test_business_rejection_returned_as_data(self, mock_post, mock_get):
        mock_post.return_value = http_response(
            {'requestId': '1', 'errorCode': '400.002.02', 'errorMessage': 'Bad Request - Invalid Amount'},
            status_code=400,
        )
        response = self.client_.initiate_payment('0712345678', 0, '42')
        self.assertTrue(response.is_rejected)
        self.assertEqual(response.error_code, '400.002.02')
        self.assertEqual(response.error_message, 'Bad Request - Invalid Amount')
        self.assertEqual(response.status_code, 400)

    def test_transport_error_raised(self, mock_post, mock_get):
        mock_post.side_effect = requests.Timeout('timed out')
        with self.assertRaises(TransportFailure):
            self.client_.initiate_payment('0712345678', 10, '42')
        self.assertEqual(mock_post.call_count, 1)

    def test_non_json_body_raised(self, mock_post, mock_get):
        bad = http_response({}, status_code=502)
        bad.json.side_effect = ValueError('not json')
        mock_post.return_value = bad
        with self.assertRaises(MalformedResponse) as ctx:
            self.client_.initiate_payment('0712345678', 10, '42')
        self.assertEqual(ctx.exception.status_code, 502)

    def test_credentials_redacted_in_logs(self, mock_post, mock_get):
        mock_post.return_value = http_response({'MerchantRequestID': 'm-1'})
        with self.assertLogs('payments.services.mpesa', level='INFO') as logs:
            self.client_.initiate_payment('0712345678', 10, '42')
        sent_password = mock_post.call_args.kwargs['json']['Password']
        output = '\n'.join(logs.output)
        self.assertNotIn(sent_password, output)
        self.assertIn('***REDACTED***', output)

    def test_query_status_payload(self, mock_post, mock_get):
        mock_post.return_value = http_response({'ResultCode': '1032', 'ResultDesc': 'Request cancelled by user'})
        response = self.client_.query_status('ws_CO_1')
        payload = mock_post.call_args.kwargs['json']
        self.assertEqual(mock_post.call_args.args[0], 'https://sandbox.safaricom.co.ke/mpesa/stkpushquery/v1/query')
        self.assertEqual(payload['CheckoutRequestID'], 'ws_CO_1')
        self.assertIn('Password', payload)
        self.assertEqual(response.result_code, '1032')

    def test_register_c2b_urls(self, mock_post, mock_get):
        client = MpesaDarajaClient(mpesa_settings(enable_c2b=True), webhook_url=WEBHOOK_URL, cache=cache)
        mock_post.return_value = http_response({'ResponseDescription': 'success'})
        client.register_c2b_urls()
        payload = mock_post.call_args.kwargs['json']
        self.assertEqual(payload['ResponseType'], 'Completed')
        self.assertEqual(payload['ConfirmationURL'], WEBHOOK_URL + '?action=confirm')
        self.assertEqual(payload['ValidationURL'], WEBHOOK_URL + '?action=validate')

    def test_register_c2b_urls_requires_toggle(self, mock_post, mock_get):
        with self.assertRaises(FeatureDisabled):
            self.client_.register_c2b_urls()
        mock_post.assert_not_called()


@mock.patch('payments.services.mpesa.requests.get', return_value=token_response())
@mock.patch('payments.services.mpesa.requests.post')
class ReversalTests(ClientTestCase):
    def setUp(self):
        super().setUp()
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def test_credential_encrypted_with_certificate(self, mock_post, mock_get):
        key = write_certificate(self.tmp.name)
        client = MpesaDarajaClient(mpesa_settings(certificate_dir=self.tmp.name), webhook_url=WEBHOOK_URL, cache=cache)
        mock_post.return_value = http_response({'ResponseCode': '0'})

        client.reverse_transaction('NLJ7RT61SV', '1000.4', 'Customer refund')

        payload = mock_post.call_args.kwargs['json']
        self.assertEqual(payload['CommandID'], 'TransactionReversal')
        self.assertEqual(payload['TransactionID'], 'NLJ7RT61SV')
        self.assertEqual(payload['Amount'], 1001)
        self.assertEqual(payload['RecieverIdentifierType'], 4)
        self.assertEqual(payload['ResultURL'], WEBHOOK_URL + '?action=reversal_result')
        self.assertEqual(payload['QueueTimeOutURL'], WEBHOOK_URL + '?action=reversal_timeout')
        decrypted = key.decrypt(base64.b64decode(payload['SecurityCredential']), padding.PKCS1v15())
        self.assertEqual(decrypted, b'Safaricom999!')

    def test_missing_certificate_fails_closed(self, mock_post, mock_get):
        client = MpesaDarajaClient(mpesa_settings(certificate_dir=self.tmp.name), cache=cache)
        with self.assertRaises(SecurityCredentialError):
            client.reverse_transaction('NLJ7RT61SV', 100)
        mock_post.assert_not_called()

    def test_missing_certificate_plain_fallback_when_allowed(self, mock_post, mock_get):
        client = MpesaDarajaClient(
            mpesa_settings(certificate_dir=self.tmp.name, allow_plain_credential=True), cache=cache,
        )
        with self.assertLogs('payments.services.mpesa', level='WARNING'):
            credential = client.security_credential()
        self.assertEqual(base64.b64decode(credential), b'Safaricom999!')


class ValidateCallbackTests(SimpleTestCase):
    payload = {'Body': {'stkCallback': {'MerchantRequestID': 'm-1', 'ResultCode': 0}}}

    def sign(self, payload, secret='s3cret'):
        return hmac.new(secret.encode(), canonical_json(payload).encode(), hashlib.sha256).hexdigest()

    def test_no_secret_configured_rejects(self):
        client = MpesaDarajaClient(mpesa_settings(signature_secret=''), cache=cache)
        self.assertFalse(client.validate_callback(self.payload, self.sign(self.payload)))

    def test_mismatched_signature_rejects(self):
        client = MpesaDarajaClient(mpesa_settings(), cache=cache)
        tampered = {'Body': {'stkCallback': {'MerchantRequestID': 'm-2', 'ResultCode': 0}}}
        self.assertFalse(client.validate_callback(tampered, self.sign(self.payload)))
        self.assertFalse(client.validate_callback(self.payload, self.sign(self.payload, secret='other')))
        self.assertFalse(client.validate_callback(self.payload, ''))

    def test_exact_match_accepted(self):
        client = MpesaDarajaClient(mpesa_settings(), cache=cache)
        self.assertTrue(client.validate_callback(self.payload, self.sign(self.payload)))
