import json
from unittest.mock import Mock

from payments.conf import MpesaSettings


def mpesa_settings(**overrides):
    values = {
        'env': 'sandbox',
        'shortcode': '174379',
        'consumer_key': 'test_consumer_key',
        'consumer_secret': 'test_consumer_secret',
        'passkey': 'test_passkey',
        'initiator': 'testapi',
        'initiator_password': 'Safaricom999!',
        'signature_secret': 's3cret',
        'auto_exchange_rates': False,
    }
    values.update(overrides)
    return MpesaSettings(**values)


def http_response(json_data, status_code=200):
    """Return a mock requests.Response whose .json() returns json_data."""
    resp = Mock()
    resp.ok = 200 <= status_code < 400
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.text = json.dumps(json_data)
    return resp


def token_response(token='daraja_tok_abc', expires_in='3599'):
    return http_response({'access_token': token, 'expires_in': expires_in})


def stk_success(merchant_request_id, receipt='NLJ7RT61SV', amount=1000, phone=254712345678):
    return {
        'Body': {
            'stkCallback': {
                'MerchantRequestID': merchant_request_id,
                'CheckoutRequestID': 'ws_CO_191220191020363925',
                'ResultCode': 0,
                'ResultDesc': 'The service request is processed successfully.',
                'CallbackMetadata': {
                    'Item': [
                        {'Name': 'Amount', 'Value': amount},
                        {'Name': 'MpesaReceiptNumber', 'Value': receipt},
                        {'Name': 'Balance'},
                        {'Name': 'TransactionDate', 'Value': 20191219102115},
                        {'Name': 'PhoneNumber', 'Value': phone},
                    ]
                },
            }
        }
    }


def stk_failure(merchant_request_id, code=1032, desc='Request cancelled by user'):
    callback = {
        'MerchantRequestID': merchant_request_id,
        'CheckoutRequestID': 'ws_CO_191220191020363925',
        'ResultCode': code,
    }
    if desc is not None:
        callback['ResultDesc'] = desc
    return {'Body': {'stkCallback': callback}}


def c2b_confirmation(reference, amount, trans_id='RKTQDM7W6S', phone='254708374149'):
    return {
        'TransactionType': 'Pay Bill',
        'TransID': trans_id,
        'TransTime': '20191122063845',
        'TransAmount': amount,
        'BusinessShortCode': '600638',
        'BillRefNumber': str(reference),
        'MSISDN': phone,
        'FirstName': 'John',
    }
