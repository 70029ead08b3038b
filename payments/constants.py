BASE_URLS = {
    'sandbox': 'https://sandbox.safaricom.co.ke',
    'live': 'https://api.safaricom.co.ke',
}

ENDPOINTS = {
    'oauth': '/oauth/v1/generate?grant_type=client_credentials',
    'stk_push': '/mpesa/stkpush/v1/processrequest',
    'stk_query': '/mpesa/stkpushquery/v1/query',
    'c2b_register': '/mpesa/c2b/v1/registerurl',
    'reversal': '/mpesa/reversal/v1/request',
}

# Identifier types understood by the reversal API
TRANSACTION_TYPES = {
    'paybill': 4,
    'till': 2,
    'msisdn': 1,
}

RESULT_CODES = {
    0: 'Success',
    1: 'Insufficient Funds',
    2: 'Less Than Minimum Transaction Value',
    3: 'More Than Maximum Transaction Value',
    4: 'Would Exceed Daily Transfer Limit',
    5: 'Would Exceed Minimum Balance',
    6: 'Unresolved Primary Party',
    7: 'Unresolved Receiver Party',
    8: 'Would Exceed Maximum Balance',
    11: 'Debit Account Invalid',
    12: 'Credit Account Invalid',
    13: 'Unresolved Debit Account',
    14: 'Unresolved Credit Account',
    15: 'Duplicate Detected',
    17: 'Internal Failure',
    20: 'Unresolved Initiator',
    26: 'Traffic blocking condition in place',
}

# STK query result codes that settle a pending payment as failed
FAILED_QUERY_CODES = {'1', '1032', '1037', '2001'}

COUNTRY_CODE = '254'
SETTLEMENT_CURRENCY = 'KES'

TOKEN_CACHE_KEY = 'mpesa_access_token'
TOKEN_DEFAULT_EXPIRY = 3600
TOKEN_SAFETY_MARGIN = 300

RATE_CACHE_KEY = 'mpesa_rate_{currency}_kes'
RATE_CACHE_TTL = 6 * 60 * 60
RATE_API_URL = 'https://api.exchangerate-api.com/v4/latest/{currency}'

# Order meta key listing C2B transactions already applied as part payments
PARTIAL_TRANSACTIONS_KEY = 'mpesa_partial_transactions'

SENSITIVE_KEYS = frozenset({
    'Password',
    'password',
    'SecurityCredential',
    'appkey',
    'appsecret',
    'consumer_key',
    'consumer_secret',
})


def describe_result_code(code):
    return RESULT_CODES.get(code, 'Unknown Error')
