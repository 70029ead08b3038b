import base64
import datetime as dt
import json
import re

from .constants import COUNTRY_CODE, SENSITIVE_KEYS

PHONE_PATTERN = re.compile(r'^(254|0)?[17]\d{8}$')
REDACTED = '***REDACTED***'


def format_phone_number(phone):
    """Normalise a phone number to the 2547XXXXXXXX form M-Pesa expects."""
    digits = re.sub(r'\D', '', str(phone))
    if digits.startswith(COUNTRY_CODE):
        return digits
    if digits.startswith('0'):
        return COUNTRY_CODE + digits[1:]
    return COUNTRY_CODE + digits


def validate_phone(phone):
    cleaned = str(phone).replace(' ', '').lstrip('+')
    return bool(PHONE_PATTERN.match(cleaned))


def mask_phone(phone):
    phone = str(phone)
    if len(phone) < 7:
        return '*' * len(phone)
    return phone[:3] + '*' * (len(phone) - 6) + phone[-3:]


def redact(data):
    """Return a copy of ``data`` with credential-bearing values blanked."""
    if isinstance(data, dict):
        return {
            key: REDACTED if key in SENSITIVE_KEYS else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact(item) for item in data]
    return data


def timestamp():
    return dt.datetime.now(dt.timezone.utc).strftime('%Y%m%d%H%M%S')


def stk_password(shortcode, passkey, ts):
    raw = f"{shortcode}{passkey}{ts}".encode('utf-8')
    return base64.b64encode(raw).decode('utf-8')


def canonical_json(payload):
    return json.dumps(payload, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
