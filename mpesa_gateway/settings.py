import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_flag(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "django-insecure-mpesa-gateway-dev-key")
DEBUG = env_flag("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [h for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Local Apps
    "payments.apps.PaymentsConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "mpesa_gateway.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "mpesa_gateway.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("DATABASE_PATH", BASE_DIR / "db.sqlite3"),
    }
}

# Access tokens and exchange rates are cached here; use a shared backend
# (Redis, Memcached) when running more than one worker process.
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "mpesa-gateway-cache",
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "Africa/Nairobi"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "payments": {
            "handlers": ["console"],
            "level": os.environ.get("MPESA_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}

# M-Pesa (Daraja)
MPESA_ENV = os.environ.get("MPESA_ENV", "sandbox")
MPESA_SHORTCODE = os.environ.get("MPESA_SHORTCODE", "174379")
MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
MPESA_INITIATOR = os.environ.get("MPESA_INITIATOR", "")
MPESA_INITIATOR_PASSWORD = os.environ.get("MPESA_INITIATOR_PASSWORD", "")
MPESA_SIGNATURE_SECRET = os.environ.get("MPESA_SIGNATURE_SECRET", "")
MPESA_REQUIRE_SIGNATURE = env_flag("MPESA_REQUIRE_SIGNATURE")
MPESA_BUSINESS_TYPE = os.environ.get("MPESA_BUSINESS_TYPE", "paybill")
MPESA_COMPLETION_STATUS = os.environ.get("MPESA_COMPLETION_STATUS", "completed")
MPESA_ENABLE_C2B = env_flag("MPESA_ENABLE_C2B")
MPESA_ENABLE_REVERSAL = env_flag("MPESA_ENABLE_REVERSAL")
MPESA_AUTO_EXCHANGE_RATES = env_flag("MPESA_AUTO_EXCHANGE_RATES", True)
MPESA_EXCHANGE_RATES = os.environ.get("MPESA_EXCHANGE_RATES", "")
MPESA_RATE_PROVIDERS = []
MPESA_EXCHANGE_RATE_OVERRIDE = None
MPESA_CALLBACK_BASE_URL = os.environ.get("MPESA_CALLBACK_BASE_URL", "http://localhost:8000")
MPESA_CERTIFICATE_DIR = os.environ.get("MPESA_CERTIFICATE_DIR", str(BASE_DIR / "certificates"))
MPESA_ALLOW_PLAIN_CREDENTIAL = env_flag("MPESA_ALLOW_PLAIN_CREDENTIAL")
MPESA_TIMEOUT = int(os.environ.get("MPESA_TIMEOUT", "30"))
MPESA_RATE_TIMEOUT = int(os.environ.get("MPESA_RATE_TIMEOUT", "10"))
