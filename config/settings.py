"""
Django settings for the gasless membership service.

Values are read from the environment (or a local .env) with python-decouple.
"""

from pathlib import Path

from decouple import config, Csv

from .logging import LOGGING  # noqa: F401

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config('SECRET_KEY', default='django-insecure-membership-dev-key')
DEBUG = config('DEBUG', default=False, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'graphene_django',
    'membership',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': config('DB_ENGINE', default='django.db.backends.sqlite3'),
        'NAME': config('DB_NAME', default=str(BASE_DIR / 'db.sqlite3')),
        'USER': config('DB_USER', default=''),
        'PASSWORD': config('DB_PASSWORD', default=''),
        'HOST': config('DB_HOST', default=''),
        'PORT': config('DB_PORT', default=''),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# Cache backs the per-identity dispatch lock and the backfill lock
REDIS_URL = config('REDIS_URL', default='')
if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django_redis.cache.RedisCache',
            'LOCATION': REDIS_URL,
            'OPTIONS': {'CLIENT_CLASS': 'django_redis.client.DefaultClient'},
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        }
    }

GRAPHENE = {
    'SCHEMA': 'config.schema.schema',
}

# Celery
CELERY_BROKER_URL = config('CELERY_BROKER_URL', default=REDIS_URL or 'memory://')
CELERY_RESULT_BACKEND = config('CELERY_RESULT_BACKEND', default=REDIS_URL or 'cache+memory://')
CELERY_TASK_ALWAYS_EAGER = config('CELERY_TASK_ALWAYS_EAGER', default=not REDIS_URL, cast=bool)
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'

# Membership contract & treasury (amounts in micro-units, 1 unit = 1_000_000)
MEMBERSHIP_CONTRACT_ADDRESS = config('MEMBERSHIP_CONTRACT_ADDRESS', default='membership-contract')
MEMBERSHIP_ADMIN_ADDRESS = config('MEMBERSHIP_ADMIN_ADDRESS', default='membership-admin')
MEMBERSHIP_PAYOUT_MICRO = config('MEMBERSHIP_PAYOUT_MICRO', default=30_000, cast=int)
MEMBERSHIP_TREASURY_INITIAL_MICRO = config('MEMBERSHIP_TREASURY_INITIAL_MICRO', default=300_000, cast=int)
MEMBERSHIP_TREASURY_LOW_BALANCE_MICRO = config('MEMBERSHIP_TREASURY_LOW_BALANCE_MICRO', default=90_000, cast=int)
MEMBERSHIP_TX_FEE_MICRO = config('MEMBERSHIP_TX_FEE_MICRO', default=1_000, cast=int)
# Bearer token the relay network presents to the ledger ingress endpoints
MEMBERSHIP_LEDGER_API_KEY = config('MEMBERSHIP_LEDGER_API_KEY', default='')

# Gas budgets (kept apart from the payout treasury)
MEMBERSHIP_OPERATOR_ADDRESS = config('MEMBERSHIP_OPERATOR_ADDRESS', default='membership-operator')
MEMBERSHIP_OPERATOR_GAS_MICRO = config('MEMBERSHIP_OPERATOR_GAS_MICRO', default=1_000_000, cast=int)
MEMBERSHIP_RELAYER_ADDRESS = config('MEMBERSHIP_RELAYER_ADDRESS', default='membership-relayer')
MEMBERSHIP_RELAYER_GAS_MICRO = config('MEMBERSHIP_RELAYER_GAS_MICRO', default=1_000_000, cast=int)

# Relay network
MEMBERSHIP_RELAY_URL = config('MEMBERSHIP_RELAY_URL', default='')
MEMBERSHIP_RELAY_API_KEY = config('MEMBERSHIP_RELAY_API_KEY', default='')
RELAY_TIMEOUT_SECONDS = config('RELAY_TIMEOUT_SECONDS', default=30.0, cast=float)
RELAY_MAX_RETRIES = config('RELAY_MAX_RETRIES', default=3, cast=int)
RELAY_BACKOFF_BASE_SECONDS = config('RELAY_BACKOFF_BASE_SECONDS', default=1.0, cast=float)
RELAY_BACKOFF_CAP_SECONDS = config('RELAY_BACKOFF_CAP_SECONDS', default=30.0, cast=float)
RELAY_POLL_INTERVAL_SECONDS = config('RELAY_POLL_INTERVAL_SECONDS', default=1.0, cast=float)
MEMBERSHIP_DISPATCH_LOCK_WAIT_SECONDS = config('MEMBERSHIP_DISPATCH_LOCK_WAIT_SECONDS', default=30.0, cast=float)

# Registry
MEMBERSHIP_BACKFILL_WINDOW_BLOCKS = config('MEMBERSHIP_BACKFILL_WINDOW_BLOCKS', default=500, cast=int)
