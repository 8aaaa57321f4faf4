"""
Base Django settings for the group buying service.

Contains all common settings used across all environments.
Environment-specific settings should override these in their respective files.
"""
import os
from pathlib import Path
from celery.schedules import crontab
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Project root directory (three levels up from this file)
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Security
SECRET_KEY = os.environ.get('SECRET_KEY')
if not SECRET_KEY:
    raise ValueError("SECRET_KEY environment variable is not set!")

# Core Django applications
DJANGO_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
]

# Third-party applications
THIRD_PARTY_APPS = [
    'rest_framework',
    'corsheaders',
    'django_filters',
    'drf_spectacular',
]

# Project applications
LOCAL_APPS = [
    'apps.core',
    'apps.integrations',
    'apps.group_buying',
]

INSTALLED_APPS = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

# Middleware configuration
MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'groupbuy.middleware.RequestLoggingMiddleware',
]

# URL configuration
ROOT_URLCONF = 'groupbuy.urls'

# Template configuration
TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

# WSGI/ASGI configuration
WSGI_APPLICATION = 'groupbuy.wsgi.application'
ASGI_APPLICATION = 'groupbuy.asgi.application'

# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.getenv('TIME_ZONE', 'UTC')
USE_I18N = True
USE_TZ = True

# Static files configuration
STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# Primary key field configuration
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Django REST Framework configuration
# Authentication is handled upstream (API gateway); this service trusts its callers.
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.AllowAny',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 20,
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
    ],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
        'rest_framework.renderers.BrowsableAPIRenderer',
    ],
    'DEFAULT_THROTTLE_CLASSES': [
        'rest_framework.throttling.AnonRateThrottle',
    ],
    'DEFAULT_THROTTLE_RATES': {
        'anon': '1000/hour',
    },
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
    'UNAUTHENTICATED_USER': None,
}

# drf-spectacular settings for API documentation
SPECTACULAR_SETTINGS = {
    'TITLE': 'Group Buying API',
    'DESCRIPTION': 'Tier-priced group buying sessions with bot fill and escrow settlement',
    'VERSION': '1.0.0',
    'SERVE_INCLUDE_SCHEMA': False,
    'COMPONENT_SPLIT_REQUEST': True,
    'SCHEMA_PATH_PREFIX': '/api/v1/',
}

# Peer services
PAYMENT_SERVICE_URL = os.getenv('PAYMENT_SERVICE_URL', 'http://localhost:3006')
WAREHOUSE_SERVICE_URL = os.getenv('WAREHOUSE_SERVICE_URL', 'http://localhost:3011')
ORDER_SERVICE_URL = os.getenv('ORDER_SERVICE_URL', 'http://localhost:3005')
WALLET_SERVICE_URL = os.getenv('WALLET_SERVICE_URL', 'http://localhost:3010')

# Seconds before an outbound call is abandoned
PEER_SERVICE_TIMEOUT = int(os.getenv('PEER_SERVICE_TIMEOUT', 10))

# Retry budget per peer service (exponential backoff between attempts)
PEER_SERVICE_RETRIES = {
    'payment': int(os.getenv('PAYMENT_SERVICE_RETRIES', 3)),
    'warehouse': int(os.getenv('WAREHOUSE_SERVICE_RETRIES', 2)),
    'order': int(os.getenv('ORDER_SERVICE_RETRIES', 3)),
    'wallet': int(os.getenv('WALLET_SERVICE_RETRIES', 2)),
}

# Platform bot user; bot fill is skipped when unset
BOT_USER_ID = os.getenv('BOT_USER_ID') or None

# Celery Configuration
CELERY_BROKER_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE

# Celery Beat schedule for session expiration
CELERY_BEAT_SCHEDULE = {
    # Every session passes through the 8-10 minute window at least once
    'process-sessions-nearing-expiration': {
        'task': 'process_sessions_nearing_expiration',
        'schedule': crontab(minute='*/2'),
        'options': {
            'expires': 110,  # Task expires if not picked up before the next run
        }
    },
    'process-expired-group-sessions': {
        'task': 'process_expired_group_sessions',
        'schedule': crontab(minute='*'),
        'options': {
            'expires': 55,
        }
    },
}

# Logging configuration - Base (Console only by default)
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {process:d} {thread:d} {message}',
            'style': '{',
        },
        'simple': {
            'format': '{levelname} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'level': 'INFO',
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': os.getenv('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'groupbuy': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'groupbuy.requests': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# Request logging settings (for custom middleware)
REQUEST_LOGGING_ENABLED = os.getenv(
    'REQUEST_LOGGING_ENABLED', 'False').lower() == 'true'
