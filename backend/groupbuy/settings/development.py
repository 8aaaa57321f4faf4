"""
Development settings - used for local development.
"""
from .base import *

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = True
DEBUG_PROPAGATE_EXCEPTIONS = True

ALLOWED_HOSTS = ['localhost', '127.0.0.1', '.localhost']

# Database
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ.get('DB_NAME', 'group_buying'),
        'USER': os.environ.get('DB_USER', 'group_buying_user'),
        'PASSWORD': os.environ.get('DB_PASSWORD', 'group_buying_pass'),
        'HOST': os.environ.get('DB_HOST', 'localhost'),
        'PORT': os.environ.get('DB_PORT', '5432'),
    }
}

# CORS settings for local development
CORS_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",  # Vite default
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

CORS_ALLOW_CREDENTIALS = True

# Log every request while developing unless explicitly disabled
REQUEST_LOGGING_ENABLED = os.getenv(
    'REQUEST_LOGGING_ENABLED', 'True').lower() == 'true'
