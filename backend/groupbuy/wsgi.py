"""
WSGI config for the group buying service.
"""
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'groupbuy.settings.production')

application = get_wsgi_application()
