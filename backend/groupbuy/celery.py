# groupbuy/celery.py
import os
from celery import Celery

# Set default Django settings module
os.environ.setdefault('DJANGO_SETTINGS_MODULE',
                      'groupbuy.settings.development')

# Create Celery application
app = Celery('groupbuy')

# Load configuration from Django settings with CELERY namespace.
# The beat schedule lives in settings as CELERY_BEAT_SCHEDULE.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Broker connection settings
app.conf.broker_connection_retry = True
app.conf.broker_connection_retry_on_startup = True

# Task configuration
app.conf.task_serializer = 'json'
app.conf.result_serializer = 'json'
app.conf.accept_content = ['json']
app.conf.enable_utc = True

# Task result backend settings
app.conf.result_expires = 3600  # Results expire after 1 hour

# Task execution settings
app.conf.task_track_started = True
app.conf.task_time_limit = 10 * 60  # 10 minutes hard limit
app.conf.task_soft_time_limit = 8 * 60  # 8 minutes soft limit

# Automatically discover tasks from installed apps
app.autodiscover_tasks()
