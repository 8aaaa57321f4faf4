from django.apps import AppConfig


class CoreConfig(AppConfig):
    """Shared service base classes and error types."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'
