from django.apps import AppConfig


class IntegrationsConfig(AppConfig):
    """HTTP clients for the payment, warehouse, order and wallet services."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.integrations'
    verbose_name = 'Integrations'
