"""
Django app configuration for group buying.
"""
from django.apps import AppConfig


class GroupBuyingConfig(AppConfig):
    """Configuration for the group buying app."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.group_buying'
    verbose_name = 'Group Buying'
