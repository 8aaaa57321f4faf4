"""
FilterSet for group buying session listings.
"""
import django_filters
from django.utils import timezone

from .models import GroupBuyingSession


class GroupBuyingSessionFilter(django_filters.FilterSet):
    """Filter sessions by status, factory, product, liveness and code search."""
    status = django_filters.ChoiceFilter(choices=GroupBuyingSession.STATUS_CHOICES)
    factory = django_filters.UUIDFilter(field_name='factory_id')
    product = django_filters.UUIDFilter(field_name='product_id')
    active_only = django_filters.BooleanFilter(method='filter_active_only')
    search = django_filters.CharFilter(method='filter_search')

    class Meta:
        model = GroupBuyingSession
        fields = ['status', 'factory', 'product', 'active_only', 'search']

    def filter_active_only(self, queryset, name, value):
        if not value:
            return queryset
        return queryset.filter(
            end_time__gt=timezone.now(),
            status__in=GroupBuyingSession.UNPROCESSED_STATUSES
        )

    def filter_search(self, queryset, name, value):
        value = (value or '').strip()
        if not value:
            return queryset
        return queryset.filter(session_code__icontains=value)
