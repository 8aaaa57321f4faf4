"""
Main API URL configuration for the group buying service.
Consolidates all app API endpoints.
"""
from django.urls import path, include
from rest_framework.routers import DefaultRouter

from apps.group_buying.views import (
    GroupBuyingSessionViewSet,
    GroupParticipantViewSet,
    ParticipantPaymentViewSet,
)

# Create main router
router = DefaultRouter()

router.register(r'group-buying/sessions', GroupBuyingSessionViewSet,
                basename='groupbuyingsession')
router.register(r'group-buying/participants', GroupParticipantViewSet,
                basename='groupparticipant')
router.register(r'group-buying/payments', ParticipantPaymentViewSet,
                basename='participantpayment')

# API URL patterns
urlpatterns = [
    path('', include(router.urls)),
]
