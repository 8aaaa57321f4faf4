"""
ViewSet implementations for group buying operations.
Thin HTTP layer over GroupBuyingService; every business decision lives
in the service and comes back as a ServiceResult.
"""
import logging

from rest_framework import serializers, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from drf_spectacular.utils import OpenApiParameter, extend_schema, extend_schema_view
from drf_spectacular.types import OpenApiTypes as Types

from apps.core.services.base import ErrorKind
from .models import GroupBuyingSession
from .serializers import (
    CancelSessionSerializer,
    GroupBuyingSessionDetailSerializer,
    GroupBuyingSessionListSerializer,
    GroupParticipantSerializer,
    JoinResultSerializer,
    JoinSessionSerializer,
    LinkOrderSerializer,
    PaymentStatusSerializer,
    SessionCreateSerializer,
    SessionUpdateSerializer,
    UserActionSerializer,
)
from .services.group_buying_service import GroupBuyingService
from .types import SessionFilters

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.FATAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_response(result):
    """Translate a failed ServiceResult into an HTTP response."""
    body = {
        'error': result.error,
        'error_code': result.error_code,
    }
    if result.details:
        body['details'] = result.details
    return Response(body, status=ERROR_STATUS.get(result.error_kind, status.HTTP_400_BAD_REQUEST))


class SessionListQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=GroupBuyingSession.STATUS_CHOICES, required=False)
    factory = serializers.UUIDField(required=False)
    product = serializers.UUIDField(required=False)
    active_only = serializers.BooleanField(required=False, default=False)
    search = serializers.CharField(required=False, allow_blank=True)
    page = serializers.IntegerField(required=False, min_value=1, default=1)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=100, default=20)

    def to_filters(self) -> SessionFilters:
        data = self.validated_data
        return SessionFilters(
            status=data.get('status'),
            factory_id=data.get('factory'),
            product_id=data.get('product'),
            active_only=data.get('active_only', False),
            search=data.get('search') or None,
            page=data.get('page', 1),
            limit=data.get('limit', 20)
        )


@extend_schema_view(
    list=extend_schema(
        summary="List group buying sessions",
        parameters=[
            OpenApiParameter('status', Types.STR, OpenApiParameter.QUERY),
            OpenApiParameter('factory', Types.UUID, OpenApiParameter.QUERY),
            OpenApiParameter('product', Types.UUID, OpenApiParameter.QUERY),
            OpenApiParameter('active_only', Types.BOOL, OpenApiParameter.QUERY),
            OpenApiParameter('search', Types.STR, OpenApiParameter.QUERY,
                             description='Case-insensitive match on session code'),
            OpenApiParameter('page', Types.INT, OpenApiParameter.QUERY),
            OpenApiParameter('limit', Types.INT, OpenApiParameter.QUERY),
        ],
        tags=['Group Buying']
    ),
    create=extend_schema(
        summary="Open a group buying session",
        request=SessionCreateSerializer,
        responses={201: GroupBuyingSessionDetailSerializer},
        tags=['Group Buying']
    ),
    retrieve=extend_schema(summary="Get session details", tags=['Group Buying']),
    partial_update=extend_schema(
        summary="Update a forming session",
        request=SessionUpdateSerializer,
        responses={200: GroupBuyingSessionDetailSerializer},
        tags=['Group Buying']
    ),
    destroy=extend_schema(summary="Delete a session without participants", tags=['Group Buying']),
)
class GroupBuyingSessionViewSet(viewsets.GenericViewSet):
    """
    ViewSet for group buying sessions.
    Covers the session lifecycle plus the scheduler's processing hooks.
    """
    queryset = GroupBuyingSession.objects.all()
    serializer_class = GroupBuyingSessionDetailSerializer
    lookup_value_regex = r'[0-9a-fA-F-]{36}'
    service_class = GroupBuyingService

    def get_service(self):
        return self.service_class()

    def list(self, request):
        query = SessionListQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        result = self.get_service().list_sessions(query.to_filters())
        return Response({
            'data': GroupBuyingSessionListSerializer(result.data['data'], many=True).data,
            'pagination': result.data['pagination']
        })

    def create(self, request):
        serializer = SessionCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.get_service().create_session(serializer.to_draft())
        if not result.success:
            return error_response(result)
        return Response(
            GroupBuyingSessionDetailSerializer(result.data).data,
            status=status.HTTP_201_CREATED
        )

    def retrieve(self, request, pk=None):
        result = self.get_service().get_session(pk)
        if not result.success:
            return error_response(result)
        return Response(GroupBuyingSessionDetailSerializer(result.data).data)

    def partial_update(self, request, pk=None):
        serializer = SessionUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.get_service().update_session(pk, serializer.to_patch())
        if not result.success:
            return error_response(result)
        return Response(GroupBuyingSessionDetailSerializer(result.data).data)

    def destroy(self, request, pk=None):
        result = self.get_service().delete_session(pk)
        if not result.success:
            return error_response(result)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @extend_schema(summary="Get a session by its code", tags=['Group Buying'])
    @action(detail=False, methods=['get'], url_path=r'by-code/(?P<code>[^/]+)')
    def by_code(self, request, code=None):
        result = self.get_service().get_session_by_code(code)
        if not result.success:
            return error_response(result)
        return Response(GroupBuyingSessionDetailSerializer(result.data).data)

    @extend_schema(
        summary="Join a session",
        description="""
        Commit to a session at its current price. The full amount is held in
        escrow; the tier discount is refunded to the wallet at settlement.

        **Rejected when:**
        - the session is not forming/active or has expired
        - the variant is out of stock
        - unit_price differs from the session's current price
        - total_price differs from quantity x unit_price
        """,
        request=JoinSessionSerializer,
        responses={201: JoinResultSerializer},
        tags=['Group Buying']
    )
    @action(detail=True, methods=['post'])
    def join(self, request, pk=None):
        serializer = JoinSessionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = self.get_service().join_session(
            session_id=pk,
            user_id=data['user_id'],
            quantity=data['quantity'],
            unit_price=data['unit_price'],
            total_price=data['total_price'],
            variant_id=data.get('variant_id')
        )
        if not result.success:
            return error_response(result)
        return Response(JoinResultSerializer(result.data).data, status=status.HTTP_201_CREATED)

    @extend_schema(summary="Leave a session", request=UserActionSerializer, tags=['Group Buying'])
    @action(detail=True, methods=['post'])
    def leave(self, request, pk=None):
        serializer = UserActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.get_service().leave_session(pk, serializer.validated_data['user_id'])
        if not result.success:
            return error_response(result)
        return Response(result.data)

    @extend_schema(summary="Cancel a session", request=CancelSessionSerializer, tags=['Group Buying'])
    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        serializer = CancelSessionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.get_service().cancel_session(pk, serializer.validated_data.get('reason'))
        if not result.success:
            return error_response(result)
        return Response(result.data)

    @extend_schema(
        summary="List session participants",
        responses={200: GroupParticipantSerializer(many=True)},
        tags=['Group Buying']
    )
    @action(detail=True, methods=['get'])
    def participants(self, request, pk=None):
        result = self.get_service().get_participants(pk)
        if not result.success:
            return error_response(result)
        return Response(GroupParticipantSerializer(result.data, many=True).data)

    @extend_schema(summary="Session progress and participation stats", tags=['Group Buying'])
    @action(detail=True, methods=['get'])
    def stats(self, request, pk=None):
        result = self.get_service().get_session_stats(pk)
        if not result.success:
            return error_response(result)
        return Response(result.data)

    @extend_schema(summary="Start production (factory owner)", request=UserActionSerializer,
                   tags=['Group Buying'])
    @action(detail=True, methods=['post'], url_path='start-production')
    def start_production(self, request, pk=None):
        serializer = UserActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.get_service().start_production(pk, serializer.validated_data['user_id'])
        if not result.success:
            return error_response(result)
        return Response(result.data)

    @extend_schema(summary="Complete production and release escrow (factory owner)",
                   request=UserActionSerializer, tags=['Group Buying'])
    @action(detail=True, methods=['post'], url_path='complete-production')
    def complete_production(self, request, pk=None):
        serializer = UserActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.get_service().complete_production(pk, serializer.validated_data['user_id'])
        if not result.success:
            return error_response(result)
        return Response(result.data)

    @extend_schema(summary="Expire a session now and settle it (ops)", request=None,
                   tags=['Group Buying Ops'])
    @action(detail=True, methods=['post'], url_path='manual-expire')
    def manual_expire(self, request, pk=None):
        result = self.get_service().manually_expire_and_process(pk)
        if not result.success:
            return error_response(result)
        return Response(result.data)

    @extend_schema(summary="Run the near-expiration bot pre-fill (scheduler)", request=None,
                   tags=['Group Buying Ops'])
    @action(detail=False, methods=['post'], url_path='process-near-expiring')
    def process_near_expiring(self, request):
        result = self.get_service().process_sessions_nearing_expiration()
        return Response({'results': result.data})

    @extend_schema(summary="Settle expired sessions (scheduler)", request=None,
                   tags=['Group Buying Ops'])
    @action(detail=False, methods=['post'], url_path='process-expired')
    def process_expired(self, request):
        result = self.get_service().process_expired_sessions()
        return Response({'results': result.data})


class GroupParticipantViewSet(viewsets.GenericViewSet):
    """Service-to-service callbacks on participants."""
    serializer_class = LinkOrderSerializer
    lookup_value_regex = r'[0-9a-fA-F-]{36}'
    service_class = GroupBuyingService

    @extend_schema(summary="Link a participant to its order (order service callback)",
                   request=LinkOrderSerializer, tags=['Group Buying Callbacks'])
    @action(detail=True, methods=['post'], url_path='link-order')
    def link_order(self, request, pk=None):
        serializer = LinkOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.service_class().link_participant_to_order(
            pk, serializer.validated_data['order_id']
        )
        if not result.success:
            return error_response(result)
        return Response({
            'participant_id': str(pk),
            'order_id': str(serializer.validated_data['order_id'])
        })


class ParticipantPaymentViewSet(viewsets.GenericViewSet):
    """Service-to-service callbacks on payments, keyed by the payment service's id."""
    serializer_class = PaymentStatusSerializer
    lookup_field = 'payment_id'
    lookup_value_regex = r'[^/]+'
    service_class = GroupBuyingService

    @extend_schema(summary="Record a payment status change (payment service callback)",
                   request=PaymentStatusSerializer, tags=['Group Buying Callbacks'])
    @action(detail=True, methods=['post'], url_path='status')
    def update_status(self, request, payment_id=None):
        serializer = PaymentStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.service_class().record_payment_status(
            payment_id, serializer.validated_data['payment_status']
        )
        if not result.success:
            return error_response(result)
        return Response(result.data)
