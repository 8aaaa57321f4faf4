# apps/group_buying/serializers.py

from rest_framework import serializers

from .models import GroupBuyingSession, GroupParticipant, ParticipantPayment
from .types import SessionDraft, SessionPatch

PRICE_FIELD = {'max_digits': 12, 'decimal_places': 2}


class GroupBuyingSessionListSerializer(serializers.ModelSerializer):
    """Lightweight for session listings"""
    participant_count = serializers.IntegerField(read_only=True, default=0)

    class Meta:
        model = GroupBuyingSession
        fields = [
            'id', 'session_code', 'product_id', 'factory_id', 'target_moq',
            'base_price', 'current_tier', 'current_price', 'start_time',
            'end_time', 'status', 'participant_count'
        ]


class GroupBuyingSessionDetailSerializer(serializers.ModelSerializer):
    """Full session details including tiers, bot and warehouse state"""
    tier_prices = serializers.SerializerMethodField()
    is_expired = serializers.BooleanField(read_only=True)

    class Meta:
        model = GroupBuyingSession
        fields = [
            'id', 'session_code', 'product_id', 'factory_id', 'factory_owner_id',
            'target_moq', 'base_price', 'price_tier_25', 'price_tier_50',
            'price_tier_75', 'price_tier_100', 'tier_prices', 'current_tier',
            'current_price', 'start_time', 'end_time', 'estimated_completion_date',
            'status', 'is_expired', 'moq_reached_at', 'production_started_at',
            'production_completed_at', 'bot_participant_id', 'platform_bot_quantity',
            'grosir_unit_size', 'warehouse_check_at', 'warehouse_has_stock',
            'grosir_units_needed', 'factory_whatsapp_sent', 'factory_notified_at',
            'created_at', 'updated_at'
        ]

    def get_tier_prices(self, obj):
        return {str(tier): str(price) for tier, price in obj.tier_prices.items()}


class SessionCreateSerializer(serializers.Serializer):
    """Input for opening a session; field rules are enforced by the service."""
    product_id = serializers.UUIDField()
    factory_id = serializers.UUIDField()
    factory_owner_id = serializers.UUIDField(required=False, allow_null=True)
    session_code = serializers.CharField(max_length=50, required=False, allow_blank=True)
    target_moq = serializers.IntegerField()
    base_price = serializers.DecimalField(**PRICE_FIELD)
    price_tier_25 = serializers.DecimalField(**PRICE_FIELD)
    price_tier_50 = serializers.DecimalField(**PRICE_FIELD)
    price_tier_75 = serializers.DecimalField(**PRICE_FIELD)
    price_tier_100 = serializers.DecimalField(**PRICE_FIELD)
    start_time = serializers.DateTimeField(required=False, allow_null=True)
    end_time = serializers.DateTimeField()
    estimated_completion_date = serializers.DateTimeField(required=False, allow_null=True)
    grosir_unit_size = serializers.IntegerField(required=False, min_value=1, default=12)

    def to_draft(self) -> SessionDraft:
        data = self.validated_data
        return SessionDraft(
            product_id=data['product_id'],
            factory_id=data['factory_id'],
            factory_owner_id=data.get('factory_owner_id'),
            session_code=data.get('session_code') or None,
            target_moq=data['target_moq'],
            base_price=data['base_price'],
            price_tier_25=data['price_tier_25'],
            price_tier_50=data['price_tier_50'],
            price_tier_75=data['price_tier_75'],
            price_tier_100=data['price_tier_100'],
            start_time=data.get('start_time'),
            end_time=data['end_time'],
            estimated_completion_date=data.get('estimated_completion_date'),
            grosir_unit_size=data.get('grosir_unit_size', 12)
        )


class SessionUpdateSerializer(serializers.Serializer):
    end_time = serializers.DateTimeField(required=False)
    base_price = serializers.DecimalField(required=False, **PRICE_FIELD)
    target_moq = serializers.IntegerField(required=False)
    estimated_completion_date = serializers.DateTimeField(required=False)

    def to_patch(self) -> SessionPatch:
        return SessionPatch(**self.validated_data)


class JoinSessionSerializer(serializers.Serializer):
    user_id = serializers.UUIDField()
    quantity = serializers.IntegerField()
    unit_price = serializers.DecimalField(**PRICE_FIELD)
    total_price = serializers.DecimalField(max_digits=14, decimal_places=2)
    variant_id = serializers.UUIDField(required=False, allow_null=True)


class UserActionSerializer(serializers.Serializer):
    """Body carrying only the acting user (leave, production steps)."""
    user_id = serializers.UUIDField()


class CancelSessionSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=500)


class LinkOrderSerializer(serializers.Serializer):
    order_id = serializers.UUIDField()


class PaymentStatusSerializer(serializers.Serializer):
    payment_status = serializers.ChoiceField(choices=ParticipantPayment.STATUS_CHOICES)


class GroupParticipantSerializer(serializers.ModelSerializer):
    class Meta:
        model = GroupParticipant
        fields = [
            'id', 'session', 'user_id', 'quantity', 'variant_id', 'unit_price',
            'total_price', 'is_bot_participant', 'joined_at', 'order_id',
            'tier_refund_issued_at'
        ]
        read_only_fields = fields


class ParticipantPaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = ParticipantPayment
        fields = [
            'id', 'payment_id', 'invoice_id', 'payment_url', 'amount',
            'payment_method', 'payment_status', 'is_in_escrow', 'paid_at'
        ]
        read_only_fields = fields


class JoinResultSerializer(serializers.Serializer):
    """Response for a successful join"""
    participant = GroupParticipantSerializer()
    payment = ParticipantPaymentSerializer()
    payment_url = serializers.CharField(allow_null=True)
    invoice_id = serializers.CharField(allow_null=True)
    provisional_tier = serializers.IntegerField()
    provisional_price = serializers.DecimalField(**PRICE_FIELD)
    moq_reached = serializers.BooleanField()
