# apps/group_buying/models.py

import uuid
from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class GroupBuyingSession(models.Model):
    """
    A time-boxed group buying session for one product from one factory.
    Buyers pay the base price up front; the final tier decides the refund.
    """
    STATUS_FORMING = 'forming'
    STATUS_ACTIVE = 'active'
    STATUS_MOQ_REACHED = 'moq_reached'
    STATUS_PENDING_STOCK = 'pending_stock'
    STATUS_STOCK_RECEIVED = 'stock_received'
    STATUS_SUCCESS = 'success'
    STATUS_FAILED = 'failed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_ORDERS_CREATED = 'orders_created'

    STATUS_CHOICES = [
        (STATUS_FORMING, 'Forming - accepting participants'),
        (STATUS_ACTIVE, 'Active - accepting participants'),
        (STATUS_MOQ_REACHED, 'MOQ reached - confirmed'),
        (STATUS_PENDING_STOCK, 'Waiting for warehouse stock'),
        (STATUS_STOCK_RECEIVED, 'Warehouse stock received'),
        (STATUS_SUCCESS, 'Production completed'),
        (STATUS_FAILED, 'Failed to reach MOQ'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_ORDERS_CREATED, 'Orders created'),
    ]

    JOINABLE_STATUSES = (STATUS_FORMING, STATUS_ACTIVE)
    UNPROCESSED_STATUSES = (STATUS_FORMING, STATUS_ACTIVE, STATUS_MOQ_REACHED)
    TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_FAILED, STATUS_CANCELLED)
    CONFIRMED_STATUSES = (STATUS_MOQ_REACHED, STATUS_ORDERS_CREATED, STATUS_SUCCESS)
    CANCELLABLE_STATUSES = (STATUS_FORMING, STATUS_ACTIVE, STATUS_PENDING_STOCK, STATUS_STOCK_RECEIVED)

    TIER_CHOICES = [
        (25, '25% tier'),
        (50, '50% tier'),
        (75, '75% tier'),
        (100, '100% tier'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    session_code = models.CharField(
        max_length=50,
        unique=True,
        help_text="Human readable code, e.g. GB-20250101-AB12C"
    )

    # External references (owned by product/factory services)
    product_id = models.UUIDField(db_index=True)
    factory_id = models.UUIDField(db_index=True)
    factory_owner_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="User allowed to start and complete production"
    )

    # MOQ and pricing
    target_moq = models.IntegerField(
        validators=[MinValueValidator(2)],
        help_text="Minimum order quantity for the session to succeed"
    )
    base_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Price every participant pays when joining"
    )
    price_tier_25 = models.DecimalField(max_digits=12, decimal_places=2)
    price_tier_50 = models.DecimalField(max_digits=12, decimal_places=2)
    price_tier_75 = models.DecimalField(max_digits=12, decimal_places=2)
    price_tier_100 = models.DecimalField(max_digits=12, decimal_places=2)
    current_tier = models.IntegerField(choices=TIER_CHOICES, default=25)
    current_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Price a new participant must pay"
    )

    # Timing
    start_time = models.DateTimeField(default=timezone.now)
    end_time = models.DateTimeField()
    estimated_completion_date = models.DateTimeField(null=True, blank=True)
    moq_reached_at = models.DateTimeField(null=True, blank=True)
    production_started_at = models.DateTimeField(null=True, blank=True)
    production_completed_at = models.DateTimeField(null=True, blank=True)
    settlement_claimed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set while one expiration run owns the settlement"
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_FORMING
    )

    # Synthetic demand
    bot_participant_id = models.UUIDField(null=True, blank=True)
    platform_bot_quantity = models.IntegerField(null=True, blank=True)

    # Warehouse check
    grosir_unit_size = models.IntegerField(
        default=12,
        validators=[MinValueValidator(1)],
        help_text="Bundle size the factory produces in"
    )
    warehouse_check_at = models.DateTimeField(null=True, blank=True)
    warehouse_has_stock = models.BooleanField(null=True, blank=True)
    grosir_units_needed = models.IntegerField(null=True, blank=True)
    factory_whatsapp_sent = models.BooleanField(default=False)
    factory_notified_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'group_buying_sessions'
        verbose_name = _('Group Buying Session')
        verbose_name_plural = _('Group Buying Sessions')
        indexes = [
            models.Index(fields=['status', 'end_time']),
            models.Index(fields=['product_id', 'status']),
            models.Index(fields=['created_at']),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.session_code} ({self.status})"

    @property
    def is_expired(self):
        """Check if the session end time has passed."""
        return self.end_time <= timezone.now()

    @property
    def tier_prices(self):
        """Tier threshold to price mapping."""
        return {
            25: self.price_tier_25,
            50: self.price_tier_50,
            75: self.price_tier_75,
            100: self.price_tier_100,
        }


class GroupParticipant(models.Model):
    """
    A buyer's (or the platform bot's) commitment to a session.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    session = models.ForeignKey(
        GroupBuyingSession,
        on_delete=models.CASCADE,
        related_name='participants'
    )
    user_id = models.UUIDField(db_index=True)
    quantity = models.IntegerField(validators=[MinValueValidator(1)])
    variant_id = models.UUIDField(null=True, blank=True)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    total_price = models.DecimalField(max_digits=14, decimal_places=2)
    is_bot_participant = models.BooleanField(default=False)
    joined_at = models.DateTimeField(default=timezone.now)
    order_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="Downstream order created for this participant"
    )
    tier_refund_issued_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the tier discount was credited to the buyer's wallet"
    )

    class Meta:
        db_table = 'group_participants'
        verbose_name = _('Group Participant')
        verbose_name_plural = _('Group Participants')
        indexes = [
            models.Index(fields=['session', 'is_bot_participant']),
            models.Index(fields=['session', 'user_id']),
        ]
        ordering = ['joined_at']

    def __str__(self):
        kind = 'bot' if self.is_bot_participant else 'buyer'
        return f"{self.session.session_code} - {kind} {self.user_id} x{self.quantity}"


class ParticipantPayment(models.Model):
    """
    Local record of a participant's payment as reported by the payment service.
    Bot participants get a zero-value 'paid' row for audit.
    """
    STATUS_PENDING = 'pending'
    STATUS_PAID = 'paid'
    STATUS_FAILED = 'failed'
    STATUS_REFUNDED = 'refunded'
    STATUS_RELEASED = 'released'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_PAID, 'Paid'),
        (STATUS_FAILED, 'Failed'),
        (STATUS_REFUNDED, 'Refunded'),
        (STATUS_RELEASED, 'Released to factory'),
    ]

    METHOD_ESCROW = 'escrow'
    METHOD_PLATFORM_BOT = 'platform_bot'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    session = models.ForeignKey(
        GroupBuyingSession,
        on_delete=models.CASCADE,
        related_name='payments'
    )
    participant = models.ForeignKey(
        GroupParticipant,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='payments'
    )
    user_id = models.UUIDField()
    payment_id = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text="Payment id in the payment service"
    )
    invoice_id = models.CharField(max_length=100, blank=True)
    payment_url = models.URLField(max_length=500, blank=True)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    payment_method = models.CharField(max_length=30, default=METHOD_ESCROW)
    payment_status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING
    )
    is_in_escrow = models.BooleanField(default=True)
    payment_reference = models.CharField(max_length=200, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'participant_payments'
        verbose_name = _('Participant Payment')
        verbose_name_plural = _('Participant Payments')
        indexes = [
            models.Index(fields=['session', 'payment_status']),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.payment_reference or self.payment_id} - {self.payment_status}"
