# apps/group_buying/admin.py

from django.contrib import admin
from django.utils.html import format_html
from .models import GroupBuyingSession, GroupParticipant, ParticipantPayment


class GroupParticipantInline(admin.TabularInline):
    model = GroupParticipant
    extra = 0
    fields = ('user_id', 'quantity', 'variant_id', 'unit_price',
              'total_price', 'is_bot_participant', 'order_id',
              'tier_refund_issued_at', 'joined_at')
    readonly_fields = fields
    can_delete = False


@admin.register(GroupBuyingSession)
class GroupBuyingSessionAdmin(admin.ModelAdmin):
    list_display = (
        'session_code',
        'product_id',
        'status_display',
        'target_moq',
        'current_tier',
        'current_price',
        'end_time',
        'created_at'
    )
    list_filter = (
        'status',
        'current_tier',
        'warehouse_has_stock',
        'created_at'
    )
    search_fields = (
        'session_code',
        'product_id',
        'factory_id'
    )
    readonly_fields = (
        'current_tier',
        'current_price',
        'moq_reached_at',
        'production_started_at',
        'production_completed_at',
        'settlement_claimed_at',
        'bot_participant_id',
        'platform_bot_quantity',
        'warehouse_check_at',
        'warehouse_has_stock',
        'grosir_units_needed',
        'factory_whatsapp_sent',
        'factory_notified_at',
        'created_at',
        'updated_at'
    )
    inlines = [GroupParticipantInline]

    fieldsets = (
        ('Session', {
            'fields': (
                'session_code',
                'product_id',
                'factory_id',
                'factory_owner_id',
                'status'
            )
        }),
        ('Pricing', {
            'fields': (
                'target_moq',
                'base_price',
                'price_tier_25',
                'price_tier_50',
                'price_tier_75',
                'price_tier_100',
                'current_tier',
                'current_price'
            )
        }),
        ('Timing', {
            'fields': (
                'start_time',
                'end_time',
                'estimated_completion_date',
                'moq_reached_at',
                'settlement_claimed_at',
                'production_started_at',
                'production_completed_at'
            )
        }),
        ('Bot & Warehouse', {
            'fields': (
                'bot_participant_id',
                'platform_bot_quantity',
                'grosir_unit_size',
                'warehouse_check_at',
                'warehouse_has_stock',
                'grosir_units_needed',
                'factory_whatsapp_sent',
                'factory_notified_at'
            )
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at')
        })
    )

    def status_display(self, obj):
        colors = {
            GroupBuyingSession.STATUS_FORMING: 'blue',
            GroupBuyingSession.STATUS_ACTIVE: 'blue',
            GroupBuyingSession.STATUS_MOQ_REACHED: 'green',
            GroupBuyingSession.STATUS_ORDERS_CREATED: 'green',
            GroupBuyingSession.STATUS_PENDING_STOCK: 'orange',
            GroupBuyingSession.STATUS_FAILED: 'red',
            GroupBuyingSession.STATUS_CANCELLED: 'gray',
            GroupBuyingSession.STATUS_SUCCESS: 'gray'
        }
        color = colors.get(obj.status, 'black')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 3px;">{}</span>',
            color,
            obj.get_status_display()
        )
    status_display.short_description = 'Status'


@admin.register(GroupParticipant)
class GroupParticipantAdmin(admin.ModelAdmin):
    list_display = (
        'session',
        'user_id',
        'quantity',
        'total_price',
        'is_bot_participant',
        'order_id',
        'joined_at'
    )
    list_filter = (
        'is_bot_participant',
        'joined_at'
    )
    search_fields = (
        'session__session_code',
        'user_id',
        'order_id'
    )
    readonly_fields = ('joined_at', 'tier_refund_issued_at')


@admin.register(ParticipantPayment)
class ParticipantPaymentAdmin(admin.ModelAdmin):
    list_display = (
        'payment_reference',
        'payment_id',
        'session',
        'amount',
        'payment_method',
        'payment_status',
        'is_in_escrow',
        'paid_at'
    )
    list_filter = (
        'payment_status',
        'payment_method',
        'is_in_escrow'
    )
    search_fields = (
        'payment_id',
        'invoice_id',
        'payment_reference',
        'session__session_code'
    )
    readonly_fields = ('created_at', 'updated_at')
