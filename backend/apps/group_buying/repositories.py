"""
Session store for group buying.
All reads and writes of sessions, participants and payment records go
through SessionRepository, which the engine receives by injection.
"""
import logging
import random
import string
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from django.core.paginator import Paginator
from django.db import DatabaseError, transaction
from django.db.models import Count, F, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from .filters import GroupBuyingSessionFilter
from .models import GroupBuyingSession, GroupParticipant, ParticipantPayment
from .types import (
    ParticipantDraft, ParticipantStats, SessionDraft, SessionFilters,
    SessionPatch, WarehouseCheckInfo
)

logger = logging.getLogger(__name__)


class SessionRepository:
    """Persistence for sessions, participants and their payment records."""

    SESSION_CODE_PREFIX = 'GB'
    SESSION_CODE_SUFFIX_LENGTH = 5
    MAX_CODE_ATTEMPTS = 10
    MAX_PAGE_SIZE = 100

    # Sessions

    def generate_session_code(self) -> str:
        """Return an unused code in the GB-YYYYMMDD-XXXXX format."""
        date_part = timezone.localdate().strftime('%Y%m%d')
        alphabet = string.ascii_uppercase + string.digits
        for _ in range(self.MAX_CODE_ATTEMPTS):
            suffix = ''.join(random.choices(alphabet, k=self.SESSION_CODE_SUFFIX_LENGTH))
            code = f"{self.SESSION_CODE_PREFIX}-{date_part}-{suffix}"
            if not self.session_code_exists(code):
                return code
        raise RuntimeError('Could not generate a unique session code')

    def create_session(self, draft: SessionDraft) -> GroupBuyingSession:
        return GroupBuyingSession.objects.create(
            session_code=draft.session_code or self.generate_session_code(),
            product_id=draft.product_id,
            factory_id=draft.factory_id,
            factory_owner_id=draft.factory_owner_id,
            target_moq=draft.target_moq,
            base_price=draft.base_price,
            price_tier_25=draft.price_tier_25,
            price_tier_50=draft.price_tier_50,
            price_tier_75=draft.price_tier_75,
            price_tier_100=draft.price_tier_100,
            current_tier=25,
            current_price=draft.base_price,
            start_time=draft.start_time or timezone.now(),
            end_time=draft.end_time,
            estimated_completion_date=draft.estimated_completion_date,
            grosir_unit_size=draft.grosir_unit_size,
            status=GroupBuyingSession.STATUS_FORMING
        )

    def find_by_id(self, session_id) -> Optional[GroupBuyingSession]:
        return GroupBuyingSession.objects.filter(id=session_id).first()

    def find_by_code(self, session_code: str) -> Optional[GroupBuyingSession]:
        return GroupBuyingSession.objects.filter(session_code=session_code).first()

    def session_code_exists(self, session_code: str) -> bool:
        return GroupBuyingSession.objects.filter(session_code=session_code).exists()

    def list_sessions(self, filters: SessionFilters) -> Dict[str, Any]:
        """
        Filtered, paginated listing.

        Returns:
            {'data': [sessions], 'pagination': {page, limit, total, total_pages}}
        """
        params = {
            'status': filters.status,
            'factory': filters.factory_id,
            'product': filters.product_id,
            'active_only': filters.active_only or None,
            'search': filters.search,
        }
        filterset = GroupBuyingSessionFilter(
            data={key: value for key, value in params.items() if value is not None},
            queryset=GroupBuyingSession.objects.annotate(
                participant_count=Count('participants')
            ).order_by('-created_at')
        )
        queryset = filterset.qs

        limit = max(1, min(filters.limit or 20, self.MAX_PAGE_SIZE))
        paginator = Paginator(queryset, limit)
        page = paginator.get_page(filters.page or 1)

        return {
            'data': list(page.object_list),
            'pagination': {
                'page': page.number,
                'limit': limit,
                'total': paginator.count,
                'total_pages': paginator.num_pages,
            }
        }

    def update_session(self, session_id, patch: SessionPatch) -> Optional[GroupBuyingSession]:
        fields = patch.as_update_fields()
        if 'base_price' in fields:
            fields['current_price'] = fields['base_price']
        if fields:
            GroupBuyingSession.objects.filter(id=session_id).update(
                updated_at=timezone.now(), **fields
            )
        return self.find_by_id(session_id)

    def delete_session(self, session_id) -> bool:
        deleted, _ = GroupBuyingSession.objects.filter(id=session_id).delete()
        return deleted > 0

    def try_transition(
        self,
        session_id,
        target_status: str,
        from_statuses: Optional[Iterable[str]] = None
    ) -> bool:
        """
        Conditionally move a session to target_status.

        The update only applies when the stored status differs from the
        target (and, if given, is one of from_statuses). Exactly one of
        any number of concurrent callers gets True.
        """
        now = timezone.now()
        updates = {'status': target_status, 'updated_at': now}
        if target_status == GroupBuyingSession.STATUS_MOQ_REACHED:
            updates['moq_reached_at'] = Coalesce(F('moq_reached_at'), Value(now))
        elif target_status == GroupBuyingSession.STATUS_SUCCESS:
            updates['production_completed_at'] = now

        queryset = GroupBuyingSession.objects.filter(id=session_id).exclude(
            status=target_status
        )
        if from_statuses is not None:
            queryset = queryset.filter(status__in=list(from_statuses))

        try:
            return queryset.update(**updates) > 0
        except DatabaseError as e:
            logger.error(
                f"Status transition to {target_status} failed for session {session_id}: {str(e)}"
            )
            return False

    def claim_for_settlement(self, session_id) -> bool:
        """
        Move an expired, unsettled session to moq_reached and stamp the claim
        in the same conditional update. Only one expiration run wins.
        """
        now = timezone.now()
        try:
            return GroupBuyingSession.objects.filter(
                id=session_id,
                status__in=GroupBuyingSession.UNPROCESSED_STATUSES,
                settlement_claimed_at__isnull=True
            ).update(
                status=GroupBuyingSession.STATUS_MOQ_REACHED,
                moq_reached_at=Coalesce(F('moq_reached_at'), Value(now)),
                settlement_claimed_at=now,
                updated_at=now
            ) > 0
        except DatabaseError as e:
            logger.error(f"Settlement claim failed for session {session_id}: {str(e)}")
            return False

    def release_settlement_claim(self, session_id) -> bool:
        """Put a claimed session back to forming so a later run retries it."""
        return GroupBuyingSession.objects.filter(
            id=session_id,
            status=GroupBuyingSession.STATUS_MOQ_REACHED,
            settlement_claimed_at__isnull=False
        ).update(
            status=GroupBuyingSession.STATUS_FORMING,
            settlement_claimed_at=None,
            updated_at=timezone.now()
        ) > 0

    def mark_production_started(self, session_id) -> bool:
        return GroupBuyingSession.objects.filter(
            id=session_id,
            production_started_at__isnull=True
        ).update(production_started_at=timezone.now(), updated_at=timezone.now()) > 0

    def update_tier(self, session_id, tier: int, price: Decimal) -> None:
        GroupBuyingSession.objects.filter(id=session_id).update(
            current_tier=tier,
            current_price=price,
            updated_at=timezone.now()
        )

    def update_warehouse_info(self, session_id, info: WarehouseCheckInfo) -> None:
        updates = {
            'warehouse_check_at': info.checked_at,
            'warehouse_has_stock': info.has_stock,
            'grosir_units_needed': info.grosir_units_needed,
            'updated_at': timezone.now(),
        }
        if info.factory_notified:
            updates['factory_whatsapp_sent'] = True
            updates['factory_notified_at'] = info.factory_notified_at or info.checked_at
        GroupBuyingSession.objects.filter(id=session_id).update(**updates)

    def set_end_time(self, session_id, end_time) -> bool:
        return GroupBuyingSession.objects.filter(id=session_id).update(
            end_time=end_time,
            updated_at=timezone.now()
        ) > 0

    def attach_bot(self, session_id, participant_id, quantity: int) -> None:
        GroupBuyingSession.objects.filter(id=session_id).update(
            bot_participant_id=participant_id,
            platform_bot_quantity=quantity,
            updated_at=timezone.now()
        )

    def find_expired_sessions(self) -> List[GroupBuyingSession]:
        return list(GroupBuyingSession.objects.filter(
            end_time__lte=timezone.now(),
            status__in=GroupBuyingSession.UNPROCESSED_STATUSES
        ).order_by('end_time'))

    def find_sessions_nearing_expiration(
        self,
        min_minutes: int = 8,
        max_minutes: int = 10
    ) -> List[GroupBuyingSession]:
        """Forming sessions without a bot whose end_time falls in the lookahead window."""
        now = timezone.now()
        return list(GroupBuyingSession.objects.filter(
            status=GroupBuyingSession.STATUS_FORMING,
            bot_participant_id__isnull=True,
            end_time__gte=now + timedelta(minutes=min_minutes),
            end_time__lte=now + timedelta(minutes=max_minutes)
        ).order_by('end_time'))

    # Participants

    def join_session(self, draft: ParticipantDraft) -> GroupParticipant:
        return GroupParticipant.objects.create(
            session_id=draft.session_id,
            user_id=draft.user_id,
            quantity=draft.quantity,
            variant_id=draft.variant_id,
            unit_price=draft.unit_price,
            total_price=draft.total_price,
            is_bot_participant=False
        )

    def leave_session(self, session_id, user_id) -> int:
        """Delete the user's real participations without a linked order."""
        deleted, _ = GroupParticipant.objects.filter(
            session_id=session_id,
            user_id=user_id,
            is_bot_participant=False,
            order_id__isnull=True
        ).delete()
        return deleted

    def remove_participant(self, participant_id) -> bool:
        deleted, _ = GroupParticipant.objects.filter(id=participant_id).delete()
        return deleted > 0

    def get_participant_count(self, session_id) -> int:
        return GroupParticipant.objects.filter(session_id=session_id).count()

    def get_participant_stats(self, session_id) -> ParticipantStats:
        """Aggregate over every participant, bots included."""
        totals = GroupParticipant.objects.filter(session_id=session_id).aggregate(
            participant_count=Count('id'),
            total_quantity=Sum('quantity'),
            total_revenue=Sum('total_price')
        )
        return ParticipantStats(
            participant_count=totals['participant_count'] or 0,
            total_quantity=totals['total_quantity'] or 0,
            total_revenue=totals['total_revenue'] or Decimal('0')
        )

    def get_session_participants(self, session_id) -> List[GroupParticipant]:
        return list(
            GroupParticipant.objects.filter(session_id=session_id).order_by('joined_at')
        )

    def get_real_participants(self, session_id) -> List[GroupParticipant]:
        return list(GroupParticipant.objects.filter(
            session_id=session_id,
            is_bot_participant=False
        ).order_by('joined_at'))

    def get_participants_awaiting_refund(self, session_id) -> List[GroupParticipant]:
        """Real participants whose tier refund has not been credited yet."""
        return list(GroupParticipant.objects.filter(
            session_id=session_id,
            is_bot_participant=False,
            tier_refund_issued_at__isnull=True
        ).order_by('joined_at'))

    def get_paid_real_participants(self, session_id) -> List[GroupParticipant]:
        """Real participants with a paid payment record and no order yet."""
        return list(GroupParticipant.objects.filter(
            session_id=session_id,
            is_bot_participant=False,
            order_id__isnull=True,
            payments__payment_status=ParticipantPayment.STATUS_PAID
        ).distinct().order_by('joined_at'))

    def create_bot_participant(
        self,
        session: GroupBuyingSession,
        bot_user_id,
        quantity: int,
        payment_reference_prefix: str
    ) -> GroupParticipant:
        """
        Create a bot participant with its zero-value paid payment record and
        attach it to the session.
        """
        with transaction.atomic():
            bot = GroupParticipant.objects.create(
                session_id=session.id,
                user_id=bot_user_id,
                quantity=quantity,
                variant_id=None,
                unit_price=session.base_price,
                total_price=session.base_price * quantity,
                is_bot_participant=True
            )
            ParticipantPayment.objects.create(
                session_id=session.id,
                participant=bot,
                user_id=bot_user_id,
                amount=Decimal('0'),
                payment_method=ParticipantPayment.METHOD_PLATFORM_BOT,
                payment_status=ParticipantPayment.STATUS_PAID,
                is_in_escrow=False,
                paid_at=timezone.now(),
                payment_reference=f"{payment_reference_prefix}-{session.id}-{bot.id}"
            )
            self.attach_bot(session.id, bot.id, quantity)
        return bot

    def remove_bot_participant(self, session_id, participant_id) -> bool:
        """Delete the bot and clear its reference on the session together."""
        with transaction.atomic():
            deleted, _ = GroupParticipant.objects.filter(
                id=participant_id,
                is_bot_participant=True
            ).delete()
            GroupBuyingSession.objects.filter(id=session_id).update(
                bot_participant_id=None,
                platform_bot_quantity=None,
                updated_at=timezone.now()
            )
        return deleted > 0

    def link_participant_to_order(self, participant_id, order_id) -> bool:
        return GroupParticipant.objects.filter(id=participant_id).update(
            order_id=order_id
        ) > 0

    def mark_tier_refund_issued(self, participant_id) -> bool:
        return GroupParticipant.objects.filter(
            id=participant_id,
            tier_refund_issued_at__isnull=True
        ).update(tier_refund_issued_at=timezone.now()) > 0

    # Payments

    def record_payment(
        self,
        participant: GroupParticipant,
        amount: Decimal,
        payment_id: str = '',
        payment_status: str = ParticipantPayment.STATUS_PENDING,
        invoice_id: str = '',
        payment_url: str = ''
    ) -> ParticipantPayment:
        return ParticipantPayment.objects.create(
            session_id=participant.session_id,
            participant=participant,
            user_id=participant.user_id,
            payment_id=payment_id or '',
            invoice_id=invoice_id or '',
            payment_url=payment_url or '',
            amount=amount,
            payment_method=ParticipantPayment.METHOD_ESCROW,
            payment_status=payment_status,
            is_in_escrow=True,
            paid_at=timezone.now() if payment_status == ParticipantPayment.STATUS_PAID else None
        )

    def update_payment_status(self, payment_id: str, payment_status: str) -> int:
        """Update every local record of an external payment; returns rows changed."""
        updates = {'payment_status': payment_status, 'updated_at': timezone.now()}
        if payment_status == ParticipantPayment.STATUS_PAID:
            updates['paid_at'] = timezone.now()
        elif payment_status in (ParticipantPayment.STATUS_REFUNDED, ParticipantPayment.STATUS_RELEASED):
            updates['is_in_escrow'] = False
        return ParticipantPayment.objects.filter(payment_id=payment_id).update(**updates)
