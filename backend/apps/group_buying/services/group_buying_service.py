"""
Group buying service for managing time-boxed, tier-priced group purchases.
This service drives the session lifecycle: creation, joining, the
near-expiration bot pre-fill and the expiration settlement saga.
"""
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from django.db import DatabaseError
from django.utils import timezone

from apps.core.services.base import (
    BaseService, ErrorKind, ExternalServiceError, ServiceResult
)
from apps.group_buying.models import (
    GroupBuyingSession, GroupParticipant, ParticipantPayment
)
from apps.group_buying.repositories import SessionRepository
from apps.group_buying.services import tiering
from apps.group_buying.services.bot_fill import (
    PREEMPTIVE_REFERENCE_PREFIX, SETTLEMENT_REFERENCE_PREFIX, BotFillPolicy
)
from apps.group_buying.services.warehouse_orchestrator import WarehouseOrchestrator
from apps.group_buying.types import (
    ParticipantDraft, SessionDraft, SessionFilters, SessionPatch
)


class GroupBuyingService(BaseService):
    """
    Service for managing group buying sessions.
    Holds no state of its own: every decision is made from a fresh read
    of the session repository.
    """

    # Business rule constants
    MIN_TARGET_MOQ = 2
    NEAR_EXPIRY_MIN_MINUTES = 8
    NEAR_EXPIRY_MAX_MINUTES = 10
    MANUAL_EXPIRE_OFFSET_SECONDS = 1
    FAILED_SESSION_REFUND_REASON = 'Group buying session failed to reach MOQ'
    NO_PAID_PARTICIPANTS_REFUND_REASON = 'Group buying session has no paid participants'

    # Statuses from which production can start
    PRODUCTION_READY_STATUSES = (
        GroupBuyingSession.STATUS_MOQ_REACHED,
        GroupBuyingSession.STATUS_ORDERS_CREATED,
    )

    # Expiration outcomes
    ACTION_CONFIRMED = 'confirmed'
    ACTION_PENDING_STOCK = 'pending_stock'
    ACTION_FAILED = 'failed'
    ACTION_RETRY_SCHEDULED = 'retry_scheduled'
    ACTION_SKIPPED = 'skipped'

    # Near-expiration outcomes
    ACTION_BOT_CREATED = 'bot_created'
    ACTION_NO_ACTION_NEEDED = 'no_action_needed'

    def __init__(
        self,
        repository: Optional[SessionRepository] = None,
        payment_client=None,
        warehouse_client=None,
        order_client=None,
        wallet_client=None,
        warehouse_orchestrator: Optional[WarehouseOrchestrator] = None,
        bot_fill: Optional[BotFillPolicy] = None
    ):
        super().__init__()
        from apps.integrations.services.order_client import OrderServiceClient
        from apps.integrations.services.payment_client import PaymentServiceClient
        from apps.integrations.services.wallet_client import WalletServiceClient

        self.repository = repository or SessionRepository()
        self.payment_client = payment_client or PaymentServiceClient()
        self.order_client = order_client or OrderServiceClient()
        self.wallet_client = wallet_client or WalletServiceClient()
        self.warehouse_orchestrator = warehouse_orchestrator or WarehouseOrchestrator(
            self.repository, warehouse_client
        )
        self.bot_fill = bot_fill or BotFillPolicy(self.repository)

    def create_session(self, draft: SessionDraft) -> ServiceResult:
        """
        Open a new session in 'forming' at tier 25 and the base price.

        Args:
            draft: Product, factory, MOQ, prices and window of the session

        Returns:
            ServiceResult containing the created GroupBuyingSession or error
        """
        try:
            if draft.target_moq is None or draft.target_moq < self.MIN_TARGET_MOQ:
                return ServiceResult.fail(
                    f"Minimum order quantity must be at least {self.MIN_TARGET_MOQ}",
                    error_code="INVALID_MOQ"
                )

            if draft.base_price is None or draft.base_price <= 0:
                return ServiceResult.fail(
                    "Group price must be greater than 0",
                    error_code="INVALID_PRICE"
                )

            if draft.end_time is None or draft.end_time <= timezone.now():
                return ServiceResult.fail(
                    "End time must be in the future",
                    error_code="INVALID_END_TIME"
                )

            if draft.start_time and draft.start_time >= draft.end_time:
                return ServiceResult.fail(
                    "Start time must be before end time",
                    error_code="INVALID_START_TIME"
                )

            tier_prices = {
                25: draft.price_tier_25,
                50: draft.price_tier_50,
                75: draft.price_tier_75,
                100: draft.price_tier_100,
            }
            if not tiering.validate_tier_prices(tier_prices):
                return ServiceResult.fail(
                    "All tier prices must be greater than 0 and must not increase "
                    "from tier 25 to tier 100",
                    error_code="INVALID_TIER_PRICES",
                    details={'tier_prices': {str(k): str(v) for k, v in tier_prices.items()}}
                )

            if draft.session_code and self.repository.session_code_exists(draft.session_code):
                return ServiceResult.fail(
                    f"Session code {draft.session_code} already exists",
                    error_code="DUPLICATE_SESSION_CODE",
                    error_kind=ErrorKind.CONFLICT
                )

            session = self.repository.create_session(draft)

            self.log_info(
                f"Created group buying session {session.session_code}",
                session_id=session.id,
                product_id=session.product_id,
                base_price=str(session.base_price),
                target_moq=session.target_moq
            )

            return ServiceResult.ok(session)

        except Exception as e:
            self.log_error("Error creating group buying session", exception=e)
            return ServiceResult.fail(
                "Failed to create session",
                error_code="CREATE_FAILED",
                error_kind=ErrorKind.FATAL
            )

    def get_session(self, session_id) -> ServiceResult:
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)
        return ServiceResult.ok(session)

    def get_session_by_code(self, session_code: str) -> ServiceResult:
        session = self.repository.find_by_code(session_code)
        if not session:
            return ServiceResult.fail(
                f"Session {session_code} not found",
                error_code="SESSION_NOT_FOUND",
                error_kind=ErrorKind.NOT_FOUND
            )
        return ServiceResult.ok(session)

    def list_sessions(self, filters: Optional[SessionFilters] = None) -> ServiceResult:
        return ServiceResult.ok(self.repository.list_sessions(filters or SessionFilters()))

    def update_session(self, session_id, patch: SessionPatch) -> ServiceResult:
        """Change window, price or MOQ of a session that is still forming."""
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        if session.status != GroupBuyingSession.STATUS_FORMING:
            return ServiceResult.fail(
                "Only sessions in forming status can be updated",
                error_code="SESSION_NOT_EDITABLE",
                error_kind=ErrorKind.CONFLICT
            )

        if patch.is_empty():
            return ServiceResult.fail("Nothing to update", error_code="EMPTY_UPDATE")

        if patch.end_time is not None and patch.end_time <= timezone.now():
            return ServiceResult.fail(
                "End time must be in the future",
                error_code="INVALID_END_TIME"
            )

        if patch.base_price is not None and patch.base_price <= 0:
            return ServiceResult.fail(
                "Group price must be greater than 0",
                error_code="INVALID_PRICE"
            )

        if patch.target_moq is not None and patch.target_moq < self.MIN_TARGET_MOQ:
            return ServiceResult.fail(
                f"Minimum order quantity must be at least {self.MIN_TARGET_MOQ}",
                error_code="INVALID_MOQ"
            )

        updated = self.repository.update_session(session_id, patch)
        self.log_info(
            f"Updated session {session.session_code}",
            session_id=session_id,
            fields=sorted(patch.as_update_fields())
        )
        return ServiceResult.ok(updated)

    def delete_session(self, session_id) -> ServiceResult:
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        if session.status in GroupBuyingSession.CONFIRMED_STATUSES:
            return ServiceResult.fail(
                "Cannot delete confirmed or completed sessions",
                error_code="SESSION_CONFIRMED",
                error_kind=ErrorKind.CONFLICT
            )

        if self.repository.get_participant_count(session_id) > 0:
            return ServiceResult.fail(
                "Cannot delete session with participants. Cancel it instead",
                error_code="SESSION_HAS_PARTICIPANTS",
                error_kind=ErrorKind.CONFLICT
            )

        self.repository.delete_session(session_id)
        self.log_info(f"Deleted session {session.session_code}", session_id=session_id)
        return ServiceResult.ok({'message': 'Session deleted successfully'})

    def cancel_session(self, session_id, reason: Optional[str] = None) -> ServiceResult:
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        if session.status in GroupBuyingSession.CONFIRMED_STATUSES:
            return ServiceResult.fail(
                "Cannot cancel confirmed or completed sessions",
                error_code="SESSION_CONFIRMED",
                error_kind=ErrorKind.CONFLICT
            )

        if session.status in GroupBuyingSession.TERMINAL_STATUSES:
            return ServiceResult.fail(
                f"Session is already {session.status}",
                error_code="SESSION_CLOSED",
                error_kind=ErrorKind.CONFLICT
            )

        if not self.repository.try_transition(
            session_id,
            GroupBuyingSession.STATUS_CANCELLED,
            from_statuses=GroupBuyingSession.CANCELLABLE_STATUSES
        ):
            return ServiceResult.fail(
                "Session status changed concurrently",
                error_code="TRANSITION_CONFLICT",
                error_kind=ErrorKind.CONFLICT
            )

        self.log_info(
            f"Cancelled session {session.session_code}",
            session_id=session_id,
            reason=reason
        )
        return ServiceResult.ok({'message': 'Session cancelled successfully', 'reason': reason})

    def join_session(
        self,
        session_id,
        user_id,
        quantity: int,
        unit_price: Decimal,
        total_price: Decimal,
        variant_id=None
    ) -> ServiceResult:
        """
        Add a buyer to a session and put their payment in escrow.

        The buyer pays the session's current price up front; any tier
        discount is refunded to their wallet at settlement.

        Args:
            session_id: Session to join
            user_id: Buyer
            quantity: Units, at least 1
            unit_price: Must equal the session's current price exactly
            total_price: Must equal quantity x unit_price exactly
            variant_id: Optional product variant, checked against warehouse stock

        Returns:
            ServiceResult with participant, payment, payment_url, invoice_id
            and the provisional tier/price, or error
        """
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        if session.status not in GroupBuyingSession.JOINABLE_STATUSES:
            return ServiceResult.fail(
                "Cannot join this session. Session is no longer accepting participants",
                error_code="SESSION_NOT_JOINABLE",
                error_kind=ErrorKind.CONFLICT
            )

        if session.is_expired:
            return ServiceResult.fail(
                "Session has expired",
                error_code="SESSION_EXPIRED",
                error_kind=ErrorKind.CONFLICT
            )

        if quantity is None or quantity < 1:
            return ServiceResult.fail(
                "Quantity must be at least 1",
                error_code="INVALID_QUANTITY"
            )

        if variant_id:
            availability = self.warehouse_orchestrator.get_variant_availability(session, variant_id)
            if availability.service_unavailable:
                self.log_warning(
                    "Warehouse service unavailable, skipping stock check",
                    session_id=session.id,
                    variant_id=variant_id
                )
            elif availability.locked:
                return ServiceResult.fail(
                    "Variant is currently out of stock. "
                    f"Warehouse stock: {availability.quantity}, "
                    f"Reserved: {availability.reserved}",
                    error_code="VARIANT_OUT_OF_STOCK",
                    error_kind=ErrorKind.CONFLICT
                )
            elif quantity > availability.available:
                return ServiceResult.fail(
                    f"Only {availability.available} units available for this variant",
                    error_code="INSUFFICIENT_STOCK",
                    error_kind=ErrorKind.CONFLICT,
                    details={'available': availability.available}
                )

        try:
            unit_price = Decimal(str(unit_price))
            total_price = Decimal(str(total_price))
        except (InvalidOperation, TypeError):
            return ServiceResult.fail("Prices must be numeric", error_code="INVALID_PRICE")

        if unit_price != session.current_price:
            return ServiceResult.fail(
                f"Invalid unit price. Expected {session.current_price}, got {unit_price}",
                error_code="INVALID_UNIT_PRICE"
            )

        expected_total = unit_price * quantity
        if total_price != expected_total:
            return ServiceResult.fail(
                f"Total price must be {expected_total} for quantity {quantity}",
                error_code="INVALID_TOTAL_PRICE"
            )

        try:
            participant = self.repository.join_session(ParticipantDraft(
                session_id=session.id,
                user_id=user_id,
                quantity=quantity,
                unit_price=unit_price,
                total_price=total_price,
                variant_id=variant_id
            ))
        except DatabaseError as e:
            self.log_error("Error creating participant", exception=e, session_id=session.id)
            return ServiceResult.fail(
                "Failed to join session",
                error_code="JOIN_FAILED",
                error_kind=ErrorKind.TRANSIENT
            )

        try:
            escrow = self.payment_client.create_escrow_hold(
                user_id=user_id,
                session_id=session.id,
                participant_id=participant.id,
                amount=total_price,
                factory_id=session.factory_id
            )
        except ExternalServiceError as payment_error:
            return self._rollback_participant(session, participant, payment_error)

        payment_data = escrow.get('payment') or {}
        payment = self.repository.record_payment(
            participant,
            amount=total_price,
            payment_id=str(payment_data.get('id') or ''),
            payment_status=self._payment_status(payment_data),
            invoice_id=escrow.get('invoice_id') or '',
            payment_url=escrow.get('payment_url') or ''
        )

        moq_reached = self.check_moq_reached(session.id)

        real_quantity = sum(p.quantity for p in self.repository.get_real_participants(session.id))
        provisional_tier, provisional_price = tiering.select_tier(
            real_quantity, session.target_moq, session.tier_prices
        )

        self.log_info(
            f"User {user_id} joined session {session.session_code}",
            session_id=session.id,
            participant_id=participant.id,
            quantity=quantity,
            provisional_tier=provisional_tier
        )

        return ServiceResult.ok({
            'participant': participant,
            'payment': payment,
            'payment_url': escrow.get('payment_url'),
            'invoice_id': escrow.get('invoice_id'),
            'provisional_tier': provisional_tier,
            'provisional_price': provisional_price,
            'moq_reached': moq_reached
        })

    def _rollback_participant(
        self,
        session: GroupBuyingSession,
        participant: GroupParticipant,
        payment_error: ExternalServiceError
    ) -> ServiceResult:
        """Undo a join whose escrow hold failed."""
        try:
            self.repository.remove_participant(participant.id)
        except DatabaseError as rollback_error:
            self.log_critical(
                "Failed to roll back participant after payment failure - manual cleanup required",
                exception=rollback_error,
                session_id=session.id,
                participant_id=participant.id,
                payment_error=str(payment_error),
                rollback_error=str(rollback_error)
            )
            return ServiceResult.fail(
                "Payment failed and rollback failed. Manual cleanup required. "
                f"Participant ID: {participant.id}",
                error_code="ROLLBACK_FAILED",
                error_kind=ErrorKind.FATAL,
                details={
                    'participant_id': str(participant.id),
                    'payment_error': str(payment_error),
                    'rollback_error': str(rollback_error)
                }
            )

        self.log_info(
            "Participant rolled back after payment failure",
            session_id=session.id,
            participant_id=participant.id
        )
        return ServiceResult.fail(
            f"Payment failed: {payment_error}",
            error_code="PAYMENT_FAILED",
            error_kind=ErrorKind.TRANSIENT
        )

    @staticmethod
    def _payment_status(payment_data: Dict[str, Any]) -> str:
        status = payment_data.get('payment_status') or payment_data.get('status')
        valid = {choice for choice, _ in ParticipantPayment.STATUS_CHOICES}
        return status if status in valid else ParticipantPayment.STATUS_PENDING

    def leave_session(self, session_id, user_id) -> ServiceResult:
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        if session.status in GroupBuyingSession.CONFIRMED_STATUSES:
            return ServiceResult.fail(
                "Cannot leave confirmed sessions",
                error_code="SESSION_CONFIRMED",
                error_kind=ErrorKind.CONFLICT
            )

        if session.status not in GroupBuyingSession.JOINABLE_STATUSES:
            return ServiceResult.fail(
                f"Cannot leave a session that is {session.status}",
                error_code="SESSION_CLOSED",
                error_kind=ErrorKind.CONFLICT
            )

        removed = self.repository.leave_session(session_id, user_id)
        if removed == 0:
            return ServiceResult.fail(
                "User is not a participant or has already been converted to an order",
                error_code="NOT_A_PARTICIPANT",
                error_kind=ErrorKind.NOT_FOUND
            )

        self.log_info(
            f"User {user_id} left session {session.session_code}",
            session_id=session_id,
            removed=removed
        )
        return ServiceResult.ok({'message': 'Successfully left the session', 'removed': removed})

    def get_participants(self, session_id) -> ServiceResult:
        if not self.repository.find_by_id(session_id):
            return self._not_found(session_id)
        return ServiceResult.ok(self.repository.get_session_participants(session_id))

    def get_session_stats(self, session_id) -> ServiceResult:
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        stats = self.repository.get_participant_stats(session_id)
        progress = tiering.fill_percentage(stats.total_quantity, session.target_moq)

        return ServiceResult.ok({
            'participant_count': stats.participant_count,
            'total_quantity': stats.total_quantity,
            'total_revenue': stats.total_revenue,
            'target_moq': session.target_moq,
            'progress': float(round(progress, 2)),
            'moq_reached': stats.total_quantity >= session.target_moq,
            'time_remaining': self._time_remaining(session.end_time),
            'status': session.status
        })

    @staticmethod
    def _time_remaining(end_time: datetime) -> Dict[str, Any]:
        remaining = end_time - timezone.now()
        if remaining.total_seconds() <= 0:
            return {'hours': 0, 'minutes': 0, 'expired': True}
        total_minutes = int(remaining.total_seconds() // 60)
        return {'hours': total_minutes // 60, 'minutes': total_minutes % 60, 'expired': False}

    def check_moq_reached(self, session_id) -> bool:
        """Confirm a live session once its committed quantity covers the MOQ."""
        session = self.repository.find_by_id(session_id)
        if not session or session.status not in GroupBuyingSession.JOINABLE_STATUSES:
            return False

        stats = self.repository.get_participant_stats(session_id)
        if stats.total_quantity < session.target_moq:
            return False

        reached = self.repository.try_transition(
            session_id,
            GroupBuyingSession.STATUS_MOQ_REACHED,
            from_statuses=GroupBuyingSession.JOINABLE_STATUSES
        )
        if reached:
            self.log_info(
                f"Session {session.session_code} reached MOQ",
                session_id=session_id,
                total_quantity=stats.total_quantity,
                target_moq=session.target_moq
            )
        return reached

    def link_participant_to_order(self, participant_id, order_id) -> ServiceResult:
        """Callback from the order service once a participant's order exists."""
        if not self.repository.link_participant_to_order(participant_id, order_id):
            return ServiceResult.fail(
                f"Participant {participant_id} not found",
                error_code="PARTICIPANT_NOT_FOUND",
                error_kind=ErrorKind.NOT_FOUND
            )
        self.log_info(
            "Linked participant to order",
            participant_id=participant_id,
            order_id=order_id
        )
        return ServiceResult.ok({'participant_id': participant_id, 'order_id': order_id})

    def record_payment_status(self, payment_id: str, payment_status: str) -> ServiceResult:
        """Callback from the payment service when a payment settles or fails."""
        valid = {choice for choice, _ in ParticipantPayment.STATUS_CHOICES}
        if payment_status not in valid:
            return ServiceResult.fail(
                f"Unknown payment status {payment_status}",
                error_code="INVALID_PAYMENT_STATUS"
            )

        updated = self.repository.update_payment_status(payment_id, payment_status)
        if updated == 0:
            return ServiceResult.fail(
                f"Payment {payment_id} not found",
                error_code="PAYMENT_NOT_FOUND",
                error_kind=ErrorKind.NOT_FOUND
            )

        self.log_info(
            f"Payment {payment_id} is now {payment_status}",
            payment_id=payment_id,
            updated=updated
        )
        return ServiceResult.ok({
            'payment_id': payment_id,
            'payment_status': payment_status,
            'updated': updated
        })

    def start_production(self, session_id, factory_owner_id) -> ServiceResult:
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        if not self._is_factory_owner(session, factory_owner_id):
            return ServiceResult.fail(
                "Only factory owner can start production",
                error_code="NOT_FACTORY_OWNER"
            )

        if session.status not in self.PRODUCTION_READY_STATUSES:
            return ServiceResult.fail(
                "Can only start production for confirmed sessions",
                error_code="SESSION_NOT_CONFIRMED",
                error_kind=ErrorKind.CONFLICT
            )

        if session.production_started_at or not self.repository.mark_production_started(session_id):
            return ServiceResult.fail(
                "Production already started",
                error_code="PRODUCTION_ALREADY_STARTED",
                error_kind=ErrorKind.CONFLICT
            )

        self.log_info(f"Production started for session {session.session_code}", session_id=session_id)
        return ServiceResult.ok({'message': 'Production started successfully'})

    def complete_production(self, session_id, factory_owner_id) -> ServiceResult:
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        if not self._is_factory_owner(session, factory_owner_id):
            return ServiceResult.fail(
                "Only factory owner can complete production",
                error_code="NOT_FACTORY_OWNER"
            )

        if not session.production_started_at:
            return ServiceResult.fail(
                "Production has not been started",
                error_code="PRODUCTION_NOT_STARTED",
                error_kind=ErrorKind.CONFLICT
            )

        if session.production_completed_at:
            return ServiceResult.fail(
                "Production already completed",
                error_code="PRODUCTION_ALREADY_COMPLETED",
                error_kind=ErrorKind.CONFLICT
            )

        if not self.repository.try_transition(
            session_id,
            GroupBuyingSession.STATUS_SUCCESS,
            from_statuses=self.PRODUCTION_READY_STATUSES
        ):
            return ServiceResult.fail(
                "Session status changed concurrently",
                error_code="TRANSITION_CONFLICT",
                error_kind=ErrorKind.CONFLICT
            )

        try:
            self.payment_client.release_escrow(session_id)
            self.log_info("Escrow released", session_id=session_id)
        except ExternalServiceError as e:
            self.log_error(
                f"Failed to release escrow for session {session.session_code}",
                exception=e,
                session_id=session_id
            )

        return ServiceResult.ok({'message': 'Production completed successfully'})

    @staticmethod
    def _is_factory_owner(session: GroupBuyingSession, user_id) -> bool:
        return session.factory_owner_id is not None and str(session.factory_owner_id) == str(user_id)

    def process_sessions_nearing_expiration(self) -> ServiceResult:
        """
        Bot pre-fill for forming sessions 8 to 10 minutes from their end.
        Called by Celery Beat often enough that every session passes
        through the window at least once.

        Returns:
            ServiceResult with one row per session inspected
        """
        sessions = self.repository.find_sessions_nearing_expiration(
            self.NEAR_EXPIRY_MIN_MINUTES, self.NEAR_EXPIRY_MAX_MINUTES
        )
        results = []

        for session in sessions:
            try:
                real_quantity = sum(
                    p.quantity for p in self.repository.get_real_participants(session.id)
                )
                fill = tiering.fill_percentage(real_quantity, session.target_moq)
                row = {
                    'session_id': str(session.id),
                    'session_code': session.session_code,
                    'fill_percentage': float(round(fill, 2)),
                }

                if fill >= 25:
                    row['action'] = self.ACTION_NO_ACTION_NEEDED
                elif not self.bot_fill.enabled:
                    self.log_warning(
                        "BOT_USER_ID not configured - skipping bot creation",
                        session_id=session.id
                    )
                    row['action'] = self.ACTION_SKIPPED
                else:
                    bot = self.bot_fill.fill(session, real_quantity, PREEMPTIVE_REFERENCE_PREFIX)
                    if bot:
                        row['action'] = self.ACTION_BOT_CREATED
                        row['bot_quantity'] = bot.quantity
                    else:
                        row['action'] = self.ACTION_NO_ACTION_NEEDED
                results.append(row)

            except Exception as e:
                self.log_error(
                    f"Error processing near-expiring session {session.session_code}",
                    exception=e,
                    session_id=session.id
                )

        self.log_info(
            "Processed sessions nearing expiration",
            total=len(sessions),
            bots_created=sum(1 for r in results if r['action'] == self.ACTION_BOT_CREATED)
        )
        return ServiceResult.ok(results)

    def process_expired_sessions(self, session_id=None) -> ServiceResult:
        """
        Settle every expired session still forming, active or moq_reached.

        Safe to run concurrently: each session is claimed with a
        conditional update and losers skip it.

        Args:
            session_id: Restrict the run to one session

        Returns:
            ServiceResult with one row per session
        """
        sessions = self.repository.find_expired_sessions()
        if session_id is not None:
            sessions = [s for s in sessions if str(s.id) == str(session_id)]

        results = []
        for session in sessions:
            try:
                results.append(self._process_expired_session(session))
            except Exception as e:
                self.log_error(
                    f"Error processing expired session {session.session_code}",
                    exception=e,
                    session_id=session.id
                )

        self.log_info(
            "Processed expired sessions",
            total=len(sessions),
            actions=[r['action'] for r in results]
        )
        return ServiceResult.ok(results)

    def _process_expired_session(self, session: GroupBuyingSession) -> Dict[str, Any]:
        stats = self.repository.get_participant_stats(session.id)
        row = {
            'session_id': str(session.id),
            'session_code': session.session_code,
            'participants': stats.participant_count,
        }

        reached = (
            session.status == GroupBuyingSession.STATUS_MOQ_REACHED
            or stats.total_quantity >= session.target_moq
        )
        if not reached:
            return self._fail_expired_session(session, row)

        if not self.repository.claim_for_settlement(session.id):
            self.log_info(
                "Session already being processed by another worker",
                session_id=session.id
            )
            row['action'] = self.ACTION_SKIPPED
            return row

        try:
            warehouse = self.warehouse_orchestrator.fulfill_demand(session)
        except ExternalServiceError as e:
            self.log_error(
                "Warehouse demand fulfilment failed - proceeding without check",
                exception=e,
                session_id=session.id
            )
            warehouse = None

        if warehouse is not None and not warehouse.has_stock:
            self.repository.try_transition(
                session.id,
                GroupBuyingSession.STATUS_PENDING_STOCK,
                from_statuses=(GroupBuyingSession.STATUS_MOQ_REACHED,)
            )
            self.log_info(
                "Warehouse out of stock - waiting for factory",
                session_id=session.id,
                grosir_units_needed=warehouse.grosir_units_needed
            )
            self.create_next_day_session(session)
            row['action'] = self.ACTION_PENDING_STOCK
            row['grosir_needed'] = warehouse.grosir_units_needed
            return row

        final_tier, final_price = self._finalize_tier(session)
        self._issue_tier_refunds(session, final_tier, final_price)
        self._remove_bot(session.id)

        paid_participants = self.repository.get_paid_real_participants(session.id)
        if not paid_participants:
            self.log_warning("No paid real participants in session", session_id=session.id)
            return self._fail_expired_session(
                session, row,
                from_statuses=(GroupBuyingSession.STATUS_MOQ_REACHED,),
                reason=self.NO_PAID_PARTICIPANTS_REFUND_REASON
            )

        try:
            orders_created = self.order_client.create_bulk_orders(session.id, [
                {
                    'user_id': p.user_id,
                    'participant_id': p.id,
                    'product_id': session.product_id,
                    'variant_id': p.variant_id,
                    'quantity': p.quantity,
                    'unit_price': p.unit_price,
                }
                for p in paid_participants
            ])
        except ExternalServiceError as e:
            self.log_error(
                f"Error creating orders for session {session.session_code}",
                exception=e,
                session_id=session.id
            )
            self.repository.release_settlement_claim(session.id)
            row['action'] = self.ACTION_RETRY_SCHEDULED
            return row

        self.repository.try_transition(
            session.id,
            GroupBuyingSession.STATUS_ORDERS_CREATED,
            from_statuses=(GroupBuyingSession.STATUS_MOQ_REACHED,)
        )
        self.log_info(
            f"Created orders for session {session.session_code}",
            session_id=session.id,
            orders_created=orders_created,
            final_tier=final_tier
        )
        self.create_next_day_session(session)

        row.update({
            'action': self.ACTION_CONFIRMED,
            'orders_created': orders_created,
            'final_tier': final_tier,
            'final_price': final_price,
        })
        return row

    def _fail_expired_session(
        self,
        session: GroupBuyingSession,
        row: Dict[str, Any],
        from_statuses=GroupBuyingSession.JOINABLE_STATUSES,
        reason: str = FAILED_SESSION_REFUND_REASON
    ) -> Dict[str, Any]:
        if not self.repository.try_transition(
            session.id, GroupBuyingSession.STATUS_FAILED, from_statuses=from_statuses
        ):
            row['action'] = self.ACTION_SKIPPED
            return row

        try:
            self.payment_client.refund_session(session.id, reason)
            self.log_info("Refund initiated for failed session", session_id=session.id)
        except ExternalServiceError as e:
            self.log_error(
                f"Failed to refund session {session.session_code}",
                exception=e,
                session_id=session.id
            )

        self.create_next_day_session(session)
        row['action'] = self.ACTION_FAILED
        row['target_moq'] = session.target_moq
        return row

    def _finalize_tier(self, session: GroupBuyingSession):
        """Settlement-time bot fill, then the authoritative tier over real plus bot quantity."""
        real_quantity = sum(p.quantity for p in self.repository.get_real_participants(session.id))

        if session.bot_participant_id is None:
            try:
                self.bot_fill.fill(session, real_quantity, SETTLEMENT_REFERENCE_PREFIX)
            except DatabaseError as e:
                self.log_error("Failed to create bot participant", exception=e, session_id=session.id)

        refreshed = self.repository.find_by_id(session.id) or session
        bot_quantity = (refreshed.platform_bot_quantity or 0) if refreshed.bot_participant_id else 0
        total_quantity = real_quantity + bot_quantity

        final_tier, final_price = tiering.select_tier(
            total_quantity, session.target_moq, session.tier_prices
        )
        self.repository.update_tier(session.id, final_tier, final_price)

        self.log_info(
            "Final tier determined",
            session_id=session.id,
            real_quantity=real_quantity,
            bot_quantity=bot_quantity,
            final_tier=final_tier,
            final_price=str(final_price)
        )
        return final_tier, final_price

    def _issue_tier_refunds(self, session: GroupBuyingSession, final_tier: int, final_price: Decimal) -> int:
        """
        Credit each real participant the difference between base and final price.
        Participants already credited by an earlier attempt are skipped.
        """
        per_unit = tiering.refund_per_unit(session.base_price, final_price)
        if per_unit <= 0:
            self.log_info("No refunds needed - final price equals base price", session_id=session.id)
            return 0

        issued = 0
        for participant in self.repository.get_participants_awaiting_refund(session.id):
            amount = per_unit * participant.quantity
            try:
                self.wallet_client.credit(
                    user_id=participant.user_id,
                    amount=amount,
                    reference=f"GROUP_REFUND_{session.id}_{participant.id}",
                    description=(
                        f"Group buying refund - Session {session.session_code} (Tier {final_tier}%)"
                    ),
                    metadata={
                        'sessionId': session.id,
                        'participantId': participant.id,
                        'basePricePerUnit': session.base_price,
                        'finalPricePerUnit': final_price,
                        'refundPerUnit': per_unit,
                        'quantity': participant.quantity,
                    }
                )
                self.repository.mark_tier_refund_issued(participant.id)
                issued += 1
            except ExternalServiceError as e:
                self.log_error(
                    "Failed to issue refund to participant",
                    exception=e,
                    session_id=session.id,
                    participant_id=participant.id,
                    amount=str(amount)
                )

        self.log_info(
            "Tier refunds issued",
            session_id=session.id,
            refund_per_unit=str(per_unit),
            issued=issued
        )
        return issued

    def _remove_bot(self, session_id) -> None:
        session = self.repository.find_by_id(session_id)
        if not session or not session.bot_participant_id:
            return
        try:
            self.repository.remove_bot_participant(session_id, session.bot_participant_id)
        except DatabaseError as e:
            self.log_error("Failed to remove bot participant", exception=e, session_id=session_id)

    def create_next_day_session(self, expired: GroupBuyingSession) -> Optional[GroupBuyingSession]:
        """
        Open an identical session for tomorrow, midnight to midnight.
        Failures are logged and never interrupt the batch.
        """
        try:
            tomorrow = timezone.localdate() + timedelta(days=1)
            start_time = timezone.make_aware(datetime.combine(tomorrow, datetime.min.time()))
            end_time = start_time + timedelta(days=1)
            timestamp = str(int(time.time() * 1000))[-6:]

            result = self.create_session(SessionDraft(
                product_id=expired.product_id,
                factory_id=expired.factory_id,
                factory_owner_id=expired.factory_owner_id,
                target_moq=expired.target_moq,
                base_price=expired.base_price,
                start_time=start_time,
                end_time=end_time,
                price_tier_25=expired.price_tier_25,
                price_tier_50=expired.price_tier_50,
                price_tier_75=expired.price_tier_75,
                price_tier_100=expired.price_tier_100,
                grosir_unit_size=expired.grosir_unit_size,
                session_code=f"GB-{str(expired.product_id)[:8]}-{timestamp}"
            ))
            if not result.success:
                self.log_error(
                    "Failed to create next day session",
                    expired_session_id=expired.id,
                    error=result.error
                )
                return None

            self.log_info(
                "Created next day session",
                expired_session_id=expired.id,
                new_session_id=result.data.id,
                new_session_code=result.data.session_code
            )
            return result.data

        except Exception as e:
            self.log_error(
                "Failed to create next day session",
                exception=e,
                expired_session_id=expired.id
            )
            return None

    def manually_expire_and_process(self, session_id) -> ServiceResult:
        """Ops hook: end the session now and settle just that session."""
        session = self.repository.find_by_id(session_id)
        if not session:
            return self._not_found(session_id)

        self.repository.set_end_time(
            session_id,
            timezone.now() - timedelta(seconds=self.MANUAL_EXPIRE_OFFSET_SECONDS)
        )
        self.log_info(f"Session {session.session_code} manually expired", session_id=session_id)

        results = self.process_expired_sessions(session_id=session_id).data
        return ServiceResult.ok({
            'session_id': str(session_id),
            'process_results': results
        })

    @staticmethod
    def _not_found(session_id) -> ServiceResult:
        return ServiceResult.fail(
            f"Session {session_id} not found",
            error_code="SESSION_NOT_FOUND",
            error_kind=ErrorKind.NOT_FOUND
        )
