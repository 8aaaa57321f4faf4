"""
Unit tests for GroupBuyingService.
Peer services are mocked; the session store runs against the test database.
"""
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import DatabaseError
from django.utils import timezone

from apps.core.services.base import ErrorKind, ExternalServiceError
from apps.group_buying.models import GroupBuyingSession, GroupParticipant, ParticipantPayment
from apps.group_buying.services.bot_fill import BotFillPolicy
from apps.group_buying.services.group_buying_service import GroupBuyingService
from apps.group_buying.types import SessionPatch
from tests.conftest import (
    GroupBuyingSessionFactory, GroupParticipantFactory, add_participant, make_draft
)

BOT_USER_ID = '00000000-0000-0000-0000-00000000b07a'


@pytest.mark.django_db
class TestCreateSession:

    def test_create_session_success(self, group_buying_service):
        result = group_buying_service.create_session(make_draft())

        assert result.success
        session = result.data
        assert session.status == GroupBuyingSession.STATUS_FORMING
        assert session.current_tier == 25
        assert session.current_price == Decimal('100.00')
        assert session.session_code.startswith('GB-')

    def test_keeps_explicit_code(self, group_buying_service):
        result = group_buying_service.create_session(make_draft(session_code='GB-CUSTOM-1'))

        assert result.data.session_code == 'GB-CUSTOM-1'

    def test_moq_below_two_is_rejected(self, group_buying_service):
        result = group_buying_service.create_session(make_draft(target_moq=1))

        assert not result.success
        assert result.error_code == 'INVALID_MOQ'
        assert result.error_kind == ErrorKind.VALIDATION

    def test_non_positive_price_is_rejected(self, group_buying_service):
        result = group_buying_service.create_session(make_draft(base_price=Decimal('0')))

        assert result.error_code == 'INVALID_PRICE'

    def test_end_time_in_past_is_rejected(self, group_buying_service):
        result = group_buying_service.create_session(
            make_draft(end_time=timezone.now() - timedelta(minutes=1))
        )

        assert result.error_code == 'INVALID_END_TIME'

    def test_start_after_end_is_rejected(self, group_buying_service):
        end_time = timezone.now() + timedelta(hours=2)
        result = group_buying_service.create_session(
            make_draft(end_time=end_time, start_time=end_time + timedelta(hours=1))
        )

        assert result.error_code == 'INVALID_START_TIME'

    def test_increasing_tier_prices_are_rejected(self, group_buying_service):
        result = group_buying_service.create_session(make_draft(price_tier_100=Decimal('95.00')))

        assert result.error_code == 'INVALID_TIER_PRICES'
        assert GroupBuyingSession.objects.count() == 0

    def test_duplicate_code_is_a_conflict(self, group_buying_service):
        GroupBuyingSessionFactory(session_code='GB-TAKEN')

        result = group_buying_service.create_session(make_draft(session_code='GB-TAKEN'))

        assert result.error_code == 'DUPLICATE_SESSION_CODE'
        assert result.error_kind == ErrorKind.CONFLICT


@pytest.mark.django_db
class TestSessionMaintenance:

    def test_lookup_by_code(self, group_buying_service):
        session = GroupBuyingSessionFactory(session_code='GB-LOOKUP')

        assert group_buying_service.get_session_by_code('GB-LOOKUP').data.id == session.id

        missing = group_buying_service.get_session_by_code('GB-NOPE')
        assert missing.error_code == 'SESSION_NOT_FOUND'
        assert missing.error_kind == ErrorKind.NOT_FOUND

    def test_update_forming_session(self, group_buying_service, forming_session):
        result = group_buying_service.update_session(
            forming_session.id, SessionPatch(base_price=Decimal('110.00'), target_moq=50)
        )

        assert result.success
        assert result.data.base_price == Decimal('110.00')
        assert result.data.current_price == Decimal('110.00')
        assert result.data.target_moq == 50

    def test_update_requires_forming(self, group_buying_service):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_ACTIVE)

        result = group_buying_service.update_session(session.id, SessionPatch(target_moq=50))

        assert result.error_code == 'SESSION_NOT_EDITABLE'
        assert result.error_kind == ErrorKind.CONFLICT

    def test_empty_update(self, group_buying_service, forming_session):
        result = group_buying_service.update_session(forming_session.id, SessionPatch())

        assert result.error_code == 'EMPTY_UPDATE'

    def test_delete_without_participants(self, group_buying_service, forming_session):
        assert group_buying_service.delete_session(forming_session.id).success
        assert not GroupBuyingSession.objects.filter(id=forming_session.id).exists()

    def test_delete_with_participants_is_rejected(self, group_buying_service, forming_session):
        GroupParticipantFactory(session=forming_session)

        result = group_buying_service.delete_session(forming_session.id)

        assert result.error_code == 'SESSION_HAS_PARTICIPANTS'

    def test_delete_confirmed_is_rejected(self, group_buying_service):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_MOQ_REACHED)

        assert group_buying_service.delete_session(session.id).error_code == 'SESSION_CONFIRMED'

    def test_cancel_forming_session(self, group_buying_service, forming_session):
        result = group_buying_service.cancel_session(forming_session.id, reason='Factory closed')

        assert result.success
        assert result.data['reason'] == 'Factory closed'
        forming_session.refresh_from_db()
        assert forming_session.status == GroupBuyingSession.STATUS_CANCELLED

    @pytest.mark.parametrize('status', [
        GroupBuyingSession.STATUS_MOQ_REACHED,
        GroupBuyingSession.STATUS_ORDERS_CREATED,
        GroupBuyingSession.STATUS_SUCCESS,
    ])
    def test_cancel_confirmed_is_rejected(self, group_buying_service, status):
        session = GroupBuyingSessionFactory(status=status)

        result = group_buying_service.cancel_session(session.id)

        assert result.error_code == 'SESSION_CONFIRMED'

    def test_cancel_twice(self, group_buying_service, forming_session):
        group_buying_service.cancel_session(forming_session.id)

        result = group_buying_service.cancel_session(forming_session.id)

        assert result.error_code == 'SESSION_CLOSED'

    def test_cancel_loses_to_settlement_claim(self, mocker, group_buying_service, repository):
        session = GroupBuyingSessionFactory(
            target_moq=10, end_time=timezone.now() - timedelta(minutes=1)
        )
        add_participant(session, quantity=10)
        snapshot = repository.find_by_id(session.id)
        repository.claim_for_settlement(session.id)
        mocker.patch.object(repository, 'find_by_id', return_value=snapshot)

        result = group_buying_service.cancel_session(session.id)

        assert result.error_code == 'TRANSITION_CONFLICT'
        session.refresh_from_db()
        assert session.status == GroupBuyingSession.STATUS_MOQ_REACHED

    def test_cancel_pending_stock_session(self, group_buying_service):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_PENDING_STOCK)

        assert group_buying_service.cancel_session(session.id).success
        session.refresh_from_db()
        assert session.status == GroupBuyingSession.STATUS_CANCELLED


@pytest.mark.django_db
class TestJoinSession:

    def join(self, service, session, quantity=10, unit_price=None, total_price=None, **kwargs):
        unit_price = session.current_price if unit_price is None else unit_price
        total_price = unit_price * quantity if total_price is None else total_price
        return service.join_session(
            session_id=session.id,
            user_id=kwargs.pop('user_id', uuid.uuid4()),
            quantity=quantity,
            unit_price=unit_price,
            total_price=total_price,
            **kwargs
        )

    def test_join_creates_participant_and_escrow(self, group_buying_service, forming_session,
                                                 payment_client):
        user_id = uuid.uuid4()

        result = self.join(group_buying_service, forming_session, quantity=10, user_id=user_id)

        assert result.success
        participant = result.data['participant']
        assert participant.quantity == 10
        assert not participant.is_bot_participant

        payment = result.data['payment']
        assert payment.payment_id == 'pay_123'
        assert payment.payment_status == ParticipantPayment.STATUS_PENDING
        assert payment.is_in_escrow
        assert result.data['payment_url'] == 'https://pay.test/invoice/inv_123'
        assert result.data['invoice_id'] == 'inv_123'
        assert result.data['provisional_tier'] == 25
        assert result.data['provisional_price'] == Decimal('100.00')
        assert result.data['moq_reached'] is False

        payment_client.create_escrow_hold.assert_called_once_with(
            user_id=user_id,
            session_id=forming_session.id,
            participant_id=participant.id,
            amount=Decimal('1000.00'),
            factory_id=forming_session.factory_id
        )

    def test_join_reaching_moq_confirms_session(self, group_buying_service, forming_session):
        result = self.join(group_buying_service, forming_session, quantity=100)

        assert result.data['moq_reached'] is True
        assert result.data['provisional_tier'] == 100
        assert result.data['provisional_price'] == Decimal('70.00')
        forming_session.refresh_from_db()
        assert forming_session.status == GroupBuyingSession.STATUS_MOQ_REACHED
        assert forming_session.moq_reached_at is not None

    def test_unit_price_must_match_current_price(self, group_buying_service, forming_session,
                                                 payment_client):
        result = self.join(group_buying_service, forming_session, unit_price=Decimal('70.00'))

        assert result.error_code == 'INVALID_UNIT_PRICE'
        assert not GroupParticipant.objects.exists()
        payment_client.create_escrow_hold.assert_not_called()

    def test_total_price_must_match(self, group_buying_service, forming_session):
        result = self.join(
            group_buying_service, forming_session, quantity=2, total_price=Decimal('150.00')
        )

        assert result.error_code == 'INVALID_TOTAL_PRICE'

    def test_quantity_must_be_positive(self, group_buying_service, forming_session):
        result = self.join(group_buying_service, forming_session, quantity=0)

        assert result.error_code == 'INVALID_QUANTITY'

    def test_expired_session(self, group_buying_service):
        session = GroupBuyingSessionFactory(end_time=timezone.now() - timedelta(seconds=5))

        result = self.join(group_buying_service, session)

        assert result.error_code == 'SESSION_EXPIRED'

    def test_closed_session(self, group_buying_service):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_CANCELLED)

        result = self.join(group_buying_service, session)

        assert result.error_code == 'SESSION_NOT_JOINABLE'
        assert result.error_kind == ErrorKind.CONFLICT

    def test_missing_session(self, group_buying_service):
        result = group_buying_service.join_session(
            uuid.uuid4(), uuid.uuid4(), 1, Decimal('100.00'), Decimal('100.00')
        )

        assert result.error_code == 'SESSION_NOT_FOUND'

    def test_locked_variant(self, group_buying_service, forming_session, warehouse_client):
        warehouse_client.get_inventory_status.return_value = {
            'quantity': 20, 'reserved': 20, 'available': 0, 'status': 'reserved'
        }

        result = self.join(group_buying_service, forming_session, variant_id=uuid.uuid4())

        assert result.error_code == 'VARIANT_OUT_OF_STOCK'
        assert not GroupParticipant.objects.exists()

    def test_insufficient_variant_stock(self, group_buying_service, forming_session,
                                        warehouse_client):
        warehouse_client.get_inventory_status.return_value = {
            'quantity': 5, 'reserved': 0, 'available': 5, 'status': 'in_stock'
        }

        result = self.join(group_buying_service, forming_session, quantity=10,
                           variant_id=uuid.uuid4())

        assert result.error_code == 'INSUFFICIENT_STOCK'
        assert result.details == {'available': 5}

    def test_unreachable_warehouse_allows_join(self, group_buying_service, forming_session,
                                               warehouse_client):
        warehouse_client.get_inventory_status.side_effect = ExternalServiceError(
            'warehouse service timeout', code='TIMEOUT'
        )

        result = self.join(group_buying_service, forming_session, variant_id=uuid.uuid4())

        assert result.success

    def test_payment_failure_rolls_back_participant(self, group_buying_service, forming_session,
                                                    payment_client):
        payment_client.create_escrow_hold.side_effect = ExternalServiceError(
            'payment service error: declined', code='HTTP_502'
        )

        result = self.join(group_buying_service, forming_session)

        assert result.error_code == 'PAYMENT_FAILED'
        assert result.is_retryable
        assert not GroupParticipant.objects.filter(session=forming_session).exists()

    def test_failed_rollback_is_fatal(self, mocker, group_buying_service, forming_session,
                                      payment_client, repository):
        payment_client.create_escrow_hold.side_effect = ExternalServiceError(
            'payment service error: declined', code='HTTP_502'
        )
        mocker.patch.object(repository, 'remove_participant', side_effect=DatabaseError('db down'))

        result = self.join(group_buying_service, forming_session)

        assert result.error_code == 'ROLLBACK_FAILED'
        assert result.error_kind == ErrorKind.FATAL
        participant = GroupParticipant.objects.get(session=forming_session)
        assert result.details['participant_id'] == str(participant.id)
        assert 'declined' in result.details['payment_error']
        assert result.details['rollback_error'] == 'db down'


@pytest.mark.django_db
class TestLeaveAndStats:

    def test_leave_session(self, group_buying_service, forming_session):
        participant = GroupParticipantFactory(session=forming_session)

        result = group_buying_service.leave_session(forming_session.id, participant.user_id)

        assert result.success
        assert result.data['removed'] == 1
        assert not GroupParticipant.objects.filter(id=participant.id).exists()

    def test_leave_when_not_participant(self, group_buying_service, forming_session):
        result = group_buying_service.leave_session(forming_session.id, uuid.uuid4())

        assert result.error_code == 'NOT_A_PARTICIPANT'
        assert result.error_kind == ErrorKind.NOT_FOUND

    def test_leave_confirmed_session(self, group_buying_service):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_MOQ_REACHED)
        participant = GroupParticipantFactory(session=session)

        result = group_buying_service.leave_session(session.id, participant.user_id)

        assert result.error_code == 'SESSION_CONFIRMED'

    def test_session_stats(self, group_buying_service, forming_session):
        GroupParticipantFactory(session=forming_session, quantity=10)
        GroupParticipantFactory(session=forming_session, quantity=20)

        stats = group_buying_service.get_session_stats(forming_session.id).data

        assert stats['participant_count'] == 2
        assert stats['total_quantity'] == 30
        assert stats['total_revenue'] == Decimal('3000.00')
        assert stats['progress'] == 30.0
        assert stats['moq_reached'] is False
        assert stats['time_remaining']['expired'] is False
        assert stats['status'] == GroupBuyingSession.STATUS_FORMING

    def test_get_participants(self, group_buying_service, forming_session):
        first = GroupParticipantFactory(session=forming_session)
        second = GroupParticipantFactory(session=forming_session)

        participants = group_buying_service.get_participants(forming_session.id).data

        assert {p.id for p in participants} == {first.id, second.id}


@pytest.mark.django_db
class TestCallbacks:

    def test_link_participant_to_order(self, group_buying_service, forming_session):
        participant = GroupParticipantFactory(session=forming_session)
        order_id = uuid.uuid4()

        assert group_buying_service.link_participant_to_order(participant.id, order_id).success
        participant.refresh_from_db()
        assert participant.order_id == order_id

    def test_link_unknown_participant(self, group_buying_service):
        result = group_buying_service.link_participant_to_order(uuid.uuid4(), uuid.uuid4())

        assert result.error_code == 'PARTICIPANT_NOT_FOUND'

    def test_record_payment_status(self, group_buying_service, forming_session):
        participant = add_participant(forming_session, paid=False)
        payment = participant.payments.get()

        result = group_buying_service.record_payment_status(payment.payment_id, 'paid')

        assert result.success
        payment.refresh_from_db()
        assert payment.payment_status == ParticipantPayment.STATUS_PAID

    def test_record_unknown_status(self, group_buying_service):
        result = group_buying_service.record_payment_status('pay_1', 'bounced')

        assert result.error_code == 'INVALID_PAYMENT_STATUS'


@pytest.mark.django_db
class TestProduction:

    def test_start_and_complete_production(self, group_buying_service, payment_client):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_ORDERS_CREATED)

        started = group_buying_service.start_production(session.id, session.factory_owner_id)
        completed = group_buying_service.complete_production(session.id, session.factory_owner_id)

        assert started.success
        assert completed.success
        session.refresh_from_db()
        assert session.status == GroupBuyingSession.STATUS_SUCCESS
        assert session.production_started_at is not None
        assert session.production_completed_at is not None
        payment_client.release_escrow.assert_called_once_with(session.id)

    def test_only_factory_owner(self, group_buying_service):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_MOQ_REACHED)

        result = group_buying_service.start_production(session.id, uuid.uuid4())

        assert result.error_code == 'NOT_FACTORY_OWNER'

    def test_start_requires_confirmed_session(self, group_buying_service, forming_session):
        result = group_buying_service.start_production(
            forming_session.id, forming_session.factory_owner_id
        )

        assert result.error_code == 'SESSION_NOT_CONFIRMED'

    def test_start_twice(self, group_buying_service):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_MOQ_REACHED)
        group_buying_service.start_production(session.id, session.factory_owner_id)

        result = group_buying_service.start_production(session.id, session.factory_owner_id)

        assert result.error_code == 'PRODUCTION_ALREADY_STARTED'

    def test_complete_before_start(self, group_buying_service):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_MOQ_REACHED)

        result = group_buying_service.complete_production(session.id, session.factory_owner_id)

        assert result.error_code == 'PRODUCTION_NOT_STARTED'

    def test_escrow_release_failure_does_not_undo_completion(self, group_buying_service,
                                                             payment_client):
        session = GroupBuyingSessionFactory(status=GroupBuyingSession.STATUS_MOQ_REACHED)
        group_buying_service.start_production(session.id, session.factory_owner_id)
        payment_client.release_escrow.side_effect = ExternalServiceError('payment service timeout')

        result = group_buying_service.complete_production(session.id, session.factory_owner_id)

        assert result.success
        session.refresh_from_db()
        assert session.status == GroupBuyingSession.STATUS_SUCCESS


@pytest.mark.django_db
class TestNearExpiration:

    def test_bot_fills_low_session(self, group_buying_service):
        session = GroupBuyingSessionFactory(end_time=timezone.now() + timedelta(minutes=9))
        add_participant(session, quantity=10)

        rows = group_buying_service.process_sessions_nearing_expiration().data

        assert len(rows) == 1
        assert rows[0]['action'] == GroupBuyingService.ACTION_BOT_CREATED
        assert rows[0]['bot_quantity'] == 15
        assert rows[0]['fill_percentage'] == 10.0
        session.refresh_from_db()
        assert session.bot_participant_id is not None
        assert session.platform_bot_quantity == 15

    def test_well_filled_session_is_left_alone(self, group_buying_service):
        session = GroupBuyingSessionFactory(end_time=timezone.now() + timedelta(minutes=9))
        add_participant(session, quantity=30)

        rows = group_buying_service.process_sessions_nearing_expiration().data

        assert rows[0]['action'] == GroupBuyingService.ACTION_NO_ACTION_NEEDED
        assert not GroupParticipant.objects.filter(is_bot_participant=True).exists()

    def test_sessions_outside_window_are_ignored(self, group_buying_service):
        GroupBuyingSessionFactory(end_time=timezone.now() + timedelta(minutes=30))

        assert group_buying_service.process_sessions_nearing_expiration().data == []

    def test_skipped_without_bot_user(self, repository, payment_client, warehouse_client,
                                      order_client, wallet_client):
        service = GroupBuyingService(
            repository=repository,
            payment_client=payment_client,
            warehouse_client=warehouse_client,
            order_client=order_client,
            wallet_client=wallet_client,
            bot_fill=BotFillPolicy(repository, bot_user_id='')
        )
        GroupBuyingSessionFactory(end_time=timezone.now() + timedelta(minutes=9))

        rows = service.process_sessions_nearing_expiration().data

        assert rows[0]['action'] == GroupBuyingService.ACTION_SKIPPED


@pytest.mark.django_db
class TestProcessExpiredSessions:

    def next_day_sessions(self, session):
        return GroupBuyingSession.objects.filter(product_id=session.product_id).exclude(id=session.id)

    def test_confirmed_settlement(self, group_buying_service, expired_session,
                                  order_client, wallet_client):
        first = add_participant(expired_session, quantity=5)
        second = add_participant(expired_session, quantity=5)

        rows = group_buying_service.process_expired_sessions().data

        row = next(r for r in rows if r['session_id'] == str(expired_session.id))
        assert row['action'] == GroupBuyingService.ACTION_CONFIRMED
        assert row['orders_created'] == 2
        assert row['final_tier'] == 100
        assert row['final_price'] == Decimal('70.00')

        expired_session.refresh_from_db()
        assert expired_session.status == GroupBuyingSession.STATUS_ORDERS_CREATED
        assert expired_session.current_tier == 100
        assert expired_session.current_price == Decimal('70.00')

        assert wallet_client.credit.call_count == 2
        references = {c.kwargs['reference'] for c in wallet_client.credit.call_args_list}
        assert references == {
            f"GROUP_REFUND_{expired_session.id}_{first.id}",
            f"GROUP_REFUND_{expired_session.id}_{second.id}",
        }
        assert all(c.kwargs['amount'] == Decimal('150.00')
                   for c in wallet_client.credit.call_args_list)

        entries = order_client.create_bulk_orders.call_args.args[1]
        assert {e['participant_id'] for e in entries} == {first.id, second.id}

        next_day = self.next_day_sessions(expired_session).get()
        assert next_day.status == GroupBuyingSession.STATUS_FORMING
        assert next_day.start_time.date() == timezone.localdate() + timedelta(days=1)
        assert next_day.end_time == next_day.start_time + timedelta(days=1)
        assert next_day.price_tier_100 == expired_session.price_tier_100

    def test_no_refund_at_base_tier(self, group_buying_service, wallet_client):
        session = GroupBuyingSessionFactory(
            target_moq=10,
            end_time=timezone.now() - timedelta(minutes=1),
            price_tier_100=Decimal('100.00'),
            price_tier_75=Decimal('100.00'),
            price_tier_50=Decimal('100.00')
        )
        add_participant(session, quantity=10)

        group_buying_service.process_expired_sessions(session_id=session.id)

        wallet_client.credit.assert_not_called()

    def test_out_of_stock_waits_for_factory(self, group_buying_service, expired_session,
                                            warehouse_client, order_client):
        add_participant(expired_session, quantity=10)
        warehouse_client.fulfill_bundle_demand.return_value = {
            'has_stock': False, 'grosir_units_needed': 2, 'response': {}
        }

        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows[0]['action'] == GroupBuyingService.ACTION_PENDING_STOCK
        assert rows[0]['grosir_needed'] == 2
        expired_session.refresh_from_db()
        assert expired_session.status == GroupBuyingSession.STATUS_PENDING_STOCK
        order_client.create_bulk_orders.assert_not_called()
        assert self.next_day_sessions(expired_session).count() == 1

    def test_warehouse_failure_proceeds_with_settlement(self, group_buying_service,
                                                        expired_session, warehouse_client):
        add_participant(expired_session, quantity=10)
        warehouse_client.fulfill_bundle_demand.side_effect = ExternalServiceError(
            'warehouse service unavailable', code='API_ERROR'
        )

        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows[0]['action'] == GroupBuyingService.ACTION_CONFIRMED

    def test_moq_not_reached_fails_and_refunds(self, group_buying_service, expired_session,
                                               payment_client, order_client):
        add_participant(expired_session, quantity=3)

        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows[0]['action'] == GroupBuyingService.ACTION_FAILED
        assert rows[0]['target_moq'] == 10
        expired_session.refresh_from_db()
        assert expired_session.status == GroupBuyingSession.STATUS_FAILED
        payment_client.refund_session.assert_called_once_with(
            expired_session.id, GroupBuyingService.FAILED_SESSION_REFUND_REASON
        )
        order_client.create_bulk_orders.assert_not_called()
        assert self.next_day_sessions(expired_session).count() == 1

    def test_order_failure_reverts_for_retry(self, group_buying_service, expired_session,
                                             order_client, wallet_client):
        participant = add_participant(expired_session, quantity=10)
        order_client.create_bulk_orders.side_effect = ExternalServiceError(
            'order service unavailable', code='API_ERROR'
        )

        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows[0]['action'] == GroupBuyingService.ACTION_RETRY_SCHEDULED
        expired_session.refresh_from_db()
        assert expired_session.status == GroupBuyingSession.STATUS_FORMING
        assert expired_session.settlement_claimed_at is None
        assert self.next_day_sessions(expired_session).count() == 0

        order_client.create_bulk_orders.side_effect = lambda session_id, participants: len(participants)
        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows[0]['action'] == GroupBuyingService.ACTION_CONFIRMED
        expired_session.refresh_from_db()
        assert expired_session.status == GroupBuyingSession.STATUS_ORDERS_CREATED

        # Refund went out on the first attempt only
        assert wallet_client.credit.call_count == 1
        participant.refresh_from_db()
        assert participant.tier_refund_issued_at is not None

    def test_failed_credit_is_retried_with_settlement(self, group_buying_service, expired_session,
                                                      order_client, wallet_client):
        credited = add_participant(expired_session, quantity=5)
        missed = add_participant(expired_session, quantity=5)
        wallet_client.credit.side_effect = [
            {'success': True},
            ExternalServiceError('wallet down', code='TIMEOUT'),
            {'success': True},
        ]
        order_client.create_bulk_orders.side_effect = [
            ExternalServiceError('order service unavailable', code='API_ERROR'),
            2,
        ]

        group_buying_service.process_expired_sessions(session_id=expired_session.id)
        group_buying_service.process_expired_sessions(session_id=expired_session.id)

        users = [c.kwargs['user_id'] for c in wallet_client.credit.call_args_list]
        assert users == [credited.user_id, missed.user_id, missed.user_id]
        missed.refresh_from_db()
        assert missed.tier_refund_issued_at is not None

    def test_claimed_session_is_skipped(self, group_buying_service, expired_session,
                                        repository, warehouse_client):
        add_participant(expired_session, quantity=10)
        repository.claim_for_settlement(expired_session.id)

        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows[0]['action'] == GroupBuyingService.ACTION_SKIPPED
        warehouse_client.fulfill_bundle_demand.assert_not_called()

    def test_settled_session_is_not_processed_again(self, group_buying_service, expired_session,
                                                    order_client):
        add_participant(expired_session, quantity=10)
        group_buying_service.process_expired_sessions()

        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows == []
        assert order_client.create_bulk_orders.call_count == 1

    def test_no_paid_participants_fails_session(self, group_buying_service, expired_session,
                                                payment_client, order_client):
        add_participant(expired_session, quantity=10, paid=False)

        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows[0]['action'] == GroupBuyingService.ACTION_FAILED
        expired_session.refresh_from_db()
        assert expired_session.status == GroupBuyingSession.STATUS_FAILED
        payment_client.refund_session.assert_called_once_with(
            expired_session.id, GroupBuyingService.NO_PAID_PARTICIPANTS_REFUND_REASON
        )
        order_client.create_bulk_orders.assert_not_called()

    def test_only_paid_participants_get_orders(self, group_buying_service, expired_session,
                                               order_client):
        paid = add_participant(expired_session, quantity=6)
        add_participant(expired_session, quantity=6, paid=False)

        rows = group_buying_service.process_expired_sessions(session_id=expired_session.id).data

        assert rows[0]['orders_created'] == 1
        entries = order_client.create_bulk_orders.call_args.args[1]
        assert [e['participant_id'] for e in entries] == [paid.id]

    def test_bot_is_removed_before_orders(self, group_buying_service, repository, order_client):
        session = GroupBuyingSessionFactory(
            target_moq=20, end_time=timezone.now() - timedelta(minutes=1)
        )
        real = add_participant(session, quantity=20)
        bot = repository.create_bot_participant(session, BOT_USER_ID, 4, 'BOT-PREEMPTIVE')

        rows = group_buying_service.process_expired_sessions(session_id=session.id).data

        assert rows[0]['action'] == GroupBuyingService.ACTION_CONFIRMED
        assert not GroupParticipant.objects.filter(id=bot.id).exists()
        session.refresh_from_db()
        assert session.bot_participant_id is None
        assert session.platform_bot_quantity is None
        entries = order_client.create_bulk_orders.call_args.args[1]
        assert [e['participant_id'] for e in entries] == [real.id]

    def test_manual_expire(self, group_buying_service):
        session = GroupBuyingSessionFactory(target_moq=10)
        add_participant(session, quantity=10)

        result = group_buying_service.manually_expire_and_process(session.id)

        assert result.success
        assert result.data['session_id'] == str(session.id)
        assert result.data['process_results'][0]['action'] == GroupBuyingService.ACTION_CONFIRMED
        session.refresh_from_db()
        assert session.end_time < timezone.now()

    def test_manual_expire_unknown_session(self, group_buying_service):
        result = group_buying_service.manually_expire_and_process(uuid.uuid4())

        assert result.error_code == 'SESSION_NOT_FOUND'
