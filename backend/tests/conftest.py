"""
Pytest configuration and fixtures for group buying tests.
Provides factories, mocked peer clients and service fixtures.
"""
import os
import sys
import uuid
from datetime import timedelta
from decimal import Decimal

import django
import factory
import pytest
from factory.django import DjangoModelFactory
from faker import Faker

# Add the backend directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Configure Django settings before any Django imports
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'groupbuy.settings.test')
django.setup()

from django.utils import timezone  # noqa: E402

from apps.group_buying.models import (  # noqa: E402
    GroupBuyingSession, GroupParticipant, ParticipantPayment
)
from apps.group_buying.repositories import SessionRepository  # noqa: E402
from apps.group_buying.types import SessionDraft  # noqa: E402

fake = Faker()


# ==================== Factory Classes ====================

class GroupBuyingSessionFactory(DjangoModelFactory):
    """Factory for a forming session with MOQ 100 and tiers 100/90/80/70."""

    class Meta:
        model = GroupBuyingSession

    session_code = factory.Sequence(lambda n: f"GB-{timezone.now():%Y%m%d}-T{n:04d}")
    product_id = factory.LazyFunction(uuid.uuid4)
    factory_id = factory.LazyFunction(uuid.uuid4)
    factory_owner_id = factory.LazyFunction(uuid.uuid4)

    target_moq = 100
    base_price = Decimal('100.00')
    price_tier_25 = Decimal('100.00')
    price_tier_50 = Decimal('90.00')
    price_tier_75 = Decimal('80.00')
    price_tier_100 = Decimal('70.00')
    current_tier = 25
    current_price = factory.LazyAttribute(lambda o: o.base_price)

    start_time = factory.LazyFunction(lambda: timezone.now() - timedelta(hours=1))
    end_time = factory.LazyFunction(lambda: timezone.now() + timedelta(days=1))
    grosir_unit_size = 12
    status = GroupBuyingSession.STATUS_FORMING


class GroupParticipantFactory(DjangoModelFactory):
    """Factory for a real buyer committed at the session's current price."""

    class Meta:
        model = GroupParticipant

    session = factory.SubFactory(GroupBuyingSessionFactory)
    user_id = factory.LazyFunction(uuid.uuid4)
    quantity = 10
    variant_id = None
    unit_price = factory.LazyAttribute(lambda o: o.session.current_price)
    total_price = factory.LazyAttribute(lambda o: o.unit_price * o.quantity)
    is_bot_participant = False


class ParticipantPaymentFactory(DjangoModelFactory):
    """Factory for a participant's escrow payment; paid by default."""

    class Meta:
        model = ParticipantPayment

    participant = factory.SubFactory(GroupParticipantFactory)
    session = factory.LazyAttribute(lambda o: o.participant.session)
    user_id = factory.LazyAttribute(lambda o: o.participant.user_id)
    payment_id = factory.Sequence(lambda n: f"pay_{n}")
    invoice_id = factory.LazyAttribute(lambda _: f"inv_{fake.bothify('########')}")
    amount = factory.LazyAttribute(lambda o: o.participant.total_price)
    payment_method = ParticipantPayment.METHOD_ESCROW
    payment_status = ParticipantPayment.STATUS_PAID
    is_in_escrow = True


def add_participant(session, quantity=10, paid=True, **kwargs):
    """Create a real participant with one payment record."""
    participant = GroupParticipantFactory(session=session, quantity=quantity, **kwargs)
    ParticipantPaymentFactory(
        participant=participant,
        payment_status=(
            ParticipantPayment.STATUS_PAID if paid else ParticipantPayment.STATUS_PENDING
        )
    )
    return participant


def make_draft(**overrides):
    """A valid SessionDraft ending tomorrow."""
    values = {
        'product_id': uuid.uuid4(),
        'factory_id': uuid.uuid4(),
        'factory_owner_id': uuid.uuid4(),
        'target_moq': 100,
        'base_price': Decimal('100.00'),
        'end_time': timezone.now() + timedelta(days=1),
        'price_tier_25': Decimal('100.00'),
        'price_tier_50': Decimal('90.00'),
        'price_tier_75': Decimal('80.00'),
        'price_tier_100': Decimal('70.00'),
    }
    values.update(overrides)
    return SessionDraft(**values)


# ==================== Peer Client Fixtures ====================

@pytest.fixture
def payment_client(mocker):
    """Mocked payment service: escrow holds succeed as pending."""
    from apps.integrations.services.payment_client import PaymentServiceClient
    client = mocker.Mock(spec=PaymentServiceClient)
    client.create_escrow_hold.return_value = {
        'payment': {'id': 'pay_123', 'payment_status': 'pending'},
        'payment_url': 'https://pay.test/invoice/inv_123',
        'invoice_id': 'inv_123'
    }
    client.release_escrow.return_value = {'success': True}
    client.refund_session.return_value = {'success': True}
    return client


@pytest.fixture
def warehouse_client(mocker):
    """Mocked warehouse service: everything in stock."""
    from apps.integrations.services.warehouse_client import WarehouseServiceClient
    client = mocker.Mock(spec=WarehouseServiceClient)
    client.get_inventory_status.return_value = {
        'quantity': 100, 'reserved': 0, 'available': 100, 'status': 'in_stock'
    }
    client.fulfill_bundle_demand.return_value = {
        'has_stock': True, 'grosir_units_needed': 0, 'response': {}
    }
    return client


@pytest.fixture
def order_client(mocker):
    """Mocked order service: one order per participant entry."""
    from apps.integrations.services.order_client import OrderServiceClient
    client = mocker.Mock(spec=OrderServiceClient)
    client.create_bulk_orders.side_effect = lambda session_id, participants: len(participants)
    return client


@pytest.fixture
def wallet_client(mocker):
    """Mocked wallet service."""
    from apps.integrations.services.wallet_client import WalletServiceClient
    client = mocker.Mock(spec=WalletServiceClient)
    client.credit.return_value = {'success': True}
    return client


# ==================== Service Fixtures ====================

@pytest.fixture
def repository():
    return SessionRepository()


@pytest.fixture
def group_buying_service(repository, payment_client, warehouse_client, order_client, wallet_client):
    """GroupBuyingService wired to mocked peer services."""
    from apps.group_buying.services.group_buying_service import GroupBuyingService
    return GroupBuyingService(
        repository=repository,
        payment_client=payment_client,
        warehouse_client=warehouse_client,
        order_client=order_client,
        wallet_client=wallet_client
    )


@pytest.fixture
def api_service(mocker, group_buying_service):
    """Make every group buying viewset use the mocked-peer service."""
    from apps.group_buying.views import (
        GroupBuyingSessionViewSet, GroupParticipantViewSet, ParticipantPaymentViewSet
    )
    for viewset in (GroupBuyingSessionViewSet, GroupParticipantViewSet, ParticipantPaymentViewSet):
        mocker.patch.object(viewset, 'service_class', return_value=group_buying_service)
    return group_buying_service


@pytest.fixture
def forming_session(db):
    return GroupBuyingSessionFactory()


@pytest.fixture
def expired_session(db):
    """Session MOQ 10 whose window closed a minute ago."""
    return GroupBuyingSessionFactory(
        target_moq=10,
        end_time=timezone.now() - timedelta(minutes=1)
    )
