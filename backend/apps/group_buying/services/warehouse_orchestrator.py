"""
Warehouse orchestration for group buying.

At join time it answers "can this variant still be sold?". At settlement
it turns real demand into per-variant bundle reservations and records
whether the factory has to produce more.
"""
from collections import OrderedDict
from typing import Dict, Iterable, Optional

from django.utils import timezone

from apps.core.services.base import BaseService, ExternalServiceError
from apps.group_buying.models import GroupBuyingSession, GroupParticipant
from apps.group_buying.types import (
    VariantAvailability, WarehouseCheckInfo, WarehouseCheckResult
)

BASE_VARIANT_KEY = 'base'


def aggregate_demand(participants: Iterable[GroupParticipant]) -> Dict[str, int]:
    """Sum real participant quantities per variant; no variant maps to 'base'."""
    demand = OrderedDict()
    for participant in participants:
        if participant.is_bot_participant:
            continue
        key = str(participant.variant_id) if participant.variant_id else BASE_VARIANT_KEY
        demand[key] = demand.get(key, 0) + participant.quantity
    return demand


class WarehouseOrchestrator(BaseService):
    """Talks to the warehouse service on behalf of the lifecycle engine."""

    def __init__(self, repository, warehouse_client=None):
        super().__init__()
        self.repository = repository
        if warehouse_client is None:
            from apps.integrations.services.warehouse_client import WarehouseServiceClient
            warehouse_client = WarehouseServiceClient()
        self.warehouse_client = warehouse_client

    def get_variant_availability(
        self,
        session: GroupBuyingSession,
        variant_id: Optional[str]
    ) -> VariantAvailability:
        """
        Current stock for a variant of the session's product.

        Never raises for peer failures: an unreachable warehouse yields a
        result whose status is 'service_unavailable'.
        """
        try:
            inventory = self.warehouse_client.get_inventory_status(
                session.product_id, variant_id
            )
        except ExternalServiceError as e:
            self.log_warning(
                "Warehouse unavailable for availability check",
                session_id=session.id,
                variant_id=variant_id,
                error=str(e)
            )
            return VariantAvailability(
                variant_id=variant_id,
                quantity=0,
                reserved=0,
                available=0,
                locked=True,
                status=VariantAvailability.SERVICE_UNAVAILABLE
            )

        return VariantAvailability(
            variant_id=variant_id,
            quantity=inventory['quantity'],
            reserved=inventory['reserved'],
            available=inventory['available'],
            locked=inventory['available'] <= 0,
            status=inventory.get('status')
        )

    def fulfill_demand(self, session: GroupBuyingSession) -> WarehouseCheckResult:
        """
        Reserve stock for every variant real buyers committed to.

        Raises:
            ExternalServiceError: if any warehouse call fails
        """
        demand = aggregate_demand(self.repository.get_real_participants(session.id))
        results = []

        for variant_key, quantity in demand.items():
            variant_id = None if variant_key == BASE_VARIANT_KEY else variant_key
            outcome = self.warehouse_client.fulfill_bundle_demand(
                product_id=session.product_id,
                variant_id=variant_id,
                quantity=quantity,
                wholesale_unit=session.grosir_unit_size
            )
            results.append({
                'variant_id': variant_key,
                'quantity': quantity,
                'has_stock': outcome['has_stock'],
                'grosir_units_needed': outcome['grosir_units_needed'],
            })

        has_stock = all(result['has_stock'] for result in results)
        grosir_units_needed = sum(
            result['grosir_units_needed'] for result in results if not result['has_stock']
        )

        checked_at = timezone.now()
        self.repository.update_warehouse_info(session.id, WarehouseCheckInfo(
            checked_at=checked_at,
            has_stock=has_stock,
            grosir_units_needed=grosir_units_needed,
            factory_notified=not has_stock,
            factory_notified_at=None if has_stock else checked_at
        ))

        self.log_info(
            f"Warehouse demand processed for session {session.session_code}",
            session_id=session.id,
            has_stock=has_stock,
            grosir_units_needed=grosir_units_needed,
            variants=len(results)
        )

        return WarehouseCheckResult(
            has_stock=has_stock,
            grosir_units_needed=grosir_units_needed,
            results=results
        )
