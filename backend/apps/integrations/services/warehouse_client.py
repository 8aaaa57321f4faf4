"""
Client for the warehouse service: per-variant stock status and bundle
("grosir") demand fulfilment.
"""
from typing import Any, Dict, Optional

from apps.integrations.services.peer_client import PeerServiceClient


class WarehouseServiceClient(PeerServiceClient):
    """Warehouse collaborator. Only its query/reservation contract matters here."""

    SERVICE_NAME = 'warehouse'
    BASE_URL_SETTING = 'WAREHOUSE_SERVICE_URL'
    DEFAULT_BASE_URL = 'http://localhost:3011'

    MAX_RETRIES = 2
    BACKOFF_FACTOR = 0.5

    def get_inventory_status(self, product_id, variant_id=None) -> Dict[str, Any]:
        """
        Query stock for a product variant.

        Returns:
            Dict with 'quantity', 'reserved', 'available' and 'status'
        """
        params = {'productId': str(product_id)}
        if variant_id:
            params['variantId'] = str(variant_id)

        response = self._make_request('GET', '/api/inventory/status', params=params)
        data = response.get('data') or {}

        return {
            'quantity': int(data.get('quantity') or 0),
            'reserved': int(data.get('reservedQuantity') or 0),
            'available': int(data.get('availableQuantity') or 0),
            'status': data.get('status')
        }

    def fulfill_bundle_demand(
        self,
        product_id,
        variant_id: Optional[str],
        quantity: int,
        wholesale_unit: int
    ) -> Dict[str, Any]:
        """
        Reserve stock for a variant's demand, or trigger upstream production.

        Returns:
            Dict with 'has_stock', 'grosir_units_needed' and the raw 'response'
        """
        response = self._make_request('POST', '/api/warehouse/fulfill-bundle-demand', payload={
            'productId': product_id,
            'variantId': variant_id,
            'quantity': quantity,
            'wholesaleUnit': wholesale_unit
        })

        return {
            'has_stock': bool(response.get('hasStock')),
            'grosir_units_needed': int(response.get('grosirUnitsNeeded') or 0),
            'response': response
        }
