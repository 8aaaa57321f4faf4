"""
Client for the order service's bulk order creation endpoint.
"""
from typing import Any, Dict, List

from apps.integrations.services.peer_client import PeerServiceClient


class OrderServiceClient(PeerServiceClient):
    """Order collaborator used once per settled session."""

    SERVICE_NAME = 'order'
    BASE_URL_SETTING = 'ORDER_SERVICE_URL'
    DEFAULT_BASE_URL = 'http://localhost:3005'

    MAX_RETRIES = 3
    BACKOFF_FACTOR = 2.0

    def create_bulk_orders(self, session_id, participants: List[Dict[str, Any]]) -> int:
        """
        Create one downstream order per participant entry.

        Args:
            session_id: Group buying session the orders belong to
            participants: Entries with user_id, participant_id, product_id,
                variant_id, quantity and unit_price

        Returns:
            Number of orders the order service reports as created
        """
        response = self._make_request('POST', '/api/orders/bulk', payload={
            'groupSessionId': session_id,
            'participants': [
                {
                    'userId': entry['user_id'],
                    'participantId': entry['participant_id'],
                    'productId': entry['product_id'],
                    'variantId': entry.get('variant_id'),
                    'quantity': entry['quantity'],
                    'unitPrice': entry['unit_price']
                }
                for entry in participants
            ]
        })

        data = response.get('data') if isinstance(response.get('data'), dict) else response
        return int(data.get('ordersCreated') or 0)
