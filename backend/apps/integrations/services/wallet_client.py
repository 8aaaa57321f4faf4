"""
Client for the wallet service's credit endpoint.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from apps.integrations.services.peer_client import PeerServiceClient


class WalletServiceClient(PeerServiceClient):
    """Wallet collaborator. Credits carry a reference the wallet deduplicates on."""

    SERVICE_NAME = 'wallet'
    BASE_URL_SETTING = 'WALLET_SERVICE_URL'
    DEFAULT_BASE_URL = 'http://localhost:3010'

    MAX_RETRIES = 2
    BACKOFF_FACTOR = 1.0

    def credit(
        self,
        user_id,
        amount: Decimal,
        reference: str,
        description: str = '',
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Credit a user's wallet."""
        return self._make_request('POST', '/api/wallet/credit', payload={
            'userId': user_id,
            'amount': amount,
            'description': description,
            'reference': reference,
            'metadata': metadata or {}
        })
