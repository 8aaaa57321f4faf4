"""
Client for the payment service: escrow holds, escrow release and
whole-session refunds.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from django.utils import timezone

from apps.integrations.services.peer_client import PeerServiceClient


class PaymentServiceClient(PeerServiceClient):
    """
    Payment collaborator. Money is captured into escrow at join time and
    only released to the factory once production completes.
    """

    SERVICE_NAME = 'payment'
    BASE_URL_SETTING = 'PAYMENT_SERVICE_URL'
    DEFAULT_BASE_URL = 'http://localhost:3006'

    MAX_RETRIES = 3
    BACKOFF_FACTOR = 1.0

    ESCROW_HOLD_HOURS = 24

    def create_escrow_hold(
        self,
        user_id,
        session_id,
        participant_id,
        amount: Decimal,
        factory_id,
        expires_at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Request an escrow payment for a participant.

        Returns:
            Dict with 'payment', 'payment_url' and 'invoice_id'
        """
        expires_at = expires_at or timezone.now() + timedelta(hours=self.ESCROW_HOLD_HOURS)

        response = self._make_request('POST', '/api/payments/escrow', payload={
            'userId': user_id,
            'groupSessionId': session_id,
            'participantId': participant_id,
            'amount': amount,
            'expiresAt': expires_at,
            'isEscrow': True,
            'factoryId': factory_id
        })

        data = response.get('data') or {}
        return {
            'payment': data.get('payment') or {},
            'payment_url': data.get('paymentUrl'),
            'invoice_id': data.get('invoiceId')
        }

    def release_escrow(self, session_id) -> Dict[str, Any]:
        """Release every escrowed payment of a session to the factory."""
        return self._make_request('POST', '/api/payments/release-escrow', payload={
            'groupSessionId': session_id
        })

    def refund_session(self, session_id, reason: str) -> Dict[str, Any]:
        """Refund every payment of a session that failed to reach MOQ."""
        return self._make_request('POST', '/api/payments/refund-session', payload={
            'groupSessionId': session_id,
            'reason': reason
        })
