"""
Shared HTTP plumbing for the peer services the group buying engine calls.
Every client gets a pooled session with bounded, exponentially backed-off
retries and a fixed timeout. There is no circuit breaker.
"""
import json
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder

from apps.core.services.base import BaseService, ExternalServiceError


class PeerServiceClient(BaseService):
    """
    Base class for payment, warehouse, order and wallet clients.

    Subclasses set SERVICE_NAME, BASE_URL_SETTING and DEFAULT_BASE_URL, and
    may tune MAX_RETRIES / BACKOFF_FACTOR for their own call profile.
    """

    SERVICE_NAME = 'peer'
    BASE_URL_SETTING = None
    DEFAULT_BASE_URL = 'http://localhost:3000'

    MAX_RETRIES = 3
    BACKOFF_FACTOR = 1.0
    RETRY_STATUS_CODES = (500, 502, 503, 504)

    def __init__(
        self,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None
    ):
        """Initialize the client with a retrying session for connection pooling."""
        super().__init__()
        configured_url = getattr(settings, self.BASE_URL_SETTING, None) \
            if self.BASE_URL_SETTING else None
        self.base_url = (base_url or configured_url or self.DEFAULT_BASE_URL).rstrip('/')
        self.timeout = timeout or getattr(settings, 'PEER_SERVICE_TIMEOUT', 10)

        if max_retries is None:
            retry_overrides = getattr(settings, 'PEER_SERVICE_RETRIES', {})
            max_retries = retry_overrides.get(self.SERVICE_NAME, self.MAX_RETRIES)
        self.max_retries = max_retries

        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json'
        })

        # POST included: every peer endpoint accepts idempotent retries
        retry = Retry(
            total=max_retries,
            connect=max_retries,
            read=max_retries,
            status=max_retries,
            backoff_factor=self.BACKOFF_FACTOR,
            status_forcelist=self.RETRY_STATUS_CODES,
            allowed_methods=None,
            raise_on_status=False
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

    def _make_request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Make a request to the peer service.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            payload: JSON body (Decimal, UUID and datetime values allowed)
            params: Query parameters

        Returns:
            Decoded JSON response body

        Raises:
            ExternalServiceError: when the call fails after retries
        """
        url = f"{self.base_url}{endpoint}"
        body = json.dumps(payload, cls=DjangoJSONEncoder) if payload is not None else None

        try:
            response = self.session.request(
                method=method,
                url=url,
                data=body,
                params=params,
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()

        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else 'unknown'
            message = self._extract_error_message(e.response)
            self.log_error(
                f"{self.SERVICE_NAME} service HTTP error for {endpoint}: {status_code}",
                endpoint=endpoint,
                error=message
            )
            raise ExternalServiceError(
                f"{self.SERVICE_NAME} service error: {message}",
                code=f"HTTP_{status_code}",
                details={'endpoint': endpoint, 'status_code': status_code}
            )
        except requests.exceptions.Timeout:
            self.log_error(f"{self.SERVICE_NAME} service timeout for {endpoint}")
            raise ExternalServiceError(
                f"{self.SERVICE_NAME} service timeout",
                code="TIMEOUT",
                details={'endpoint': endpoint}
            )
        except ValueError as e:
            self.log_error(
                f"Invalid JSON response from {self.SERVICE_NAME} service",
                exception=e,
                endpoint=endpoint
            )
            raise ExternalServiceError(
                f"{self.SERVICE_NAME} service returned an invalid response",
                code="INVALID_RESPONSE",
                details={'endpoint': endpoint}
            )
        except requests.exceptions.RequestException as e:
            self.log_error(
                f"{self.SERVICE_NAME} service request failed",
                exception=e,
                endpoint=endpoint
            )
            raise ExternalServiceError(
                f"{self.SERVICE_NAME} service unavailable: {str(e)}",
                code="API_ERROR",
                details={'endpoint': endpoint}
            )

    @staticmethod
    def _extract_error_message(response: Optional[requests.Response]) -> str:
        """Pull the peer's error message out of a failed response."""
        if response is None:
            return 'no response'
        try:
            body = response.json()
        except ValueError:
            return response.reason or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return body.get('message') or body.get('error') or response.reason or ''
        return response.reason or ''
