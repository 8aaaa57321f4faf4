"""
Request logging for inbound API calls.
"""
import logging
import time

from django.conf import settings
from django.core.exceptions import MiddlewareNotUsed

logger = logging.getLogger('groupbuy.requests')


class RequestLoggingMiddleware:
    """
    Logs method, path, status and duration of every request.
    Disabled unless REQUEST_LOGGING_ENABLED is set.
    """

    def __init__(self, get_response):
        if not getattr(settings, 'REQUEST_LOGGING_ENABLED', False):
            raise MiddlewareNotUsed
        self.get_response = get_response

    def __call__(self, request):
        start_time = time.monotonic()

        try:
            response = self.get_response(request)
        except Exception as e:
            logger.error(
                f"ERROR handling request: {request.method} {request.path} "
                f"Error: {e}"
            )
            raise

        duration = time.monotonic() - start_time
        logger.info(
            f"{request.method} {request.path} "
            f"Status: {response.status_code} "
            f"Duration: {duration:.3f}s"
        )
        return response
