"""
ASGI config for the group buying service.
Wraps Django with a lifespan handler and a dependency-free /health probe.
"""
import json
import os

os.environ.setdefault('DJANGO_SETTINGS_MODULE',
                      'groupbuy.settings.production')

# isort: off
from django.core.asgi import get_asgi_application  # noqa: E402
django_asgi_app = get_asgi_application()
# isort: on

HEALTH_PATHS = ('/health', '/health/')


class HealthCheckMiddleware:
    """
    Answers lifespan events and health probes without touching Django,
    so the probe stays green while the database is unreachable.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope['type'] == 'lifespan':
            while True:
                message = await receive()
                if message['type'] == 'lifespan.startup':
                    await send({'type': 'lifespan.startup.complete'})
                elif message['type'] == 'lifespan.shutdown':
                    await send({'type': 'lifespan.shutdown.complete'})
                    return

        if scope['type'] == 'http' and scope.get('path') in HEALTH_PATHS:
            body = json.dumps({'status': 'ok', 'service': 'group-buying'}).encode()
            await send({
                'type': 'http.response.start',
                'status': 200,
                'headers': [
                    [b'content-type', b'application/json'],
                    [b'content-length', str(len(body)).encode()],
                ],
            })
            await send({'type': 'http.response.body', 'body': body})
            return

        await self.app(scope, receive, send)


application = HealthCheckMiddleware(django_asgi_app)
