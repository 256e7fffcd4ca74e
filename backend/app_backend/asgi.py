"""ASGI entrypoint: Django HTTP, the ride event stream (SSE) and tracking WebSockets."""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "app_backend.settings.base")

# Initialise Django before importing anything that touches models
django_asgi_app = get_asgi_application()

from channels.auth import AuthMiddlewareStack  # noqa: E402
from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402
from channels.security.websocket import AllowedHostsOriginValidator  # noqa: E402
from django.urls import re_path  # noqa: E402

from realtime.middleware import JWTOrCookieAuthMiddleware  # noqa: E402
from realtime.routing import http_urlpatterns, websocket_urlpatterns  # noqa: E402

application = ProtocolTypeRouter({
    "http": URLRouter([
        # URL: http://localhost:8000/events/rides/<ride_id>/
        re_path(
            r"^events/",
            AuthMiddlewareStack(JWTOrCookieAuthMiddleware(URLRouter(http_urlpatterns))),
        ),
        re_path(r"", django_asgi_app),
    ]),
    "websocket": AllowedHostsOriginValidator(
        AuthMiddlewareStack(
            JWTOrCookieAuthMiddleware(URLRouter(websocket_urlpatterns))
        )
    ),
})
