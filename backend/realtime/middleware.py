"""JWT and cookie authentication for WebSocket and SSE connections."""

import logging
from typing import Optional
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.tokens import AccessToken

User = get_user_model()
logger = logging.getLogger(__name__)


def _token_from_scope(scope) -> Optional[str]:
    """JWT from ``?token=`` (WebSocket, EventSource) or an ``Authorization: Bearer`` header."""
    params = parse_qs(scope.get("query_string", b"").decode())
    token_list = params.get("token")
    if token_list:
        return token_list[0]

    for name, value in scope.get("headers", []):
        if name == b"authorization":
            scheme, _, credentials = value.decode().partition(" ")
            if scheme.lower() == "bearer" and credentials:
                return credentials
    return None


@database_sync_to_async
def _user_for_token(token: str):
    access = AccessToken(token)
    return User.objects.get(id=access["user_id"])


class JWTOrCookieAuthMiddleware(BaseMiddleware):
    """
    Authenticate Channels connections using either:
    1. JWT in querystring (?token=...) or Authorization header - mobile and driver apps
    2. Session cookies (sessionid) - for browser use, resolved by AuthMiddlewareStack
    """

    async def __call__(self, scope, receive, send):
        scope = dict(scope)
        token = _token_from_scope(scope)

        if token:
            try:
                scope["user"] = await _user_for_token(token)
            except Exception as e:
                logger.debug("JWT auth failed: %s", e)
                scope["user"] = AnonymousUser()
            return await super().__call__(scope, receive, send)

        # Cookie/session auth fallback (BROWSER)
        if "session" in scope:
            scope["user"] = scope.get("user", AnonymousUser())
            return await super().__call__(scope, receive, send)

        scope["user"] = AnonymousUser()
        return await super().__call__(scope, receive, send)
