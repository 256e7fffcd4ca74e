import logging
import os

import redis
from celery import current_app
from channels.layers import get_channel_layer
from django.db import connection
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from notifications.dispatcher import get_dispatcher

logger = logging.getLogger(__name__)

AUTOMATION_TASK = "automation.tasks.run_automation_checks"


def _check_database():
    connection.ensure_connection()


def _check_redis():
    client = redis.Redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"), socket_timeout=3)
    client.ping()


def _check_channel_layer():
    if get_channel_layer() is None:
        raise RuntimeError("no channel layer")


def _check_celery():
    if AUTOMATION_TASK not in current_app.tasks:
        raise RuntimeError("automation task not registered")


CHECKS = (
    ("database", _check_database),
    ("redis", _check_redis),
    ("channels", _check_channel_layer),
    ("celery", _check_celery),
)


@api_view(["GET"])
@permission_classes([AllowAny])
def health_check(request):
    """Health of the backing services; 503 when any of them is down"""
    services = {}
    healthy = True

    for name, check in CHECKS:
        try:
            check()
            services[name] = "healthy"
        except Exception as e:
            logger.warning("Health check %s failed: %s", name, e)
            services[name] = f"unhealthy: {e}"
            healthy = False

    # Unconfigured notification channels degrade delivery but do not fail the check
    services["notifications"] = {
        name: "configured" if sender.configured else "not configured"
        for name, sender in get_dispatcher().senders.items()
    }

    return Response(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": timezone.now().isoformat(),
            "services": services,
        },
        status=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
    )
