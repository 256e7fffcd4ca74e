"""Notifications app configuration."""

from django.apps import AppConfig


class NotificationsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'notifications'

    def ready(self):
        from .dispatcher import NotificationDispatcher
        from .senders import build_senders
        from .templates import build_default_registry

        # One registry and one set of senders per process
        self.dispatcher = NotificationDispatcher(build_default_registry(), build_senders())
