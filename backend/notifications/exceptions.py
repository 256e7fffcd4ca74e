"""Custom exceptions for notification dispatch."""


class TemplateNotFoundError(KeyError):
    """Raised when a template id is not in the registry."""

    def __init__(self, template_id):
        super().__init__(template_id)
        self.template_id = template_id

    def __str__(self):
        return f"Notification template '{self.template_id}' not found"


class RecipientNotFoundError(Exception):
    """Raised when the target user of a notification does not exist."""
    pass


class InvalidSubscriptionError(ValueError):
    """Raised when a push subscription payload is missing its endpoint or keys."""
    pass
