from rest_framework_simplejwt.authentication import JWTAuthentication

from .activity import touch_last_activity


class ActivityTrackingJWTAuthentication(JWTAuthentication):
    """JWT authentication that also records the user's last activity."""

    def authenticate(self, request):
        result = super().authenticate(request)
        if result is not None:
            touch_last_activity(result[0])
        return result
