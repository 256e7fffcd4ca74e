from django.contrib import admin
from django.utils import timezone

from drivers.models import DriverProfile
from automation.jobs import DOCUMENT_WARNING_DAYS


@admin.register(DriverProfile)
class DriverProfileAdmin(admin.ModelAdmin):
    """Driver verification and document expiry"""

    list_display = ("user", "vehicle_number", "verified", "license_expiry", "insurance_expiry", "documents_expiring")
    list_filter = ("verified",)
    search_fields = ("user__username", "user__email", "vehicle_number")
    readonly_fields = ("current_latitude", "current_longitude", "last_location_update")
    actions = ["mark_verified"]

    @admin.display(boolean=True, description="Expiring soon")
    def documents_expiring(self, obj):
        today = timezone.localdate()
        for expires_on in (obj.license_expiry, obj.insurance_expiry):
            if expires_on and 0 < (expires_on - today).days <= DOCUMENT_WARNING_DAYS:
                return True
        return False

    @admin.action(description="Mark selected drivers as verified")
    def mark_verified(self, request, queryset):
        updated = queryset.update(verified=True)
        self.message_user(request, f"{updated} driver(s) verified")
