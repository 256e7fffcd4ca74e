from django.db import models
from django.utils import timezone
from django.conf import settings

User = settings.AUTH_USER_MODEL


class DriverProfile(models.Model):
    """Driver-specific details: verification, document expiry and last known position"""

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='driver_profile')

    # Vehicle details
    vehicle_number = models.CharField(max_length=20, blank=True)
    vehicle_description = models.CharField(max_length=120, blank=True)

    # Verification & documents (checked by the automation scans)
    verified = models.BooleanField(default=False)
    license_expiry = models.DateField(null=True, blank=True)
    insurance_expiry = models.DateField(null=True, blank=True)

    # Last relayed position (real-time tracking)
    current_latitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    current_longitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    last_location_update = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'driver_profiles'

    def __str__(self):
        return f"{self.user.username} - {self.vehicle_number}"

    def expiring_documents(self):
        """(document key, label, expiry date) for every document with a known expiry."""
        documents = []
        if self.license_expiry:
            documents.append(("license", "Driver's License", self.license_expiry))
        if self.insurance_expiry:
            documents.append(("insurance", "Insurance Policy", self.insurance_expiry))
        return documents
