from django.db import models
from django.conf import settings


class Ride(models.Model):
    """A booked non-emergency medical trip"""

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('accepted', 'Accepted'),
        ('en_route', 'Driver En Route'),
        ('arrived', 'Driver Arrived'),
        ('in_progress', 'In Progress'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    # Statuses during which a live tracking session may exist
    TRACKABLE_STATUSES = frozenset({'en_route', 'arrived', 'in_progress'})
    TERMINAL_STATUSES = frozenset({'completed', 'cancelled'})

    # Foreign keys
    rider = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='rides'
    )

    driver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='driven_rides'
    )

    reference_number = models.CharField(max_length=32, blank=True)

    # Pickup location
    pickup_address = models.TextField(blank=True)
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)

    # Dropoff location
    dropoff_address = models.TextField(blank=True)
    dropoff_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    dropoff_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    scheduled_time = models.DateTimeField(null=True, blank=True)

    # Pricing
    estimated_price = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    final_price = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'rides'
        ordering = ['-created_at']

    def __str__(self):
        return f"Ride #{self.id} - {self.rider} - {self.status}"

    @property
    def is_trackable(self):
        return self.status in self.TRACKABLE_STATUSES

    @property
    def display_reference(self):
        return self.reference_number or f"RIDE-{self.id}"

    def pickup_point(self):
        return {"lat": self.pickup_latitude, "lng": self.pickup_longitude}

    def dropoff_point(self):
        return {"lat": self.dropoff_latitude, "lng": self.dropoff_longitude}

    def is_participant(self, user_id):
        return user_id is not None and user_id in (self.rider_id, self.driver_id)
