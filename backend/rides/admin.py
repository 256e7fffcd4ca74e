"""Tells what to show in the Django admin interface for rides app"""

from django.contrib import admin
from .models import Ride


@admin.register(Ride)
class RideAdmin(admin.ModelAdmin):
    """Ride admin"""
    list_display = ['id', 'reference_number', 'rider', 'driver', 'status', 'scheduled_time', 'created_at', 'completed_at']
    list_filter = ['status', 'created_at']
    search_fields = ['reference_number', 'rider__username', 'driver__username', 'pickup_address']
    readonly_fields = ['created_at', 'accepted_at', 'completed_at', 'cancelled_at']
    date_hierarchy = 'created_at'
