from django.contrib import admin
from automation.models import ReminderSchedule


@admin.register(ReminderSchedule)
class ReminderScheduleAdmin(admin.ModelAdmin):
    """Admin panel for automated reminder schedules"""

    list_display = [
        "user",
        "kind",
        "subject_key",
        "next_eligible_at",
        "last_sent_at",
        "send_count",
    ]

    list_filter = [
        "kind",
    ]

    search_fields = [
        "user__username",
        "subject_key",
    ]

    ordering = ("next_eligible_at",)
