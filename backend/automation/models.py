from django.db import models
from django.conf import settings

User = settings.AUTH_USER_MODEL


class ReminderSchedule(models.Model):
    """When a user may next receive a given automated reminder"""

    KIND_CHOICES = [
        ('document_expiry', 'Document Expiry'),
        ('verification_reminder', 'Verification Reminder'),
        ('ride_still_pending', 'Ride Still Pending'),
        ('daily_summary', 'Daily Summary'),
        ('reengagement', 'Re-engagement'),
    ]

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='reminder_schedules')
    kind = models.CharField(max_length=30, choices=KIND_CHOICES)

    # What the reminder is about, e.g. "license", "ride:42" or a date; blank for per-user reminders
    subject_key = models.CharField(max_length=64, blank=True, default='')

    next_eligible_at = models.DateTimeField(null=True, blank=True)
    last_sent_at = models.DateTimeField(null=True, blank=True)
    send_count = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'reminder_schedules'
        unique_together = ('user', 'kind', 'subject_key')
        indexes = [
            models.Index(fields=['kind', 'next_eligible_at'], name='reminder_kind_due_idx'),
        ]

    def __str__(self):
        return f"{self.kind}:{self.subject_key or '-'} for user {self.user_id}"

    def is_due(self, now) -> bool:
        return self.next_eligible_at is None or now >= self.next_eligible_at
