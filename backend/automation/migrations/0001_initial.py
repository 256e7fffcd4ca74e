import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='ReminderSchedule',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('document_expiry', 'Document Expiry'), ('verification_reminder', 'Verification Reminder'), ('ride_still_pending', 'Ride Still Pending'), ('daily_summary', 'Daily Summary'), ('reengagement', 'Re-engagement')], max_length=30)),
                ('subject_key', models.CharField(blank=True, default='', max_length=64)),
                ('next_eligible_at', models.DateTimeField(blank=True, null=True)),
                ('last_sent_at', models.DateTimeField(blank=True, null=True)),
                ('send_count', models.PositiveIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='reminder_schedules', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'reminder_schedules',
                'indexes': [models.Index(fields=['kind', 'next_eligible_at'], name='reminder_kind_due_idx')],
                'unique_together': {('user', 'kind', 'subject_key')},
            },
        ),
    ]
