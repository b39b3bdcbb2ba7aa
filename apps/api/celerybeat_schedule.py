"""
Celery Beat Schedule Configuration

Defines periodic billing tasks.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Renewal reminders, past-due marking and grace-period cancellation
    'process-billing-reminders': {
        'task': 'tasks.process_billing_reminders',
        'schedule': crontab(hour=6, minute=0),  # Daily 06:00 UTC
    },
    # Hard-delete cancelled subscriptions past their end date
    'cleanup-cancelled-subscriptions': {
        'task': 'tasks.cleanup_cancelled_subscriptions',
        'schedule': crontab(hour=3, minute=30),
    },
    # Coach payouts for the month that just ended
    'calculate-monthly-coach-payments': {
        'task': 'tasks.calculate_monthly_coach_payments',
        'schedule': crontab(hour=2, minute=0, day_of_month=1),
        'kwargs': {'previous_month': True, 'notify': True},
    },
}
