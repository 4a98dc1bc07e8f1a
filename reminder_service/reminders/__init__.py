"""Reminder engine (scanner, recurrence, channel senders, scheduler).

Runs either as an in-process scheduler (``reminder-scheduler`` console
script) or as Celery beat + worker using ``reminder_service.reminders.celery_app``.
"""
