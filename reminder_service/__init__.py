"""
Reminder Service Package

Scheduling and recurrence engine for user reminders: scans for due
occurrences, claims them atomically, dispatches them over email/sms/app
and advances or closes each reminder's series.
"""
