from celery import Celery
from celery.schedules import crontab
from kombu import Exchange, Queue
from .config import ReminderSettings, settings


def create_celery_app(settings: ReminderSettings) -> Celery:
    broker_url = settings.CELERY_BROKER_URL or settings.RABBITMQ_URL
    app = Celery(
        "reminders",
        broker=broker_url,
        backend=settings.CELERY_RESULT_BACKEND or None,
    )

    exchange = Exchange(settings.RABBITMQ_EXCHANGE, type="direct", durable=True)

    app.conf.update(
        task_acks_late=True,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.WORKER_CONCURRENCY,
        enable_utc=True,
        timezone="UTC",
        task_default_queue=settings.RABBITMQ_INPUT_QUEUE,
        task_default_exchange=settings.RABBITMQ_EXCHANGE,
        task_default_routing_key=settings.RABBITMQ_INPUT_ROUTING_KEY,
        include=["reminder_service.reminders.tasks"],
        task_queues=(
            Queue(settings.RABBITMQ_INPUT_QUEUE, exchange=exchange, routing_key=settings.RABBITMQ_INPUT_ROUTING_KEY, durable=True),
            Queue(settings.RABBITMQ_OUTPUT_QUEUE, exchange=exchange, routing_key=settings.RABBITMQ_OUTPUT_ROUTING_KEY, durable=True),
        ),
    )

    # Celery Beat schedule; overlapping scans are safe because claims are conditional updates
    app.conf.beat_schedule = {
        "scan-and-dispatch": {
            "task": "reminders.scan_and_dispatch",
            "schedule": settings.SCAN_INTERVAL_MINUTES * 60,
        },
        "weekly-digest": {
            "task": "reminders.weekly_digest",
            "schedule": crontab(minute=0, hour=settings.DIGEST_HOUR_UTC, day_of_week=settings.DIGEST_DAY_OF_WEEK),
        },
        "release-stale-claims": {
            "task": "reminders.release_stale_claims",
            "schedule": 3600,  # Run every hour
        },
    }
    return app


celery_app = create_celery_app(settings)
