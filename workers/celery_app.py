from celery import Celery
from kombu import Queue

from core.env import env_int, env_str

CELERY_TIMEZONE = env_str("CELERY_TIMEZONE", "Asia/Seoul") or "UTC"
CELERY_DEFAULT_QUEUE = env_str("CELERY_DEFAULT_QUEUE", "billing") or "billing"
BILLING_RETRY_INTERVAL_SECONDS = env_int("BILLING_RETRY_INTERVAL_SECONDS", 600, minimum=30)

app = Celery(
    "billing",
    broker=env_str("CELERY_BROKER_URL", "redis://redis:6379/0"),
    backend=env_str("CELERY_RESULT_BACKEND", "redis://redis:6379/1"),
    include=["workers.tasks"],
)

app.conf.update(
    task_track_started=True,
    timezone=CELERY_TIMEZONE,
    task_default_queue=CELERY_DEFAULT_QUEUE,
    task_queues=(Queue(CELERY_DEFAULT_QUEUE),),
    task_routes={},
    beat_schedule={
        "billing-refund-retry-batch": {
            "task": "billing.refund_retry_batch",
            "schedule": float(BILLING_RETRY_INTERVAL_SECONDS),
        },
    },
)
current_tz = getattr(app.conf, "timezone", None) or "UTC"
app.conf.enable_utc = str(current_tz).upper() == "UTC"
