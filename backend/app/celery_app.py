from celery import Celery

from app.config import settings

# Only outbound email runs here; webhook delivery stays in-process.
celery = Celery("traza", broker=settings.redis_url)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_ignore_result=True,
    task_always_eager=settings.celery_task_always_eager,
    task_routes={"notifications.*": {"queue": "email"}},
    task_soft_time_limit=30,
)

celery.autodiscover_tasks(["app.notifications"])
