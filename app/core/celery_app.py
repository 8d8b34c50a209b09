from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("crm_control_plane", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.update(
    task_always_eager=settings.celery_task_always_eager,
    task_eager_propagates=True,
    task_ignore_result=True,
    task_routes={"app.tasks.send_notification": {"queue": "notifications"}},
    # Acked after the send completes so a lost worker redelivers the token link.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)
celery_app.autodiscover_tasks(["app"], related_name="notifications")
