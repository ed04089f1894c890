from celery import Celery

from signature8.core.config import get_settings

settings = get_settings()

celery_app = Celery("signature8_api", broker=settings.redis_url, backend=settings.redis_url, include=["signature8.tasks"])
celery_app.conf.beat_schedule = {
    "reconcile-client-mirrors": {
        "task": "signature8.tasks.reconcile_mirrors",
        "schedule": float(settings.mirror_sweep_interval_seconds),
    },
}
