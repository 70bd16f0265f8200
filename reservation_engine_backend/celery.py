import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "reservation_engine_backend.settings")

app = Celery("reservation_engine_backend")

# CELERY_* Django settings, including the beat schedule
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
