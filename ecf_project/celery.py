"""Celery app for the e-CF engine."""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "ecf_project.settings")

app = Celery("ecf_project")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
