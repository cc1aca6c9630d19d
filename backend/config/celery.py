import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('lifecycle')

# Every CELERY_-prefixed Django setting configures the app
app.config_from_object('django.conf:settings', namespace='CELERY')

# Picks up lifecycle/tasks.py
app.autodiscover_tasks()
