import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('pharmacy')

# every CELERY_* setting from Django settings, including the beat schedule
app.config_from_object('django.conf:settings', namespace='CELERY')

# picks up pharmacy/tasks.py
app.autodiscover_tasks()
