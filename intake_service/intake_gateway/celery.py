"""
Celery configuration for Intake Gateway Service.
"""
import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'intake_gateway.settings')

app = Celery('intake_gateway')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
