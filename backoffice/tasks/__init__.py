"""
Background Tasks
Celery tasks for webhook processing and marketplace sync.
"""

from .celery_app import app as celery_app

__all__ = ["celery_app"]
