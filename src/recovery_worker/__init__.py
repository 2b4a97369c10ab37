"""Celery worker running the abandoned-cart recovery ticks."""
