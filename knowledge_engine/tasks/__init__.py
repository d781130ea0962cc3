"""Celery task package initialization."""
