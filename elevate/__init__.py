"""
Elevate Engine - Kajabi Webhook Ingestion Service

FastAPI + APScheduler service that turns Kajabi course-completion tags into
LEAPS points, tag grants and badges, exactly once per (event, tag).
"""

__version__ = "0.1.0"
