"""
Job store module.
Contains database connection management, the job model and its repository.
"""

from webhook_relay.db.connection import Database, init_db
from webhook_relay.db.models import StoreBase, WebhookJob
from webhook_relay.db.repository import DUPLICATE, Duplicate, JobRepository

__all__ = [
    "Database",
    "init_db",
    "StoreBase",
    "WebhookJob",
    "JobRepository",
    "Duplicate",
    "DUPLICATE",
]
