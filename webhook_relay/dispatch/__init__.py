"""
Dispatch module.
Contains the durable work queue and its backoff policy.
"""

from webhook_relay.dispatch.backoff import BackoffPolicy
from webhook_relay.dispatch.models import DispatchItem, QueueBase
from webhook_relay.dispatch.queue import DispatchQueue

__all__ = [
    "BackoffPolicy",
    "DispatchItem",
    "DispatchQueue",
    "QueueBase",
]
