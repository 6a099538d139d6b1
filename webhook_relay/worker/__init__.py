"""
Worker module.
Contains the delivery worker pool and the outbound HTTP attempt.
"""

from webhook_relay.worker.delivery import deliver_webhook
from webhook_relay.worker.main import DeliveryWorker, run

__all__ = ["DeliveryWorker", "deliver_webhook", "run"]
