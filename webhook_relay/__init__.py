"""
Webhook Relay

At-least-once webhook delivery: a durable job store, a crash-tolerant dispatch
queue with exponential backoff, a bounded worker pool, and a recovery
reconciler that closes the gap between the two.
"""

__version__ = "1.0.0"
