"""
Recovery module.
Contains the pending-job reconciler and the stalled-item reaper.
"""

from webhook_relay.recovery.reaper import Reaper
from webhook_relay.recovery.reconciler import Reconciler, recovery_dedupe_key

__all__ = ["Reaper", "Reconciler", "recovery_dedupe_key"]
