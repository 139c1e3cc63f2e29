"""Dispatch services.

Import the ingest, matcher and monitor modules directly; they depend on the
stores in ``fleetdispatch.state``, which in turn publish through the
broadcaster exported here.
"""

from fleetdispatch.services.broadcaster import RealtimeBroadcaster, Subscription

__all__ = ["RealtimeBroadcaster", "Subscription"]
