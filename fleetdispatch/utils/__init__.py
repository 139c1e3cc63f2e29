"""Utility modules."""

from fleetdispatch.utils.geo import haversine_km
from fleetdispatch.utils.logging import setup_logging

__all__ = ["setup_logging", "haversine_km"]
