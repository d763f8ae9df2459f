"""
Escalation services.

This package contains the service implementations of the emergency flow:
the controller that records events, the consent coordinator, the
notification dispatcher and the store protocol they share. The end-to-end
pipeline lives in escalation.services.pipeline.
"""

from .common import Result
from .consent import CachedLocationProvider, ConsentCoordinator, LocationProvider
from .controller import EmergencyController
from .notifications import ChannelSender, NotificationDispatcher
from .store import EmergencyStore, InMemoryEmergencyStore

__all__ = [
    "CachedLocationProvider",
    "ChannelSender",
    "ConsentCoordinator",
    "EmergencyController",
    "EmergencyStore",
    "InMemoryEmergencyStore",
    "LocationProvider",
    "NotificationDispatcher",
    "Result",
]
