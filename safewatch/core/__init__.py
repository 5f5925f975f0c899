"""
Core domain models and pure functions for SafeWatch.

This module contains the domain models, error kinds and pure business
logic (geospatial evaluation, transition rules) that are independent of
external I/O and infrastructure concerns.
"""

from .models import (
    Contact, Emergency, EventRecord, Geofence, GeoPoint, LocationUpdate,
    Notification, NotificationAttempt, Obligation, Timer, UserProfile,
)
from .errors import (
    AlreadyActiveError, ConcurrencyConflictError, ConfigurationError,
    DeliveryFailureError, InvalidTransitionError, NotFoundError, SafetyEngineError,
)
from .geo_eval import classify, route_deviation

__all__ = [
    "Contact", "Emergency", "EventRecord", "Geofence", "GeoPoint", "LocationUpdate",
    "Notification", "NotificationAttempt", "Obligation", "Timer", "UserProfile",
    "AlreadyActiveError", "ConcurrencyConflictError", "ConfigurationError",
    "DeliveryFailureError", "InvalidTransitionError", "NotFoundError", "SafetyEngineError",
    "classify", "route_deviation",
]
