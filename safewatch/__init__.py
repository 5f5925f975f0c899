"""
SafeWatch safety coordination engine.

Tracks check-in and geofence obligations, runs the per-user emergency
state machine and delivers escalation notifications over multiple channels.
"""

__version__ = "0.1.0"
