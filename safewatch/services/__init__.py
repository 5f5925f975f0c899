"""
Domain services for SafeWatch.

Obligation scheduling, the emergency state machine, durable timers,
optimistic-concurrency helpers and event log replay live here.
"""
