"""
Observability for SafeWatch.

Logging setup, Prometheus metrics and the health/metrics HTTP endpoints.
"""
