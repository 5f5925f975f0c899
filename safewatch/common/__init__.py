"""
Common utilities for SafeWatch.

Geographic math, retry/backoff helpers and the injectable clock.
"""
