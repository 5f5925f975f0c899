"""
Adapters for SafeWatch.

This module contains adapter implementations for the ports:
SQLite persistence, channel providers, contact directories and
update ingestion.
"""
