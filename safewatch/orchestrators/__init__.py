"""
Orchestrators for SafeWatch.

This module contains the engine that wires ports, adapters and services
together and runs the ingestion pipeline.
"""
from .orchestrator import SafetyEngine

__all__ = ["SafetyEngine"]
