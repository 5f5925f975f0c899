"""
Port interfaces for SafeWatch hexagonal architecture.

This module defines the port interfaces (Protocols) that define
the contracts between the engine core and external adapters.
"""

from .ingest import UpdateIngestPort
from .providers import ChannelProviderPort
from .contacts import ContactDirectoryPort
from .persistence import SafetyStorePort

__all__ = ["UpdateIngestPort", "ChannelProviderPort", "ContactDirectoryPort", "SafetyStorePort"]
