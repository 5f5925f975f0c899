"""
Update ingestion adapters for SafeWatch.
"""

from .mqtt_ingestor import MqttUpdateIngestor

__all__ = ["MqttUpdateIngestor"]
