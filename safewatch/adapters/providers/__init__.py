"""
Channel provider adapters for SafeWatch.
"""

from .mqtt_push import MqttPushProvider
from .http_webhook import HttpWebhookProvider

__all__ = ["MqttPushProvider", "HttpWebhookProvider"]
