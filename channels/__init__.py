"""Outbound message transports."""
from channels.webhook_transport import WebhookTransport

__all__ = ["WebhookTransport"]
