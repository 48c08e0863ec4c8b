from .client import NotificationClient, ReconnectPolicy

__all__ = ["NotificationClient", "ReconnectPolicy"]
