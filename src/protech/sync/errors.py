"""Exceptions raised by the sync core."""


class SyncError(Exception):
    """Base exception for sync operations."""


class DeliveryError(SyncError):
    """A queued operation could not be delivered to the remote backend."""


class InsecureTransportError(DeliveryError):
    """The remote URL is plain HTTP while HTTPS is required."""


class StaleConnectionError(DeliveryError):
    """The remote client was reconfigured after the delivery was scheduled."""


class SettingsPersistenceError(SyncError):
    """A settings value could not be written to the settings store."""
