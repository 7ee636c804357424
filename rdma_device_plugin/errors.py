"""
Error taxonomy.

Errors stay local to the pool they happen in. The lifecycle decides
which ones are retried, the broker decides which ones are fatal.
"""


class PluginError(Exception):
    """Base class for all device plugin exceptions."""


class ConfigError(PluginError):
    """Raised when the configuration file or environment is invalid."""


class RegistrationError(PluginError):
    """
    Raised when the kubelet does not accept a registration.

    transient is True when the kubelet could not be reached at all,
    and False when it answered with an error.
    """

    def __init__(self, message, transient=True):
        super().__init__(message)
        self.transient = transient


class DeregistrationError(PluginError):
    """Raised when tearing down the registration fails remotely."""


class InvalidDevice(PluginError):
    """Raised when an allocation names a device that is absent or unhealthy."""

    def __init__(self, device_id: str, reason: str):
        super().__init__(f"device {device_id} is {reason}")
        self.device_id = device_id
        self.reason = reason


class StreamSendFailure(PluginError):
    """Raised when a watch subscriber can no longer receive snapshots."""


class PluginStopped(PluginError):
    """Raised when a call arrives after the plugin was cancelled."""
