"""Device domain specific exceptions."""


class DeviceError(Exception):
    """Base class for device related domain errors."""


class DeviceNotFoundError(DeviceError):
    """Raised when the requested device could not be found."""


class DeviceDisabledError(DeviceError):
    """Raised when a device flagged invalid tries to connect or report."""
