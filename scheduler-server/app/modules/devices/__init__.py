"""Device registry module."""

from .exceptions import DeviceDisabledError, DeviceError, DeviceNotFoundError
from .models import Device, DeviceSummary
from .repository import DeviceRepository
from .service import DeviceService

__all__ = [
    "Device",
    "DeviceDisabledError",
    "DeviceError",
    "DeviceNotFoundError",
    "DeviceRepository",
    "DeviceService",
    "DeviceSummary",
]
