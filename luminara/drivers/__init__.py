"""Transport drivers."""

from .base import BaseDriver, DriverResponse
from .httpx_driver import DriverConfig, HttpxDriver

__all__ = [
    "BaseDriver",
    "DriverResponse",
    "DriverConfig",
    "HttpxDriver",
]
