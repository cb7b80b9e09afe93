"""
Control module for pushing media to UPnP renderers
"""

from .client import DeviceControlClient, resolve_control_url
from .models import ControlResult

__all__ = ['DeviceControlClient', 'ControlResult', 'resolve_control_url']
