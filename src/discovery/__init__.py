"""
Discovery module for network media renderers
"""

from .bus import DiscoveryBus
from .merge import MergePolicy
from .models import (
    Device, DeviceClassification, DeviceKind, DiscoveryMethod,
    DiscoveryMethodStats, DiscoveryResult, MethodStats, classify_device,
)
from .mdns import MdnsDiscoverer
from .port_scan import PortScanDiscoverer
from .ssdp import SsdpDiscoverer

__all__ = [
    'DiscoveryBus', 'MergePolicy', 'Device', 'DeviceClassification', 'DeviceKind',
    'DiscoveryMethod', 'DiscoveryMethodStats', 'DiscoveryResult', 'MethodStats',
    'classify_device', 'MdnsDiscoverer', 'PortScanDiscoverer', 'SsdpDiscoverer',
]
