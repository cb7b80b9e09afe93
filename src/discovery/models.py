"""
Discovery data structures and models
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

DEFAULT_CONTROL_URL = "/AVTransport/control"


class DiscoveryMethod(Enum):
    """How a device was found"""
    SSDP = "ssdp"
    MDNS = "mdns"
    PORT_SCAN = "port_scan"

    @property
    def precedence(self) -> int:
        """Higher wins when two methods report the same device"""
        return _METHOD_PRECEDENCE[self]


_METHOD_PRECEDENCE = {
    DiscoveryMethod.SSDP: 3,
    DiscoveryMethod.MDNS: 2,
    DiscoveryMethod.PORT_SCAN: 1,
}


class DeviceKind(Enum):
    SONOS = "sonos"
    CHROMECAST = "chromecast"
    DLNA_RENDERER = "dlna_renderer"
    UNKNOWN_UPNP = "unknown_upnp"
    AIRPLAY = "airplay"
    ROKU = "roku"
    SAMSUNG = "samsung"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DeviceClassification:
    """Best-effort device type; heuristic=True when only a port number backs it"""
    kind: DeviceKind
    heuristic: bool = False
    reason: str = ""

    @property
    def is_unknown(self) -> bool:
        return self.kind == DeviceKind.UNKNOWN


# (first port, last port, kind, brand shown in heuristic names)
PORT_HINTS: List[Tuple[int, int, DeviceKind, str]] = [
    (1400, 1410, DeviceKind.SONOS, "Sonos"),
    (8008, 8009, DeviceKind.CHROMECAST, "Chromecast"),
    (8200, 8205, DeviceKind.SAMSUNG, "Samsung"),
    (7000, 7000, DeviceKind.AIRPLAY, "AirPlay"),
    (7100, 7100, DeviceKind.AIRPLAY, "AirPlay"),
    (8060, 8060, DeviceKind.ROKU, "Roku"),
    (49152, 49170, DeviceKind.UNKNOWN_UPNP, "UPnP"),
]

# Substrings checked against name/manufacturer/model/type, in order
_NAME_HINTS: List[Tuple[str, DeviceKind]] = [
    ("sonos", DeviceKind.SONOS),
    ("chromecast", DeviceKind.CHROMECAST),
    ("googlecast", DeviceKind.CHROMECAST),
    ("google", DeviceKind.CHROMECAST),
    ("airplay", DeviceKind.AIRPLAY),
    ("apple", DeviceKind.AIRPLAY),
    ("roku", DeviceKind.ROKU),
    ("samsung", DeviceKind.SAMSUNG),
]


def port_hint(port: int) -> Optional[Tuple[DeviceKind, str]]:
    """Look up the well-known port table"""
    for first, last, kind, brand in PORT_HINTS:
        if first <= port <= last:
            return kind, brand
    return None


@dataclass
class Device:
    """Represents a discovered media renderer"""
    ip_address: str
    port: int
    friendly_name: str = ""
    device_type: str = ""
    manufacturer: str = ""
    model_name: str = ""
    control_url: str = DEFAULT_CONTROL_URL
    uuid: str = ""
    discovery_method: DiscoveryMethod = DiscoveryMethod.PORT_SCAN
    metadata: Dict[str, str] = field(default_factory=dict)
    last_seen: float = field(default_factory=time.time)

    @property
    def identity(self) -> Tuple[str, int]:
        """Dedup key; uuid is often missing for low-information methods"""
        return (self.ip_address, self.port)

    @property
    def base_url(self) -> str:
        return f"http://{self.ip_address}:{self.port}"

    @property
    def display_name(self) -> str:
        return self.friendly_name or f"{self.ip_address}:{self.port}"

    @property
    def classification(self) -> DeviceClassification:
        return classify_device(self)

    def copy(self) -> "Device":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict:
        classification = self.classification
        return {
            "ip_address": self.ip_address,
            "port": self.port,
            "friendly_name": self.friendly_name,
            "device_type": self.device_type,
            "manufacturer": self.manufacturer,
            "model_name": self.model_name,
            "control_url": self.control_url,
            "uuid": self.uuid,
            "discovery_method": self.discovery_method.value,
            "classification": classification.kind.value,
            "heuristic": classification.heuristic,
            "metadata": dict(self.metadata),
            "last_seen": self.last_seen,
        }


def classify_device(device: Device) -> DeviceClassification:
    """Map a device onto a DeviceKind from advertised fields, falling back to port guesses"""
    if device.discovery_method != DiscoveryMethod.PORT_SCAN:
        text = " ".join([
            device.friendly_name,
            device.manufacturer,
            device.model_name,
            device.device_type,
            device.metadata.get("service_type", ""),
        ]).lower()

        for needle, kind in _NAME_HINTS:
            if needle in text:
                return DeviceClassification(kind, reason=f"matched '{needle}'")

        service_type = device.metadata.get("service_type", "")
        if "_raop." in service_type:
            return DeviceClassification(DeviceKind.AIRPLAY, reason="raop service")

        if "MediaRenderer" in device.device_type:
            return DeviceClassification(DeviceKind.DLNA_RENDERER, reason="MediaRenderer device type")
        if device.device_type.startswith("urn:schemas-upnp-org:"):
            return DeviceClassification(DeviceKind.UNKNOWN_UPNP, reason="UPnP device type")

    hint = port_hint(device.port)
    if hint:
        kind, _ = hint
        return DeviceClassification(kind, heuristic=True, reason=f"port {device.port}")

    return DeviceClassification(DeviceKind.UNKNOWN, heuristic=True, reason="no match")


@dataclass(frozen=True)
class MethodStats:
    """Counters for a single discovery method during one run"""
    method: DiscoveryMethod
    devices_found: int = 0
    elapsed_ms: int = 0
    error: Optional[str] = None

    @property
    def efficiency(self) -> float:
        """Devices per second"""
        if self.elapsed_ms <= 0:
            return 0.0
        return self.devices_found / self.elapsed_ms * 1000


@dataclass(frozen=True)
class DiscoveryMethodStats:
    """Per-method statistics for a discovery run, updated copy-on-write"""
    ssdp: MethodStats = field(default_factory=lambda: MethodStats(DiscoveryMethod.SSDP))
    mdns: MethodStats = field(default_factory=lambda: MethodStats(DiscoveryMethod.MDNS))
    port_scan: MethodStats = field(default_factory=lambda: MethodStats(DiscoveryMethod.PORT_SCAN))

    def get(self, method: DiscoveryMethod) -> MethodStats:
        return getattr(self, method.value)

    def with_device(self, method: DiscoveryMethod) -> "DiscoveryMethodStats":
        current = self.get(method)
        return replace(self, **{method.value: replace(current, devices_found=current.devices_found + 1)})

    def with_elapsed(self, method: DiscoveryMethod, elapsed_ms: int,
                     error: Optional[str] = None) -> "DiscoveryMethodStats":
        current = self.get(method)
        return replace(self, **{method.value: replace(current, elapsed_ms=elapsed_ms, error=error)})

    @property
    def total_devices(self) -> int:
        return sum(self.get(m).devices_found for m in DiscoveryMethod)

    def most_effective_method(self) -> DiscoveryMethod:
        """Highest devices/second; ties resolve SSDP, then mDNS, then port scan"""
        best = DiscoveryMethod.SSDP
        for method in (DiscoveryMethod.MDNS, DiscoveryMethod.PORT_SCAN):
            if self.get(method).efficiency > self.get(best).efficiency:
                best = method
        return best

    def to_dict(self) -> Dict:
        result = {}
        for method in DiscoveryMethod:
            stats = self.get(method)
            result[method.value] = {
                "devices_found": stats.devices_found,
                "elapsed_ms": stats.elapsed_ms,
                "efficiency": round(stats.efficiency, 3),
                "error": stats.error,
            }
        result["most_effective_method"] = self.most_effective_method().value
        return result


@dataclass
class DiscoveryResult:
    """Results from a complete discovery run"""
    devices: List[Device]
    stats: DiscoveryMethodStats
    duration_ms: int
    from_cache: bool = False
