"""
mDNS / DNS-SD discovery for cast-style renderers
Browses known service types with zeroconf and resolves each instance to host:port
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Dict, Optional, Set

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from errors import DiscoveryResourceError
from .models import Device, DiscoveryMethod

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_TYPES = [
    "_googlecast._tcp.local.",
    "_airplay._tcp.local.",
    "_raop._tcp.local.",
    "_dlna._tcp.local.",
]

# Used when SRV never resolves but an address did
_DEFAULT_PORTS = {
    "_googlecast._tcp.local.": 8009,
    "_airplay._tcp.local.": 7000,
    "_raop._tcp.local.": 7000,
    "_dlna._tcp.local.": 80,
}

_MANUFACTURER_BY_SERVICE = {
    "_googlecast._tcp.local.": "Google",
    "_airplay._tcp.local.": "Apple",
    "_raop._tcp.local.": "Apple",
}


def instance_name(name: str, service_type: str) -> str:
    """'Kitchen._googlecast._tcp.local.' -> 'Kitchen'"""
    suffix = "." + service_type
    if name.endswith(suffix):
        name = name[: -len(suffix)]
    # RAOP instances are 'MACADDR@Name'
    if "@" in name:
        name = name.split("@", 1)[1]
    return name


def decode_properties(properties: Optional[Dict]) -> Dict[str, str]:
    result = {}
    for key, value in (properties or {}).items():
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="ignore")
        if value is None:
            value = ""
        elif isinstance(value, bytes):
            value = value.decode("utf-8", errors="ignore")
        result[str(key)] = str(value)
    return result


def device_from_service_info(info, service_type: str, name: str) -> Optional[Device]:
    """Best-effort device from a (possibly partially) resolved service record"""
    addresses = info.parsed_addresses(IPVersion.V4Only)
    if not addresses:
        return None

    txt = decode_properties(info.properties)
    port = info.port or _DEFAULT_PORTS.get(service_type, 80)

    metadata = {f"txt_{key}": value for key, value in txt.items()}
    metadata["service_type"] = service_type
    metadata["mdns_name"] = name
    if info.server:
        metadata["mdns_server"] = info.server
    if not info.port:
        metadata["partial_resolution"] = "true"

    friendly_name = txt.get("fn") or instance_name(name, service_type)
    model_name = txt.get("md") or txt.get("model") or txt.get("am") or ""

    return Device(
        ip_address=addresses[0],
        port=port,
        friendly_name=friendly_name,
        device_type=service_type.rstrip("."),
        manufacturer=_MANUFACTURER_BY_SERVICE.get(service_type, ""),
        model_name=model_name,
        uuid=txt.get("id", ""),
        discovery_method=DiscoveryMethod.MDNS,
        metadata=metadata,
    )


class MdnsDiscoverer:
    """Browses DNS-SD service types and emits resolved instances"""

    method = DiscoveryMethod.MDNS

    def __init__(self, config: Dict, zeroconf_factory: Callable[[], AsyncZeroconf] = AsyncZeroconf):
        self.config = config
        self.service_types = config.get('mdns_service_types', DEFAULT_SERVICE_TYPES)
        self.resolve_timeout_ms = config.get('mdns_resolve_timeout_ms', 1500)
        self._zeroconf_factory = zeroconf_factory

    async def discover(self, deadline: float) -> AsyncIterator[Device]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        resolve_tasks: Set[asyncio.Task] = set()

        try:
            azc = self._zeroconf_factory()
        except OSError as e:
            raise DiscoveryResourceError("mdns", f"cannot open zeroconf sockets: {e}") from e

        async def resolve(service_type: str, name: str):
            info = AsyncServiceInfo(service_type, name)
            resolved = await info.async_request(azc.zeroconf, self.resolve_timeout_ms)
            if not resolved:
                logger.debug(f"[SEARCH] Partial mDNS resolution for {name}")
            device = device_from_service_info(info, service_type, name)
            if device is None:
                logger.debug(f"[SEARCH] No IPv4 address for {name}, skipping")
                return
            await queue.put(device)

        def on_change(zeroconf, service_type, name, state_change):
            if state_change is not ServiceStateChange.Added:
                return
            task = loop.create_task(resolve(service_type, name))
            resolve_tasks.add(task)
            task.add_done_callback(resolve_tasks.discard)

        browsers = []
        seen = set()
        try:
            for service_type in self.service_types:
                browsers.append(AsyncServiceBrowser(azc.zeroconf, service_type, handlers=[on_change]))
            logger.info(f"[SEARCH] mDNS browsing {len(self.service_types)} service types")

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    device = await asyncio.wait_for(queue.get(), remaining)
                except asyncio.TimeoutError:
                    break

                if device.identity in seen:
                    continue
                seen.add(device.identity)
                device.last_seen = time.time()
                logger.info(f"[OK] mDNS found '{device.friendly_name}' at {device.ip_address}:{device.port}")
                yield device
        finally:
            for task in list(resolve_tasks):
                task.cancel()
            for browser in browsers:
                await browser.async_cancel()
            await azc.async_close()
