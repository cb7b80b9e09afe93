"""
Brute-force TCP port scan for renderers that answer neither SSDP nor mDNS
"""

import asyncio
import ipaddress
import logging
import socket
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .models import DEFAULT_CONTROL_URL, Device, DiscoveryMethod, port_hint
from .ssdp import SONOS_CONTROL_URL

logger = logging.getLogger(__name__)

PORT_SPECTRUM: List[int] = (
    [80, 443]
    + list(range(1400, 1411))
    + [5000, 7000, 7100]
    + list(range(8008, 8100))
    + list(range(8200, 8206))
    + [8873]
    + list(range(9000, 9011))
    + list(range(10000, 10011))
    + list(range(49152, 49171))
    + [50002]
)

_BRAND_MANUFACTURERS = {
    "Sonos": "Sonos",
    "Chromecast": "Google",
    "Samsung": "Samsung",
    "AirPlay": "Apple",
    "Roku": "Roku",
}

PortProbe = Callable[[str, int, float], Awaitable[bool]]


async def tcp_probe(host: str, port: int, timeout: float) -> bool:
    """True if a TCP connect succeeds within timeout"""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def build_port_list(custom_ports: Optional[List[int]] = None,
                    port_priority: Optional[Dict[int, int]] = None) -> List[int]:
    """Spectrum plus custom ports, highest priority first (stable for ties)"""
    ports = list(PORT_SPECTRUM)
    for port in custom_ports or []:
        if port not in ports:
            ports.append(port)
    priority = {int(k): v for k, v in (port_priority or {}).items()}
    return sorted(ports, key=lambda p: -priority.get(p, 0))


def generate_ip_range(ip_ranges: List[str]) -> List[str]:
    """Expand 'a.b.c.d-a.b.c.e' ranges and CIDR blocks into host addresses"""
    all_ips = []
    for ip_range in ip_ranges:
        if '-' in ip_range:
            start_ip, end_ip = ip_range.split('-')
            current = ipaddress.IPv4Address(start_ip.strip())
            end = ipaddress.IPv4Address(end_ip.strip())
            while current <= end:
                all_ips.append(str(current))
                current += 1
        else:
            try:
                network = ipaddress.IPv4Network(ip_range.strip(), strict=False)
                all_ips.extend(str(ip) for ip in network.hosts())
            except ValueError:
                logger.warning(f"Invalid IP range: {ip_range}")
    return all_ips


def get_local_ip() -> Optional[str]:
    """Primary IPv4 address used for outbound traffic, None when offline"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent for a UDP connect
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return None
    finally:
        sock.close()


def local_subnet_hosts() -> List[str]:
    local_ip = get_local_ip()
    if not local_ip or local_ip.startswith("127."):
        return []
    network = ipaddress.IPv4Network(f"{local_ip}/24", strict=False)
    return [str(ip) for ip in network.hosts() if str(ip) != local_ip]


def device_from_open_port(ip: str, port: int) -> Device:
    """Heuristic device for an open port, named from the well-known port table"""
    hint = port_hint(port)
    brand = hint[1] if hint else ""
    metadata = {"open_port": str(port)}
    if brand:
        metadata["port_hint"] = brand

    return Device(
        ip_address=ip,
        port=port,
        friendly_name=f"{brand} at {ip}:{port}" if brand else f"Device at {ip}:{port}",
        manufacturer=_BRAND_MANUFACTURERS.get(brand, ""),
        control_url=SONOS_CONTROL_URL if brand == "Sonos" else DEFAULT_CONTROL_URL,
        discovery_method=DiscoveryMethod.PORT_SCAN,
        metadata=metadata,
    )


class PortScanDiscoverer:
    """Scans candidate hosts across the port spectrum under a socket cap"""

    method = DiscoveryMethod.PORT_SCAN

    def __init__(self, config: Dict, probe: PortProbe = tcp_probe,
                 hosts: Optional[List[str]] = None):
        self.config = config
        self.timeout = config.get('port_scan_timeout_ms', 200) / 1000
        self.max_sockets = config.get('port_scan_concurrency', 64)
        self.ports = build_port_list(config.get('custom_ports'), config.get('port_priority'))
        self.ip_ranges = config.get('ip_ranges') or []
        self._probe = probe
        self._hosts = hosts

    def candidate_hosts(self) -> List[str]:
        if self._hosts is not None:
            return list(self._hosts)
        if self.ip_ranges:
            return generate_ip_range(self.ip_ranges)
        return local_subnet_hosts()

    async def discover(self, deadline: float) -> AsyncIterator[Device]:
        loop = asyncio.get_running_loop()
        hosts = self.candidate_hosts()
        if not hosts:
            logger.warning("[SEARCH] Port scan has no candidate hosts (could not determine local network)")
            return

        queue: asyncio.Queue = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.max_sockets)

        async def scan_host(ip: str):
            for port in self.ports:
                async with semaphore:
                    is_open = await self._probe(ip, port, self.timeout)
                if is_open:
                    # One port per host is enough to report it
                    await queue.put(device_from_open_port(ip, port))
                    return

        logger.info(f"[SEARCH] Port scanning {len(hosts)} hosts x {len(self.ports)} ports "
                    f"(timeout {self.timeout * 1000:.0f}ms, {self.max_sockets} sockets)")
        tasks = [asyncio.create_task(scan_host(ip)) for ip in hosts]
        all_done = asyncio.ensure_future(asyncio.gather(*tasks, return_exceptions=True))
        getter = None

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                if all_done.done() and queue.empty():
                    break

                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, all_done}, timeout=remaining,
                                             return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    device = getter.result()
                    logger.info(f"[OK] Open port {device.ip_address}:{device.port} ({device.friendly_name})")
                    yield device
                else:
                    getter.cancel()
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
