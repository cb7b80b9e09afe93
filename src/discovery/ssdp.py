"""
SSDP discovery for UPnP/DLNA media renderers
Sends M-SEARCH over UDP multicast and enriches responders from their description XML
"""

import asyncio
import logging
import time
import xml.etree.ElementTree as ET
from typing import AsyncIterator, Callable, Dict, Optional, Set
from urllib.parse import urlparse

import aiohttp

from errors import DiscoveryResourceError
from http_helper import create_device_session
from .models import Device, DiscoveryMethod

logger = logging.getLogger(__name__)

SSDP_MCAST_ADDR = "239.255.255.250"
SSDP_PORT = 1900

DEFAULT_SEARCH_TARGETS = [
    "ssdp:all",
    "urn:schemas-upnp-org:device:MediaRenderer:1",
    "urn:schemas-upnp-org:service:AVTransport:1",
]

SONOS_CONTROL_URL = "/MediaRenderer/AVTransport/Control"
GENERIC_UPNP_CONTROL_URL = "/upnp/control/AVTransport1"

# (substring of lowercased SERVER header, manufacturer)
_SERVER_MANUFACTURERS = [
    ("sonos", "Sonos"),
    ("chromecast", "Google"),
    ("google", "Google"),
    ("samsung", "Samsung"),
    ("lge", "LG"),
    ("webos", "LG"),
    ("roku", "Roku"),
    ("yamaha", "Yamaha"),
    ("denon", "Denon"),
    ("heos", "Denon"),
    ("bose", "Bose"),
    ("philips", "Philips"),
    ("sony", "Sony"),
]

DeviceUpdateCallback = Callable[[Device], None]
XmlProgressCallback = Callable[[int, int], None]


def build_msearch(search_target: str, mx: int) -> bytes:
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_MCAST_ADDR}:{SSDP_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n\r\n"
    ).encode("utf-8")


def parse_ssdp_response(data: bytes) -> Dict[str, str]:
    """Parse an HTTP-over-UDP search response into lowercase headers, {} if it is not one"""
    text = data.decode("utf-8", errors="ignore")
    lines = text.replace("\r\n", "\n").split("\n")
    status_line = lines[0].strip().upper() if lines else ""
    if not (status_line.startswith("HTTP/1.1 200") or status_line.startswith("HTTP/1.0 200")
            or status_line.startswith("NOTIFY")):
        return {}

    headers = {}
    for line in lines[1:]:
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


def manufacturer_from_server(server: str) -> str:
    lowered = server.lower()
    for needle, manufacturer in _SERVER_MANUFACTURERS:
        if needle in lowered:
            return manufacturer
    return ""


def guess_control_url(server: str, port: int) -> str:
    """Provisional AVTransport path until the description XML says otherwise"""
    if port == 1400 or "sonos" in server.lower():
        return SONOS_CONTROL_URL
    return GENERIC_UPNP_CONTROL_URL


def uuid_from_usn(usn: str) -> str:
    udn = usn.split("::", 1)[0]
    if udn.lower().startswith("uuid:"):
        udn = udn[5:]
    return udn


def device_from_response(headers: Dict[str, str], sender_ip: str) -> Optional[Device]:
    """Build the provisional device for a search response; None without LOCATION"""
    location = headers.get("location")
    if not location:
        return None

    parsed = urlparse(location)
    ip = parsed.hostname or sender_ip
    try:
        port = parsed.port or 80
    except ValueError:
        logger.debug(f"Bad port in LOCATION {location!r} from {sender_ip}")
        return None

    st = headers.get("st", headers.get("nt", ""))
    server = headers.get("server", "")
    usn = headers.get("usn", "")
    manufacturer = manufacturer_from_server(server)

    metadata = {"location": location}
    for key in ("st", "usn", "server"):
        if headers.get(key):
            metadata[key] = headers[key]

    return Device(
        ip_address=ip,
        port=port,
        friendly_name=f"{manufacturer or 'UPnP'} Device at {ip}:{port}",
        device_type=st if ":device:" in st else "",
        manufacturer=manufacturer,
        control_url=guess_control_url(server, port),
        uuid=uuid_from_usn(usn) if usn else "",
        discovery_method=DiscoveryMethod.SSDP,
        metadata=metadata,
    )


def parse_device_description(xml_data: bytes) -> Dict[str, str]:
    """
    Extract the fields we care about from a UPnP device description
    Raises ET.ParseError on malformed XML
    """
    root = ET.fromstring(xml_data)
    device = root.find("{*}device")
    if device is None:
        device = root

    fields = {
        "friendly_name": device.findtext("{*}friendlyName") or "",
        "manufacturer": device.findtext("{*}manufacturer") or "",
        "model_name": device.findtext("{*}modelName") or "",
        "model_number": device.findtext("{*}modelNumber") or "",
        "udn": device.findtext("{*}UDN") or "",
        "device_type": device.findtext("{*}deviceType") or "",
        "url_base": root.findtext("{*}URLBase") or "",
        "av_transport_control_url": "",
        "rendering_control_url": "",
    }

    # Embedded devices (e.g. a MediaRenderer under a ZonePlayer) carry the services
    for service in root.findall(".//{*}service"):
        service_type = service.findtext("{*}serviceType") or ""
        control_url = (service.findtext("{*}controlURL") or "").strip()
        if not control_url:
            continue
        if "AVTransport" in service_type and not fields["av_transport_control_url"]:
            fields["av_transport_control_url"] = control_url
        elif "RenderingControl" in service_type and not fields["rendering_control_url"]:
            fields["rendering_control_url"] = control_url

    return {key: value.strip() for key, value in fields.items()}


def enrich_device(device: Device, fields: Dict[str, str]) -> Device:
    """Return a copy of device carrying the description XML fields"""
    enriched = device.copy()
    if fields["friendly_name"]:
        enriched.friendly_name = fields["friendly_name"]
    if fields["manufacturer"]:
        enriched.manufacturer = fields["manufacturer"]
    if fields["model_name"]:
        enriched.model_name = fields["model_name"]
    if fields["device_type"]:
        enriched.device_type = fields["device_type"]
    if fields["av_transport_control_url"]:
        enriched.control_url = fields["av_transport_control_url"]
    if fields["udn"]:
        enriched.uuid = uuid_from_usn(fields["udn"])

    enriched.metadata["xml_parsed"] = "true"
    for key in ("udn", "model_number", "url_base", "rendering_control_url"):
        if fields[key]:
            enriched.metadata[key] = fields[key]
    enriched.last_seen = time.time()
    return enriched


class _SearchProtocol(asyncio.DatagramProtocol):
    """Pushes every datagram onto a queue for the discover loop"""

    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    def datagram_received(self, data, addr):
        self.queue.put_nowait((data, addr))

    def error_received(self, exc):
        logger.debug(f"SSDP socket error: {exc}")


class SsdpDiscoverer:
    """UDP multicast M-SEARCH discoverer with asynchronous description fetches"""

    method = DiscoveryMethod.SSDP

    def __init__(self, config: Dict,
                 on_device_update: Optional[DeviceUpdateCallback] = None,
                 on_xml_progress: Optional[XmlProgressCallback] = None):
        self.config = config
        self.mx = config.get('ssdp_mx', 2)
        self.search_targets = config.get('ssdp_search_targets', DEFAULT_SEARCH_TARGETS)
        self.xml_timeout = config.get('xml_fetch_timeout_ms', 3000) / 1000
        self.on_device_update = on_device_update
        self.on_xml_progress = on_xml_progress

        self.xml_in_flight = 0
        self.xml_completed = 0
        self._xml_tasks: Set[asyncio.Task] = set()

    async def discover(self, deadline: float) -> AsyncIterator[Device]:
        """Yield one device per LOCATION host:port until the loop time reaches deadline"""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _SearchProtocol(queue),
                local_addr=("0.0.0.0", 0),
            )
        except OSError as e:
            raise DiscoveryResourceError("ssdp", f"cannot bind search socket: {e}") from e

        seen = set()
        try:
            for search_target in self.search_targets:
                transport.sendto(build_msearch(search_target, self.mx), (SSDP_MCAST_ADDR, SSDP_PORT))
            logger.info(f"[SEARCH] SSDP M-SEARCH sent for {len(self.search_targets)} search targets")

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    data, addr = await asyncio.wait_for(queue.get(), remaining)
                except asyncio.TimeoutError:
                    break

                headers = parse_ssdp_response(data)
                if not headers:
                    continue
                device = device_from_response(headers, addr[0])
                if device is None or device.identity in seen:
                    continue

                seen.add(device.identity)
                logger.info(f"[OK] SSDP response from {device.ip_address}:{device.port} ({headers.get('server', 'unknown server')})")
                self._schedule_description_fetch(device, headers["location"])
                yield device
        finally:
            transport.close()

    def _schedule_description_fetch(self, device: Device, location: str):
        task = asyncio.create_task(self._fetch_description(device, location))
        self._xml_tasks.add(task)
        task.add_done_callback(self._xml_tasks.discard)

    async def _fetch_description(self, device: Device, location: str):
        """Fetch description XML and deliver the enriched device through on_device_update"""
        self.xml_in_flight += 1
        self._report_progress()
        try:
            async with create_device_session(self.xml_timeout) as session:
                async with session.get(location) as response:
                    if response.status != 200:
                        logger.debug(f"[XML] {location} answered HTTP {response.status}, keeping heuristic fields")
                        return
                    body = await response.read()

            fields = parse_device_description(body)
            enriched = enrich_device(device, fields)
            logger.info(f"[XML] {device.ip_address}:{device.port} is '{enriched.friendly_name}' ({enriched.manufacturer or 'unknown manufacturer'})")
            if self.on_device_update:
                self.on_device_update(enriched)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"[XML] Fetch failed for {location}: {e}")
        except ET.ParseError as e:
            logger.warning(f"[XML] Malformed description at {location}: {e}")
        finally:
            self.xml_in_flight -= 1
            self.xml_completed += 1
            self._report_progress()

    def _report_progress(self):
        if self.on_xml_progress:
            self.on_xml_progress(self.xml_in_flight, self.xml_completed)

    async def wait_for_enrichment(self, timeout: Optional[float] = None):
        """Wait for outstanding description fetches"""
        if self._xml_tasks:
            await asyncio.wait(set(self._xml_tasks), timeout=timeout)

    def cancel_enrichment(self):
        for task in list(self._xml_tasks):
            task.cancel()

    def reset_progress(self):
        self.xml_completed = 0
