"""
Device control client: pushes a media URL to a renderer over UPnP AVTransport
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import aiohttp

from discovery.models import DEFAULT_CONTROL_URL, Device
from errors import SoapFaultError
from http_helper import create_device_session, probe_url
from .models import ControlResult
from .soap import (
    AVTRANSPORT_SERVICE_TYPE, RENDERING_CONTROL_SERVICE_TYPE, build_envelope,
    has_fault, parse_fault, play_arguments, response_value,
    set_av_transport_uri_arguments, soap_headers,
)

logger = logging.getLogger(__name__)

# Probe answers that still mean "speak SOAP to me"
TOLERATED_PROBE_STATUSES = (403, 404)


def resolve_control_url(device: Device, control_url: Optional[str] = None) -> str:
    """Absolute control URLs pass through; relative ones join URLBase or the device address"""
    control_url = control_url or device.control_url or DEFAULT_CONTROL_URL
    if urlparse(control_url).scheme in ("http", "https"):
        return control_url
    base = device.metadata.get("url_base") or f"{device.base_url}/"
    if not base.endswith("/"):
        base += "/"
    return urljoin(base, control_url)


def rendering_control_url(device: Device) -> str:
    explicit = device.metadata.get("rendering_control_url")
    if explicit:
        return resolve_control_url(device, explicit)
    # Most renderers mirror the AVTransport path
    return resolve_control_url(device).replace("AVTransport", "RenderingControl")


class DeviceControlClient:
    """Runs SetAVTransportURI, a settle delay, then Play against one device"""

    def __init__(self, config: Dict):
        self.config = config
        self.command_timeout = config.get('command_timeout_ms', 5000) / 1000
        self.settle_delay = config.get('settle_delay_ms', 200) / 1000
        self.probe_before_control = config.get('probe_before_control', True)
        self.probe_timeout = config.get('probe_timeout_ms', 1000) / 1000

    async def push_clip(self, device: Device, media_url: str) -> ControlResult:
        """Never raises for device-level problems; failures come back as a ControlResult"""
        start = time.monotonic()
        control_url = resolve_control_url(device)
        logger.info(f"[BLAST] Pushing {media_url} to {device.display_name} via {control_url}")

        if self.probe_before_control:
            await self._probe(device)

        async with create_device_session(self.command_timeout) as session:
            try:
                await self._call(session, control_url, AVTRANSPORT_SERVICE_TYPE, "SetAVTransportURI",
                                 set_av_transport_uri_arguments(media_url))
            except (SoapFaultError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                return self._failure(device, start, "SetAVTransportURI", e)

            await asyncio.sleep(self.settle_delay)

            try:
                await self._call(session, control_url, AVTRANSPORT_SERVICE_TYPE, "Play", play_arguments())
            except (SoapFaultError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                # URI set without playback is still a failure
                return self._failure(device, start, "Play", e)

        duration_ms = _elapsed_ms(start)
        logger.info(f"[OK] {device.display_name} playing ({duration_ms}ms)")
        return ControlResult(device.identity, True, duration_ms)

    async def stop(self, device: Device) -> ControlResult:
        start = time.monotonic()
        async with create_device_session(self.command_timeout) as session:
            try:
                await self._call(session, resolve_control_url(device), AVTRANSPORT_SERVICE_TYPE,
                                 "Stop", [("InstanceID", "0")])
            except (SoapFaultError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                return self._failure(device, start, "Stop", e)
        logger.info(f"Stopped playback on {device.display_name}")
        return ControlResult(device.identity, True, _elapsed_ms(start))

    async def get_transport_state(self, device: Device) -> Optional[str]:
        """CurrentTransportState (PLAYING, STOPPED, ...), None when the device does not answer"""
        async with create_device_session(self.command_timeout) as session:
            try:
                body = await self._call(session, resolve_control_url(device), AVTRANSPORT_SERVICE_TYPE,
                                        "GetTransportInfo", [("InstanceID", "0")])
            except (SoapFaultError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"GetTransportInfo failed for {device.display_name}: {_describe(e)}")
                return None
        return response_value(body, "CurrentTransportState") or "UNKNOWN"

    async def set_volume(self, device: Device, volume: int) -> bool:
        """Volume support is optional on renderers; failures are logged, not raised"""
        volume = max(0, min(100, int(volume)))
        arguments = [("InstanceID", "0"), ("Channel", "Master"), ("DesiredVolume", str(volume))]
        async with create_device_session(self.command_timeout) as session:
            try:
                await self._call(session, rendering_control_url(device), RENDERING_CONTROL_SERVICE_TYPE,
                                 "SetVolume", arguments)
            except (SoapFaultError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.info(f"Volume control not available on {device.display_name}: {_describe(e)}")
                return False
        logger.debug(f"Volume on {device.display_name} set to {volume}")
        return True

    async def _probe(self, device: Device):
        """Informational only; the control sequence is sent whatever the probe says"""
        status = await probe_url(f"{device.base_url}/", self.probe_timeout)
        if status is None:
            logger.debug(f"Probe of {device.display_name} got no answer, sending control anyway")
        elif status in TOLERATED_PROBE_STATUSES:
            logger.debug(f"Probe of {device.display_name} returned {status}, tolerated")

    async def _call(self, session: aiohttp.ClientSession, control_url: str, service_type: str,
                    action: str, arguments: List[Tuple[str, str]]) -> bytes:
        """POST one SOAP action; raises SoapFaultError on HTTP errors or Fault bodies"""
        body = build_envelope(service_type, action, arguments)

        async def post() -> Tuple[int, bytes]:
            async with session.post(control_url, data=body, headers=soap_headers(service_type, action)) as response:
                return response.status, await response.read()

        status, payload = await asyncio.wait_for(post(), self.command_timeout)
        if status >= 300 or has_fault(payload):
            raise SoapFaultError(action, status, **parse_fault(payload))
        logger.debug(f"{action} -> {control_url} OK")
        return payload

    def _failure(self, device: Device, start: float, action: str, error: Exception) -> ControlResult:
        detail = f"{action}: {_describe(error)}"
        logger.warning(f"[FAIL] {device.display_name}: {detail}")
        return ControlResult(device.identity, False, _elapsed_ms(start), error_detail=detail, failed_action=action)


def _describe(error: Exception) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "timed out"
    return str(error) or error.__class__.__name__


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
