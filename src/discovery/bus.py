"""
Discovery bus: runs SSDP, mDNS and port scan side by side under one deadline
and merges their output into a single device stream keyed by (ip, port)
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from errors import DiscoveryResourceError
from .merge import MergePolicy
from .mdns import MdnsDiscoverer
from .models import Device, DiscoveryMethod, DiscoveryMethodStats, DiscoveryResult
from .port_scan import PortScanDiscoverer
from .ssdp import SsdpDiscoverer

logger = logging.getLogger(__name__)

DeviceListener = Callable[[Device], None]
ProgressListener = Callable[[int, int], None]
StatsListener = Callable[[DiscoveryMethodStats], None]

_DONE = object()


class DiscoveryBus:
    """Fans out to the enabled discoverers and merges what they report"""

    def __init__(self, config: Dict, discoverers: Optional[List] = None,
                 policy: Optional[MergePolicy] = None):
        self.config = config
        self.default_timeout_ms = config.get('timeout_ms', 4000)
        self.enable_caching = config.get('enable_caching', True)
        self.cache_ttl = config.get('cache_ttl_ms', 60000) / 1000
        self.policy = policy or MergePolicy(config.get('generic_name_patterns'))

        self._update_listeners: List[DeviceListener] = []
        self._progress_listeners: List[ProgressListener] = []
        self._stats_listeners: List[StatsListener] = []

        if discoverers is None:
            discoverers = self._build_discoverers()
        self.discoverers = discoverers
        for discoverer in self.discoverers:
            if isinstance(discoverer, SsdpDiscoverer):
                discoverer.on_device_update = self._handle_late_update
                discoverer.on_xml_progress = self._handle_xml_progress

        self._devices: Dict[Tuple[str, int], Device] = {}
        self._cache: Optional[Tuple[float, List[Device]]] = None
        self._accept_updates = False
        self._collecting = False
        self._early_updates: Dict[Tuple[str, int], Device] = {}
        self.stats = DiscoveryMethodStats()
        self.xml_in_flight = 0
        self.xml_completed = 0

    def _build_discoverers(self) -> List:
        discoverers = []
        if self.config.get('enable_ssdp', True):
            discoverers.append(SsdpDiscoverer(self.config))
        if self.config.get('enable_mdns', True):
            discoverers.append(MdnsDiscoverer(self.config))
        if self.config.get('enable_port_scan', True):
            discoverers.append(PortScanDiscoverer(self.config))
        return discoverers

    # ================== LISTENERS ==================

    def add_update_listener(self, callback: DeviceListener):
        """Receives merged devices when a later report or a description fetch changes them"""
        self._update_listeners.append(callback)

    def add_progress_listener(self, callback: ProgressListener):
        """Receives (in_flight, completed) description fetch counters"""
        self._progress_listeners.append(callback)

    def add_stats_listener(self, callback: StatsListener):
        self._stats_listeners.append(callback)

    def _notify(self, listeners: List[Callable], *args):
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Discovery listener failed: {e}")

    # ================== MERGE ==================

    @property
    def devices(self) -> List[Device]:
        return [device.copy() for device in self._devices.values()]

    def get_device(self, ip: str, port: int) -> Optional[Device]:
        device = self._devices.get((ip, port))
        return device.copy() if device else None

    def merge(self, incoming: Device, enrichment: bool = False) -> Tuple[Device, bool]:
        """Merge into the current device map; returns (merged copy, changed)"""
        existing = self._devices.get(incoming.identity)
        if existing is None:
            stored = incoming.copy()
            self._devices[incoming.identity] = stored
            return stored.copy(), True

        before = existing.copy()
        self.policy.merge(existing, incoming, enrichment=enrichment)
        changed = _core_view(before) != _core_view(existing)
        return existing.copy(), changed

    def _handle_late_update(self, enriched: Device):
        if not self._accept_updates:
            logger.debug(f"[XML] Discarding late update for {enriched.identity}, discovery was stopped")
            return
        if enriched.identity not in self._devices:
            if self._collecting:
                # Search response still queued, applied when it is merged
                self._early_updates[enriched.identity] = enriched
            else:
                logger.debug(f"[XML] Discarding late update for unseen {enriched.identity}")
            return
        merged, changed = self.merge(enriched, enrichment=True)
        if changed:
            self._notify(self._update_listeners, merged)

    def _handle_xml_progress(self, in_flight: int, completed: int):
        if not self._accept_updates:
            return
        self.xml_in_flight = in_flight
        self.xml_completed = completed
        self._notify(self._progress_listeners, in_flight, completed)

    # ================== DISCOVERY ==================

    def cache_is_fresh(self) -> bool:
        if not self.enable_caching or self._cache is None:
            return False
        cached_at, _ = self._cache
        return time.monotonic() - cached_at < self.cache_ttl

    def clear_cache(self):
        self._cache = None
        logger.info("Discovery cache cleared")

    def stop(self):
        """Stop accepting late enrichment and cancel outstanding description fetches"""
        self._accept_updates = False
        for discoverer in self.discoverers:
            if isinstance(discoverer, SsdpDiscoverer):
                discoverer.cancel_enrichment()

    async def discover_all(self, timeout_ms: Optional[int] = None) -> AsyncIterator[Device]:
        """
        Yield each device once, on first sighting, ending at the deadline
        Later reports that change a merged record go to the update listeners
        """
        if timeout_ms is None:
            timeout_ms = self.default_timeout_ms

        if self.cache_is_fresh():
            _, cached = self._cache
            logger.info(f"[SEARCH] Using cached discovery results ({len(cached)} devices)")
            self._devices = {device.identity: device.copy() for device in cached}
            for device in cached:
                yield device.copy()
            return

        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + timeout_ms / 1000

        self._devices = {}
        self.stats = DiscoveryMethodStats()
        self.xml_in_flight = 0
        self.xml_completed = 0
        self._accept_updates = True
        self._collecting = True
        self._early_updates = {}
        for discoverer in self.discoverers:
            if isinstance(discoverer, SsdpDiscoverer):
                discoverer.reset_progress()

        methods = ", ".join(d.method.value for d in self.discoverers) or "none"
        logger.info(f"[SEARCH] Discovery started ({methods}), timeout {timeout_ms}ms")

        queue: asyncio.Queue = asyncio.Queue()
        pumps = [asyncio.create_task(self._pump(d, deadline, start, queue)) for d in self.discoverers]
        running = len(pumps)
        completed = False

        try:
            while running > 0:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), remaining)
                except asyncio.TimeoutError:
                    break

                if item is _DONE:
                    running -= 1
                    continue

                method, device = item
                self.stats = self.stats.with_device(method)
                is_new = device.identity not in self._devices
                merged, changed = self.merge(device)
                early = self._early_updates.pop(device.identity, None)
                if early is not None:
                    merged, _ = self.merge(early, enrichment=True)
                self._notify(self._stats_listeners, self.stats)
                if is_new:
                    yield merged
                elif changed:
                    self._notify(self._update_listeners, merged)
            completed = True
        finally:
            self._collecting = False
            self._early_updates = {}
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)

            elapsed_ms = int((loop.time() - start) * 1000)
            for discoverer in self.discoverers:
                if self.stats.get(discoverer.method).elapsed_ms == 0:
                    self.stats = self.stats.with_elapsed(discoverer.method, elapsed_ms,
                                                         self.stats.get(discoverer.method).error)

            if completed and self.enable_caching:
                self._cache = (time.monotonic(), [device.copy() for device in self._devices.values()])

            logger.info(f"[PASS] Discovery finished: {len(self._devices)} devices in {elapsed_ms}ms "
                        f"(most effective: {self.stats.most_effective_method().value})")

    async def _pump(self, discoverer, deadline: float, start: float, queue: asyncio.Queue):
        """Forward one discoverer's devices to the merge queue and record its timing"""
        loop = asyncio.get_running_loop()
        method: DiscoveryMethod = discoverer.method
        error = None
        try:
            async for device in discoverer.discover(deadline):
                await queue.put((method, device))
        except DiscoveryResourceError as e:
            error = str(e)
            logger.error(f"[FAIL] {method.value} discovery unavailable: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = str(e)
            logger.error(f"[FAIL] {method.value} discovery failed: {e}")
        finally:
            elapsed_ms = int((loop.time() - start) * 1000)
            self.stats = self.stats.with_elapsed(method, elapsed_ms, error)
        await queue.put(_DONE)

    async def discover(self, timeout_ms: Optional[int] = None) -> DiscoveryResult:
        """Run discover_all to completion and return the merged device list"""
        start = time.monotonic()
        from_cache = self.cache_is_fresh()
        async for _ in self.discover_all(timeout_ms):
            pass
        return DiscoveryResult(
            devices=self.devices,
            stats=self.stats,
            duration_ms=int((time.monotonic() - start) * 1000),
            from_cache=from_cache,
        )


def _core_view(device: Device):
    return (
        device.friendly_name,
        device.device_type,
        device.manufacturer,
        device.model_name,
        device.control_url,
        device.uuid,
        device.discovery_method,
        tuple(sorted(device.metadata.items())),
    )
