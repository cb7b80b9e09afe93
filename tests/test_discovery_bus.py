import asyncio

from discovery.bus import DiscoveryBus
from discovery.models import DiscoveryMethod
from discovery.ssdp import SsdpDiscoverer
from errors import DiscoveryResourceError


class _FakeDiscoverer:
    """Yields scripted (delay_seconds, device) pairs; delays are relative to discover() start"""

    def __init__(self, method, script, error=None):
        self.method = method
        self.script = script
        self.error = error
        self.cancelled = False

    async def discover(self, deadline):
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            for delay, device in self.script:
                await asyncio.sleep(max(0.0, start + delay - loop.time()))
                yield device
            if self.error is not None:
                raise self.error
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def _bus(discoverers, **config):
    config.setdefault("enable_caching", False)
    return DiscoveryBus(config, discoverers=discoverers)


async def test_ssdp_and_port_scan_reports_merge_into_one_device(make_device) -> None:
    ssdp = make_device(name="Kitchen", manufacturer="Sonos", method=DiscoveryMethod.SSDP,
                       metadata={"location": "http://192.168.1.20:1400/xml/device_description.xml"})
    scan = make_device(name="Sonos at 192.168.1.20:1400", method=DiscoveryMethod.PORT_SCAN,
                       metadata={"open_port": "1400"})
    bus = _bus([
        _FakeDiscoverer(DiscoveryMethod.SSDP, [(0.1, ssdp)]),
        _FakeDiscoverer(DiscoveryMethod.PORT_SCAN, [(0.3, scan)]),
    ])

    emitted = [d async for d in bus.discover_all(2000)]

    assert [d.identity for d in emitted] == [("192.168.1.20", 1400)]
    merged = bus.get_device("192.168.1.20", 1400)
    assert merged.friendly_name == "Kitchen"
    assert merged.manufacturer == "Sonos"
    assert merged.metadata["open_port"] == "1400"
    assert "location" in merged.metadata
    assert bus.stats.ssdp.devices_found == 1
    assert bus.stats.port_scan.devices_found == 1


async def test_later_higher_precedence_report_goes_to_update_listeners(make_device) -> None:
    scan = make_device(name="Sonos at 192.168.1.20:1400", method=DiscoveryMethod.PORT_SCAN)
    ssdp = make_device(name="Kitchen", method=DiscoveryMethod.SSDP)
    bus = _bus([
        _FakeDiscoverer(DiscoveryMethod.PORT_SCAN, [(0.0, scan)]),
        _FakeDiscoverer(DiscoveryMethod.SSDP, [(0.1, ssdp)]),
    ])
    updates = []
    bus.add_update_listener(updates.append)

    emitted = [d async for d in bus.discover_all(1000)]

    assert len(emitted) == 1
    assert emitted[0].friendly_name == "Sonos at 192.168.1.20:1400"
    assert [u.friendly_name for u in updates] == ["Kitchen"]


async def test_discovery_ends_at_deadline_and_cancels_slow_discoverers(make_device) -> None:
    slow = _FakeDiscoverer(DiscoveryMethod.PORT_SCAN, [(5.0, make_device(method=DiscoveryMethod.PORT_SCAN))])
    bus = _bus([slow])
    loop = asyncio.get_running_loop()
    start = loop.time()

    emitted = [d async for d in bus.discover_all(200)]

    assert emitted == []
    assert loop.time() - start < 1.0
    assert slow.cancelled


async def test_failing_discoverer_does_not_stop_the_others(make_device) -> None:
    bus = _bus([
        _FakeDiscoverer(DiscoveryMethod.SSDP, [], error=DiscoveryResourceError("ssdp", "cannot bind")),
        _FakeDiscoverer(DiscoveryMethod.MDNS, [(0.05, make_device(name="Den TV", method=DiscoveryMethod.MDNS))]),
    ])

    result = await bus.discover(1000)

    assert [d.friendly_name for d in result.devices] == ["Den TV"]
    assert result.stats.ssdp.error == "ssdp: cannot bind"
    assert result.stats.mdns.devices_found == 1
    assert not result.from_cache


async def test_late_enrichment_is_merged_until_stopped(make_device) -> None:
    ssdp = SsdpDiscoverer({})
    bus = _bus([ssdp])
    bus._devices[("192.168.1.20", 1400)] = make_device()
    bus._accept_updates = True
    updates = []
    bus.add_update_listener(updates.append)

    enriched = make_device(name="Kitchen", metadata={"xml_parsed": "true"})
    ssdp.on_device_update(enriched)
    ssdp.on_device_update(enriched.copy())

    assert len(updates) == 1
    assert bus.get_device("192.168.1.20", 1400).friendly_name == "Kitchen"

    bus.stop()
    ssdp.on_device_update(make_device(name="Office", metadata={"xml_parsed": "true"}))
    assert bus.get_device("192.168.1.20", 1400).friendly_name == "Kitchen"


async def test_late_enrichment_for_unseen_device_is_ignored(make_device) -> None:
    ssdp = SsdpDiscoverer({})
    bus = _bus([ssdp])
    bus._accept_updates = True
    updates = []
    bus.add_update_listener(updates.append)

    ssdp.on_device_update(make_device(name="Kitchen", metadata={"xml_parsed": "true"}))

    assert updates == []
    assert bus.devices == []
    assert bus.get_device("192.168.1.20", 1400) is None


async def test_enrichment_ahead_of_its_search_response_is_applied_on_merge(make_device) -> None:
    bus = _bus([_FakeDiscoverer(DiscoveryMethod.SSDP, [(0.2, make_device())])])
    updates = []
    bus.add_update_listener(updates.append)
    enriched = make_device(name="Kitchen", metadata={"xml_parsed": "true"})
    asyncio.get_running_loop().call_later(0.05, bus._handle_late_update, enriched)

    emitted = [d async for d in bus.discover_all(1000)]

    assert [d.friendly_name for d in emitted] == ["Kitchen"]
    assert emitted[0].metadata["xml_parsed"] == "true"
    assert updates == []


async def test_fresh_cache_is_replayed_without_running_discoverers(make_device) -> None:
    first = _FakeDiscoverer(DiscoveryMethod.MDNS, [(0.0, make_device(name="Den TV", method=DiscoveryMethod.MDNS))])
    bus = _bus([first], enable_caching=True, cache_ttl_ms=60000)

    await bus.discover(500)
    first.script = []
    result = await bus.discover(500)

    assert result.from_cache
    assert [d.friendly_name for d in result.devices] == ["Den TV"]

    bus.clear_cache()
    assert not bus.cache_is_fresh()
