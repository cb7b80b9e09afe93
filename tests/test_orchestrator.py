import asyncio

import pytest

from blast.media import StaticUrlMediaServer
from blast.metrics import RunOutcome
from blast.orchestrator import BlastOrchestrator
from blast.state import BlastState, DeviceStatus
from control.models import ControlResult
from discovery.bus import DiscoveryBus
from discovery.models import Device, DiscoveryMethod
from errors import ConfigurationError, InvalidStateTransition

MEDIA_URL = "http://192.168.1.10:8080/media/current.mp3"


class _FakeDiscoverer:
    def __init__(self, devices, method=DiscoveryMethod.SSDP, hang=False):
        self.method = method
        self.devices = devices
        self.hang = hang

    async def discover(self, deadline):
        for device in self.devices:
            yield device.copy()
        if self.hang:
            await asyncio.sleep(30)


class _FakeControl:
    """push_clip sleeps `delay` and records peak concurrency"""

    def __init__(self, delay=0.1, fail_ips=(), hang=False):
        self.delay = delay
        self.fail_ips = set(fail_ips)
        self.hang = hang
        self.calls = []
        self.in_flight = 0
        self.peak = 0
        self.first_start = None
        self.last_end = None

    async def push_clip(self, device, media_url):
        loop = asyncio.get_running_loop()
        self.calls.append((device, media_url))
        self.first_start = self.first_start or loop.time()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(30 if self.hang else self.delay)
        finally:
            self.in_flight -= 1
        self.last_end = loop.time()
        if device.ip_address in self.fail_ips:
            return ControlResult(device.identity, False, int(self.delay * 1000),
                                 error_detail="Play: timed out", failed_action="Play")
        return ControlResult(device.identity, True, int(self.delay * 1000))


def _devices(count):
    return [Device(ip_address=f"192.168.1.{20 + i}", port=1400, friendly_name=f"Speaker {i}",
                   manufacturer="Sonos", discovery_method=DiscoveryMethod.SSDP)
            for i in range(count)]


def _orchestrator(config, discoverers, control, media_url=MEDIA_URL):
    bus = DiscoveryBus(config["discovery"], discoverers=discoverers)
    return BlastOrchestrator(config, bus=bus, control_client=control,
                             media_server=StaticUrlMediaServer(media_url, probe=False))


async def test_full_blast_respects_concurrency_bound(config) -> None:
    control = _FakeControl(delay=0.1)
    orchestrator = _orchestrator(config, [_FakeDiscoverer(_devices(5))], control)
    states = []
    orchestrator.add_state_listener(lambda old, new: states.append(new))

    snapshot = await orchestrator.run_blast()

    assert control.peak == 2
    assert 0.28 <= control.last_end - control.first_start < 0.6
    assert snapshot.attempts == 5
    assert snapshot.successes == 5
    assert snapshot.devices_found == 5
    assert snapshot.outcome == RunOutcome.ALL_SUCCEEDED
    assert states == [BlastState.SERVING, BlastState.DISCOVERING, BlastState.CONTROLLING,
                      BlastState.SUMMARIZING, BlastState.DONE, BlastState.IDLE]
    assert all(status == DeviceStatus.SUCCESS for status in orchestrator.device_status.values())


async def test_stop_during_discovery_returns_to_idle_without_control(config) -> None:
    config["discovery"]["timeout_ms"] = 5000
    control = _FakeControl()
    orchestrator = _orchestrator(config, [_FakeDiscoverer(_devices(1), hang=True)], control)

    task = orchestrator.start()
    await asyncio.sleep(0.1)
    assert orchestrator.state == BlastState.DISCOVERING

    await orchestrator.stop()
    await asyncio.gather(task, return_exceptions=True)

    assert orchestrator.state == BlastState.IDLE
    assert task.cancelled()
    assert control.calls == []
    assert not orchestrator.metrics.snapshot.is_running


async def test_stop_during_control_cancels_outstanding_attempts(config) -> None:
    control = _FakeControl(hang=True)
    orchestrator = _orchestrator(config, [_FakeDiscoverer(_devices(3))], control)

    task = orchestrator.start()
    while orchestrator.state != BlastState.CONTROLLING:
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)

    await orchestrator.stop()
    await asyncio.gather(task, return_exceptions=True)

    assert orchestrator.state == BlastState.IDLE
    assert control.in_flight == 0
    assert orchestrator.results == {}


async def test_missing_media_url_is_a_configuration_error(config) -> None:
    orchestrator = _orchestrator(config, [_FakeDiscoverer(_devices(1))], _FakeControl(), media_url=None)

    with pytest.raises(ConfigurationError):
        orchestrator.start()

    assert orchestrator.state == BlastState.IDLE

    snapshot = await orchestrator.run_blast(media_url=MEDIA_URL)
    assert snapshot.successes == 1


async def test_zero_devices_reports_no_devices_outcome(config) -> None:
    control = _FakeControl()
    orchestrator = _orchestrator(config, [_FakeDiscoverer([])], control)

    snapshot = await orchestrator.run_blast()

    assert snapshot.outcome == RunOutcome.NO_DEVICES
    assert snapshot.attempts == 0
    assert control.calls == []
    assert orchestrator.state == BlastState.IDLE


async def test_all_failed_is_distinct_from_no_devices(config) -> None:
    devices = _devices(2)
    control = _FakeControl(delay=0.01, fail_ips={d.ip_address for d in devices})
    orchestrator = _orchestrator(config, [_FakeDiscoverer(devices)], control)

    snapshot = await orchestrator.run_blast()

    assert snapshot.outcome == RunOutcome.ALL_FAILED
    assert snapshot.failures == 2
    assert orchestrator.device_status[devices[0].identity] == DeviceStatus.FAILED


async def test_slow_device_is_cut_off_by_attempt_timeout(config) -> None:
    config["blast"]["attempt_timeout_ms"] = 100
    control = _FakeControl(hang=True)
    orchestrator = _orchestrator(config, [_FakeDiscoverer(_devices(1))], control)

    snapshot = await orchestrator.run_blast()

    assert snapshot.failures == 1
    result = next(iter(orchestrator.results.values()))
    assert result.failed_action == "timeout"


async def test_discover_only_returns_to_idle_and_devices_can_be_reused(config) -> None:
    control = _FakeControl(delay=0.01)
    orchestrator = _orchestrator(config, [_FakeDiscoverer(_devices(2))], control)

    devices = await orchestrator.run_discover_only()

    assert len(devices) == 2
    assert orchestrator.state == BlastState.IDLE
    assert control.calls == []

    states = []
    orchestrator.add_state_listener(lambda old, new: states.append(new))
    snapshot = await orchestrator.run_blast(reuse_discovered=True)

    assert BlastState.DISCOVERING not in states
    assert snapshot.successes == 2


async def test_reused_devices_are_counted_in_run_summary(config) -> None:
    orchestrator = _orchestrator(config, [_FakeDiscoverer(_devices(3))], _FakeControl(delay=0.01))
    await orchestrator.run_discover_only()

    snapshot = await orchestrator.run_blast(reuse_discovered=True)

    assert snapshot.devices_found == 3
    assert snapshot.attempts == 3
    assert snapshot.discovery_ms == 0
    assert snapshot.method_stats.ssdp.devices_found == 3
    assert snapshot.outcome == RunOutcome.ALL_SUCCEEDED


async def test_second_start_while_running_is_rejected(config) -> None:
    config["discovery"]["timeout_ms"] = 5000
    orchestrator = _orchestrator(config, [_FakeDiscoverer([], hang=True)], _FakeControl())

    orchestrator.start()
    with pytest.raises(InvalidStateTransition):
        orchestrator.start()

    await orchestrator.stop()


async def test_single_device_blast_for_undiscovered_device(config) -> None:
    control = _FakeControl(delay=0.01)
    orchestrator = _orchestrator(config, [], control)

    result = await orchestrator.blast_single_device("192.168.1.50", 49152)

    assert result.succeeded
    device, url = control.calls[0]
    assert device.friendly_name == "Device at 192.168.1.50:49152"
    assert device.control_url == "/AVTransport/control"
    assert url == MEDIA_URL
    assert orchestrator.state == BlastState.IDLE


async def test_late_enrichment_updates_known_device_until_stopped(config) -> None:
    devices = _devices(1)
    orchestrator = _orchestrator(config, [_FakeDiscoverer(devices)], _FakeControl(delay=0.01))
    await orchestrator.run_discover_only()

    enriched = devices[0].copy()
    enriched.friendly_name = "Kitchen"
    orchestrator._on_late_update(enriched)
    assert orchestrator.devices[enriched.identity].friendly_name == "Kitchen"

    orchestrator._stop_requested = True
    other = devices[0].copy()
    other.friendly_name = "Office"
    orchestrator._on_late_update(other)
    assert orchestrator.devices[enriched.identity].friendly_name == "Kitchen"


async def test_events_stream_carries_state_changes(config) -> None:
    orchestrator = _orchestrator(config, [_FakeDiscoverer(_devices(1))], _FakeControl(delay=0.01))
    received = []

    async def consume():
        async for event in orchestrator.events():
            received.append(event)
            if event.kind == "state" and event.data == BlastState.IDLE:
                return

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await orchestrator.run_blast()
    await asyncio.wait_for(consumer, 1.0)

    kinds = {event.kind for event in received}
    assert kinds == {"state", "metrics", "device"}
