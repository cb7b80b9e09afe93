import pytest

from blast.metrics import Bottleneck, MetricsCollector, MetricsSnapshot, RunOutcome
from blast.state import BlastState, BlastStateMachine
from control.models import ControlResult
from discovery.models import Device, DiscoveryMethod, DiscoveryMethodStats
from errors import InvalidStateTransition


def test_state_machine_follows_full_run() -> None:
    machine = BlastStateMachine()
    seen = []
    machine.add_listener(lambda old, new: seen.append((old, new)))

    for state in (BlastState.SERVING, BlastState.DISCOVERING, BlastState.CONTROLLING,
                  BlastState.SUMMARIZING, BlastState.DONE, BlastState.IDLE):
        machine.transition_to(state)

    assert machine.state == BlastState.IDLE
    assert seen[0] == (BlastState.IDLE, BlastState.SERVING)
    assert len(seen) == 6


def test_state_machine_rejects_invalid_transition() -> None:
    machine = BlastStateMachine()

    with pytest.raises(InvalidStateTransition) as excinfo:
        machine.transition_to(BlastState.CONTROLLING)

    assert excinfo.value.current == BlastState.IDLE
    assert machine.state == BlastState.IDLE


def test_force_idle_from_any_state() -> None:
    machine = BlastStateMachine()
    machine.transition_to(BlastState.SERVING)
    machine.transition_to(BlastState.DISCOVERING)

    machine.force_idle()

    assert machine.state == BlastState.IDLE


def test_control_result_requires_error_exactly_when_failed() -> None:
    with pytest.raises(ValueError):
        ControlResult(("10.0.0.1", 80), False, 10)
    with pytest.raises(ValueError):
        ControlResult(("10.0.0.1", 80), True, 10, error_detail="oops")


def _device(ip, manufacturer, method=DiscoveryMethod.SSDP, port=1400):
    return Device(ip_address=ip, port=port, friendly_name=f"{manufacturer} {ip}",
                  manufacturer=manufacturer, discovery_method=method)


def test_collector_derives_rates_and_rankings() -> None:
    collector = MetricsCollector()
    published = []
    collector.add_listener(published.append)
    collector.reset()

    sonos_a = _device("10.0.0.1", "Sonos")
    sonos_b = _device("10.0.0.2", "Sonos")
    roku = _device("10.0.0.3", "Roku", port=8060)
    for device, result in (
        (sonos_a, ControlResult(sonos_a.identity, True, 150)),
        (sonos_b, ControlResult(sonos_b.identity, True, 450)),
        (roku, ControlResult(roku.identity, False, 900, error_detail="Play: timed out", failed_action="Play")),
    ):
        collector.record_attempt()
        collector.record_result(device, result)

    snapshot = collector.finalize(total_run_ms=2000)

    assert snapshot.attempts == 3
    assert snapshot.successes == 2
    assert snapshot.failures == 1
    assert snapshot.in_flight == 0
    assert snapshot.success_rate == pytest.approx(2 / 3)
    assert snapshot.average_device_latency_ms == 300
    assert snapshot.fastest_device() == ("10.0.0.1:1400", 150)
    assert snapshot.slowest_device() == ("10.0.0.2:1400", 450)
    assert snapshot.manufacturer_ranking()[0] == ("Sonos", 1.0)
    assert snapshot.per_manufacturer_success["Roku"] == 0.0
    assert snapshot.outcome == RunOutcome.PARTIAL
    assert snapshot.bottleneck() == Bottleneck.DEVICE_COMPATIBILITY
    assert published[-1] is snapshot
    # Earlier snapshots are untouched
    assert published[0].attempts == 0


def test_port_hits_count_only_port_scan_devices() -> None:
    collector = MetricsCollector()
    collector.record_device_found(_device("10.0.0.1", "", DiscoveryMethod.PORT_SCAN, port=1400), 1)
    collector.record_device_found(_device("10.0.0.2", "", DiscoveryMethod.PORT_SCAN, port=1400), 2)
    collector.record_device_found(_device("10.0.0.3", "", DiscoveryMethod.SSDP, port=8008), 3)

    snapshot = collector.snapshot

    assert snapshot.devices_found == 3
    assert snapshot.most_effective_ports() == [(1400, 2)]


def test_published_snapshot_mappings_are_read_only() -> None:
    collector = MetricsCollector()
    collector.record_device_found(_device("10.0.0.1", "Sonos", DiscoveryMethod.PORT_SCAN, port=1400), 1)
    device = _device("10.0.0.1", "Sonos")
    collector.record_result(device, ControlResult(device.identity, True, 150))
    snapshot = collector.snapshot

    with pytest.raises(TypeError):
        snapshot.port_hits[1400] = 99
    with pytest.raises(TypeError):
        snapshot.device_timings["10.0.0.9:1400"] = None
    with pytest.raises(TypeError):
        snapshot.manufacturer_stats["Sonos"] = None

    collector.record_device_found(_device("10.0.0.2", "", DiscoveryMethod.PORT_SCAN, port=1400), 2)
    assert snapshot.port_hits == {1400: 1}
    assert collector.snapshot.port_hits == {1400: 2}


@pytest.mark.parametrize("changes, expected", [
    ({"serve_start_ms": 250}, Bottleneck.HTTP_STARTUP),
    ({"discovery_ms": 6000}, Bottleneck.DISCOVERY),
    ({}, Bottleneck.NONE),
])
def test_bottleneck_thresholds(changes, expected) -> None:
    assert MetricsSnapshot(**changes).bottleneck() == expected


def test_outcome_distinguishes_no_devices_from_all_failed() -> None:
    assert MetricsSnapshot(is_complete=True).outcome == RunOutcome.NO_DEVICES
    assert MetricsSnapshot(is_complete=True, attempts=2, failures=2).outcome == RunOutcome.ALL_FAILED
    assert MetricsSnapshot(attempts=2).outcome == RunOutcome.NOT_FINISHED


def test_most_effective_method_prefers_ssdp_on_ties() -> None:
    stats = DiscoveryMethodStats()
    assert stats.most_effective_method() == DiscoveryMethod.SSDP

    stats = stats.with_device(DiscoveryMethod.MDNS).with_elapsed(DiscoveryMethod.MDNS, 500)
    assert stats.most_effective_method() == DiscoveryMethod.MDNS
    assert stats.to_dict()["mdns"]["efficiency"] == 2.0
