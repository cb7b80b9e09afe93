"""
Blast metrics: immutable snapshots published by a single-writer collector
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from control.models import ControlResult
from discovery.models import Device, DiscoveryMethod, DiscoveryMethodStats

logger = logging.getLogger(__name__)

# Thresholds for bottleneck()
SLOW_SERVE_START_MS = 200
SLOW_DISCOVERY_MS = 5000
SLOW_DEVICE_RESPONSE_MS = 1000
LOW_SUCCESS_RATE = 0.7


class Bottleneck(Enum):
    HTTP_STARTUP = "HTTP_STARTUP"
    DISCOVERY = "DISCOVERY"
    DEVICE_RESPONSE = "DEVICE_RESPONSE"
    DEVICE_COMPATIBILITY = "DEVICE_COMPATIBILITY"
    NONE = "NONE"


class RunOutcome(Enum):
    NOT_FINISHED = "not_finished"
    NO_DEVICES = "no_devices"
    ALL_FAILED = "all_failed"
    PARTIAL = "partial"
    ALL_SUCCEEDED = "all_succeeded"


@dataclass(frozen=True)
class DeviceTiming:
    name: str
    manufacturer: str
    duration_ms: int
    succeeded: bool
    error_detail: Optional[str] = None


@dataclass(frozen=True)
class ManufacturerStats:
    attempts: int = 0
    successes: int = 0

    @property
    def success_ratio(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0


@dataclass(frozen=True)
class MetricsSnapshot:
    """
    Point-in-time view of a blast run
    Never mutated: the collector publishes a new instance for every change
    """
    serve_start_ms: int = 0
    discovery_ms: int = 0
    total_run_ms: int = 0
    devices_found: int = 0
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    device_timings: Mapping[str, DeviceTiming] = field(default_factory=dict)
    manufacturer_stats: Mapping[str, ManufacturerStats] = field(default_factory=dict)
    method_stats: DiscoveryMethodStats = field(default_factory=DiscoveryMethodStats)
    port_hits: Mapping[int, int] = field(default_factory=dict)
    xml_in_flight: int = 0
    xml_completed: int = 0
    is_running: bool = False
    is_complete: bool = False

    def __post_init__(self):
        # Published snapshots are shared with every reader
        for name in ("device_timings", "manufacturer_stats", "port_hits"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    @property
    def success_rate(self) -> float:
        settled = self.successes + self.failures
        return self.successes / settled if settled else 0.0

    @property
    def in_flight(self) -> int:
        return self.attempts - self.successes - self.failures

    @property
    def average_device_latency_ms(self) -> int:
        timings = [t.duration_ms for t in self.device_timings.values() if t.succeeded]
        return int(sum(timings) / len(timings)) if timings else 0

    @property
    def per_manufacturer_success(self) -> Dict[str, float]:
        return {name: stats.success_ratio for name, stats in self.manufacturer_stats.items()}

    def fastest_device(self) -> Optional[Tuple[str, int]]:
        timings = [(key, t.duration_ms) for key, t in self.device_timings.items() if t.succeeded]
        return min(timings, key=lambda item: item[1]) if timings else None

    def slowest_device(self) -> Optional[Tuple[str, int]]:
        timings = [(key, t.duration_ms) for key, t in self.device_timings.items() if t.succeeded]
        return max(timings, key=lambda item: item[1]) if timings else None

    def manufacturer_ranking(self) -> List[Tuple[str, float]]:
        return sorted(self.per_manufacturer_success.items(), key=lambda item: item[1], reverse=True)

    def most_effective_ports(self, limit: int = 5) -> List[Tuple[int, int]]:
        return sorted(self.port_hits.items(), key=lambda item: item[1], reverse=True)[:limit]

    def bottleneck(self) -> Bottleneck:
        if self.serve_start_ms > SLOW_SERVE_START_MS:
            return Bottleneck.HTTP_STARTUP
        if self.discovery_ms > SLOW_DISCOVERY_MS:
            return Bottleneck.DISCOVERY
        if self.average_device_latency_ms > SLOW_DEVICE_RESPONSE_MS:
            return Bottleneck.DEVICE_RESPONSE
        if self.attempts and self.success_rate < LOW_SUCCESS_RATE:
            return Bottleneck.DEVICE_COMPATIBILITY
        return Bottleneck.NONE

    @property
    def outcome(self) -> RunOutcome:
        if not self.is_complete:
            return RunOutcome.NOT_FINISHED
        if self.attempts == 0:
            return RunOutcome.NO_DEVICES
        if self.successes == 0:
            return RunOutcome.ALL_FAILED
        if self.failures == 0:
            return RunOutcome.ALL_SUCCEEDED
        return RunOutcome.PARTIAL

    def to_dict(self) -> Dict:
        fastest = self.fastest_device()
        slowest = self.slowest_device()
        return {
            "serve_start_ms": self.serve_start_ms,
            "discovery_ms": self.discovery_ms,
            "total_run_ms": self.total_run_ms,
            "devices_found": self.devices_found,
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "in_flight": self.in_flight,
            "success_rate": round(self.success_rate, 3),
            "average_device_latency_ms": self.average_device_latency_ms,
            "fastest_device": {"device": fastest[0], "duration_ms": fastest[1]} if fastest else None,
            "slowest_device": {"device": slowest[0], "duration_ms": slowest[1]} if slowest else None,
            "device_timings": {
                key: {
                    "name": t.name,
                    "manufacturer": t.manufacturer,
                    "duration_ms": t.duration_ms,
                    "succeeded": t.succeeded,
                    "error_detail": t.error_detail,
                }
                for key, t in self.device_timings.items()
            },
            "per_manufacturer_success": {k: round(v, 3) for k, v in self.per_manufacturer_success.items()},
            "manufacturer_ranking": [name for name, _ in self.manufacturer_ranking()],
            "method_stats": self.method_stats.to_dict(),
            "most_effective_ports": [{"port": p, "hits": n} for p, n in self.most_effective_ports()],
            "xml_in_flight": self.xml_in_flight,
            "xml_completed": self.xml_completed,
            "bottleneck": self.bottleneck().value,
            "outcome": self.outcome.value,
            "is_running": self.is_running,
            "is_complete": self.is_complete,
        }


def device_key(identity: Tuple[str, int]) -> str:
    ip, port = identity
    return f"{ip}:{port}"


def manufacturer_label(device: Device) -> str:
    if device.manufacturer:
        return device.manufacturer
    classification = device.classification
    if classification.is_unknown:
        return "Unknown"
    return classification.kind.value


MetricsListener = Callable[[MetricsSnapshot], None]


class MetricsCollector:
    """
    Owns the running MetricsSnapshot
    Only the orchestrator calls the record_* methods; readers get immutable snapshots
    """

    def __init__(self):
        self._snapshot = MetricsSnapshot()
        self._listeners: List[MetricsListener] = []

    @property
    def snapshot(self) -> MetricsSnapshot:
        return self._snapshot

    def add_listener(self, callback: MetricsListener):
        self._listeners.append(callback)

    def _publish(self, **changes) -> MetricsSnapshot:
        self._snapshot = replace(self._snapshot, **changes)
        for listener in self._listeners:
            try:
                listener(self._snapshot)
            except Exception as e:
                logger.error(f"Metrics listener failed: {e}")
        return self._snapshot

    def reset(self) -> MetricsSnapshot:
        self._snapshot = MetricsSnapshot()
        return self._publish(is_running=True)

    def record_serve_started(self, elapsed_ms: int):
        self._publish(serve_start_ms=elapsed_ms)

    def record_device_found(self, device: Device, devices_found: int):
        port_hits = self._snapshot.port_hits
        if device.discovery_method == DiscoveryMethod.PORT_SCAN:
            port_hits = dict(port_hits)
            port_hits[device.port] = port_hits.get(device.port, 0) + 1
        self._publish(devices_found=devices_found, port_hits=port_hits)

    def record_method_stats(self, stats: DiscoveryMethodStats):
        self._publish(method_stats=stats)

    def record_discovery(self, elapsed_ms: int, stats: DiscoveryMethodStats):
        self._publish(discovery_ms=elapsed_ms, method_stats=stats)

    def record_xml_progress(self, in_flight: int, completed: int):
        self._publish(xml_in_flight=in_flight, xml_completed=completed)

    def record_attempt(self):
        self._publish(attempts=self._snapshot.attempts + 1)

    def record_result(self, device: Device, result: ControlResult):
        current = self._snapshot
        manufacturer = manufacturer_label(device)

        timings = dict(current.device_timings)
        timings[device_key(result.device_identity)] = DeviceTiming(
            name=device.display_name,
            manufacturer=manufacturer,
            duration_ms=result.duration_ms,
            succeeded=result.succeeded,
            error_detail=result.error_detail,
        )

        per_manufacturer = dict(current.manufacturer_stats)
        stats = per_manufacturer.get(manufacturer, ManufacturerStats())
        per_manufacturer[manufacturer] = ManufacturerStats(
            attempts=stats.attempts + 1,
            successes=stats.successes + (1 if result.succeeded else 0),
        )

        self._publish(
            successes=current.successes + (1 if result.succeeded else 0),
            failures=current.failures + (0 if result.succeeded else 1),
            device_timings=timings,
            manufacturer_stats=per_manufacturer,
        )

    def finalize(self, total_run_ms: int) -> MetricsSnapshot:
        return self._publish(total_run_ms=total_run_ms, is_running=False, is_complete=True)

    def mark_stopped(self) -> MetricsSnapshot:
        return self._publish(is_running=False)
