"""
Blast Orchestrator - sequences media serving, discovery and control fan-out
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from control.client import DeviceControlClient
from control.models import ControlResult
from discovery.bus import DiscoveryBus
from discovery.models import DEFAULT_CONTROL_URL, Device, DiscoveryMethodStats
from errors import ConfigurationError, InvalidStateTransition
from .media import MediaServer, StaticUrlMediaServer
from .metrics import MetricsCollector, MetricsSnapshot
from .state import BlastCommand, BlastState, BlastStateMachine, DeviceStatus, DeviceStatusEvent

logger = logging.getLogger(__name__)

DeviceListener = Callable[[DeviceStatusEvent], None]


@dataclass(frozen=True)
class BlastEvent:
    """Item of the events() stream: kind is 'state', 'metrics' or 'device'"""
    kind: str
    data: Any


class BlastOrchestrator:
    """Single observable state machine over discovery and device control"""

    def __init__(self, config: Dict,
                 bus: Optional[DiscoveryBus] = None,
                 control_client: Optional[DeviceControlClient] = None,
                 media_server: Optional[MediaServer] = None):
        self.config = config
        blast_config = config.get('blast', {})
        discovery_config = config.get('discovery', {})

        self.concurrency = max(1, blast_config.get('concurrency', 3))
        self.discovery_timeout_ms = discovery_config.get('timeout_ms', 4000)
        self.attempt_timeout = blast_config.get('attempt_timeout_ms', 12000) / 1000
        self.auto_reset = blast_config.get('auto_reset', True)

        self.bus = bus or DiscoveryBus(discovery_config)
        self.control = control_client or DeviceControlClient(config.get('control', {}))
        self.media_server = media_server or StaticUrlMediaServer(
            blast_config.get('media_url'),
            timeout_seconds=blast_config.get('serve_timeout_ms', 5000) / 1000,
        )

        self.state_machine = BlastStateMachine()
        self.metrics = MetricsCollector()

        # Keyed by (ip, port)
        self.devices: Dict[Tuple[str, int], Device] = {}
        self.device_status: Dict[Tuple[str, int], DeviceStatus] = {}
        self.results: Dict[Tuple[str, int], ControlResult] = {}

        self.last_error: Optional[str] = None
        self._run_task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._device_listeners: List[DeviceListener] = []
        self._event_queues: Set[asyncio.Queue] = set()

        self.bus.add_update_listener(self._on_late_update)
        self.bus.add_progress_listener(self._on_xml_progress)
        self.bus.add_stats_listener(self._on_method_stats)
        self.state_machine.add_listener(self._on_state_change)
        self.metrics.add_listener(self._on_metrics)

    @property
    def state(self) -> BlastState:
        return self.state_machine.state

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    # ================== OBSERVERS ==================

    def add_state_listener(self, callback: Callable[[BlastState, BlastState], None]):
        self.state_machine.add_listener(callback)

    def add_metrics_listener(self, callback: Callable[[MetricsSnapshot], None]):
        self.metrics.add_listener(callback)

    def add_device_listener(self, callback: DeviceListener):
        self._device_listeners.append(callback)

    async def events(self) -> AsyncIterator[BlastEvent]:
        """Live stream of state, metrics and device events until the consumer stops iterating"""
        queue: asyncio.Queue = asyncio.Queue()
        self._event_queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._event_queues.discard(queue)

    def _broadcast(self, kind: str, data: Any):
        for queue in self._event_queues:
            queue.put_nowait(BlastEvent(kind, data))

    def _on_state_change(self, old_state: BlastState, new_state: BlastState):
        self._broadcast("state", new_state)

    def _on_metrics(self, snapshot: MetricsSnapshot):
        self._broadcast("metrics", snapshot)

    def _set_status(self, device: Device, status: DeviceStatus, result: Optional[ControlResult] = None):
        self.device_status[device.identity] = status
        event = DeviceStatusEvent(device.copy(), status, result)
        for listener in self._device_listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Device listener failed: {e}")
        self._broadcast("device", event)

    # ================== DISCOVERY CALLBACKS ==================

    def _on_late_update(self, device: Device):
        if self._stop_requested or device.identity not in self.devices:
            return
        self.devices[device.identity] = device
        self._set_status(device, self.device_status.get(device.identity, DeviceStatus.DISCOVERED))

    def _on_xml_progress(self, in_flight: int, completed: int):
        if not self._stop_requested:
            self.metrics.record_xml_progress(in_flight, completed)

    def _on_method_stats(self, stats: DiscoveryMethodStats):
        if self.state == BlastState.DISCOVERING:
            self.metrics.record_method_stats(stats)

    # ================== COMMANDS ==================

    def start(self, media_url: Optional[str] = None, reuse_discovered: bool = False) -> asyncio.Task:
        """
        Begin a full blast in the background
        Raises ConfigurationError when no media URL can be had, InvalidStateTransition unless IDLE
        """
        if not media_url and not self.media_server.is_configured():
            raise ConfigurationError("No media URL available for blast")
        self._begin_run(BlastState.SERVING)
        self._run_task = asyncio.create_task(self._blast_pipeline(media_url, reuse_discovered))
        self._run_task.add_done_callback(self._log_run_outcome)
        return self._run_task

    async def run_blast(self, media_url: Optional[str] = None, reuse_discovered: bool = False) -> MetricsSnapshot:
        """Full blast, returning the final snapshot (or the partial one if stopped)"""
        result = await self._await_run(self.start(media_url, reuse_discovered))
        return result if result is not None else self.metrics.snapshot

    def discover_only(self, timeout_ms: Optional[int] = None) -> asyncio.Task:
        self._begin_run(BlastState.DISCOVERING)
        self._run_task = asyncio.create_task(self._discover_only_pipeline(timeout_ms))
        self._run_task.add_done_callback(self._log_run_outcome)
        return self._run_task

    async def run_discover_only(self, timeout_ms: Optional[int] = None) -> List[Device]:
        result = await self._await_run(self.discover_only(timeout_ms))
        return result if result is not None else list(self.devices.values())

    async def stop(self):
        """Force IDLE from any state, cancelling discovery and outstanding control attempts"""
        if self.state == BlastState.IDLE and not self.is_running:
            return

        logger.info("[BLAST] Stop requested")
        self._stop_requested = True
        self.bus.stop()

        task = self._run_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self.state_machine.force_idle()
        self.metrics.mark_stopped()

    async def handle_command(self, command: BlastCommand, media_url: Optional[str] = None,
                             reuse_discovered: bool = False, timeout_ms: Optional[int] = None):
        """Dispatch a UI command; start and discover_only return once the run is launched"""
        if command == BlastCommand.START:
            self.start(media_url, reuse_discovered)
        elif command == BlastCommand.DISCOVER_ONLY:
            self.discover_only(timeout_ms)
        elif command == BlastCommand.STOP:
            await self.stop()

    def reset(self):
        """Explicit DONE -> IDLE when auto_reset is off"""
        if self.state == BlastState.DONE:
            self.state_machine.transition_to(BlastState.IDLE)

    async def close(self):
        await self.stop()
        await self.media_server.stop()

    async def blast_single_device(self, ip: str, port: int, media_url: Optional[str] = None) -> ControlResult:
        """
        Push the clip to one device outside a full run
        Reuses the discovered record for (ip, port) when there is one
        """
        if self.state not in (BlastState.IDLE, BlastState.DONE):
            raise InvalidStateTransition(self.state, BlastState.CONTROLLING)

        url = media_url or await self.media_server.start()

        device = self.devices.get((ip, port)) or self.bus.get_device(ip, port)
        if device is None:
            device = Device(ip_address=ip, port=port, friendly_name=f"Device at {ip}:{port}",
                            control_url=self.config.get('control', {}).get('default_control_url', DEFAULT_CONTROL_URL))
            logger.info(f"[BLAST] {ip}:{port} not discovered, using default control URL")
        self.devices[device.identity] = device

        return await self._control_one(device, url)

    def device_list(self) -> List[Dict]:
        devices = []
        for identity, device in self.devices.items():
            entry = device.to_dict()
            entry["status"] = self.device_status.get(identity, DeviceStatus.DISCOVERED).value
            result = self.results.get(identity)
            entry["result"] = result.to_dict() if result else None
            devices.append(entry)
        return devices

    # ================== PIPELINES ==================

    def _begin_run(self, first_state: BlastState):
        if self.is_running:
            raise InvalidStateTransition(self.state, first_state)
        self.state_machine.transition_to(first_state)
        self._stop_requested = False
        self.last_error = None
        self.results = {}
        self.metrics.reset()

    async def _await_run(self, task: asyncio.Task):
        try:
            return await task
        except asyncio.CancelledError:
            if self._stop_requested:
                return None
            raise

    def _log_run_outcome(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[FAIL] Blast run failed: {error}")

    async def _blast_pipeline(self, media_url: Optional[str], reuse_discovered: bool) -> MetricsSnapshot:
        run_start = time.monotonic()
        try:
            serve_start = time.monotonic()
            url = media_url or await self.media_server.start()
            if not url:
                raise ConfigurationError("Media server returned no URL")
            self.metrics.record_serve_started(_elapsed_ms(serve_start))
            logger.info(f"[BLAST] Serving {url}")

            if reuse_discovered and self.devices:
                logger.info(f"[BLAST] Reusing {len(self.devices)} previously discovered devices")
                targets = list(self.devices.values())
                for count, device in enumerate(targets, start=1):
                    self.metrics.record_device_found(device, count)
                self.metrics.record_discovery(0, self.bus.stats)
            else:
                self.state_machine.transition_to(BlastState.DISCOVERING)
                targets = await self._discover(self.discovery_timeout_ms)

            self.state_machine.transition_to(BlastState.CONTROLLING)
            await self._control_all(targets, url)

            self.state_machine.transition_to(BlastState.SUMMARIZING)
            snapshot = self.metrics.finalize(_elapsed_ms(run_start))
            self._log_summary(snapshot)

            self.state_machine.transition_to(BlastState.DONE)
            if self.auto_reset:
                self.state_machine.transition_to(BlastState.IDLE)
            return snapshot

        except ConfigurationError as e:
            self.last_error = str(e)
            logger.error(f"[FAIL] Blast aborted: {e}")
            self.state_machine.force_idle()
            self.metrics.mark_stopped()
            raise
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"[FAIL] Blast run crashed in {self.state.value}: {e}")
            self.state_machine.force_idle()
            self.metrics.mark_stopped()
            raise

    async def _discover_only_pipeline(self, timeout_ms: Optional[int]) -> List[Device]:
        await self._discover(timeout_ms or self.discovery_timeout_ms)
        # Straight back to IDLE so a later blast can reuse these devices
        self.state_machine.transition_to(BlastState.IDLE)
        self.metrics.mark_stopped()
        logger.info(f"[SEARCH] Discover-only finished with {len(self.devices)} devices")
        return list(self.devices.values())

    async def _discover(self, timeout_ms: int) -> List[Device]:
        self.devices = {}
        self.device_status = {}
        start = time.monotonic()

        async for device in self.bus.discover_all(timeout_ms):
            is_new = device.identity not in self.devices
            self.devices[device.identity] = device
            self._set_status(device, DeviceStatus.DISCOVERED)
            if is_new:
                self.metrics.record_device_found(device, len(self.devices))

        self.metrics.record_discovery(_elapsed_ms(start), self.bus.stats)
        if not self.devices:
            logger.warning("[SEARCH] No devices found")
        return list(self.devices.values())

    async def _control_all(self, targets: List[Device], media_url: str):
        """Control every target with at most `concurrency` attempts in flight"""
        semaphore = asyncio.Semaphore(self.concurrency)
        logger.info(f"[BLAST] Controlling {len(targets)} devices, concurrency {self.concurrency}")

        async def guarded(device: Device):
            async with semaphore:
                # Pick up late XML enrichment that landed after discovery
                current = self.devices.get(device.identity, device)
                await self._control_one(current, media_url)

        await asyncio.gather(*(guarded(device) for device in targets), return_exceptions=True)

    async def _control_one(self, device: Device, media_url: str) -> ControlResult:
        self._set_status(device, DeviceStatus.CONNECTING)
        self.metrics.record_attempt()

        try:
            result = await asyncio.wait_for(self.control.push_clip(device, media_url), self.attempt_timeout)
        except asyncio.TimeoutError:
            result = ControlResult(device.identity, False, int(self.attempt_timeout * 1000),
                                   error_detail="control attempt timed out", failed_action="timeout")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error controlling {device.display_name}: {e}")
            result = ControlResult(device.identity, False, 0, error_detail=str(e) or e.__class__.__name__)

        self.results[device.identity] = result
        self.metrics.record_result(device, result)
        self._set_status(device, DeviceStatus.SUCCESS if result.succeeded else DeviceStatus.FAILED, result)
        return result

    def _log_summary(self, snapshot: MetricsSnapshot):
        if snapshot.attempts == 0:
            logger.warning("[BLAST] Run finished: zero devices found, nothing to control")
            return

        logger.info(f"[BLAST] Run finished: {snapshot.successes}/{snapshot.attempts} devices playing "
                    f"({snapshot.success_rate * 100:.0f}%) in {snapshot.total_run_ms}ms")
        if snapshot.successes == 0:
            logger.warning("[BLAST] Every control attempt failed")
        for manufacturer, ratio in snapshot.manufacturer_ranking():
            logger.info(f"   {manufacturer}: {ratio * 100:.0f}% success")
        logger.info(f"   Most effective discovery method: {snapshot.method_stats.most_effective_method().value}, "
                    f"bottleneck: {snapshot.bottleneck().value}")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
