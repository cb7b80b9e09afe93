"""
Blast module: orchestrator state machine, metrics and media collaborator
"""

from .media import MediaServer, StaticUrlMediaServer
from .metrics import Bottleneck, MetricsCollector, MetricsSnapshot, RunOutcome
from .orchestrator import BlastEvent, BlastOrchestrator
from .state import BlastCommand, BlastState, BlastStateMachine, DeviceStatus, DeviceStatusEvent

__all__ = [
    'MediaServer', 'StaticUrlMediaServer', 'Bottleneck', 'MetricsCollector', 'MetricsSnapshot',
    'RunOutcome', 'BlastEvent', 'BlastOrchestrator', 'BlastCommand', 'BlastState',
    'BlastStateMachine', 'DeviceStatus', 'DeviceStatusEvent',
]
