"""
Blast orchestrator state machine and device status types
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from control.models import ControlResult
from discovery.models import Device
from errors import InvalidStateTransition

logger = logging.getLogger(__name__)


class BlastState(Enum):
    IDLE = "idle"
    SERVING = "serving"
    DISCOVERING = "discovering"
    CONTROLLING = "controlling"
    SUMMARIZING = "summarizing"
    DONE = "done"


class BlastCommand(Enum):
    """Commands accepted from the UI/API layer"""
    START = "start"
    STOP = "stop"
    DISCOVER_ONLY = "discover_only"


class DeviceStatus(Enum):
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class DeviceStatusEvent:
    device: Device
    status: DeviceStatus
    result: Optional[ControlResult] = None


# Forward transitions; any state may also drop to IDLE through force_idle()
ALLOWED_TRANSITIONS = {
    BlastState.IDLE: {BlastState.SERVING, BlastState.DISCOVERING},
    BlastState.SERVING: {BlastState.DISCOVERING, BlastState.CONTROLLING},
    BlastState.DISCOVERING: {BlastState.CONTROLLING, BlastState.IDLE},
    BlastState.CONTROLLING: {BlastState.SUMMARIZING},
    BlastState.SUMMARIZING: {BlastState.DONE},
    BlastState.DONE: {BlastState.IDLE},
}

StateListener = Callable[[BlastState, BlastState], None]


class BlastStateMachine:
    """Holds the single live BlastState and validates every move"""

    def __init__(self):
        self.state = BlastState.IDLE
        self._listeners: List[StateListener] = []

    def add_listener(self, callback: StateListener):
        self._listeners.append(callback)

    def can_transition(self, new_state: BlastState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.state]

    def transition_to(self, new_state: BlastState):
        if not self.can_transition(new_state):
            raise InvalidStateTransition(self.state, new_state)
        self._set(new_state)

    def force_idle(self):
        """Stop/cancel path, valid from any state"""
        if self.state != BlastState.IDLE:
            self._set(BlastState.IDLE)

    def _set(self, new_state: BlastState):
        old_state = self.state
        self.state = new_state
        logger.info(f"[STATE] {old_state.value} -> {new_state.value}")
        for listener in self._listeners:
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"State listener failed: {e}")
