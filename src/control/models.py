"""
Control result model
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class ControlResult:
    """Outcome of one control attempt against one device"""
    device_identity: Tuple[str, int]
    succeeded: bool
    duration_ms: int
    error_detail: Optional[str] = None
    failed_action: Optional[str] = None

    def __post_init__(self):
        if self.succeeded and self.error_detail is not None:
            raise ValueError("A successful ControlResult cannot carry an error")
        if not self.succeeded and not self.error_detail:
            raise ValueError("A failed ControlResult needs an error detail")

    def to_dict(self) -> Dict:
        ip, port = self.device_identity
        return {
            "ip_address": ip,
            "port": port,
            "succeeded": self.succeeded,
            "duration_ms": self.duration_ms,
            "error_detail": self.error_detail,
            "failed_action": self.failed_action,
        }
