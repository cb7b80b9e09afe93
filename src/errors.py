"""
Exception types shared across discovery, control and blast orchestration
"""

from typing import Optional


class RenderBlastError(Exception):
    """Base error for the renderer blast server"""


class ConfigurationError(RenderBlastError):
    """Run-level configuration problem (e.g. no media URL when controlling)"""


class DiscoveryResourceError(RenderBlastError):
    """A discoverer could not acquire its socket or browser"""

    def __init__(self, method: str, message: str):
        super().__init__(f"{method}: {message}")
        self.method = method


class InvalidStateTransition(RenderBlastError):
    """Requested orchestrator transition is not allowed from the current state"""

    def __init__(self, current, requested):
        super().__init__(f"Cannot move from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested


class SoapFaultError(RenderBlastError):
    """SOAP action answered with an HTTP error or a Fault body"""

    def __init__(self, action: str, status: int, fault_code: Optional[str] = None,
                 fault_string: Optional[str] = None, upnp_error_code: Optional[str] = None,
                 upnp_error_description: Optional[str] = None):
        self.action = action
        self.status = status
        self.fault_code = fault_code
        self.fault_string = fault_string
        self.upnp_error_code = upnp_error_code
        self.upnp_error_description = upnp_error_description
        super().__init__(self._describe())

    def _describe(self) -> str:
        detail = f"{self.action} failed with HTTP {self.status}"
        if self.upnp_error_code:
            detail += f" (UPnP error {self.upnp_error_code}"
            if self.upnp_error_description:
                detail += f": {self.upnp_error_description}"
            detail += ")"
        elif self.fault_string:
            detail += f" ({self.fault_string})"
        return detail
