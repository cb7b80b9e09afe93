import pytest

from config_loader import apply_defaults
from discovery.models import Device, DiscoveryMethod


@pytest.fixture
def make_device():
    def _make(ip="192.168.1.20", port=1400, name="", method=DiscoveryMethod.SSDP, **kwargs):
        return Device(
            ip_address=ip,
            port=port,
            friendly_name=name or f"Device at {ip}:{port}",
            discovery_method=method,
            **kwargs,
        )

    return _make


@pytest.fixture
def config():
    return apply_defaults({
        "discovery": {
            "timeout_ms": 500,
            "enable_caching": False,
        },
        "control": {
            "settle_delay_ms": 0,
            "probe_before_control": False,
        },
        "blast": {
            "concurrency": 2,
            "media_url": "http://192.168.1.10:8080/media/current.mp3",
        },
    })
