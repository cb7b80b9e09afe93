"""
Configuration loader for the renderer blast server
Loads and validates configuration from YAML files
"""

import yaml
import logging
from typing import Dict, Any
from pathlib import Path
from datetime import datetime
import pytz

logger = logging.getLogger(__name__)

DISCOVERY_PRESETS = {
    'fast': {
        'enable_ssdp': True,
        'enable_mdns': True,
        'enable_port_scan': False,    # Skip aggressive scanning
        'port_scan_timeout_ms': 500,
        'concurrency': 5,
        'enable_caching': True,
    },
    'comprehensive': {
        'enable_ssdp': True,
        'enable_mdns': True,
        'enable_port_scan': True,
        'port_scan_timeout_ms': 2000,
        'concurrency': 2,             # Lower concurrency for stability
        'enable_caching': True,
    },
    'developer': {
        'enable_ssdp': True,
        'enable_mdns': True,
        'enable_port_scan': True,
        'port_scan_timeout_ms': 1500,
        'concurrency': 3,
        'enable_caching': False,      # Always rediscover while testing
        'custom_ports': [8081, 8082, 8083],
    },
}

def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file with validation
    """
    try:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.error(f"Configuration file not found: {config_path}")
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}

        # Apply defaults first so validation sees the effective values
        config = apply_defaults(config)
        _validate_config(config)

        logger.info(f"Configuration loaded from {config_path}")
        return config

    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise

def discovery_preset(name: str) -> Dict[str, Any]:
    """Return the overrides for a named discovery preset"""
    key = name.lower()
    if key not in DISCOVERY_PRESETS:
        raise ValueError(f"Unknown discovery preset: {name} (expected one of {', '.join(DISCOVERY_PRESETS)})")
    return dict(DISCOVERY_PRESETS[key])

def _validate_config(config: Dict) -> None:
    """Validate the effective configuration"""
    if not isinstance(config, dict):
        raise ValueError("Configuration must be a mapping")

    discovery = config['discovery']
    if discovery['timeout_ms'] <= 0:
        raise ValueError("discovery.timeout_ms must be greater than 0")
    if not (discovery['enable_ssdp'] or discovery['enable_mdns'] or discovery['enable_port_scan']):
        raise ValueError("At least one of discovery.enable_ssdp/enable_mdns/enable_port_scan must be true")
    if discovery['port_scan_timeout_ms'] <= 0:
        raise ValueError("discovery.port_scan_timeout_ms must be greater than 0")
    if discovery['port_scan_concurrency'] < 1:
        raise ValueError("discovery.port_scan_concurrency must be at least 1")
    for port in discovery['custom_ports']:
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError(f"discovery.custom_ports contains an invalid port: {port}")

    blast = config['blast']
    if not isinstance(blast['concurrency'], int) or blast['concurrency'] < 1:
        raise ValueError("blast.concurrency must be an integer >= 1")
    media_url = blast.get('media_url')
    if media_url and not str(media_url).startswith(('http://', 'https://')):
        raise ValueError(f"blast.media_url must be an http(s) URL: {media_url}")

    control = config['control']
    if control['command_timeout_ms'] <= 0:
        raise ValueError("control.command_timeout_ms must be greater than 0")

    timezone_name = config['logging']['timezone']
    if timezone_name not in pytz.all_timezones_set:
        raise ValueError(f"logging.timezone is not a known timezone: {timezone_name}")

def apply_defaults(config: Dict) -> Dict:
    """Apply default values to configuration"""

    # Discovery defaults (preset first, explicit keys win)
    if 'discovery' not in config or config['discovery'] is None:
        config['discovery'] = {}
    discovery = config['discovery']
    preset = {}
    if discovery.get('preset'):
        preset = discovery_preset(discovery['preset'])
        logger.info(f"Using discovery preset: {discovery['preset']}")
    preset_concurrency = preset.pop('concurrency', None)
    for key, value in preset.items():
        if key not in discovery:
            discovery[key] = value

    discovery_defaults = {
        'timeout_ms': 4000,
        'enable_ssdp': True,
        'enable_mdns': True,
        'enable_port_scan': True,
        'ssdp_mx': 2,
        'ssdp_search_targets': [
            'ssdp:all',
            'urn:schemas-upnp-org:device:MediaRenderer:1',
            'urn:schemas-upnp-org:service:AVTransport:1',
        ],
        'xml_fetch_timeout_ms': 3000,
        'mdns_service_types': [
            '_googlecast._tcp.local.',
            '_airplay._tcp.local.',
            '_raop._tcp.local.',
            '_dlna._tcp.local.',
        ],
        'mdns_resolve_timeout_ms': 1500,
        'port_scan_timeout_ms': 200,
        'port_scan_concurrency': 64,
        'ip_ranges': [],
        'custom_ports': [],
        'port_priority': {},
        'enable_caching': True,
        'cache_ttl_ms': 60000,
        'generic_name_patterns': ['Device at ', 'Network Device at ', ' at '],
    }
    for key, default_value in discovery_defaults.items():
        if key not in discovery:
            discovery[key] = default_value

    # Control defaults
    if 'control' not in config or config['control'] is None:
        config['control'] = {}
    control_defaults = {
        'command_timeout_ms': 5000,
        'settle_delay_ms': 200,
        'probe_before_control': True,
        'probe_timeout_ms': 1000,
        'default_control_url': '/AVTransport/control',
    }
    for key, default_value in control_defaults.items():
        if key not in config['control']:
            config['control'][key] = default_value

    # Blast defaults
    if 'blast' not in config or config['blast'] is None:
        config['blast'] = {}
    blast_defaults = {
        'concurrency': preset_concurrency or 3,
        'media_url': None,
        'serve_timeout_ms': 5000,
        'attempt_timeout_ms': 12000,
        'auto_reset': True,
    }
    for key, default_value in blast_defaults.items():
        if key not in config['blast']:
            config['blast'][key] = default_value

    # API defaults
    if 'api' not in config or config['api'] is None:
        config['api'] = {}
    api_defaults = {
        'host': '0.0.0.0',
        'port': 8000,
        'cors_origins': ['*']
    }
    for key, default_value in api_defaults.items():
        if key not in config['api']:
            config['api'][key] = default_value

    # Logging defaults
    if 'logging' not in config or config['logging'] is None:
        config['logging'] = {}
    logging_defaults = {
        'level': 'INFO',
        'file': 'logs/renderblast.log',
        'console_output': True,
        'timezone': 'UTC'
    }
    for key, default_value in logging_defaults.items():
        if key not in config['logging']:
            config['logging'][key] = default_value

    return config


class TimezoneFormatter(logging.Formatter):
    """Formatter that renders timestamps in the configured timezone"""

    def __init__(self, fmt=None, timezone_name: str = 'UTC'):
        super().__init__(fmt)
        self.tz = pytz.timezone(timezone_name)

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=self.tz)
        if datefmt:
            return dt.strftime(datefmt)
        else:
            # Default format: YYYY-MM-DD HH:MM:SS TZ
            return dt.strftime('%Y-%m-%d %H:%M:%S %Z')

def setup_logging(config: Dict) -> None:
    """Setup logging based on configuration with timezone-aware timestamps"""
    log_config = config.get('logging', {})
    level = log_config.get('level', 'INFO')
    timezone_name = log_config.get('timezone', 'UTC')

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = TimezoneFormatter(log_format, timezone_name)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=[]
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Console handler
    if log_config.get('console_output', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    # File handler
    log_file = log_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # zeroconf is chatty at DEBUG
    logging.getLogger('zeroconf').setLevel(logging.WARNING)

    logger.info(f"Logging configured: level={level}, timezone={timezone_name}, console={log_config.get('console_output', True)}, file={log_file}")

def get_sample_config() -> Dict:
    """Return a sample configuration for reference"""
    return {
        "discovery": {
            "preset": "comprehensive",      # fast | comprehensive | developer
            "timeout_ms": 4000,
            "enable_ssdp": True,
            "enable_mdns": True,
            "enable_port_scan": True,
            "ip_ranges": ["192.168.1.1-192.168.1.254"],  # Empty: local /24
            "port_scan_timeout_ms": 200,
            "custom_ports": [],
            "port_priority": {1400: 10, 8008: 5},
            "enable_caching": True,
            "cache_ttl_ms": 60000
        },
        "control": {
            "command_timeout_ms": 5000,
            "settle_delay_ms": 200,
            "probe_before_control": True
        },
        "blast": {
            "concurrency": 3,
            "media_url": "http://192.168.1.10:8080/media/current.mp3",
            "auto_reset": True
        },
        "api": {
            "host": "0.0.0.0",
            "port": 8000,
            "cors_origins": ["*"]
        },
        "logging": {
            "level": "INFO",
            "file": "logs/renderblast.log",
            "console_output": True,
            "timezone": "America/New_York"
        }
    }
